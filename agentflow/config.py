"""Configuration management for the agent workflow engine."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum


ENV_PREFIX = "AGENTFLOW_"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Agent Workflow Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Agent collaborator settings
    agent_url: Optional[str] = Field(
        default=None,
        description="URL the agent collaborator receives prompts on; unset disables agent-backed nodes"
    )
    agent_timeout: float = Field(default=120.0, description="Agent request timeout in seconds")
    agent_model_id: Optional[str] = Field(default=None, description="Model id sent when a node names none")

    # Interpreter settings
    default_node_timeout: Optional[float] = Field(
        default=None,
        description="Timeout in seconds for agent-backed nodes; unset means unbounded"
    )
    default_max_retries: int = Field(default=0, description="Retries for recoverable node failures")
    retry_base_delay: float = Field(default=0.5, description="Base delay in seconds for retry backoff")
    max_tracked_executions: int = Field(default=100, description="Executions kept in the run registry")
    loop_iteration_delay: float = Field(default=0.0, description="Default delay in seconds between loop iterations")
    max_node_visits: int = Field(default=1000, description="Node visits allowed per run before it is aborted")
    chat_rewrite_queries: bool = Field(
        default=False,
        description="Ask the agent to rewrite the user query for each node of a chat walk"
    )

    # WebSocket settings
    websocket_max_connections: int = Field(
        default=100,
        description="Maximum WebSocket connections"
    )

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(run)s %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    structured_logging: bool = Field(default=False, description="Emit one JSON object per log record")

    # Performance monitoring settings
    slow_request_threshold: float = Field(
        default=5.0,
        description="Slow request threshold in seconds"
    )
    enable_performance_monitoring: bool = Field(
        default=True,
        description="Enable performance monitoring middleware"
    )

    # Security settings
    cors_origins: list = Field(
        default=["*"],
        description="CORS allowed origins"
    )
    cors_methods: list = Field(
        default=["GET", "POST", "DELETE"],
        description="CORS allowed methods"
    )

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_tracked_executions', 'websocket_max_connections', 'max_node_visits')
    @classmethod
    def validate_limits(cls, v):
        """Validate resource limits."""
        if v < 1:
            raise ValueError("Limit must be at least 1")
        return v

    @field_validator('agent_timeout', 'default_node_timeout')
    @classmethod
    def validate_timeouts(cls, v):
        """Validate timeout values."""
        if v is not None and v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @field_validator('default_max_retries', 'retry_base_delay', 'loop_iteration_delay')
    @classmethod
    def validate_non_negative(cls, v):
        """Validate retry counts and delays."""
        if v < 0:
            raise ValueError("Value cannot be negative")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return not self.debug and not self.reload

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"{ENV_PREFIX}{key}")
            if value is None or value == "":
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return [item.strip() for item in value.split(',') if item.strip()]
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "Agent Workflow Engine"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            agent_url=get_env("AGENT_URL", None),
            agent_timeout=get_env("AGENT_TIMEOUT", 120.0, float),
            agent_model_id=get_env("AGENT_MODEL_ID", None),
            default_node_timeout=get_env("DEFAULT_NODE_TIMEOUT", None, float),
            default_max_retries=get_env("DEFAULT_MAX_RETRIES", 0, int),
            retry_base_delay=get_env("RETRY_BASE_DELAY", 0.5, float),
            max_tracked_executions=get_env("MAX_TRACKED_EXECUTIONS", 100, int),
            loop_iteration_delay=get_env("LOOP_ITERATION_DELAY", 0.0, float),
            max_node_visits=get_env("MAX_NODE_VISITS", 1000, int),
            chat_rewrite_queries=get_env("CHAT_REWRITE_QUERIES", False, bool),
            websocket_max_connections=get_env("WEBSOCKET_MAX_CONNECTIONS", 100, int),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(run)s %(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            structured_logging=get_env("STRUCTURED_LOGGING", False, bool),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", 5.0, float),
            enable_performance_monitoring=get_env("ENABLE_PERFORMANCE_MONITORING", True, bool),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST", "DELETE"], list)
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file and environment variables."""
    global _config

    # Load .env file if it exists
    if config_file and os.path.exists(config_file):
        from dotenv import load_dotenv
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        from dotenv import load_dotenv
        load_dotenv('.env')

    # Create configuration from environment variables
    _config = AppConfig.from_env()

    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


# Configuration validation
def validate_config(config: AppConfig) -> None:
    """Validate configuration settings that depend on the environment."""
    errors = []

    # Validate log file directory
    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    # Check the agent endpoint
    if config.agent_url and not config.agent_url.startswith(("http://", "https://")):
        errors.append(f"Agent URL must be http or https: {config.agent_url}")

    # Check resource limits
    if config.websocket_max_connections > 1000:
        errors.append("Warning: High WebSocket connection limit may impact performance")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


# Environment-specific configurations
def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        enable_performance_monitoring=True
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        log_level=LogLevel.WARNING,
        default_node_timeout=5.0,
        default_max_retries=0,
        retry_base_delay=0.0,
        max_tracked_executions=20,
        enable_performance_monitoring=False
    )
