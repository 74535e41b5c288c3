"""Application factory for creating FastAPI instances."""

from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from .config import AppConfig, get_config, validate_config
from .core.logging import setup_logging, get_logger
from .core.agent import AgentCollaborator, HttpAgentCollaborator, UnconfiguredAgent
from .core.engine import WorkflowEngine
from .core.websocket_manager import WebSocketManager
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.engine: Optional[WorkflowEngine] = None
        self.websocket_manager: Optional[WebSocketManager] = None


# Global application state
app_state = ApplicationState()


def create_agent(config: AppConfig) -> AgentCollaborator:
    """Build the agent collaborator described by ``config``."""
    if config.agent_url:
        return HttpAgentCollaborator(
            config.agent_url,
            timeout=config.agent_timeout,
            default_model_id=config.agent_model_id
        )
    get_logger(__name__).warning("No agent URL configured; agent-backed nodes will fail")
    return UnconfiguredAgent()


def initialize_core_components(config: AppConfig, agent: Optional[AgentCollaborator] = None) -> tuple:
    """Build the engine and the monitoring relay and wire them together."""
    engine = WorkflowEngine(agent or create_agent(config), config=config)
    websocket_manager = WebSocketManager(max_connections=config.websocket_max_connections)
    websocket_manager.attach(engine.event_bus)
    return engine, websocket_manager


def create_lifespan_handler(config: AppConfig):
    """Create the application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        yield

        logger.info(f"Shutting down {config.app_name}")
        if app_state.websocket_manager is not None:
            app_state.websocket_manager.detach()
            logger.info("WebSocket manager detached from event bus")

    return lifespan


def create_app(config: Optional[AppConfig] = None, agent: Optional[AgentCollaborator] = None) -> FastAPI:
    """
    Create and configure a FastAPI application instance.

    ``agent`` overrides the collaborator built from ``config.agent_url``,
    which is how tests plug in a fake agent.
    """
    if config is None:
        config = get_config()

    validate_config(config)

    engine, websocket_manager = initialize_core_components(config, agent)
    app_state.config = config
    app_state.engine = engine
    app_state.websocket_manager = websocket_manager
    init_dependencies(engine, websocket_manager)

    app = FastAPI(
        title=config.app_name,
        description="Executes agent workflow graphs and streams their progress",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    if config.enable_performance_monitoring:
        from .core.middleware import (
            ErrorHandlingMiddleware,
            RequestLoggingMiddleware,
            PerformanceMonitoringMiddleware
        )

        app.add_middleware(ErrorHandlingMiddleware)
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
        app.add_middleware(RequestLoggingMiddleware)

    app.include_router(router)

    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": config.app_name.lower().replace(" ", "-"),
            "version": config.app_version,
            "agent_configured": bool(config.agent_url)
        }


def get_app_state() -> ApplicationState:
    """Get the current application state."""
    return app_state
