"""Command line interface for running and checking the workflow engine."""

import sys
import json
import argparse

from .config import (
    AppConfig,
    LogLevel,
    load_config,
    get_development_config,
    get_testing_config,
    validate_config
)
from .core.logging import get_logger


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="agentflow",
        description="Agent Workflow Engine - executes graphs of agent-backed workflow steps"
    )

    # Server configuration
    parser.add_argument("--host", help="Host to bind the server to")
    parser.add_argument("--port", type=int, help="Port to bind the server to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    # Environment configuration
    parser.add_argument(
        "--env",
        choices=["development", "testing"],
        help="Environment configuration preset"
    )
    parser.add_argument("--config", help="Path to a .env configuration file")

    # Agent configuration
    parser.add_argument("--agent-url", help="URL of the agent collaborator")

    # Logging configuration
    parser.add_argument(
        "--log-level",
        choices=[level.value for level in LogLevel],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the workflow engine server")
    run_parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of worker processes (default: 1)"
    )

    validate_parser = subparsers.add_parser("validate", help="Validate a workflow definition file")
    validate_parser.add_argument("workflow_file", help="Path to a workflow definition in JSON")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""
    if args.env == "development":
        config = get_development_config()
    elif args.env == "testing":
        config = get_testing_config()
    else:
        config = load_config(args.config)

    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.reload:
        config.reload = True
    if args.agent_url:
        config.agent_url = args.agent_url
    if args.log_level:
        config.log_level = LogLevel(args.log_level)
    if args.log_file:
        config.log_file = args.log_file
    if args.debug:
        config.debug = True

    return config


def run_server(config: AppConfig, workers: int = 1):
    """Run the workflow engine server."""
    import uvicorn
    from .factory import create_app

    logger = get_logger(__name__)
    logger.info(f"Starting server with {workers} worker(s)")

    uvicorn_config = config.get_uvicorn_config()

    if workers > 1 or config.reload:
        # Worker processes build their own app from the environment
        uvicorn.run("agentflow.main:app", workers=workers, **uvicorn_config)
    else:
        uvicorn.run(create_app(config), **uvicorn_config)


def validate_workflow_file(path: str) -> bool:
    """Print the structural validation result of a workflow file. Returns validity."""
    from .core.engine import WorkflowEngine
    from .core.agent import UnconfiguredAgent

    with open(path, "r", encoding="utf-8") as handle:
        definition = json.load(handle)

    result = WorkflowEngine(UnconfiguredAgent()).validate_workflow(definition)

    print(f"Workflow validation: {'PASSED' if result.is_valid else 'FAILED'}")
    for error in result.errors:
        print(f"  error: {error}")
    for warning in result.warnings:
        print(f"  warning: {warning}")
    return result.is_valid


def show_configuration(config: AppConfig):
    """Show current configuration."""
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Debug: {config.debug}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Agent URL: {config.agent_url or '(not configured)'}")
    print(f"  Default Node Timeout: {config.default_node_timeout}")
    print(f"  Default Max Retries: {config.default_max_retries}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Max Tracked Executions: {config.max_tracked_executions}")
    print(f"  WebSocket Max Connections: {config.websocket_max_connections}")


def validate_configuration_command(config: AppConfig):
    """Validate configuration and show results."""
    try:
        validate_config(config)
        print("Configuration validation: PASSED")
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        sys.exit(1)


def main():
    """Main entry point for the command line."""
    parser = create_argument_parser()
    args = parser.parse_args()

    try:
        config = load_configuration(args)

        if args.command == "run" or args.command is None:
            validate_config(config)
            run_server(config, getattr(args, "workers", 1))

        elif args.command == "validate":
            if not validate_workflow_file(args.workflow_file):
                sys.exit(1)

        elif args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            elif args.config_command == "validate":
                validate_configuration_command(config)
            else:
                print("Configuration command required. Use --help for options.")
                sys.exit(1)
        else:
            parser.print_help()

    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
