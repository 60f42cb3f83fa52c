"""Command line interface: serve the API, manage the store, check definitions.

    flowrunner [global options] run
    flowrunner db init|reset
    flowrunner validate PATH [--format json|yaml]
    flowrunner health [--detailed]
    flowrunner config show|validate
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Callable, Dict, Optional

from .config import (
    AppConfig,
    get_development_config,
    get_production_config,
    get_testing_config,
    load_config,
    validate_config,
)
from .core.logging import get_logger, setup_logging

PRESETS: Dict[str, Callable[[], AppConfig]] = {
    "development": get_development_config,
    "production": get_production_config,
    "testing": get_testing_config,
}

# Flags copied onto the configuration when given
OVERRIDE_FLAGS = ("host", "port", "database_url", "log_level", "log_file", "max_concurrent_executions")


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="flowrunner", description="Flowrunner - workflow orchestration engine")

    parser.add_argument("--env", choices=sorted(PRESETS), help="Start from a configuration preset")
    parser.add_argument("--config", help="Path to a dotenv configuration file")
    parser.add_argument("--host", help="Host to bind the server to")
    parser.add_argument("--port", type=int, help="Port to bind the server to")
    parser.add_argument("--database-url", help="SQLAlchemy URL of the durable store")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--max-concurrent-executions", type=int, help="Worker threads driving runs")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("run", help="Serve the HTTP API (default)")

    db = commands.add_parser("db", help="Manage the durable store")
    db.add_argument("db_command", choices=["init", "reset"])

    validate = commands.add_parser("validate", help="Validate a workflow definition file")
    validate.add_argument("path", help="Definition file (.json, .yaml or .yml)")
    validate.add_argument("--format", choices=["json", "yaml"], help="Override the encoding")

    health = commands.add_parser("health", help="Run health checks")
    health.add_argument("--detailed", action="store_true", help="Check the database as well")

    config = commands.add_parser("config", help="Inspect the effective configuration")
    config.add_argument("config_command", choices=["show", "validate"])

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Preset or environment configuration, with command line flags applied on top."""
    config = PRESETS[args.env]() if args.env else load_config(args.config)

    update = {flag: getattr(args, flag) for flag in OVERRIDE_FLAGS if getattr(args, flag) is not None}
    if args.reload:
        update["reload"] = True
    if args.debug:
        update["debug"] = True
    if not update:
        return config
    return AppConfig.model_validate({**config.model_dump(), **update})


# Commands. Each returns the process exit code.

def run_server(args: argparse.Namespace, config: AppConfig) -> int:
    import uvicorn
    from .factory import create_app

    validate_config(config)
    uvicorn_config = config.get_uvicorn_config()
    if uvicorn_config.pop("reload"):
        get_logger(__name__).warning("Auto-reload needs 'uvicorn flowrunner.main:app --reload'; ignoring --reload")
    uvicorn.run(create_app(config), **uvicorn_config)
    return 0


def run_database_command(args: argparse.Namespace, config: AppConfig) -> int:
    from .storage.database import create_database_engine, create_tables, drop_tables

    validate_config(config)
    setup_logging(level=config.log_level.value)
    logger = get_logger(__name__)
    engine = create_database_engine(config.database_url, echo=config.database_echo)
    try:
        if args.db_command == "reset":
            drop_tables(engine)
            logger.info("Dropped all tables")
        create_tables(engine)
        logger.info(f"Tables ready in {config.database_url}")
    finally:
        engine.dispose()
    return 0


def run_validate_command(path: str, definition_format: Optional[str] = None) -> int:
    """Validate a definition file without a database. Returns the process exit code."""
    from .core.capabilities import DefaultActionCapabilities, HttpNotificationTransport
    from .core.registry import build_default_registry
    from .core.workflow_manager import WorkflowManager

    source = Path(path)
    if definition_format is None:
        definition_format = "yaml" if source.suffix.lower() in (".yaml", ".yml") else "json"

    capabilities = DefaultActionCapabilities()
    transport = HttpNotificationTransport()
    try:
        registry = build_default_registry(store=None, capabilities=capabilities, transport=transport)
        result = WorkflowManager(store=None, registry=registry).validate_content(
            source.read_text(encoding="utf-8"), definition_format
        )
    finally:
        capabilities.close()
        transport.close()

    for error in result.errors:
        print(f"ERROR: {error}")
    for warning in result.warnings:
        print(f"WARNING: {warning}")
    print(f"{source}: {'valid' if result.valid else 'invalid'}")
    return 0 if result.valid else 1


async def run_health_check(config: AppConfig, detailed: bool = False) -> int:
    """Print the service identity and, when detailed, probe the database."""
    from sqlalchemy import text
    from .core.error_recovery import HealthChecker
    from .storage.database import create_database_engine

    print(f"Service: {config.app_name} v{config.version}")
    if not detailed:
        return 0

    engine = create_database_engine(config.database_url)

    def ping_database():
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return "Database connection successful"

    checker = HealthChecker()
    checker.register_check("database", ping_database, timeout=config.health_check_timeout)
    try:
        results = await checker.run_all_checks()
    finally:
        engine.dispose()

    print(f"Overall Status: {results['overall_status']}")
    for name, result in results["checks"].items():
        print(f"  {name}: {result['status']} - {result['message']}")
    return 0 if results["overall_status"] == "healthy" else 1


def show_configuration(config: AppConfig) -> int:
    print("Current Configuration:")
    for name, value in config.model_dump(mode="json").items():
        print(f"  {name}: {value}")
    return 0


def validate_configuration(config: AppConfig) -> int:
    try:
        validate_config(config)
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        return 1
    print("Configuration validation: PASSED")
    return 0


def dispatch(args: argparse.Namespace, config: AppConfig) -> int:
    if args.command == "validate":
        return run_validate_command(args.path, args.format)
    if args.command == "config":
        return show_configuration(config) if args.config_command == "show" else validate_configuration(config)
    if args.command == "health":
        return asyncio.run(run_health_check(config, args.detailed))
    if args.command == "db":
        return run_database_command(args, config)
    return run_server(args, config)


def main(argv: Optional[list] = None) -> int:
    args = create_argument_parser().parse_args(argv)
    try:
        return dispatch(args, load_configuration(args))
    except (ValueError, OSError) as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
