"""Application factory: wires the store, the engine and the HTTP surface together."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .api.endpoints import router as api_router
from .config import AppConfig, get_config, validate_config
from .core.capabilities import (
    DefaultActionCapabilities,
    HttpNotificationTransport,
    MigrationBackend,
    NotificationTransport,
)
from .core.error_recovery import HealthChecker
from .core.execution_engine import ExecutionEngine
from .core.logging import get_logger, setup_logging
from .core.middleware import ErrorHandlingMiddleware, PerformanceMonitoringMiddleware
from .core.registry import build_default_registry
from .core.workflow_manager import WorkflowManager
from .storage.database import create_database_engine, create_session_factory, create_tables
from .storage.store import SqlExecutionStore

logger = get_logger(__name__)


class Components:
    """Everything one running application owns. Closed in reverse order of creation."""

    def __init__(
        self,
        config: AppConfig,
        migration_backend: Optional[MigrationBackend] = None,
        transport: Optional[NotificationTransport] = None,
    ):
        self.config = config
        self.db_engine = create_database_engine(config.database_url, echo=config.database_echo)
        create_tables(self.db_engine)
        self.store = SqlExecutionStore(create_session_factory(self.db_engine))

        self.capabilities = DefaultActionCapabilities(migration_backend=migration_backend, timeout=config.http_timeout)
        self.transport = transport or HttpNotificationTransport(
            slack_webhook_url=config.slack_webhook_url, timeout=config.http_timeout
        )
        registry = build_default_registry(
            self.store,
            self.capabilities,
            transport=self.transport,
            max_renotifications=config.approval_max_renotifications,
        )

        self.workflow_manager = WorkflowManager(self.store, registry)
        self.execution_engine = ExecutionEngine(
            store=self.store,
            registry=registry,
            workflow_manager=self.workflow_manager,
            max_concurrent_executions=config.max_concurrent_executions,
            wait_poll_interval=config.wait_poll_interval,
            test_node_count=config.test_node_count,
            start_scheduler=False,
        )
        self.health_checker = HealthChecker()
        self.health_checker.register_check("database", self.ping_database, timeout=config.health_check_timeout)
        self.health_checker.register_check("execution_engine", self.engine_status, timeout=config.health_check_timeout)

    def ping_database(self):
        with self.db_engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return "Database connection successful"

    def engine_status(self):
        stats = self.execution_engine.get_statistics()
        if not stats["scheduler_running"]:
            raise RuntimeError("Wait scheduler is not running")
        return {
            "message": "Execution engine operational",
            "active_runs": stats["total_active_runs"],
            "max_concurrent": stats["max_concurrent_limit"],
        }

    def start(self) -> None:
        """Resume runs a previous process left behind, then begin serving waits."""
        recovered = self.execution_engine.recover_runs()
        if recovered:
            logger.info(f"Recovered {recovered} interrupted runs")
        self.execution_engine.start_scheduler()

    def close(self) -> None:
        try:
            self.execution_engine.shutdown()
        except Exception as e:
            logger.error(f"Error during execution engine shutdown: {e}", exc_info=True)
        self.transport.close()
        self.capabilities.close()
        self.db_engine.dispose()


health_router = APIRouter(tags=["health"])


@health_router.get("/")
async def root(request: Request):
    config = request.app.state.config
    return {"message": f"{config.app_name} is running", "version": config.version}


@health_router.get("/health")
async def health_check(request: Request):
    """Liveness: answers as long as the process serves requests."""
    config = request.app.state.config
    return {"status": "healthy", "service": service_name(config), "version": config.version}


@health_router.get("/health/detailed")
async def detailed_health_check(request: Request):
    """Readiness: probes the database and the engine's wait scheduler."""
    config = request.app.state.config
    components = getattr(request.app.state, "components", None)
    if components is None:
        return JSONResponse(
            status_code=503,
            content={"service": service_name(config), "overall_status": "unhealthy", "error": "Not started"},
        )

    results = await components.health_checker.run_all_checks()
    return JSONResponse(
        status_code=200 if results["overall_status"] == "healthy" else 503,
        content={"service": service_name(config), "version": config.version, **results},
    )


def service_name(config: AppConfig) -> str:
    return config.app_name.lower().replace(" ", "-")


def create_app(
    config: Optional[AppConfig] = None,
    migration_backend: Optional[MigrationBackend] = None,
    transport: Optional[NotificationTransport] = None,
) -> FastAPI:
    """Create and configure a FastAPI application instance.

    Components are built when the application starts, not here, so creating
    an app never touches the database.

    Args:
        config: Settings to use, defaults to ``get_config()``
        migration_backend: Backend for migration actions, if the host provides one
        transport: Notification transport replacing the default HTTP transport
    """
    config = config or get_config()
    validate_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count,
        )
        logger.info(f"Starting {config.app_name} v{config.version}")

        components = Components(config, migration_backend, transport)
        try:
            components.start()
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            components.close()
            raise
        app.state.components = components
        logger.info("Application startup completed successfully")

        try:
            yield
        finally:
            logger.info(f"Shutting down {config.app_name}")
            app.state.components = None
            components.close()

    app = FastAPI(
        title=config.app_name,
        description="Workflow orchestration engine with approvals, delays and durable execution state",
        version=config.version,
        debug=config.debug,
        lifespan=lifespan,
    )
    app.state.config = config

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    if config.enable_performance_monitoring:
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
    app.add_middleware(ErrorHandlingMiddleware)

    app.include_router(api_router)
    app.include_router(health_router)
    return app
