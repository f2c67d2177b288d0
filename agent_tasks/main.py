from contextlib import asynccontextmanager

from fastapi import FastAPI

from agent_tasks.api.v1.middleware.error_handler import ErrorHandlerMiddleware
from agent_tasks.api.v1.middleware.logging_middleware import LoggingMiddleware
from agent_tasks.api.v1.router import v1_router
from agent_tasks.config import Settings, settings
from agent_tasks.dependencies import Engine, build_engine, install_engine
from agent_tasks.utils.logging import get_logger, setup_logging


def create_app(app_settings: Settings | None = None, engine: Engine | None = None) -> FastAPI:
    """Build the FastAPI app.

    The engine is wired immediately so the app is usable without running the
    lifespan (as in tests); pass *engine* to supply a custom repository or
    handler registry.
    """
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(debug=app_settings.debug, json_logs=app_settings.json_logs)
        logger = get_logger("startup")
        logger.info("Starting task lifecycle engine", version="0.1.0")
        logger.info("Step handlers registered", handlers=app.state.engine.registry.list_all())

        yield

        logger.info("Shutting down")

    app = FastAPI(
        title="Agent Task Lifecycle Engine",
        description="Phase, status and step tracking for long-running agent tasks",
        version="0.1.0",
        lifespan=lifespan,
    )
    install_engine(app, engine or build_engine(app_settings))

    # The middleware added last is the outermost.
    # 1. Error handler (innermost -- turns engine exceptions into JSON)
    app.add_middleware(ErrorHandlerMiddleware)
    # 2. Request/response logger (wraps the error handler, so error responses are logged)
    app.add_middleware(LoggingMiddleware)

    app.include_router(v1_router, prefix="/api/v1")

    return app


app = create_app()
