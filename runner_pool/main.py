import logging
import time
from datetime import timedelta

from fastapi import FastAPI, Request

from runner_pool.api import register_error_handlers, router
from runner_pool.config import get_settings
from runner_pool.delegate import Delegate
from runner_pool.logging_config import configure_logging
from runner_pool.manager import Manager
from runner_pool.poolfile import load_pool_file


logger = logging.getLogger(__name__)


def create_app(delegate: Delegate | None = None) -> FastAPI:
    app = FastAPI(title="Runner Pool Delegate")
    app.include_router(router)
    register_error_handlers(app)
    app.state.delegate = delegate

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.monotonic()
        response = await call_next(request)
        logger.info(
            "request method=%s path=%s status=%s took=%.3fs",
            request.method,
            request.url.path,
            response.status_code,
            time.monotonic() - started,
        )
        return response

    @app.on_event("startup")
    def startup() -> None:
        configure_logging()
        if app.state.delegate is None:
            settings = get_settings()
            specs = load_pool_file(settings.pool_file, settings)
            app.state.delegate = Delegate(Manager.from_specs(specs, settings), settings)

        delegate: Delegate = app.state.delegate
        settings = delegate.settings
        manager = delegate.manager
        if not settings.disable_background_loops:
            manager.startup(manager.ctx, settings.reuse_pool)
            manager.start_instance_purger(
                manager.ctx,
                busy_max_age=timedelta(hours=settings.busy_max_age),
                free_max_age=timedelta(hours=settings.free_max_age),
                interval=settings.purger_interval_sec,
            )
        logger.info(
            "delegate startup complete runner=%s pools=%s reuse_pool=%s",
            settings.runner_name,
            manager.names(),
            settings.reuse_pool,
        )

    @app.on_event("shutdown")
    def shutdown() -> None:
        delegate: Delegate | None = app.state.delegate
        if delegate is None:
            return
        settings = delegate.settings
        delegate.manager.shutdown(
            reuse_pool=settings.reuse_pool or settings.disable_background_loops,
            timeout=settings.shutdown_clean_timeout_sec,
        )
        logger.info("delegate shutdown complete")

    return app


app = create_app()
