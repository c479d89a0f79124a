# imaps/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from imaps.api.routers.recalc_queue import router as recalc_queue_router
from imaps.api.routers.snapshots import router as snapshots_router
from imaps.api.routers.stock import router as stock_router
from imaps.core.config import get_settings
from imaps.core.logging import setup_logging
from imaps.core.scheduler import init_scheduler, shutdown_scheduler
from imaps.db.base import init_models
from imaps.db.session import close_engine, configure_engine, get_session_maker
from imaps.http_problem_handlers import register_exception_handlers
from imaps.metrics import PrometheusMiddleware
from imaps.metrics import router as metrics_router
from imaps.services.recalc_dispatcher import RecalcDispatcher

logger = logging.getLogger("imaps")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_engine()
    init_models()
    dispatcher = RecalcDispatcher(get_session_maker())
    app.state.dispatcher = dispatcher
    init_scheduler(dispatcher.recalc)
    logger.info("imaps started env=%s recalc_mode=%s", settings.ENV, dispatcher.mode)
    try:
        yield
    finally:
        shutdown_scheduler()
        # 后台重算收尾后再关连接
        await dispatcher.wait_idle()
        await close_engine()


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, json=settings.JSON_LOG)

    app = FastAPI(
        title="iMAPS Stock Engine",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.add_middleware(PrometheusMiddleware)
    register_exception_handlers(app)

    app.include_router(stock_router)
    app.include_router(snapshots_router)
    app.include_router(recalc_queue_router)
    app.include_router(metrics_router)

    @app.get("/healthz", tags=["ops"])
    async def healthz():
        return {"status": "ok"}

    return app


app = create_app()
