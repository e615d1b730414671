"""
FastAPI 应用配置

配置 CORS、路由注册，并把进程级对象挂到 app.state。
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..services import Services
from .routers import health, live, stations

logger = logging.getLogger(__name__)


def create_app(services: Services, manage_lifecycle: bool = True) -> FastAPI:
    """
    创建 FastAPI 应用实例

    Args:
        services: 进程级对象容器
        manage_lifecycle: 为 True 时随应用启动/关闭调度器和实时轮询
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Station aggregator starting up...")
        if manage_lifecycle:
            services.start()
        try:
            yield
        finally:
            logger.info("Station aggregator shutting down...")
            if manage_lifecycle:
                await services.shutdown()

    app = FastAPI(
        title="Station Aggregator",
        description="站点数据聚合快照服务",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(stations.router)
    app.include_router(live.router)
    app.include_router(health.router)

    return app
