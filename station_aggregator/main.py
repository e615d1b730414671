"""
主程序入口

装配所有长生命周期对象，启动：
1. 整点锚点刷新调度器（可按实例关闭，集群内只需一个实例运行）
2. 实时数据预热循环
3. REST API 服务
"""

import asyncio
import logging
import sys
from pathlib import Path

import uvicorn

from . import __version__
from .api.app import create_app
from .config import AppConfig, get_config
from .services import build_services


def setup_logging(config: AppConfig):
    """配置日志"""
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    level = getattr(logging, config.logging.level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format=log_format,
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    if config.logging.file:
        log_path = Path(config.logging.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(str(log_path), encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(log_format))
        logging.getLogger().addHandler(file_handler)

    # 降低第三方库日志级别
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


async def main():
    """主函数：装配对象并运行 API 服务"""
    logger = logging.getLogger(__name__)

    config = get_config()
    setup_logging(config)
    logger.info("=" * 60)
    logger.info(f"Station Aggregator v{__version__}")
    logger.info("=" * 60)
    logger.info(f"Config loaded: API={config.api.host}:{config.api.port}")
    logger.info(f"Data source: {config.data_source.url}")
    logger.info(
        f"Scheduler: {'enabled' if config.scheduler.enabled else 'disabled'}, "
        f"anchors={config.scheduler.anchor_minutes} ({config.scheduler.timezone}), "
        f"batch_size={config.aggregator.batch_size}"
    )

    services = build_services(config)
    app = create_app(services)

    server_config = uvicorn.Config(
        app=app,
        host=config.api.host,
        port=config.api.port,
        log_level=config.logging.level.lower(),
        access_log=False  # 我们用自己的日志
    )
    server = uvicorn.Server(server_config)

    try:
        await server.serve()
    except asyncio.CancelledError:
        logger.info("Server cancelled, shutting down...")


def cli():
    """命令行入口"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested, exiting...")
        sys.exit(0)


if __name__ == "__main__":
    cli()
