"""
长生命周期对象的装配

进程启动时构造一次，通过 app.state 传给 API 层。
"""

import logging
from datetime import timedelta
from typing import Optional

import httpx

from .aggregator import Aggregator
from .cache import SnapshotCache
from .config import AppConfig
from .fields import FieldNameCache
from .live import LivePoller
from .scheduler import RefreshScheduler
from .source import DataSource

logger = logging.getLogger(__name__)


class Services:
    """所有长生命周期对象的容器"""

    def __init__(
        self,
        config: AppConfig,
        source: DataSource,
        field_names: FieldNameCache,
        aggregator: Aggregator,
        cache: SnapshotCache,
        scheduler: RefreshScheduler,
        live: LivePoller
    ):
        self.config = config
        self.source = source
        self.field_names = field_names
        self.aggregator = aggregator
        self.cache = cache
        self.scheduler = scheduler
        self.live = live

    def start(self):
        """启动后台任务（需在事件循环中调用）"""
        if self.config.scheduler.enabled:
            self.scheduler.start()
        else:
            logger.info("Scheduler disabled on this instance; cache is filled by manual triggers only")
        self.live.start()

    async def shutdown(self):
        """停止定时器，等待进行中的刷新结束，再关闭连接"""
        await self.scheduler.shutdown()
        await self.live.aclose()
        await self.source.aclose()


def build_services(
    config: AppConfig,
    source_transport: Optional[httpx.AsyncBaseTransport] = None,
    live_transport: Optional[httpx.AsyncBaseTransport] = None
) -> Services:
    source = DataSource(config.data_source, transport=source_transport)
    field_names = FieldNameCache(source, ttl_seconds=config.field_names.ttl_seconds)
    aggregator = Aggregator(
        source,
        field_names=field_names,
        batch_size=config.aggregator.batch_size,
        device_timeout=config.aggregator.device_timeout,
        lookback=timedelta(hours=config.aggregator.lookback_hours),
    )
    cache = SnapshotCache(
        anchor_minutes=config.scheduler.anchor_minutes,
        timezone_name=config.scheduler.timezone,
        monotonic_publish=config.cache.monotonic_publish,
    )
    scheduler = RefreshScheduler(cache, aggregator, bootstrap_delay=config.scheduler.bootstrap_delay)
    live = LivePoller(config.live, source=source, transport=live_transport)

    return Services(
        config=config,
        source=source,
        field_names=field_names,
        aggregator=aggregator,
        cache=cache,
        scheduler=scheduler,
        live=live,
    )
