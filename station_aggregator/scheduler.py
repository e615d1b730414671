"""
刷新调度器

按固定的整点锚点（默认每小时 9, 19, ..., 59 分，UTC）触发聚合，
启动后另有一次短延迟的预热刷新，让缓存尽快有数据。

定时触发与手动触发走同一个 run_pass()，异常全部在这里收口，
调度器不会让任何异常逃逸到宿主进程。
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional, Set

from .aggregator import Aggregator
from .cache import SnapshotCache, utcnow
from .models import PassResult, SchedulerStatus

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """
    状态：Idle -> Running -> Idle

    每次刷新都在独立任务中运行，stop() 只取消定时器，
    正在进行的刷新会跑完并发布结果。
    """

    def __init__(
        self,
        cache: SnapshotCache,
        aggregator: Aggregator,
        bootstrap_delay: float = 2.0,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """
        Args:
            cache: 快照缓存（同时提供锚点网格）
            aggregator: 聚合器
            bootstrap_delay: 启动后首次刷新的延迟（秒）
            clock: 时钟（测试时注入）
            sleep: 睡眠函数（测试时注入）
        """
        self.cache = cache
        self.aggregator = aggregator
        self.bootstrap_delay = bootstrap_delay
        self._clock = clock
        self._sleep = sleep

        self._timer_task: Optional[asyncio.Task] = None
        self._bootstrap_task: Optional[asyncio.Task] = None
        self._passes: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._timer_task is not None

    # =========================================================================
    # 生命周期
    # =========================================================================

    def start(self):
        """启动定时器（已在运行时什么都不做）"""
        if self._timer_task is not None:
            logger.info("Scheduler already running")
            return

        self._timer_task = asyncio.create_task(self._run_timer(), name="refresh-scheduler")
        self._bootstrap_task = asyncio.create_task(self._run_bootstrap(), name="refresh-bootstrap")
        logger.info(f"Scheduler started: {self._describe_schedule()} ({self.cache.timezone_name})")

    def stop(self):
        """取消定时器；不会中断正在进行的刷新"""
        if self._timer_task is None:
            return

        self._timer_task.cancel()
        self._timer_task = None
        if self._bootstrap_task is not None and not self._bootstrap_task.done():
            self._bootstrap_task.cancel()
        self._bootstrap_task = None
        logger.info("Scheduler stopped")

    async def shutdown(self):
        """优雅退出：停止定时器并等待进行中的刷新结束"""
        self.stop()
        if self._passes:
            logger.info(f"Waiting for {len(self._passes)} in-flight fetch(es) to finish")
            await asyncio.gather(*list(self._passes), return_exceptions=True)

    # =========================================================================
    # 刷新任务
    # =========================================================================

    async def run_pass(self) -> PassResult:
        """
        执行一次刷新并写入缓存

        定时触发与手动触发共用；永远不抛出普通异常，
        失败以 ok=False 的结果返回。
        """
        started_at = self.cache.begin_fetch()
        logger.info(f"Starting data fetch at {started_at.isoformat()}")

        try:
            data = await self.aggregator.run()
        except Exception as e:
            error = str(e) or type(e).__name__
            self.cache.record_failure(started_at, error)
            logger.error(f"Data fetch failed: {error}", exc_info=True)
            return PassResult(
                ok=False,
                started_at=started_at,
                duration_ms=self._elapsed_ms(started_at),
                error=error,
            )

        published = self.cache.record_success(started_at, data)
        logger.info("Data fetch completed successfully")
        return PassResult(
            ok=True,
            published=published,
            started_at=started_at,
            duration_ms=self._elapsed_ms(started_at),
            data=data,
        )

    async def trigger_manual_fetch(self) -> PassResult:
        """手动触发一次刷新（运维工具 / 测试）"""
        logger.info("Manual fetch triggered")
        return await self.run_pass()

    def _spawn_pass(self):
        task = asyncio.create_task(self.run_pass())
        self._passes.add(task)
        task.add_done_callback(self._passes.discard)

    async def _run_bootstrap(self):
        await self._sleep(self.bootstrap_delay)
        logger.info("Running initial data fetch...")
        self._spawn_pass()

    async def _run_timer(self):
        """对齐锚点网格的定时循环"""
        last_fired: Optional[datetime] = None
        while True:
            now = self._clock()
            # 提前醒来时不能重复触发同一个锚点
            reference = max(now, last_fired) if last_fired else now
            target = self.cache.next_anchor(reference)
            wait_seconds = max((target - now).total_seconds(), 0.0)

            logger.info(f"Next scheduled fetch at {target.isoformat()} (in {wait_seconds:.0f}s)")
            await self._sleep(wait_seconds)

            last_fired = target
            self._spawn_pass()

    # =========================================================================
    # 状态
    # =========================================================================

    def _elapsed_ms(self, started_at: datetime) -> float:
        return (self._clock() - started_at).total_seconds() * 1000

    def _describe_schedule(self) -> str:
        minutes = ",".join(str(m) for m in self.cache.anchor_minutes)
        return f"minutes {minutes} of every hour"

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            is_running=self.is_running,
            next_run=self.cache.next_anchor(self._clock()) if self.is_running else None,
            schedule=self._describe_schedule(),
            timezone=self.cache.timezone_name,
            bootstrap_delay=self.bootstrap_delay,
            in_flight=len(self._passes),
        )
