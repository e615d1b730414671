"""
快照缓存

保存最近一次成功发布的聚合结果：
- 读取只走内存，从不阻塞、从不抛异常
- 发布是一次引用替换，读者不会看到半成品
- 过期只是标记（stale-while-revalidate），数据照常返回
- 刷新失败只更新元数据，不影响已有快照
"""

import logging
import time
from collections import deque
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Deque, Optional, Sequence

from zoneinfo import ZoneInfo

from .models import CacheInfo, CacheMetadata, CacheStatus, Snapshot, SnapshotData

logger = logging.getLogger(__name__)

DEFAULT_ANCHOR_MINUTES = (9, 19, 29, 39, 49, 59)

# 滚动平均取最近 N 次耗时
ROLLING_WINDOW = 10

_PROCESS_START = time.monotonic()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _zone(tz: str) -> tzinfo:
    return timezone.utc if tz.upper() == "UTC" else ZoneInfo(tz)


def next_anchor(
    now: datetime,
    minutes: Sequence[int] = DEFAULT_ANCHOR_MINUTES,
    tz: str = "UTC"
) -> datetime:
    """
    计算下一个锚点时刻

    锚点是每小时固定的分钟（默认 9, 19, ..., 59）。按分钟粒度比较：
    取本小时内第一个大于当前分钟的锚点，没有则取下一小时的第一个锚点。

    Examples:
        12:07        -> 12:09
        12:09:00.001 -> 12:19
        23:59:30     -> 次日 00:09

    Args:
        now: 当前时间（naive 时间按 UTC 处理）
        minutes: 锚点分钟
        tz: 锚点所在时区

    Returns:
        UTC 时区的锚点时间
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(_zone(tz))
    base = local.replace(second=0, microsecond=0)
    grid = sorted(minutes)

    for minute in grid:
        if minute > local.minute:
            return base.replace(minute=minute).astimezone(timezone.utc)

    return (base + timedelta(hours=1)).replace(minute=grid[0]).astimezone(timezone.utc)


class SnapshotCache:
    """
    快照缓存

    单事件循环内使用；所有方法都是同步的，不会让出控制权，
    因此发布与读取之间不存在交错。
    """

    def __init__(
        self,
        anchor_minutes: Sequence[int] = DEFAULT_ANCHOR_MINUTES,
        timezone_name: str = "UTC",
        monotonic_publish: bool = True,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Args:
            anchor_minutes: 锚点分钟，决定 next_scheduled_at
            timezone_name: 锚点时区
            monotonic_publish: 为 True 时拒绝比当前快照更早开始的刷新结果
            clock: 时钟（测试时注入）
        """
        self.anchor_minutes = tuple(anchor_minutes)
        self.timezone_name = timezone_name
        self.monotonic_publish = monotonic_publish
        self._clock = clock

        self._snapshot: Optional[Snapshot] = None
        self._metadata = CacheMetadata()
        self._fetch_times: Deque[float] = deque(maxlen=ROLLING_WINDOW)

    def next_anchor(self, now: Optional[datetime] = None) -> datetime:
        return next_anchor(now or self._clock(), self.anchor_minutes, self.timezone_name)

    # =========================================================================
    # 发布 / 读取
    # =========================================================================

    def publish(self, data: SnapshotData, started_at: Optional[datetime] = None) -> Snapshot:
        """整体替换当前快照"""
        now = self._clock()
        snapshot = Snapshot(
            data=data,
            fetched_at=now,
            started_at=started_at or now,
            next_scheduled_at=self.next_anchor(now),
            is_stale=False,
            data_size=len(data.model_dump_json().encode("utf-8")),
        )
        self._snapshot = snapshot
        logger.info(
            f"Snapshot cached at {now.isoformat()}, "
            f"next update at {snapshot.next_scheduled_at.isoformat()}"
        )
        return snapshot

    def read(self) -> Optional[Snapshot]:
        """
        读取当前快照

        超过 next_scheduled_at 时把快照标记为过期，但依旧返回。
        冷启动（从未发布）时返回 None。
        """
        snapshot = self._snapshot
        if snapshot is None:
            logger.debug("No snapshot in cache")
            return None

        if not snapshot.is_stale and self._clock() > snapshot.next_scheduled_at:
            snapshot.is_stale = True
            logger.info("Snapshot is stale but will be served")

        self._metadata.cache_hits += 1
        return snapshot

    def has_data(self) -> bool:
        return self._snapshot is not None

    def is_fresh(self) -> bool:
        snapshot = self._snapshot
        if snapshot is None:
            return False
        return not snapshot.is_stale and self._clock() <= snapshot.next_scheduled_at

    def clear(self):
        """清空缓存（调试 / 测试用）"""
        self._snapshot = None
        logger.info("Cache cleared")

    # =========================================================================
    # 刷新记录
    # =========================================================================

    def begin_fetch(self) -> datetime:
        return self._clock()

    def _record_duration(self, started_at: datetime) -> float:
        duration_ms = (self._clock() - started_at).total_seconds() * 1000
        self._metadata.total_fetches += 1
        self._metadata.last_fetch_duration_ms = duration_ms
        return duration_ms

    def record_success(self, started_at: datetime, data: SnapshotData) -> bool:
        """
        记录一次成功刷新并发布

        Returns:
            是否真正发布（被更晚开始的刷新抢先发布时返回 False）
        """
        duration_ms = self._record_duration(started_at)
        self._metadata.last_error = None
        self._fetch_times.append(duration_ms)
        self._metadata.average_fetch_time_ms = sum(self._fetch_times) / len(self._fetch_times)

        current = self._snapshot
        if self.monotonic_publish and current is not None and started_at < current.started_at:
            self._metadata.rejected_publishes += 1
            logger.warning(
                f"Discarding result of pass started at {started_at.isoformat()}: "
                f"a pass started at {current.started_at.isoformat()} already published"
            )
            return False

        self.publish(data, started_at)
        logger.info(
            f"Fetch completed in {duration_ms:.0f}ms "
            f"(avg: {self._metadata.average_fetch_time_ms:.0f}ms)"
        )
        return True

    def record_failure(self, started_at: datetime, error: str):
        """记录一次失败刷新，已有快照保持不变"""
        duration_ms = self._record_duration(started_at)
        self._metadata.last_error = error
        logger.error(f"Fetch failed after {duration_ms:.0f}ms: {error}")

    # =========================================================================
    # 诊断
    # =========================================================================

    @property
    def metadata(self) -> CacheMetadata:
        return self._metadata.model_copy()

    def status(self) -> CacheStatus:
        snapshot = self._snapshot
        cache_info = None
        if snapshot is not None:
            cache_info = CacheInfo(
                last_updated=snapshot.fetched_at,
                next_update=snapshot.next_scheduled_at,
                is_stale=snapshot.is_stale or self._clock() > snapshot.next_scheduled_at,
                data_size=snapshot.data_size,
            )
        return CacheStatus(
            has_data=snapshot is not None,
            is_fresh=self.is_fresh(),
            cache_info=cache_info,
            metadata=self.metadata,
            uptime_seconds=time.monotonic() - _PROCESS_START,
        )
