"""
站点数据聚合

一轮刷新的流程：
1. 探测数据源连通性，失败则整轮放弃（保留上一份快照）
2. 站点目录与健康汇总只取一次，在内存中按站点 ID 关联
3. 按固定大小分批并发拉取每个站点的三张表，批与批之间串行
4. 单个站点失败只降级该站点，不影响整轮
5. 汇总所有站点出现过的键，生成列结构
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Sequence, TypeVar

from .cache import utcnow
from .fields import FieldNameCache
from .models import (
    Device, DeviceRecord, DeviceTable, KeyValueRow,
    SnapshotData, SnapshotMetadata,
)
from .schema import build_column_schema, latest_timestamp, rows_to_map
from .source import DataSource

logger = logging.getLogger(__name__)

T = TypeVar("T")

TABLES = (DeviceTable.PUBLIC, DeviceTable.STATUS, DeviceTable.MEASUREMENTS)


def batched(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """按固定大小切分"""
    if size < 1:
        raise ValueError("batch size must be >= 1")
    for start in range(0, len(items), size):
        yield items[start:start + size]


def index_by_device(rows: List[Dict[str, Any]]) -> Dict[int, Dict[str, Any]]:
    """汇总数据按 station_id 建索引（重复时保留第一条）"""
    index: Dict[int, Dict[str, Any]] = {}
    for row in rows:
        device_id = row.get("station_id")
        if device_id is not None and device_id not in index:
            index[device_id] = row
    return index


async def gather_or_raise(*aws: Awaitable[Any]) -> List[Any]:
    """
    并发执行，全部结束后若有失败则抛出第一个异常

    与 asyncio.gather 默认行为不同：不会留下仍在运行的兄弟任务。
    """
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results


class PassContext:
    """一轮刷新中所有站点共享的只读数据"""

    def __init__(
        self,
        hourly: Dict[int, Dict[str, Any]],
        multi_day: Dict[int, Dict[str, Any]],
        average: Dict[int, Dict[str, Any]],
        field_names: Dict[int, str],
        since: Optional[datetime]
    ):
        self.hourly = hourly
        self.multi_day = multi_day
        self.average = average
        self.field_names = field_names
        self.since = since


class Aggregator:
    """
    一轮完整刷新的编排器

    run() 产出一份 SnapshotData；连通性失败或目录/汇总读取失败时抛出异常，
    单个站点的失败在内部吸收。
    """

    def __init__(
        self,
        source: DataSource,
        field_names: Optional[FieldNameCache] = None,
        batch_size: int = 5,
        device_timeout: float = 5.0,
        lookback: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Args:
            source: 数据源
            field_names: 字段名缓存（可选）
            batch_size: 每批并发的站点数，即对数据源的最大并发站点数
            device_timeout: 单个站点三张表的总超时（秒）
            lookback: 历史快照的回看窗口
            clock: 时钟（测试时注入）
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.source = source
        self.field_names = field_names
        self.batch_size = batch_size
        self.device_timeout = device_timeout
        self.lookback = lookback
        self._clock = clock

    async def run(self, as_of: Optional[datetime] = None) -> SnapshotData:
        """
        执行一轮聚合

        Args:
            as_of: 为 None 时取最新数据；否则重建该时刻的历史快照，
                每张表只读 [as_of - lookback, as_of] 窗口内的数据
        """
        logger.info(
            f"Starting aggregation pass (batch_size={self.batch_size}"
            + (f", as_of={as_of.isoformat()})" if as_of else ")")
        )

        # 1. 连通性探测，失败直接抛出
        await self.source.ping()

        # 2. 目录和汇总数据每轮只取一次
        devices, hourly, multi_day, average = await gather_or_raise(
            self.source.list_devices(),
            self.source.get_hourly_health(),
            self.source.get_multi_day_health(),
            self.source.get_average_health(),
        )
        logger.info(
            f"Fetched {len(devices)} stations, "
            f"{len(hourly)} hourly / {len(multi_day)} multi-day / {len(average)} average health rows"
        )

        context = PassContext(
            hourly=index_by_device(hourly),
            multi_day=index_by_device(multi_day),
            average=index_by_device(average),
            field_names=await self.field_names.lookup() if self.field_names else {},
            since=as_of - self.lookback if as_of else None,
        )

        # 3. 分批拉取：批内并发，批间串行
        records: List[DeviceRecord] = []
        for batch in batched(devices, self.batch_size):
            results = await asyncio.gather(
                *(self._collect_device(device, context) for device in batch)
            )
            records.extend(results)

        # 4. 列结构
        column_schema = build_column_schema(records)
        degraded = sum(1 for r in records if r.degraded)

        logger.info(
            f"Aggregation pass finished: {len(records)} stations ({degraded} degraded), "
            f"keys public={len(column_schema.public_keys)} "
            f"status={len(column_schema.status_keys)} "
            f"measurements={len(column_schema.measurement_keys)}"
        )

        return SnapshotData(
            devices=tuple(records),
            column_schema=column_schema,
            metadata=SnapshotMetadata(
                total_devices=len(records),
                degraded_devices=degraded,
                generated_at=self._clock(),
                as_of=as_of,
            ),
        )

    async def _fetch_tables(self, device_id: int, since: Optional[datetime]) -> List[List[KeyValueRow]]:
        return await gather_or_raise(
            *(self.source.get_table_rows(device_id, table, since) for table in TABLES)
        )

    async def _collect_device(self, device: Device, context: PassContext) -> DeviceRecord:
        """拉取单个站点；任何失败都降级为空记录"""
        try:
            public_rows, status_rows, measurement_rows = await asyncio.wait_for(
                self._fetch_tables(device.id, context.since),
                timeout=self.device_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Station {device.id} timed out after {self.device_timeout}s")
            return self._degraded_record(device)
        except Exception as e:
            logger.warning(f"Error fetching data for station {device.id}: {e}")
            return self._degraded_record(device)

        try:
            return self._build_record(device, context, public_rows, status_rows, measurement_rows)
        except Exception as e:
            logger.warning(f"Malformed data for station {device.id}: {e}")
            return self._degraded_record(device)

    def _build_record(
        self,
        device: Device,
        context: PassContext,
        public_rows: List[KeyValueRow],
        status_rows: List[KeyValueRow],
        measurement_rows: List[KeyValueRow]
    ) -> DeviceRecord:
        hourly = context.hourly.get(device.id, {})
        multi_day = context.multi_day.get(device.id, {})
        average = context.average.get(device.id, {})

        return DeviceRecord(
            **_device_attributes(device),
            avg_fetch_health_24h=average.get("avg_fetch_health_24h") or 0,
            avg_fetch_health_7d=average.get("avg_fetch_health_7d") or 0,
            avg_data_health_24h=average.get("avg_data_health_24h") or 0,
            avg_data_health_7d=average.get("avg_data_health_7d") or 0,
            hourly_status=hourly.get("hourly_avg_array") or [],
            hourly_timestamps=hourly.get("hour_bucket_local") or [],
            hourly_online_7d=multi_day.get("hourly_online_array") or [],
            hourly_health_7d=multi_day.get("hourly_health_array") or [],
            public_data=rows_to_map(public_rows, context.field_names),
            status_data=rows_to_map(status_rows, context.field_names),
            measurements_data=rows_to_map(measurement_rows, context.field_names),
            public_timestamp=latest_timestamp(public_rows),
            status_timestamp=latest_timestamp(status_rows),
            measurements_timestamp=latest_timestamp(measurement_rows),
            total_measurements=len(measurement_rows),
            last_updated=self._clock(),
        )

    def _degraded_record(self, device: Device) -> DeviceRecord:
        return DeviceRecord(
            **_device_attributes(device),
            last_updated=self._clock(),
            degraded=True,
        )


def _device_attributes(device: Device) -> Dict[str, Any]:
    return device.model_dump(include={
        "id", "label", "label_id", "label_name", "label_type",
        "latitude", "longitude", "altitude", "ip", "sms_number",
    })
