"""
测试公共夹具

- FakeClock: 可手动推进的时钟
- FakeDataSource: 内存数据源替身，统计同时在拉取的站点数
- FakeAggregator: 可控的聚合器替身
"""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# 添加项目路径到 sys.path
sys.path.insert(0, str(Path(__file__).parent.parent))

from station_aggregator.errors import DataSourceError, SourceUnavailableError
from station_aggregator.models import (
    ColumnSchema, Device, DeviceTable, FieldName, KeyValueRow,
    SnapshotData, SnapshotMetadata,
)


class FakeClock:
    """可推进的 UTC 时钟"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)

    def set(self, now: datetime):
        self.now = now


class FakeDataSource:
    """
    内存数据源

    tables: {device_id: {DeviceTable: {key: value}}}
    """

    def __init__(
        self,
        devices: Optional[List[Device]] = None,
        tables: Optional[Dict[int, Dict[DeviceTable, Dict[str, str]]]] = None,
        delay: float = 0.0
    ):
        self.devices = devices or []
        self.tables = tables or {}
        self.delay = delay
        self.hourly: List[dict] = []
        self.multi_day: List[dict] = []
        self.average: List[dict] = []
        self.field_names: List[FieldName] = []

        self.failing = set()
        self.slow: Dict[int, float] = {}
        self.ping_error: Optional[Exception] = None
        self.field_names_error: Optional[Exception] = None

        self.table_calls = []
        self.catalog_calls = 0
        self.field_name_calls = 0
        self._active: Dict[int, int] = {}
        self.peak_devices_in_flight = 0

    async def ping(self):
        if self.ping_error is not None:
            raise self.ping_error

    async def list_devices(self) -> List[Device]:
        self.catalog_calls += 1
        return list(self.devices)

    async def get_device(self, device_id: int) -> Optional[Device]:
        for device in self.devices:
            if device.id == device_id:
                return device
        return None

    async def get_hourly_health(self):
        return list(self.hourly)

    async def get_multi_day_health(self):
        return list(self.multi_day)

    async def get_average_health(self):
        return list(self.average)

    async def list_field_names(self) -> List[FieldName]:
        self.field_name_calls += 1
        if self.field_names_error is not None:
            raise self.field_names_error
        return list(self.field_names)

    async def get_table_rows(self, device_id: int, table: DeviceTable, since=None) -> List[KeyValueRow]:
        self.table_calls.append((device_id, table, since))
        self._active[device_id] = self._active.get(device_id, 0) + 1
        self.peak_devices_in_flight = max(self.peak_devices_in_flight, len(self._active))
        try:
            await asyncio.sleep(self.slow.get(device_id, self.delay))
            if device_id in self.failing:
                raise DataSourceError(f"rpc failed for station {device_id}")
            values = self.tables.get(device_id, {}).get(table, {})
            return [
                KeyValueRow(
                    device_id=device_id,
                    table_id=table.table_id,
                    key=key,
                    value=value,
                    device_timestamp="2026-01-20T12:00:00+00:00",
                )
                for key, value in values.items()
            ]
        finally:
            self._active[device_id] -= 1
            if self._active[device_id] == 0:
                del self._active[device_id]


def make_devices(count: int) -> List[Device]:
    return [Device(id=i, label=f"ST-{i:03d}") for i in range(1, count + 1)]


def make_snapshot_data(generated_at: datetime, total: int = 0) -> SnapshotData:
    return SnapshotData(
        devices=(),
        column_schema=ColumnSchema(),
        metadata=SnapshotMetadata(total_devices=total, generated_at=generated_at),
    )


class FakeAggregator:
    """run() 可被 gate 阻塞，或抛出指定异常"""

    def __init__(self, clock: FakeClock, error: Optional[Exception] = None):
        self.clock = clock
        self.error = error
        self.gate: Optional[asyncio.Event] = None
        self.calls = 0

    async def run(self, as_of=None) -> SnapshotData:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return make_snapshot_data(self.clock(), total=self.calls)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 20, 12, 7, 0, tzinfo=timezone.utc))


@pytest.fixture
def unavailable_error():
    return SourceUnavailableError("Data source connection test failed")
