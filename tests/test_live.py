"""
测试实时轮询

使用 httpx.MockTransport 模拟数据记录器。
"""

import httpx
import pytest

from station_aggregator.config import LiveConfig
from station_aggregator.errors import LivePollError
from station_aggregator.live import (
    LivePoller, make_cache_key, normalize_value, parse_most_recent, resolve_host,
)
from station_aggregator.models import Device, DeviceTable, LiveTarget

from conftest import FakeDataSource

PAYLOAD = {
    "head": {"fields": [{"name": "BattV"}, {"name": "PTemp"}, {"name": "Flag"}, {"name": "Bad\x00"}]},
    "data": [{"time": "2026-01-20T12:00:00", "vals": [12.5, 21.0, True, "NAN"]}],
}


class FakeLogger:
    """记录器替身：记录请求，按需返回错误"""

    def __init__(self, status_code: int = 200, payload=None):
        self.status_code = status_code
        self.payload = PAYLOAD if payload is None else payload
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)


class MonotonicClock:
    def __init__(self):
        self.now = 500.0

    def __call__(self) -> float:
        return self.now


def make_poller(handler, clock=None, source=None, **config) -> LivePoller:
    return LivePoller(
        LiveConfig(**config),
        source=source,
        transport=httpx.MockTransport(handler),
        clock=clock or MonotonicClock(),
    )


TARGET = LiveTarget(ip_datalogger_http="10.0.0.5:6785")


class TestHelpers:

    def test_cache_key_prefers_station_id(self):
        assert make_cache_key(7, TARGET) == "sid:7"

    def test_cache_key_by_host(self):
        target = LiveTarget(ip="1.2.3.4", datalogger_http_port=80)
        assert make_cache_key(None, target) == "host:1.2.3.4:80"
        assert make_cache_key(None, LiveTarget(ip_modem_http="5.6.7.8")) == "host:5.6.7.8:"

    def test_resolve_host(self):
        assert resolve_host(TARGET) == "10.0.0.5:6785"
        assert resolve_host(LiveTarget(ip="1.2.3.4", datalogger_http_port=8080)) == "1.2.3.4:8080"
        assert resolve_host(LiveTarget(ip_modem_http="5.6.7.8")) == "5.6.7.8"
        assert resolve_host(LiveTarget()) is None

    def test_normalize_value(self):
        assert normalize_value(21.0) == "21"
        assert normalize_value(12.5) == "12.5"
        assert normalize_value(3) == "3"
        assert normalize_value(True) == "true"
        assert normalize_value("nan") is None
        assert normalize_value(float("inf")) is None
        assert normalize_value("ok\x00") == "ok"
        assert normalize_value([1, 2]) == "[1, 2]"
        assert normalize_value(None) is None

    def test_target_from_device_prefers_https_modem_host(self):
        device = Device(id=1, ip="9.9.9.9", ip_modem_https="5.6.7.8:443", datalogger_http_port=6785)
        target = LiveTarget.from_device(device)
        assert target.ip == "5.6.7.8"
        assert target.datalogger_http_port == 6785
        assert LiveTarget.from_device(Device(id=2, ip="9.9.9.9")).ip == "9.9.9.9"


def test_parse_most_recent():
    rows = parse_most_recent(PAYLOAD, 7, DeviceTable.PUBLIC)

    assert [(r.key, r.value) for r in rows] == [
        ("BattV", "12.5"), ("PTemp", "21"), ("Flag", "true"), ("Bad", ""),
    ]
    assert all(r.device_id == 7 and r.table_id == 1 for r in rows)
    assert rows[0].device_timestamp == "2026-01-20T12:00:00+00:00"


def test_parse_most_recent_handles_missing_values():
    payload = {"head": {"fields": [{"name": "a"}, {}]}, "data": []}
    rows = parse_most_recent(payload, 1, DeviceTable.PUBLIC)
    assert [(r.key, r.value) for r in rows] == [("a", ""), ("f1", "")]
    assert rows[0].device_timestamp is None


class TestLivePoller:
    """按需读取与缓存"""

    @pytest.mark.asyncio
    async def test_queries_datalogger_most_recent(self):
        handler = FakeLogger()
        poller = make_poller(handler)

        rows = await poller.get(TARGET, 7)

        request = handler.requests[0]
        assert request.url.host == "10.0.0.5"
        assert request.url.port == 6785
        assert request.url.params["command"] == "dataquery"
        assert request.url.params["uri"] == "dl:public"
        assert request.url.params["mode"] == "most-recent"
        assert rows[0].key == "BattV"
        await poller.aclose()

    @pytest.mark.asyncio
    async def test_cached_within_ttl(self):
        handler = FakeLogger()
        clock = MonotonicClock()
        poller = make_poller(handler, clock)

        first = await poller.get(TARGET, 7)
        clock.now += 9
        second = await poller.get(TARGET, 7)

        assert second is first
        assert len(handler.requests) == 1
        await poller.aclose()

    @pytest.mark.asyncio
    async def test_expires_after_ttl(self):
        handler = FakeLogger()
        clock = MonotonicClock()
        poller = make_poller(handler, clock)

        await poller.get(TARGET, 7, ttl_seconds=5)
        clock.now += 5
        await poller.get(TARGET, 7, ttl_seconds=5)

        assert len(handler.requests) == 2
        await poller.aclose()

    @pytest.mark.asyncio
    async def test_separate_keys_per_station(self):
        handler = FakeLogger()
        poller = make_poller(handler)

        await poller.get(TARGET, 7)
        await poller.get(TARGET, 8)
        await poller.get(TARGET)

        assert len(handler.requests) == 3
        await poller.aclose()

    def test_ttl_clamped(self):
        poller = make_poller(FakeLogger())
        assert poller.clamp_ttl(None) == 10
        assert poller.clamp_ttl(0.1) == 1
        assert poller.clamp_ttl(10_000) == 300
        assert poller.clamp_ttl(60) == 60

    @pytest.mark.asyncio
    async def test_failure_raises_and_is_not_cached(self):
        handler = FakeLogger(status_code=500)
        poller = make_poller(handler)

        with pytest.raises(LivePollError) as exc_info:
            await poller.get(TARGET, 7)
        assert exc_info.value.table == "public"

        handler.status_code = 200
        rows = await poller.get(TARGET, 7)
        assert rows
        assert len(handler.requests) == 2
        await poller.aclose()

    @pytest.mark.asyncio
    async def test_unreachable_logger(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        poller = make_poller(handler)
        with pytest.raises(LivePollError):
            await poller.get(TARGET, 7)
        await poller.aclose()

    @pytest.mark.asyncio
    async def test_missing_host(self):
        handler = FakeLogger()
        poller = make_poller(handler)
        with pytest.raises(LivePollError) as exc_info:
            await poller.get(LiveTarget(), 7)
        assert exc_info.value.reason == "No station host/port available"
        assert handler.requests == []
        await poller.aclose()

    @pytest.mark.asyncio
    async def test_expired_entries_evicted(self):
        handler = FakeLogger()
        clock = MonotonicClock()
        poller = make_poller(handler, clock)

        for i in range(100):
            await poller.get(LiveTarget(ip=f"10.1.{i // 256}.{i % 256}"), ttl_seconds=1)
            clock.now += 10

        assert poller.status().cached_entries == 1
        await poller.aclose()

    @pytest.mark.asyncio
    async def test_unexpired_entries_kept(self):
        clock = MonotonicClock()
        poller = make_poller(FakeLogger(), clock)

        await poller.get(TARGET, 1, ttl_seconds=60)
        clock.now += 5
        await poller.get(TARGET, 2, ttl_seconds=1)
        clock.now += 5
        await poller.get(TARGET, 3, ttl_seconds=60)

        # sid:2 已过期被清理，sid:1 仍在有效期内
        assert poller.status().cached_entries == 2
        await poller.aclose()

    @pytest.mark.asyncio
    async def test_invalidate(self):
        handler = FakeLogger()
        poller = make_poller(handler)
        await poller.get(TARGET, 7)
        poller.invalidate("sid:7")
        await poller.get(TARGET, 7)
        assert len(handler.requests) == 2
        await poller.aclose()


class TestWarming:
    """预热循环只轮询已开启的站点"""

    @pytest.mark.asyncio
    async def test_tick_polls_enabled_stations_only(self):
        devices = [
            Device(id=1, ip_datalogger_http="10.0.0.1"),
            Device(id=2, ip_datalogger_http="10.0.0.2"),
            Device(id=3, ip_datalogger_http="10.0.0.3"),
        ]
        handler = FakeLogger()
        poller = make_poller(handler, source=FakeDataSource(devices))

        poller.set_enabled(1, True)
        poller.set_enabled(2, True)
        poller.set_enabled(2, False)
        await poller.tick()

        assert [r.url.host for r in handler.requests] == ["10.0.0.1"]
        assert poller.enabled_ids() == [1]
        await poller.aclose()

    def test_disable_forgets_station(self):
        poller = make_poller(FakeLogger())
        for device_id in range(1, 51):
            poller.set_enabled(device_id, True)
            poller.set_enabled(device_id, False)
        poller.set_enabled(60, False)

        assert poller.enabled_ids() == []
        assert poller._enabled == set()

    @pytest.mark.asyncio
    async def test_tick_survives_failures(self):
        devices = [Device(id=1, ip_datalogger_http="10.0.0.1"), Device(id=2)]
        handler = FakeLogger(status_code=503)
        poller = make_poller(handler, source=FakeDataSource(devices))

        for device_id in (1, 2, 99):
            poller.set_enabled(device_id, True)
        await poller.tick()

        assert len(handler.requests) == 1
        await poller.aclose()

    @pytest.mark.asyncio
    async def test_warmed_entry_served_from_cache(self):
        handler = FakeLogger()
        poller = make_poller(handler, source=FakeDataSource([Device(id=1, ip_datalogger_http="10.0.0.1")]))

        poller.set_enabled(1, True)
        await poller.tick()
        await poller.get(LiveTarget(ip_datalogger_http="10.0.0.1"), 1)

        assert len(handler.requests) == 1
        await poller.aclose()

    @pytest.mark.asyncio
    async def test_start_stop_status(self):
        poller = make_poller(FakeLogger(), interval=60)
        assert poller.status().is_running is False

        poller.start()
        poller.start()
        status = poller.status()
        assert status.is_running is True
        assert status.interval_seconds == 60

        poller.stop()
        assert poller.status().is_running is False
        await poller.aclose()
