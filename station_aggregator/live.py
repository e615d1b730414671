"""
实时轮询

按需读取单个站点数据记录器的最新一行（public 表），结果按站点做短 TTL 缓存。
另有一个固定间隔的预热循环，只轮询运维显式开启的站点。
"""

import asyncio
import json
import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import httpx

from .config import LiveConfig
from .errors import LivePollError
from .models import DeviceTable, KeyValueRow, LiveSchedulerStatus, LiveTarget
from .source import DataSource

logger = logging.getLogger(__name__)


def make_cache_key(device_id: Optional[int], target: LiveTarget) -> str:
    """有站点 ID 时按 ID 缓存，否则按 host:port"""
    if device_id is not None:
        return f"sid:{device_id}"
    host = target.ip_datalogger_http or target.ip or target.ip_modem_http or ""
    port = target.datalogger_http_port if target.datalogger_http_port is not None else ""
    return f"host:{host}:{port}"


def resolve_host(target: LiveTarget) -> Optional[str]:
    """ip_datalogger_http 原样使用（可能已带端口），否则拼接 host:port"""
    if target.ip_datalogger_http:
        return target.ip_datalogger_http
    host = target.ip or target.ip_modem_http
    if host and target.datalogger_http_port is not None:
        return f"{host}:{target.datalogger_http_port}"
    return host


def sanitize_string(value: Any) -> str:
    if isinstance(value, str):
        return value.replace("\x00", "")
    return "" if value is None else str(value)


def normalize_value(value: Any) -> Optional[str]:
    """记录器返回值 -> 字符串；NAN、非有限数值视为空"""
    if value is None:
        return None
    if isinstance(value, bool):
        return json.dumps(value)
    if isinstance(value, (int, float)):
        if isinstance(value, float):
            if not math.isfinite(value):
                return None
            if value.is_integer():
                return str(int(value))
        return str(value)
    if isinstance(value, str):
        return None if value.upper() == "NAN" else sanitize_string(value)
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return None


def parse_timestamp(raw: Any) -> Optional[str]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return str(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def parse_most_recent(payload: Dict[str, Any], device_id: int, table: DeviceTable) -> List[KeyValueRow]:
    """
    解析记录器 dataquery 响应

    响应格式：{"head": {"fields": [{"name": ...}, ...]}, "data": [{"time": ..., "vals": [...]}]}
    """
    fields = (payload.get("head") or {}).get("fields") or []
    data = payload.get("data") or []
    row0 = data[0] if data else {}
    vals = row0.get("vals") if isinstance(row0.get("vals"), list) else []
    ts = parse_timestamp(row0.get("time"))

    rows = []
    for idx, field in enumerate(fields):
        name = (field or {}).get("name")
        value = normalize_value(vals[idx]) if idx < len(vals) else None
        rows.append(KeyValueRow(
            device_id=device_id,
            table_id=table.table_id,
            key=sanitize_string(name if name is not None else f"f{idx}"),
            value="" if value is None else value,
            device_timestamp=ts,
        ))
    return rows


class LivePoller:
    """
    实时轮询器

    get() 命中缓存直接返回；未命中时请求一次记录器，成功才写入缓存，
    失败抛出 LivePollError，下次调用会重新请求。
    """

    def __init__(
        self,
        config: LiveConfig,
        source: Optional[DataSource] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            config: 实时轮询配置
            source: 数据源，预热循环用它按 ID 查询站点地址
            transport: 自定义 httpx 传输层（测试时注入 MockTransport）
            clock: 单调时钟（测试时注入）
        """
        self.config = config
        self.source = source
        self._clock = clock
        self._client = httpx.AsyncClient(timeout=config.timeout, transport=transport)

        # {cache_key: (expires_at, rows)}
        self._cache: Dict[str, Tuple[float, List[KeyValueRow]]] = {}
        self._enabled: Set[int] = set()
        self._task: Optional[asyncio.Task] = None

    async def aclose(self):
        self.stop()
        await self._client.aclose()

    # =========================================================================
    # 按需读取
    # =========================================================================

    def clamp_ttl(self, ttl_seconds: Optional[float]) -> float:
        ttl = self.config.default_ttl if ttl_seconds is None else ttl_seconds
        return max(self.config.min_ttl, min(self.config.max_ttl, ttl))

    async def read_table(
        self,
        target: LiveTarget,
        device_id: int = 0,
        table: DeviceTable = DeviceTable.PUBLIC
    ) -> List[KeyValueRow]:
        """请求记录器某张表的最新一行"""
        host = resolve_host(target)
        if not host:
            raise LivePollError(table.value, "No station host/port available")

        url = f"http://{host}"
        params = {
            "command": "dataquery",
            "uri": f"dl:{table.value}",
            "format": "json",
            "mode": "most-recent",
            "p1": "1",
        }
        try:
            response = await self._client.get(url, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise LivePollError(table.value, str(e) or type(e).__name__) from e
        except ValueError as e:
            raise LivePollError(table.value, "invalid JSON response") from e

        if not isinstance(payload, dict):
            raise LivePollError(table.value, "unexpected response shape")
        return parse_most_recent(payload, device_id, table)

    async def get(
        self,
        target: LiveTarget,
        device_id: Optional[int] = None,
        ttl_seconds: Optional[float] = None
    ) -> List[KeyValueRow]:
        """
        获取站点最新数据（带缓存）

        Args:
            target: 站点地址
            device_id: 站点 ID（可选，决定缓存键）
            ttl_seconds: 缓存有效期，限制在 [min_ttl, max_ttl]

        Raises:
            LivePollError: 记录器不可达或响应异常
        """
        key = make_cache_key(device_id, target)
        now = self._clock()
        cached = self._cache.get(key)
        if cached and cached[0] > now:
            return cached[1]

        rows = await self.read_table(target, device_id or 0, DeviceTable.PUBLIC)
        now = self._clock()
        self._evict_expired(now)
        self._cache[key] = (now + self.clamp_ttl(ttl_seconds), rows)
        return rows

    def _evict_expired(self, now: float):
        expired = [key for key, (expires_at, _) in self._cache.items() if expires_at <= now]
        for key in expired:
            del self._cache[key]

    def invalidate(self, key: Optional[str] = None):
        if key is None:
            self._cache.clear()
        else:
            self._cache.pop(key, None)

    # =========================================================================
    # 预热循环
    # =========================================================================

    def set_enabled(self, device_id: int, enabled: bool):
        if enabled:
            self._enabled.add(device_id)
        else:
            self._enabled.discard(device_id)
        logger.info(f"Live collection for station {device_id}: {'enabled' if enabled else 'disabled'}")

    def enabled_ids(self) -> List[int]:
        return sorted(self._enabled)

    def start(self):
        if self._task is not None:
            return
        logger.info(f"Starting live data scheduler (interval={self.config.interval}s)")
        self._task = asyncio.create_task(self._run_loop(), name="live-warmer")

    def stop(self):
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info("Stopped live data scheduler")

    async def tick(self):
        """预热所有已开启的站点；单个站点失败只记录日志"""
        active = self.enabled_ids()
        if not active:
            return
        if self.source is None:
            logger.warning("Live warming skipped: no data source configured")
            return

        logger.debug(f"Live scheduler tick: {len(active)} stations {active}")
        for device_id in active:
            try:
                device = await self.source.get_device(device_id)
                if device is None:
                    logger.warning(f"Station {device_id} not found for live collection")
                    continue
                await self.get(LiveTarget.from_device(device), device_id, self.config.warm_ttl)
            except Exception as e:
                logger.warning(f"Failed live collection for station {device_id}: {e}")

    async def _run_loop(self):
        while True:
            await self.tick()
            await asyncio.sleep(self.config.interval)

    def status(self) -> LiveSchedulerStatus:
        return LiveSchedulerStatus(
            is_running=self._task is not None,
            interval_seconds=self.config.interval,
            enabled_device_ids=self.enabled_ids(),
            cached_entries=len(self._cache),
        )
