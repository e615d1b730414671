"""
数据源客户端

通过 httpx 访问 PostgREST 风格的 REST/RPC 接口（/rest/v1/...），
本模块只读，不向数据源写任何东西。
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from .config import DataSourceConfig
from .errors import DataSourceError, SourceUnavailableError
from .models import Device, DeviceTable, FieldName, KeyValueRow

logger = logging.getLogger(__name__)


class DataSource:
    """
    数据源客户端

    所有方法失败时抛出 DataSourceError；ping() 失败抛出 SourceUnavailableError。
    """

    def __init__(
        self,
        config: DataSourceConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Args:
            config: 数据源配置
            transport: 自定义 httpx 传输层（测试时注入 MockTransport）
        """
        headers = {"cache-control": "no-cache"}
        if config.api_key:
            headers["apikey"] = config.api_key
            headers["Authorization"] = f"Bearer {config.api_key}"

        self._client = httpx.AsyncClient(
            base_url=config.url.rstrip("/") + "/rest/v1/",
            headers=headers,
            timeout=config.timeout,
            transport=transport,
        )

    async def aclose(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise DataSourceError(
                f"{method} {path} returned {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise DataSourceError(f"{method} {path} failed: {e!r}") from e
        except ValueError as e:
            raise DataSourceError(f"{method} {path} returned invalid JSON") from e
        return data if data is not None else []

    async def _select(self, table: str, **params) -> List[Dict[str, Any]]:
        params.setdefault("select", "*")
        return await self._request("GET", table, params=params)

    async def _rpc(self, name: str, payload: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return await self._request("POST", f"rpc/{name}", json=payload or {})

    # =========================================================================
    # 站点目录
    # =========================================================================

    async def ping(self):
        """连通性探测：读 stations 表的一行"""
        try:
            await self._select("stations", select="id", limit="1")
        except DataSourceError as e:
            raise SourceUnavailableError(f"Data source connection test failed: {e}") from e

    async def list_devices(self) -> List[Device]:
        rows = await self._select("stations")
        return [Device(**row) for row in rows]

    async def get_device(self, device_id: int) -> Optional[Device]:
        rows = await self._select("stations", id=f"eq.{device_id}")
        return Device(**rows[0]) if rows else None

    # =========================================================================
    # 健康汇总（每轮只取一次）
    # =========================================================================

    async def get_hourly_health(self) -> List[Dict[str, Any]]:
        """近 24 小时每小时健康度"""
        return await self._rpc("get_station_hourly_health")

    async def get_multi_day_health(self) -> List[Dict[str, Any]]:
        """近 7 天每小时在线/健康数组"""
        return await self._rpc("get_online_data_7d")

    async def get_average_health(self) -> List[Dict[str, Any]]:
        """24h / 7d 平均健康度"""
        return await self._select("station_health_summary")

    # =========================================================================
    # 键值行
    # =========================================================================

    async def get_table_rows(
        self,
        device_id: int,
        table: DeviceTable,
        since: Optional[datetime] = None
    ) -> List[KeyValueRow]:
        """
        读取单个站点某张表的键值行

        Args:
            device_id: 站点 ID
            table: 逻辑表
            since: 时间窗起点；为 None 时读最新数据
        """
        if since is None:
            rows = await self._rpc(table.rpc_name, {"_station_id": device_id})
        else:
            rows = await self._rpc(
                table.window_rpc_name,
                {"_station_id": device_id, "_datetime": since.isoformat()}
            )
        logger.debug(f"Table {table.value} for station {device_id}: {len(rows)} rows")
        return [KeyValueRow(**{**row, "station_id": device_id, "table_name": table.table_id}) for row in rows]

    async def list_field_names(self) -> List[FieldName]:
        rows = await self._select("field_names")
        return [FieldName(**row) for row in rows]
