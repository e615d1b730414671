"""
数据模型定义

包括：
- 数据源返回的站点、键值行
- 每轮刷新产出的站点记录、列结构、快照
- 缓存 / 调度器 / 实时轮询的状态视图
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# 数据源模型
# =============================================================================

class DeviceTable(str, Enum):
    """站点的逻辑数据表"""
    PUBLIC = "public"
    STATUS = "status"
    MEASUREMENTS = "measurements"

    @property
    def table_id(self) -> int:
        return _TABLE_IDS[self]

    @property
    def rpc_name(self) -> str:
        """最新数据 RPC"""
        return f"get_collector_data_kv_{self.value}"

    @property
    def window_rpc_name(self) -> str:
        """带时间窗的历史数据 RPC"""
        return f"get_collector_data_kv_{self.value}_datetime"


_TABLE_IDS = {
    DeviceTable.PUBLIC: 1,
    DeviceTable.STATUS: 2,
    DeviceTable.MEASUREMENTS: 3,
}


class Device(BaseModel):
    """站点（来自 stations 目录表，只读）"""
    model_config = ConfigDict(extra="ignore")

    id: int
    label: Optional[str] = None
    label_id: Optional[Union[int, str]] = None
    label_name: Optional[str] = None
    label_type: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    ip: Optional[str] = None
    sms_number: Optional[Union[int, str]] = None

    # 网络地址
    ip_datalogger_http: Optional[str] = None
    ip_modem_http: Optional[str] = None
    ip_modem_https: Optional[str] = None
    datalogger_http_port: Optional[int] = None


class KeyValueRow(BaseModel):
    """键值行：数据源读取的最小单元，一个字段一行"""
    model_config = ConfigDict(populate_by_name=True)

    device_id: int = Field(alias="station_id")
    table_id: int = Field(default=0, alias="table_name")
    key: str
    value: Optional[str] = None
    device_timestamp: Optional[str] = Field(default=None, alias="station_timestamp")

    @field_validator("key", mode="before")
    @classmethod
    def _key_to_str(cls, value: Any) -> str:
        return str(value)

    @field_validator("value", mode="before")
    @classmethod
    def _value_to_str(cls, value: Any) -> Optional[str]:
        # 数据源可能返回数值，统一转成字符串
        if value is None or isinstance(value, str):
            return value
        return str(value)


class FieldName(BaseModel):
    """字段编号 -> 显示名"""
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str


# =============================================================================
# 聚合结果模型（每轮新建，构造后不再修改）
# =============================================================================

class DeviceRecord(BaseModel):
    """单个站点的聚合记录"""
    model_config = ConfigDict(frozen=True)

    # 站点基本信息
    id: int
    label: Optional[str] = None
    label_id: Optional[Union[int, str]] = None
    label_name: Optional[str] = None
    label_type: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    ip: Optional[str] = None
    sms_number: Optional[Union[int, str]] = None

    # 健康指标（瞬时值）
    avg_fetch_health_24h: float = 0
    avg_fetch_health_7d: float = 0
    avg_data_health_24h: float = 0
    avg_data_health_7d: float = 0

    # 健康指标（小时数组）
    hourly_status: List[Optional[float]] = Field(default_factory=list)
    hourly_timestamps: List[str] = Field(default_factory=list)
    hourly_online_7d: List[Optional[bool]] = Field(default_factory=list)
    hourly_health_7d: List[Optional[float]] = Field(default_factory=list)

    # 三张表的键值映射
    public_data: Dict[str, str] = Field(default_factory=dict)
    status_data: Dict[str, str] = Field(default_factory=dict)
    measurements_data: Dict[str, str] = Field(default_factory=dict)

    public_timestamp: Optional[str] = None
    status_timestamp: Optional[str] = None
    measurements_timestamp: Optional[str] = None

    total_measurements: int = 0
    last_updated: datetime
    degraded: bool = False


class ColumnSchema(BaseModel):
    """列结构：本轮所有站点出现过的键的并集（已排序）"""
    model_config = ConfigDict(frozen=True)

    public_keys: Tuple[str, ...] = ()
    status_keys: Tuple[str, ...] = ()
    measurement_keys: Tuple[str, ...] = ()


class SnapshotMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_devices: int
    degraded_devices: int = 0
    generated_at: datetime
    as_of: Optional[datetime] = None


class SnapshotData(BaseModel):
    """一轮聚合的完整产出"""
    model_config = ConfigDict(frozen=True)

    devices: Tuple[DeviceRecord, ...] = ()
    column_schema: ColumnSchema = Field(default_factory=ColumnSchema)
    metadata: SnapshotMetadata


class Snapshot(BaseModel):
    """
    缓存中的快照

    整体替换发布；唯一会变化的字段是 is_stale（读取时惰性标记）。
    """
    data: SnapshotData
    fetched_at: datetime
    started_at: datetime
    next_scheduled_at: datetime
    is_stale: bool = False
    data_size: int = 0  # JSON 字节数，发布时计算一次


# =============================================================================
# 状态视图
# =============================================================================

class CacheMetadata(BaseModel):
    total_fetches: int = 0
    last_fetch_duration_ms: float = 0
    last_error: Optional[str] = None
    cache_hits: int = 0
    average_fetch_time_ms: float = 0
    rejected_publishes: int = 0


class CacheInfo(BaseModel):
    last_updated: datetime
    next_update: datetime
    is_stale: bool
    data_size: int


class CacheStatus(BaseModel):
    """缓存诊断信息（供健康检查使用）"""
    has_data: bool
    is_fresh: bool
    cache_info: Optional[CacheInfo] = None
    metadata: CacheMetadata
    uptime_seconds: float


class PassResult(BaseModel):
    """一次刷新任务的结果"""
    ok: bool
    published: bool = False
    started_at: datetime
    duration_ms: float
    error: Optional[str] = None
    data: Optional[SnapshotData] = None


class SchedulerStatus(BaseModel):
    is_running: bool
    next_run: Optional[datetime] = None
    schedule: str
    timezone: str
    bootstrap_delay: float
    in_flight: int = 0


class LiveSchedulerStatus(BaseModel):
    is_running: bool
    interval_seconds: float
    enabled_device_ids: List[int] = Field(default_factory=list)
    cached_entries: int = 0


class LiveTarget(BaseModel):
    """实时轮询的目标地址"""
    ip_datalogger_http: Optional[str] = None
    ip: Optional[str] = None
    ip_modem_http: Optional[str] = None
    datalogger_http_port: Optional[Union[int, str]] = None

    @classmethod
    def from_device(cls, device: Device) -> "LiveTarget":
        ip = None
        if device.ip_modem_https:
            ip = device.ip_modem_https.split(":")[0]
        return cls(
            ip_datalogger_http=device.ip_datalogger_http,
            ip=ip or device.ip,
            ip_modem_http=device.ip_modem_http,
            datalogger_http_port=device.datalogger_http_port,
        )
