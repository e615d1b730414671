"""
配置加载模块

从 config.yaml 加载配置，支持 Pydantic 验证和环境变量覆盖。
"""

import os
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DataSourceConfig(BaseModel):
    """数据源（REST/RPC 存储）配置"""
    url: str = "http://localhost:54321"
    api_key: str = ""
    timeout: float = 10.0


class APIConfig(BaseModel):
    """API 服务配置"""
    host: str = "0.0.0.0"
    port: int = 4000
    cors_origins: List[str] = ["http://localhost:3000"]


class SchedulerConfig(BaseModel):
    """刷新调度配置"""
    # 同一集群只应有一个实例运行调度器
    enabled: bool = True
    anchor_minutes: List[int] = [9, 19, 29, 39, 49, 59]
    timezone: str = "UTC"
    bootstrap_delay: float = 2.0

    @field_validator("anchor_minutes")
    @classmethod
    def _check_minutes(cls, value: List[int]) -> List[int]:
        if not value:
            raise ValueError("anchor_minutes must not be empty")
        if any(m < 0 or m > 59 for m in value):
            raise ValueError("anchor_minutes must be within 0..59")
        return sorted(set(value))


class AggregatorConfig(BaseModel):
    """聚合配置"""
    batch_size: int = Field(default=5, ge=1)
    device_timeout: float = 5.0
    lookback_hours: float = 1.0


class CacheConfig(BaseModel):
    """快照缓存配置"""
    monotonic_publish: bool = True


class FieldNamesConfig(BaseModel):
    """字段名缓存配置"""
    ttl_seconds: float = 300.0


class LiveConfig(BaseModel):
    """实时轮询配置"""
    interval: float = 5.0
    warm_ttl: float = 10.0
    default_ttl: float = 10.0
    min_ttl: float = 1.0
    max_ttl: float = 300.0
    timeout: float = 5.0


class LoggingConfig(BaseModel):
    """日志配置"""
    level: str = "INFO"
    file: Optional[str] = None


class AppConfig(BaseModel):
    """应用配置（完整配置）"""
    data_source: DataSourceConfig = Field(default_factory=DataSourceConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    field_names: FieldNamesConfig = Field(default_factory=FieldNamesConfig)
    live: LiveConfig = Field(default_factory=LiveConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


class EnvOverrides(BaseSettings):
    """部署环境变量覆盖（前缀 STATION_）"""
    model_config = SettingsConfigDict(env_prefix="STATION_")

    data_source_url: Optional[str] = None
    data_source_key: Optional[str] = None
    enable_scheduler: Optional[bool] = None
    api_port: Optional[int] = None
    log_level: Optional[str] = None


def apply_env_overrides(config: AppConfig, overrides: Optional[EnvOverrides] = None) -> AppConfig:
    """把环境变量覆盖到已加载的配置上"""
    if overrides is None:
        overrides = EnvOverrides()

    if overrides.data_source_url is not None:
        config.data_source.url = overrides.data_source_url
    if overrides.data_source_key is not None:
        config.data_source.api_key = overrides.data_source_key
    if overrides.enable_scheduler is not None:
        config.scheduler.enabled = overrides.enable_scheduler
    if overrides.api_port is not None:
        config.api.port = overrides.api_port
    if overrides.log_level is not None:
        config.logging.level = overrides.log_level
    return config


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """
    加载配置文件

    优先级：
    1. 参数指定的路径
    2. 环境变量 STATION_CONFIG_PATH
    3. 默认路径 config.yaml

    文件中的值再被 STATION_* 环境变量覆盖。
    """
    if config_path is None:
        config_path = os.environ.get("STATION_CONFIG_PATH", "config.yaml")

    config = AppConfig()
    config_file = Path(config_path)

    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
        if raw_config:
            # Log file paths are relative to the config file, not the CWD.
            log_file = (raw_config.get("logging") or {}).get("file")
            if log_file and not Path(log_file).is_absolute():
                raw_config["logging"]["file"] = str((config_file.resolve().parent / log_file).resolve())
            config = AppConfig(**raw_config)

    return apply_env_overrides(config)


# 全局配置实例（延迟加载，仅供命令行入口使用）
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """获取全局配置实例（单例模式）"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config():
    """重置配置（主要用于测试）"""
    global _config
    _config = None
