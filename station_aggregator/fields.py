"""
字段名缓存

字段编号 -> 显示名的读穿缓存，默认 TTL 5 分钟。
刷新失败时继续返回旧数据，不影响调用方。
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

from .models import FieldName
from .source import DataSource

logger = logging.getLogger(__name__)


class FieldNameCache:

    def __init__(
        self,
        source: DataSource,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self._source = source
        self._ttl = ttl_seconds
        self._clock = clock
        self._items: Optional[List[FieldName]] = None
        self._loaded_at: Optional[float] = None
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        return self._loaded_at is not None and (self._clock() - self._loaded_at) < self._ttl

    async def get_all(self) -> List[FieldName]:
        """获取全部字段名（过期时刷新）"""
        if self._is_fresh():
            return self._items

        async with self._lock:
            # 等锁期间可能已被其他协程刷新
            if self._is_fresh():
                return self._items
            try:
                items = await self._source.list_field_names()
            except Exception as e:
                logger.warning(f"Field name refresh failed, serving previous data: {e}")
                return self._items or []
            self._items = items
            self._loaded_at = self._clock()
            logger.debug(f"Field names refreshed: {len(items)} entries")
            return items

    async def lookup(self) -> Dict[int, str]:
        return {item.id: item.name for item in await self.get_all()}

    async def resolve(self, key: str) -> str:
        """数字键 -> 显示名，找不到时原样返回"""
        if not key.isdigit():
            return key
        return (await self.lookup()).get(int(key), key)

    def invalidate(self):
        self._loaded_at = None
