"""
健康检查
"""

from fastapi import APIRouter, Depends

from ...cache import SnapshotCache
from ..dependencies import get_cache

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health(cache: SnapshotCache = Depends(get_cache)):
    """存活即 200；ready 表示已有可用快照"""
    cache_status = cache.status()
    return {
        "status": "ok",
        "ready": cache_status.has_data,
        "fresh": cache_status.is_fresh,
        "cache": cache_status,
    }
