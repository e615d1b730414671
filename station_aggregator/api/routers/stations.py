"""
站点快照 API

快照只从内存读取，不会触发数据源查询；
历史快照（/at）是唯一按需访问数据源的接口。
"""

import logging
from datetime import datetime, timezone
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse

from ...aggregator import Aggregator
from ...cache import SnapshotCache
from ...errors import DataSourceError, SourceUnavailableError
from ...fields import FieldNameCache
from ...models import FieldName, PassResult, Snapshot, SnapshotData
from ...scheduler import RefreshScheduler
from ..dependencies import get_aggregator, get_cache, get_field_names, get_scheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stations", tags=["stations"])

RETRY_AFTER_SECONDS = 30


@router.get("/advanced-table", response_model=Snapshot)
async def get_advanced_table(response: Response, cache: SnapshotCache = Depends(get_cache)):
    """
    获取最新快照

    冷启动（尚无快照）时返回 503，过期快照照常返回并带 is_stale 标记。
    """
    snapshot = cache.read()
    if snapshot is None:
        logger.warning("Advanced table requested before first successful fetch")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
            content={
                "error": "Data not available yet",
                "message": "Station data is being fetched. Please try again in a few moments.",
                "retry_after": RETRY_AFTER_SECONDS,
                "cache_status": cache.status().model_dump(mode="json"),
            },
        )

    response.headers["Cache-Control"] = "public, max-age=300"
    return snapshot


@router.get("/advanced-table/status")
async def get_advanced_table_status(
    cache: SnapshotCache = Depends(get_cache),
    scheduler: RefreshScheduler = Depends(get_scheduler),
):
    """缓存与调度器状态"""
    return {
        "cache": cache.status(),
        "scheduler": scheduler.status(),
    }


@router.post(
    "/advanced-table/refresh",
    response_model=PassResult,
    response_model_exclude={"data"},
)
async def refresh_advanced_table(scheduler: RefreshScheduler = Depends(get_scheduler)):
    """手动触发一次刷新，等待其完成"""
    return await scheduler.trigger_manual_fetch()


@router.get("/advanced-table/at", response_model=SnapshotData)
async def get_advanced_table_at(
    at: datetime = Query(..., alias="datetime", description="ISO 时间，未带时区按 UTC"),
    aggregator: Aggregator = Depends(get_aggregator),
):
    """重建某一时刻的历史快照（不写入缓存）"""
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    try:
        return await aggregator.run(as_of=at)
    except SourceUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except DataSourceError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.get("/field-names", response_model=List[FieldName])
async def get_field_names_list(field_names: FieldNameCache = Depends(get_field_names)):
    return await field_names.get_all()
