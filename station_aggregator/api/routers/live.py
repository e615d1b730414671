"""
实时数据 API
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...errors import LivePollError
from ...live import LivePoller
from ...models import KeyValueRow, LiveSchedulerStatus, LiveTarget
from ..dependencies import get_live_poller

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/live", tags=["live"])


@router.get("/get_live_data", response_model=List[KeyValueRow])
async def get_live_data(
    ip_datalogger_http: Optional[str] = None,
    ip: Optional[str] = None,
    ip_modem_http: Optional[str] = None,
    station_id: Optional[int] = Query(None, alias="stationId"),
    ttl_seconds: Optional[float] = Query(None, alias="ttlSeconds"),
    poller: LivePoller = Depends(get_live_poller),
):
    """读取单个站点记录器的最新数据（短 TTL 缓存）"""
    if not (ip_datalogger_http or ip or ip_modem_http):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="At least one of ip_datalogger_http, ip, or ip_modem_http must be provided",
        )

    target = LiveTarget(ip_datalogger_http=ip_datalogger_http, ip=ip, ip_modem_http=ip_modem_http)
    try:
        return await poller.get(target, station_id, ttl_seconds)
    except LivePollError as e:
        logger.warning(f"Live data request failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.reason)


@router.post("/collection/{station_id}/enable")
async def enable_live_collection(station_id: int, poller: LivePoller = Depends(get_live_poller)):
    poller.set_enabled(station_id, True)
    return {"ok": True, "stationId": station_id}


@router.post("/collection/{station_id}/disable")
async def disable_live_collection(station_id: int, poller: LivePoller = Depends(get_live_poller)):
    poller.set_enabled(station_id, False)
    return {"ok": True, "stationId": station_id}


@router.get("/collection/status", response_model=LiveSchedulerStatus)
async def get_live_collection_status(poller: LivePoller = Depends(get_live_poller)):
    return poller.status()
