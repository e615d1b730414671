"""
依赖注入模块

从 app.state 取出进程级对象，供路由使用。
"""

from fastapi import Request

from ..aggregator import Aggregator
from ..cache import SnapshotCache
from ..fields import FieldNameCache
from ..live import LivePoller
from ..scheduler import RefreshScheduler
from ..services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_cache(request: Request) -> SnapshotCache:
    return get_services(request).cache


def get_scheduler(request: Request) -> RefreshScheduler:
    return get_services(request).scheduler


def get_aggregator(request: Request) -> Aggregator:
    return get_services(request).aggregator


def get_field_names(request: Request) -> FieldNameCache:
    return get_services(request).field_names


def get_live_poller(request: Request) -> LivePoller:
    return get_services(request).live
