# imaps/api/deps.py
from __future__ import annotations

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from imaps.db.session import get_session, get_session_maker
from imaps.services.recalc_dispatcher import RecalcDispatcher
from imaps.services.recalc_queue_service import RecalcQueueService
from imaps.services.snapshot_recalc_service import SnapshotRecalcService
from imaps.services.stock_checker import StockChecker

__all__ = [
    "get_session",
    "get_maker",
    "get_dispatcher",
    "get_recalc_service",
    "get_queue_service",
    "get_stock_checker",
]


def get_maker() -> async_sessionmaker[AsyncSession]:
    return get_session_maker()


def get_dispatcher(request: Request) -> RecalcDispatcher:
    """
    进程级单例：lifespan 里创建；没走 lifespan（脚本 / 测试直连）时按需补建。
    """
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        dispatcher = RecalcDispatcher(get_session_maker())
        request.app.state.dispatcher = dispatcher
    return dispatcher


def get_recalc_service(request: Request) -> SnapshotRecalcService:
    # 与调度器共用同一个服务实例（同一把 per-key 锁）
    return get_dispatcher(request).recalc


def get_queue_service(request: Request) -> RecalcQueueService:
    return get_dispatcher(request).queue


def get_stock_checker() -> StockChecker:
    return StockChecker()
