# tests/conftest.py
from __future__ import annotations

import os
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.pool import NullPool

# ============================================================
# 在 import imaps.* 之前固定配置（get_settings 有缓存）
# ============================================================
os.environ["RECALC_MODE"] = "inline"
os.environ["STOCK_CHECK_FORWARD_SCAN"] = "true"
os.environ["ENABLE_RECALC_SCHEDULER"] = "false"
os.environ["RECALC_BACKOFF_BASE_SECONDS"] = "0"

from imaps.db.base import Base, init_models  # noqa: E402
from imaps.db.session import close_engine, configure_engine, get_session_maker  # noqa: E402
from imaps.services.recalc_dispatcher import RecalcDispatcher  # noqa: E402
from imaps.services.movement_write_service import MovementWriteService  # noqa: E402


async def _no_sleep(_seconds: float) -> None:
    return None


# =========================================
# 每用例独立 SQLite 文件库（NullPool，避免跨 loop）
# =========================================
@pytest_asyncio.fixture(scope="function")
async def async_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    url = f"sqlite+aiosqlite:///{tmp_path / 'imaps_test.db'}"
    engine = configure_engine(url, poolclass=NullPool)
    init_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await close_engine()


@pytest.fixture(scope="function")
def async_session_maker(async_engine: AsyncEngine):
    return get_session_maker()


@pytest_asyncio.fixture(scope="function")
async def session(async_session_maker) -> AsyncGenerator[AsyncSession, None]:
    """
    标准 Session（自动 commit / rollback）

    只用来读：写入一律走 factories / 服务（各自提交），
    否则 SQLite 文件锁会和服务自己的连接互相等待。
    """
    async with async_session_maker() as sess:
        try:
            yield sess
            if sess.in_transaction():
                await sess.commit()
        except Exception:
            if sess.in_transaction():
                await sess.rollback()
            raise


@pytest.fixture(scope="function")
def dispatcher(async_session_maker) -> RecalcDispatcher:
    """inline 调度器：写入返回时快照已经重算完毕。"""
    return RecalcDispatcher(async_session_maker, mode="inline", sleep=_no_sleep)


@pytest.fixture(scope="function")
def recalc(dispatcher: RecalcDispatcher):
    return dispatcher.recalc


@pytest.fixture(scope="function")
def writer(async_session_maker, dispatcher: RecalcDispatcher) -> MovementWriteService:
    return MovementWriteService(async_session_maker, dispatcher, timeout=10)


@pytest_asyncio.fixture(scope="function")
async def client(async_engine, dispatcher) -> AsyncGenerator[httpx.AsyncClient, None]:
    from imaps.main import create_app

    app = create_app()
    app.state.dispatcher = dispatcher
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
