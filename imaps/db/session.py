# imaps/db/session.py
# 异步 Engine / AsyncSession 工厂 + FastAPI 依赖
from __future__ import annotations

import logging
import re
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from imaps.core.config import get_settings
from imaps.db.engine import create_async_engine_safe

log = logging.getLogger("imaps.db")

_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def normalize_async_dsn(url: str) -> str:
    """把各种写法统一到 psycopg3 / aiosqlite。"""
    url = (url or "").strip()
    # 有些环境会把值写成 '"postgresql+psycopg://..."'
    if len(url) >= 2 and url[0] == url[-1] and url[0] in ("'", '"'):
        url = url[1:-1].strip()
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite://" + url[len("sqlite:///") - 1 :]
    if url.startswith("postgresql+asyncpg://") or url.startswith("postgres+asyncpg://"):
        return re.sub(r"^postgres(?:ql)?\+asyncpg://", "postgresql+psycopg://", url)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def configure_engine(url: Optional[str] = None, **engine_kwargs) -> AsyncEngine:
    """
    (重新)初始化全局 engine 与 session 工厂。
    应用启动时按配置调用一次；测试 / CLI 可以传入自己的 DSN。
    """
    global _engine, _session_maker
    settings = get_settings()
    dsn = normalize_async_dsn(url or settings.DATABASE_URL)
    _engine = create_async_engine_safe(dsn, echo=settings.SQL_ECHO, **engine_kwargs)
    _session_maker = async_sessionmaker(bind=_engine, class_=AsyncSession, expire_on_commit=False)
    log.info("async engine configured: backend=%s", _engine.url.get_backend_name())
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        configure_engine()
    assert _engine is not None
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    if _session_maker is None:
        configure_engine()
    assert _session_maker is not None
    return _session_maker


# ---- FastAPI 依赖 ----
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with get_session_maker()() as session:
        yield session


# ---- 关闭引擎（测试/生命周期） ----
async def close_engine() -> None:
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_maker = None


# ---- 独立进程入口（Celery 任务 / CLI）：每次 asyncio.run 自带 engine ----
@asynccontextmanager
async def standalone_session_maker(
    url: Optional[str] = None,
) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """
    asyncio.run 每次都是新事件循环，连接不能跨循环复用：
    这里用 NullPool 建一次性 engine，退出时 dispose。
    """
    settings = get_settings()
    engine = create_async_engine_safe(
        normalize_async_dsn(url or settings.DATABASE_URL),
        echo=settings.SQL_ECHO,
        poolclass=NullPool,
    )
    try:
        yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()
