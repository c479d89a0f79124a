# imaps/db/engine.py
# 统一引擎工厂：PG 下注入 application_name；SQLite 只带 check_same_thread
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

__all__ = ["create_async_engine_safe", "is_postgres"]


def is_postgres(url_or_backend: str) -> bool:
    if "://" in url_or_backend:
        return make_url(url_or_backend).get_backend_name().startswith("postgresql")
    return url_or_backend.startswith("postgresql")


def _connect_args_for(url_str: str) -> dict[str, Any]:
    """
    返回后端专属 connect_args：
    - PostgreSQL(psycopg): application_name
    - SQLite: 仅 check_same_thread
    """
    backend = make_url(url_str).get_backend_name()

    if backend.startswith("postgresql"):
        return {"application_name": "imaps-stock-engine"}

    if backend.startswith("sqlite"):
        return {"check_same_thread": False}

    return {}


def create_async_engine_safe(url_str: str, *, echo: bool = False, **extra: Any) -> AsyncEngine:
    """Async 版（用于 'postgresql+psycopg' 或 'sqlite+aiosqlite'）。"""
    connect_args: dict[str, Any] = _connect_args_for(url_str)

    kwargs: dict[str, Any] = {"echo": echo}
    if is_postgres(url_str):
        kwargs["pool_pre_ping"] = True
    if connect_args:
        kwargs["connect_args"] = connect_args
    kwargs.update(extra)

    return create_async_engine(url_str, **kwargs)
