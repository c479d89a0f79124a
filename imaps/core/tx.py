# imaps/core/tx.py
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from imaps.api.errors import ConcurrencyConflict, WriteTimeout

log = logging.getLogger("imaps.tx")

# 40001 serialization_failure / 40P01 deadlock_detected
_RETRYABLE_SQLSTATES = {"40001", "40P01"}


def is_serialization_failure(exc: BaseException) -> bool:
    """
    判断是否为可重试的并发冲突：
    - PG：sqlstate 40001 / 40P01（psycopg3 暴露 .sqlstate，旧驱动是 .pgcode）
    - SQLite：database is locked
    """
    if not isinstance(exc, DBAPIError):
        return False
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in _RETRYABLE_SQLSTATES:
        return True
    return "database is locked" in str(orig or exc).lower()


@asynccontextmanager
async def tx_commit(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    Commit 事务：正常 begin/commit，异常回滚。
    Handler 内部不得控事务。
    """
    async with session.begin():
        yield session


@asynccontextmanager
async def serializable_tx(
    session_maker: async_sessionmaker[AsyncSession],
    *,
    timeout: Optional[float],
) -> AsyncIterator[AsyncSession]:
    """
    来源单据写入专用：SERIALIZABLE 隔离 + 整体超时。

    - 两个并发写入读到同一份“当前库存”时，后提交者拿到 40001 → ConcurrencyConflict（可重试）
    - 超时 → WriteTimeout，事务回滚，调用方收到失败
    - 业务异常（BizError）原样抛出，事务回滚
    """
    async with session_maker() as session:
        try:
            async with asyncio.timeout(timeout):
                async with session.begin():
                    await session.connection(execution_options={"isolation_level": "SERIALIZABLE"})
                    yield session
        except TimeoutError as exc:
            log.warning("write transaction timed out after %ss", timeout)
            raise WriteTimeout(timeout) from exc
        except DBAPIError as exc:
            if is_serialization_failure(exc):
                log.info("serialization conflict on write: %s", exc.orig)
                raise ConcurrencyConflict() from exc
            raise
