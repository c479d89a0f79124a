# imaps/schemas/recalc_queue.py
from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _Base(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="ignore")


class RecalcQueueRowOut(_Base):
    id: int
    company_code: int
    item_type: str
    item_code: str
    recalc_date: date
    status: str
    priority: int
    attempts: int
    reason: Optional[str] = None
    queued_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class RecalcQueueListOut(_Base):
    counts: dict[str, int] = Field(default_factory=dict)
    rows: list[RecalcQueueRowOut] = Field(default_factory=list)


class DrainIn(_Base):
    limit: Optional[int] = Field(default=None, ge=1, le=1000)


class DrainOut(_Base):
    claimed: int
    done: int
    retried: int
    failed: int
    errors: list[str] = Field(default_factory=list)


class RequeueIn(_Base):
    ids: Optional[list[int]] = None


class RequeueOut(_Base):
    requeued: int


__all__ = [
    "RecalcQueueRowOut",
    "RecalcQueueListOut",
    "DrainIn",
    "DrainOut",
    "RequeueIn",
    "RequeueOut",
]
