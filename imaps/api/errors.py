# imaps/api/errors.py
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from imaps.api.problem import ProblemDetail


class BizError(Exception):
    """
    业务异常基类：同步路径（校验 / 库存检查 / 写入冲突）抛出，由 HTTP 层翻译成 Problem。
    后台重算路径不抛这个，失败只记日志。
    """

    code = "BIZ_ERROR"
    status = 400
    retryable = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status: int | None = None,
        *,
        details: Optional[List[ProblemDetail]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        if code:
            self.code = code
        if status:
            self.status = status
        self.message = message
        self.details = list(details or [])
        self.context = dict(context or {})


class NotFoundError(BizError):
    def __init__(self, message: str, **kw: Any):
        super().__init__(message, code="NOT_FOUND", status=404, **kw)


class ValidationFailed(BizError):
    """日期非法 / 缺少物料等：写入前拒绝，带字段级明细。"""

    def __init__(self, message: str, *, field: str | None = None, **kw: Any):
        details = kw.pop("details", None) or []
        if field:
            details.append({"type": "validation", "path": field, "reason": message})
        super().__init__(message, code="VALIDATION_FAILED", status=422, details=details, **kw)


class ConcurrencyConflict(BizError):
    """来源单据写入的序列化冲突 / 超时：调用方可重试。"""

    retryable = True

    def __init__(self, message: str = "并发写入冲突，请重试", **kw: Any):
        super().__init__(message, code="CONCURRENCY_CONFLICT", status=409, **kw)


class InsufficientStock(BizError):
    """库存不足：业务规则拒绝，不是系统错误。"""

    def __init__(
        self,
        *,
        item_type: str,
        item_code: str,
        current_stock: Decimal,
        requested: Decimal,
        shortfall: Decimal,
        snapshot_date: Any = None,
    ):
        msg = (
            f"库存不足：{item_type}/{item_code} 当前结余 {current_stock}，"
            f"需要 {requested}，缺口 {shortfall}"
        )
        detail: ProblemDetail = {
            "type": "shortage",
            "item_type": item_type,
            "item_code": item_code,
            "required_qty": str(requested),
            "available_qty": str(current_stock),
            "short_qty": str(shortfall),
        }
        if snapshot_date is not None:
            detail["snapshot_date"] = str(snapshot_date)
        super().__init__(msg, code="INSUFFICIENT_STOCK", status=409, details=[detail])
        self.current_stock = current_stock
        self.shortfall = shortfall


class WriteTimeout(BizError):
    """写事务超过时限被中止（已回滚），调用方可重试。"""

    retryable = True

    def __init__(self, timeout: float | None, **kw: Any):
        super().__init__(
            f"写入超时（{timeout}s），已回滚", code="WRITE_TIMEOUT", status=503, **kw
        )
        self.timeout = timeout
