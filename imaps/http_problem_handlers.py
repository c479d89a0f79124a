# imaps/http_problem_handlers.py
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from imaps.api.errors import BizError
from imaps.api.problem import make_problem

logger = logging.getLogger("imaps")


def _new_trace_id() -> str:
    return f"t_{uuid.uuid4().hex[:12]}"


def _ctx(req: Request) -> Dict[str, Any]:
    return {"path": getattr(req.url, "path", ""), "method": req.method}


def _loc_path(loc: Any) -> str:
    """('body', 'items', 2, 'qty_requested') -> items[2].qty_requested"""
    parts = [p for p in (loc or ()) if p not in ("body", "query", "path")]
    out = ""
    for p in parts:
        if isinstance(p, int):
            out += f"[{p}]"
        else:
            out += f".{p}" if out else str(p)
    return out or "request"


def _problem_from_http_exc(req: Request, exc: HTTPException) -> Dict[str, Any]:
    """
    HTTPException.detail 统一翻译为 Problem 形状：
    - 已是 Problem（含 error_code/message）：补齐 http_status / trace_id / context
    - str / 其它：兜底为 state
    """
    status_code = int(exc.status_code)
    trace_id = _new_trace_id()
    d = exc.detail

    if isinstance(d, dict) and "error_code" in d and "message" in d:
        out = dict(d)
        out.setdefault("http_status", status_code)
        out.setdefault("trace_id", trace_id)
        merged = _ctx(req)
        if isinstance(out.get("context"), dict):
            merged.update(out["context"])
        out["context"] = merged
        return out

    msg = str(d) if d is not None else "请求被拒绝"
    return make_problem(
        status_code=status_code,
        error_code="http_error",
        message=msg,
        context=_ctx(req),
        details=[{"type": "state", "reason": msg}],
        trace_id=trace_id,
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(Exception)
    async def _unhandled_exc(req: Request, exc: Exception):
        trace_id = _new_trace_id()
        logger.exception("UNHANDLED_EXC[%s]: %s", trace_id, exc)
        content = make_problem(
            status_code=500,
            error_code="internal_error",
            message="系统异常，请稍后重试",
            context=_ctx(req),
            trace_id=trace_id,
        )
        return JSONResponse(status_code=500, content=content)

    @app.exception_handler(BizError)
    async def _biz_exc(req: Request, exc: BizError):
        trace_id = _new_trace_id()
        if exc.status >= 500:
            logger.warning("BIZ_ERROR[%s] %s: %s", trace_id, exc.code, exc.message)
        ctx = _ctx(req)
        ctx.update(exc.context)
        content = make_problem(
            status_code=exc.status,
            error_code=exc.code,
            message=exc.message,
            context=ctx,
            details=exc.details,
            retryable=exc.retryable,
            trace_id=trace_id,
        )
        return JSONResponse(status_code=exc.status, content=content)

    @app.exception_handler(RequestValidationError)
    async def _validation_exc(req: Request, exc: RequestValidationError):
        details: List[Dict[str, Any]] = []
        for e in exc.errors():
            if not isinstance(e, dict):
                continue
            details.append(
                {
                    "type": "validation",
                    "path": _loc_path(e.get("loc")),
                    "reason": str(e.get("msg") or e.get("type") or "invalid"),
                }
            )

        content = make_problem(
            status_code=422,
            error_code="request_validation_error",
            message="请求参数不合法",
            context=_ctx(req),
            details=details,
            trace_id=_new_trace_id(),
        )
        return JSONResponse(status_code=422, content=content)

    @app.exception_handler(HTTPException)
    async def _http_exc(req: Request, exc: HTTPException):
        content = _problem_from_http_exc(req, exc)
        return JSONResponse(status_code=int(exc.status_code), content=content)
