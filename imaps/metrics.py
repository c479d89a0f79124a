# imaps/metrics.py
from __future__ import annotations

import os
import time

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    multiprocess,
)
from starlette.middleware.base import BaseHTTPMiddleware

# 重算
SNAPSHOT_UPSERTS = Counter(
    "imaps_snapshot_upserts_total", "Snapshot rows written", ["method", "operation"]
)
CASCADE_ROWS = Histogram(
    "imaps_cascade_rows", "Rows rewritten per cascade", buckets=(0, 1, 5, 10, 30, 90, 365, 1000)
)
RECALC_LATENCY = Histogram("imaps_recalc_seconds", "Upsert+cascade duration (seconds)", ["mode"])
RECALC_RESULTS = Counter("imaps_recalc_total", "Recalculation outcomes", ["mode", "result"])
NEGATIVE_BALANCES = Counter(
    "imaps_negative_balance_total", "Snapshots written with a negative closing balance", ["item_type"]
)
RECALC_INFLIGHT = Gauge("imaps_recalc_inflight", "Background recalculations in flight")

# 队列
QUEUE_ROWS = Counter("imaps_recalc_queue_rows_total", "Queue row transitions", ["status"])

# 库存检查 / 对账
STOCK_CHECKS = Counter("imaps_stock_checks_total", "Stock checks", ["kind", "available"])
SNAPSHOT_MISMATCH = Counter(
    "imaps_snapshot_mismatch_total", "Detected snapshot chain breaks", ["kind"]
)

# Celery
celery_active_tasks = Gauge("celery_active_tasks", "Celery active tasks")

# HTTP
http_requests_total = Counter("http_requests_total", "HTTP requests", ["method", "path", "code"])
http_request_duration = Histogram(
    "http_request_duration_seconds", "HTTP request duration seconds", ["method", "path"]
)

router = APIRouter()


@router.get("/metrics")
def metrics() -> Response:
    """
    单进程直接导出默认 REGISTRY；
    多进程（gunicorn / celery prefork）用临时 CollectorRegistry 合并 PROMETHEUS_MULTIPROC_DIR 下各分片。
    """
    if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        payload = generate_latest(registry)
    else:
        payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        http_requests_total.labels(request.method, path, str(response.status_code)).inc()
        http_request_duration.labels(request.method, path).observe(elapsed)
        return response
