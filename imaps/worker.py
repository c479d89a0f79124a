# imaps/worker.py
# Celery Worker（Prometheus 指标 + Beat 调度 + 测试态同步执行）
from __future__ import annotations

import os

from celery import Celery
from celery.signals import task_postrun, task_prerun

from imaps.core.config import get_settings
from imaps.metrics import celery_active_tasks

_settings = get_settings()

# 注册任务模块（imaps.tasks 内含队列消费 / 单物料重算 / 一致性巡检）
celery = Celery(
    "imaps",
    broker=_settings.REDIS_URL,
    backend=_settings.CELERY_RESULT_BACKEND,
    include=["imaps.tasks"],
)

# 基本配置
celery.conf.task_acks_late = True
celery.conf.worker_prefetch_multiplier = 1
celery.conf.broker_transport_options = {"visibility_timeout": 3600}
celery.conf.timezone = _settings.SCHEDULER_TIMEZONE

# === Beat 调度 ===
celery.conf.beat_schedule = {
    # 重算队列：每 5 分钟消费一批
    "recalc-queue-every-5m": {
        "task": "imaps.drain_recalc_queue",
        "schedule": 300.0,
    },
    # 快照一致性巡检：每小时一次，默认只报告不修复
    "snapshot-verify-hourly": {
        "task": "imaps.verify_snapshots",
        "schedule": 3600.0,
        "args": (True, False),  # dry_run=True, auto_fix=False
    },
}

# === 测试/CI：任务在本进程直接执行，避免等待外部 worker ===
_TESTING = bool(os.getenv("PYTEST_CURRENT_TEST")) or os.getenv("CELERY_ALWAYS_EAGER") == "1"
if _TESTING:
    celery.conf.task_always_eager = True
    celery.conf.task_eager_propagates = True
    celery.conf.task_store_eager_result = True


@task_prerun.connect
def _on_task_start(task_id=None, task=None, args=None, kwargs=None, **_):
    celery_active_tasks.inc()


@task_postrun.connect
def _on_task_end(task_id=None, task=None, args=None, kwargs=None, retval=None, state=None, **_):
    celery_active_tasks.dec()
