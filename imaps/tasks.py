# imaps/tasks.py
from __future__ import annotations

import asyncio
from dataclasses import asdict
from datetime import date
from typing import Any, Dict, Optional

from imaps.db.session import standalone_session_maker
from imaps.services.recalc_dispatcher import RecalcDispatcher
from imaps.services.recalc_queue_service import RecalcQueueService
from imaps.services.snapshot_consistency import check_and_optionally_fix
from imaps.services.snapshot_recalc_service import RecalcRequest, SnapshotRecalcService
from imaps.worker import celery


@celery.task(name="imaps.drain_recalc_queue")
def drain_recalc_queue(limit: Optional[int] = None) -> Dict[str, Any]:
    """
    Beat 每 5 分钟调用：priority DESC / queued_at ASC 取一批 PENDING 逐条重算。
    单条失败回到 PENDING 退避重试，用尽后 FAILED；任务本身不因单条失败而失败。
    """

    async def _runner() -> Dict[str, Any]:
        async with standalone_session_maker() as maker:
            report = await RecalcQueueService().drain(maker, SnapshotRecalcService(), limit=limit)
        return asdict(report)

    return asyncio.run(_runner())


@celery.task(name="imaps.recalc_item")
def recalc_item(
    company_code: int,
    item_type: str,
    item_code: str,
    recalc_date: str,
    item_name: str = "",
    uom: str = "",
    reason: str = "",
) -> bool:
    """单物料从 recalc_date（ISO 日期）起重算；带重试，用尽写死信。"""

    async def _runner() -> bool:
        async with standalone_session_maker() as maker:
            dispatcher = RecalcDispatcher(maker, mode="inline")
            return await dispatcher.run_with_retry(
                RecalcRequest(
                    company_code=int(company_code),
                    item_type=item_type,
                    item_code=item_code,
                    recalc_date=date.fromisoformat(recalc_date),
                    item_name=item_name,
                    uom=uom,
                    reason=reason,
                )
            )

    return asyncio.run(_runner())


@celery.task(name="imaps.verify_snapshots")
def verify_snapshots(
    dry_run: bool = True, auto_fix: bool = False, company_code: Optional[int] = None
) -> Dict[str, Any]:
    async def _runner() -> Dict[str, Any]:
        async with standalone_session_maker() as maker:
            report = await check_and_optionally_fix(
                maker, company_code=company_code, auto_fix=auto_fix, dry_run=dry_run
            )
        return {
            "checked_rows": report.checked_rows,
            "breaks": len(report.breaks),
            "repaired_keys": [str(k) for k in report.repaired_keys],
        }

    return asyncio.run(_runner())
