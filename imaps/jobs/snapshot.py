# imaps/jobs/snapshot.py
# 运维入口：python -m imaps.jobs.snapshot {recalc,rebuild,drain,verify} ...
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import date
from typing import Optional, Sequence

from imaps.core.config import get_settings
from imaps.core.logging import setup_logging
from imaps.db.session import standalone_session_maker
from imaps.models.enums import CalculationMethod
from imaps.services.recalc_queue_service import RecalcQueueService
from imaps.services.snapshot_consistency import check_and_optionally_fix
from imaps.services.snapshot_recalc_service import RecalcRequest, SnapshotRecalcService
from imaps.services.snapshot_store import SnapshotKey


async def run_recalc(args: argparse.Namespace) -> dict:
    svc = SnapshotRecalcService()
    async with standalone_session_maker(args.database_url) as maker:
        outcome = await svc.recalculate_item(
            maker,
            RecalcRequest(
                company_code=args.company,
                item_type=args.item_type,
                item_code=args.item_code,
                recalc_date=args.from_date,
                reason="cli",
            ),
            method=CalculationMethod.MANUAL,
        )
    return {
        "key": str(outcome.key),
        "from_date": outcome.from_date.isoformat(),
        "operation": outcome.snapshot.operation,
        "closing_balance": str(outcome.snapshot.figures.closing),
        "cascaded": outcome.cascaded,
    }


async def run_rebuild(args: argparse.Namespace) -> dict:
    """from 起整段按 MANUAL 重写，漏写的变动日也补行。与在线重算同一把锁。"""
    svc = SnapshotRecalcService()
    key = SnapshotKey(args.company, args.item_type, args.item_code)
    async with standalone_session_maker(args.database_url) as maker:
        async with svc.locks.hold(key):
            async with maker() as session:
                async with session.begin():
                    await svc.store.lock(session, key)
                    report = await svc.rebuild_item(
                        session,
                        company_code=args.company,
                        item_type=args.item_type,
                        item_code=args.item_code,
                        from_date=args.from_date,
                    )
    return {"key": str(report.key), "dates": [d.isoformat() for d in report.dates]}


async def run_drain(args: argparse.Namespace) -> dict:
    async with standalone_session_maker(args.database_url) as maker:
        report = await RecalcQueueService().drain(maker, SnapshotRecalcService(), limit=args.limit)
    return {
        "claimed": report.claimed,
        "done": report.done,
        "retried": report.retried,
        "failed": report.failed,
        "errors": report.errors,
    }


async def run_verify(args: argparse.Namespace) -> dict:
    async with standalone_session_maker(args.database_url) as maker:
        report = await check_and_optionally_fix(
            maker,
            company_code=args.company,
            against_ledger=not args.skip_ledger,
            auto_fix=args.fix,
            dry_run=not args.fix,
        )
    return {
        "checked_rows": report.checked_rows,
        "breaks": [
            {
                "key": str(b.key),
                "date": b.snapshot_date.isoformat(),
                "kind": b.kind,
                "expected": str(b.expected),
                "actual": str(b.actual),
            }
            for b in report.breaks
        ],
        "repaired_keys": [str(k) for k in report.repaired_keys],
    }


def _add_key_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--company", type=int, required=True)
    p.add_argument("--item-type", required=True)
    p.add_argument("--item-code", required=True)
    p.add_argument("--from", dest="from_date", type=date.fromisoformat, required=True)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="iMAPS stock snapshot maintenance")
    ap.add_argument("--database-url", default=None, help="默认取 DATABASE_URL")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("recalc", help="upsert from_date + cascade (existing rows + later movement days)")
    _add_key_args(p)
    p.set_defaults(func=run_recalc)

    p = sub.add_parser("rebuild", help="rewrite every movement/snapshot day from from_date")
    _add_key_args(p)
    p.set_defaults(func=run_rebuild)

    p = sub.add_parser("drain", help="process one batch of the recalc queue")
    p.add_argument("--limit", type=int, default=None)
    p.set_defaults(func=run_drain)

    p = sub.add_parser("verify", help="check chain / arithmetic / ledger consistency")
    p.add_argument("--company", type=int, default=None)
    p.add_argument("--skip-ledger", action="store_true", help="只校验链条与算术，不回读台账")
    p.add_argument("--fix", action="store_true", help="从第一处断点重建有问题的物料")
    p.set_defaults(func=run_verify)
    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, json=settings.JSON_LOG)
    result = asyncio.run(args.func(args))
    print(json.dumps(result, ensure_ascii=False, indent=2))
    if args.cmd == "verify" and result["breaks"] and not result["repaired_keys"]:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
