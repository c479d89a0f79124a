# imaps/services/snapshot_consistency.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from itertools import groupby
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from imaps.metrics import SNAPSHOT_MISMATCH
from imaps.models.enums import CalculationMethod
from imaps.services.balance_calculator import SnapshotFigures, ZERO, compute_snapshot, q3
from imaps.services.ledger_reader import LedgerReader
from imaps.services.snapshot_recalc_service import SnapshotRecalcService
from imaps.services.snapshot_store import SnapshotKey, SnapshotStore

log = logging.getLogger("imaps.consistency")

ARITHMETIC = "ARITHMETIC"
CHAIN = "CHAIN"
STALE = "STALE"


@dataclass(frozen=True)
class SnapshotBreak:
    key: SnapshotKey
    snapshot_date: date
    kind: str
    expected: Decimal
    actual: Decimal


@dataclass
class ConsistencyReport:
    checked_rows: int = 0
    breaks: list[SnapshotBreak] = field(default_factory=list)
    repaired_keys: list[SnapshotKey] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.breaks

    def first_break_by_key(self) -> dict[SnapshotKey, date]:
        first: dict[SnapshotKey, date] = {}
        for b in self.breaks:
            if b.key not in first or b.snapshot_date < first[b.key]:
                first[b.key] = b.snapshot_date
        return first


async def verify_snapshots(
    session: AsyncSession,
    *,
    company_code: Optional[int] = None,
    against_ledger: bool = False,
    store: Optional[SnapshotStore] = None,
    ledger: Optional[LedgerReader] = None,
) -> ConsistencyReport:
    """
    逐物料按日期校验：

      ARITHMETIC  closing != opening + 入 - 出 + 调整
      CHAIN       opening != 上一条快照 closing（期初日 = 期初数量；首行无期初 = 0）
      STALE       against_ledger=True 时，按当前台账重算的数字与库中不一致（漏重算）
    """
    store = store or SnapshotStore()
    ledger = ledger or LedgerReader()
    seeds = await ledger.beginning_balances(session, company_code=company_code)
    rows = await store.rows_for_company(session, company_code=company_code)

    report = ConsistencyReport()

    def _flag(key: SnapshotKey, day: date, kind: str, expected: Decimal, actual: Decimal) -> None:
        report.breaks.append(SnapshotBreak(key, day, kind, expected, actual))
        SNAPSHOT_MISMATCH.labels(kind.lower()).inc()

    for (c, t, i), group in groupby(rows, key=lambda r: (r.company_code, r.item_type, r.item_code)):
        key = SnapshotKey(c, t, i)
        seed = seeds.get((c, t, i))
        prev_closing: Decimal = ZERO
        for row in group:
            report.checked_rows += 1
            stored = SnapshotFigures.from_row(row)
            day = row.snapshot_date

            expected_closing = q3(
                stored.opening
                + stored.incoming
                + stored.production
                - stored.outgoing
                - stored.material_usage
                + stored.adjustment
            )
            if expected_closing != stored.closing:
                _flag(key, day, ARITHMETIC, expected_closing, stored.closing)

            seed_qty = seed[1] if seed is not None and seed[0] == day else None
            expected_opening = seed_qty if seed_qty is not None else prev_closing
            if expected_opening != stored.opening:
                _flag(key, day, CHAIN, expected_opening, stored.opening)

            if against_ledger:
                movements = await ledger.sum_movements(
                    session, company_code=c, item_type=t, item_code=i, day=day
                )
                fresh = compute_snapshot(prev_closing, movements, seed=seed_qty)
                if fresh != stored:
                    _flag(key, day, STALE, fresh.closing, stored.closing)

            prev_closing = stored.closing

    if report.breaks:
        log.warning(
            "snapshot verify found %d breaks over %d rows (company=%s)",
            len(report.breaks),
            report.checked_rows,
            company_code,
        )
    else:
        log.info("snapshot verify ok rows=%d (company=%s)", report.checked_rows, company_code)
    return report


async def check_and_optionally_fix(
    session_maker: async_sessionmaker[AsyncSession],
    *,
    company_code: Optional[int] = None,
    against_ledger: bool = True,
    auto_fix: bool = False,
    dry_run: bool = True,
    recalc: Optional[SnapshotRecalcService] = None,
) -> ConsistencyReport:
    """
    校验；auto_fix 且非 dry_run 时，对每个有问题的物料从第一处断点起重建（各自一个事务、加锁）。
    """
    async with session_maker() as session:
        report = await verify_snapshots(
            session, company_code=company_code, against_ledger=against_ledger
        )

    if not (auto_fix and report.breaks):
        return report
    if dry_run:
        log.info("dry run: %d keys would be rebuilt", len(report.first_break_by_key()))
        return report

    recalc = recalc or SnapshotRecalcService()
    for key, from_date in report.first_break_by_key().items():
        async with recalc.locks.hold(key):
            async with session_maker() as session:
                async with session.begin():
                    await recalc.store.lock(session, key)
                    await recalc.rebuild_item(
                        session,
                        company_code=key.company_code,
                        item_type=key.item_type,
                        item_code=key.item_code,
                        from_date=from_date,
                        method=CalculationMethod.MANUAL,
                    )
        report.repaired_keys.append(key)
    log.info("snapshot repair rebuilt %d keys", len(report.repaired_keys))
    return report
