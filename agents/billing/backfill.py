"""Backfill missing BICs from a bank directory.

Each storage entity that carries a BIC is a ``BackfillTarget`` with the
same three capabilities; ``BackfillTargetKind`` picks the implementation.
"""

from enum import Enum
from typing import Dict, Optional, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql import Select

from backend.apps.billing.tables import TABLES, BillingTables
from backend.core.logging import get_logger
from backend.core.observability import metrics

from . import iban as iban_utils
from .clients import BankLookup
from .dto import BackfillReport

logger = get_logger(__name__)


class BackfillTargetKind(Enum):
    DEBTORS = "debtors"
    BILLING_ATTEMPTS = "billing_attempts"
    VERIFICATION_RECORDS = "verification_records"


class BackfillTarget(Protocol):
    kind: BackfillTargetKind

    def count_missing(self, conn: Connection) -> int: ...

    def build_query(self, limit: Optional[int] = None) -> Select: ...

    def apply_update(self, conn: Connection, row_id: int, bic: str) -> None: ...


class DebtorBicTarget:
    kind = BackfillTargetKind.DEBTORS

    def __init__(self, tables: BillingTables = TABLES):
        self.table = tables.debtors

    def _missing(self):
        return (self.table.c.bic.is_(None), self.table.c.iban.is_not(None))

    def count_missing(self, conn: Connection) -> int:
        return conn.execute(select(func.count()).select_from(self.table).where(*self._missing())).scalar_one()

    def build_query(self, limit: Optional[int] = None) -> Select:
        stmt = select(self.table.c.id, self.table.c.iban).where(*self._missing()).order_by(self.table.c.id)
        return stmt.limit(limit) if limit else stmt

    def apply_update(self, conn: Connection, row_id: int, bic: str) -> None:
        conn.execute(update(self.table).where(self.table.c.id == row_id).values(bic=bic))


class _DebtorLinkedBicTarget:
    """Rows that carry a BIC but take their IBAN from the linked debtor."""

    def __init__(self, table, tables: BillingTables = TABLES):
        self.table = table
        self.debtors = tables.debtors

    def _joined(self):
        return self.table.join(self.debtors, self.table.c.debtor_id == self.debtors.c.id)

    def _missing(self):
        return (self.table.c.bic.is_(None), self.debtors.c.iban.is_not(None))

    def count_missing(self, conn: Connection) -> int:
        return conn.execute(select(func.count()).select_from(self._joined()).where(*self._missing())).scalar_one()

    def build_query(self, limit: Optional[int] = None) -> Select:
        stmt = (
            select(self.table.c.id, self.debtors.c.iban)
            .select_from(self._joined())
            .where(*self._missing())
            .order_by(self.table.c.id)
        )
        return stmt.limit(limit) if limit else stmt

    def apply_update(self, conn: Connection, row_id: int, bic: str) -> None:
        conn.execute(update(self.table).where(self.table.c.id == row_id).values(bic=bic))


class BillingAttemptBicTarget(_DebtorLinkedBicTarget):
    kind = BackfillTargetKind.BILLING_ATTEMPTS

    def __init__(self, tables: BillingTables = TABLES):
        super().__init__(tables.billing_attempts, tables)


class VerificationRecordBicTarget(_DebtorLinkedBicTarget):
    kind = BackfillTargetKind.VERIFICATION_RECORDS

    def __init__(self, tables: BillingTables = TABLES):
        super().__init__(tables.verification_records, tables)


_TARGETS = {
    BackfillTargetKind.DEBTORS: DebtorBicTarget,
    BackfillTargetKind.BILLING_ATTEMPTS: BillingAttemptBicTarget,
    BackfillTargetKind.VERIFICATION_RECORDS: VerificationRecordBicTarget,
}


def target_for(kind: BackfillTargetKind, tables: BillingTables = TABLES) -> BackfillTarget:
    return _TARGETS[kind](tables)


def run_bic_backfill(
    engine: Engine,
    target: BackfillTarget,
    lookup: BankLookup,
    limit: Optional[int] = None,
    dry_run: bool = False,
) -> BackfillReport:
    """Look up and store BICs for rows of ``target`` that lack one."""
    report = BackfillReport(target=target.kind.value, dry_run=dry_run)
    with engine.begin() as conn:
        report.missing = target.count_missing(conn)
        rows = conn.execute(target.build_query(limit)).fetchall()

    resolved: Dict[str, Optional[str]] = {}
    for row in rows:
        try:
            key = iban_utils.iban_hash(row.iban)
            if key in resolved:
                bic = resolved[key]
                report.cached += 1
            else:
                found = lookup.lookup(row.iban)
                bic = found.bic if found.success else None
                resolved[key] = bic
                if found.source == "cache":
                    report.cached += 1

            if not bic:
                report.skipped += 1
                continue

            if not dry_run:
                with engine.begin() as conn:
                    target.apply_update(conn, row.id, bic)
            report.updated += 1
        except Exception as e:
            report.failed += 1
            logger.error(
                "bic_backfill_row_failed",
                extra={"target": target.kind.value, "row_id": row.id, "error": str(e)},
            )

    if not dry_run:
        metrics.increment_backfill_updated(target.kind.value, report.updated)
    logger.info("bic_backfill_completed", extra=report.to_dict())
    return report
