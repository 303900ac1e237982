"""Deduplication engine: decides whether an IBAN is currently barred from billing.

Rules are evaluated in priority order and the first match wins:

1. blacklisted (general fraud list)     -> permanent
2. any chargebacked attempt             -> permanent
3. any recovered debtor record          -> permanent
4. attempt within the cooldown window   -> temporary, reports ``days_ago``

The cooldown is inclusive by calendar day: with 30 days, an attempt made
30 days ago still blocks, one made 31 days ago does not.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.engine import Engine

from backend.apps.billing.repository import ensure_utc
from backend.apps.billing.tables import TABLES, BillingTables
from backend.core.logging import get_logger
from backend.core.observability import metrics

from . import iban as iban_utils
from .config import DeduplicationConfig
from .dto import AttemptStatus, DebtorStatus, Skip, SkipReason

logger = get_logger(__name__)


class DeduplicationEngine:
    """Bulk-capable eligibility filter keyed by IBAN hash."""

    def __init__(
        self,
        engine: Engine,
        config: Optional[DeduplicationConfig] = None,
        tables: BillingTables = TABLES,
    ):
        self.engine = engine
        self.config = config or DeduplicationConfig()
        self.tables = tables

    def check_iban(
        self,
        iban: str,
        exclude_upload_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Skip]:
        """Return the skip for ``iban`` or None when it may be billed."""
        iban_hash = iban_utils.iban_hash(iban)
        return self.check_batch([iban_hash], exclude_upload_id=exclude_upload_id, now=now).get(iban_hash)

    def check_batch(
        self,
        iban_hashes: Iterable[str],
        exclude_upload_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> dict[str, Skip]:
        """Evaluate many hashes with one query per rule; only skipped hashes are returned."""
        pending = {h for h in iban_hashes if h}
        if not pending:
            return {}

        now = ensure_utc(now) if now else datetime.now(timezone.utc)
        skips: dict[str, Skip] = {}

        with self.engine.begin() as conn:
            for found in self._blacklisted(conn, pending):
                skips[found] = Skip(SkipReason.BLACKLISTED, permanent=True)
            pending -= skips.keys()

            if pending:
                for found in self._chargebacked(conn, pending):
                    skips[found] = Skip(SkipReason.CHARGEBACKED, permanent=True)
                pending -= skips.keys()

            if pending:
                for found in self._recovered(conn, pending, exclude_upload_id):
                    skips[found] = Skip(SkipReason.ALREADY_RECOVERED, permanent=True)
                pending -= skips.keys()

            if pending:
                for found, (created_at, status) in self._recent(conn, pending, exclude_upload_id, now).items():
                    skips[found] = Skip(
                        SkipReason.RECENTLY_ATTEMPTED,
                        permanent=False,
                        days_ago=(now.date() - created_at.date()).days,
                        last_status=status,
                    )

        for skip in skips.values():
            metrics.increment_dedup_skip(skip.reason.value)
        if skips:
            logger.info(
                "dedup_batch_checked",
                extra={"checked": len(pending) + len(skips), "skipped": len(skips)},
            )
        return skips

    def cooldown_cutoff(self, now: datetime) -> datetime:
        """Start of the earliest calendar day still inside the cooldown window."""
        day = (now - timedelta(days=self.config.cooldown_days)).date()
        return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)

    def _blacklisted(self, conn, hashes: set[str]) -> set[str]:
        b = self.tables.blacklists
        rows = conn.execute(select(b.c.iban_hash).where(b.c.iban_hash.in_(hashes))).fetchall()
        return {r.iban_hash for r in rows}

    def _chargebacked(self, conn, hashes: set[str]) -> set[str]:
        a = self.tables.billing_attempts
        d = self.tables.debtors
        rows = conn.execute(
            select(d.c.iban_hash)
            .select_from(a.join(d, a.c.debtor_id == d.c.id))
            .where(d.c.iban_hash.in_(hashes))
            .where(a.c.status == AttemptStatus.CHARGEBACKED.value)
            .distinct()
        ).fetchall()
        return {r.iban_hash for r in rows}

    def _recovered(self, conn, hashes: set[str], exclude_upload_id: Optional[int]) -> set[str]:
        d = self.tables.debtors
        stmt = (
            select(d.c.iban_hash)
            .where(d.c.iban_hash.in_(hashes))
            .where(d.c.status == DebtorStatus.RECOVERED.value)
        )
        if exclude_upload_id is not None:
            stmt = stmt.where(or_(d.c.upload_id.is_(None), d.c.upload_id != exclude_upload_id))
        return {r.iban_hash for r in conn.execute(stmt.distinct()).fetchall()}

    def _recent(
        self,
        conn,
        hashes: set[str],
        exclude_upload_id: Optional[int],
        now: datetime,
    ) -> dict[str, tuple[datetime, str]]:
        a = self.tables.billing_attempts
        d = self.tables.debtors
        stmt = (
            select(d.c.iban_hash, a.c.created_at, a.c.status)
            .select_from(a.join(d, a.c.debtor_id == d.c.id))
            .where(and_(d.c.iban_hash.in_(hashes), a.c.created_at >= self.cooldown_cutoff(now)))
            .order_by(a.c.created_at.desc())
        )
        if exclude_upload_id is not None:
            stmt = stmt.where(or_(d.c.upload_id.is_(None), d.c.upload_id != exclude_upload_id))

        latest: dict[str, tuple[datetime, str]] = {}
        for row in conn.execute(stmt).fetchall():
            if row.iban_hash not in latest:
                latest[row.iban_hash] = (ensure_utc(row.created_at), row.status)
        return latest
