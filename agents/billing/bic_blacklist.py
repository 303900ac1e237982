"""BIC blacklist: manual entries, lookups and the statistical auto-blacklist.

Entries are unique per ``(bic, is_prefix)``. A prefix entry blocks every
BIC starting with the stored value.

The auto-blacklist scan aggregates billing attempts over a trailing window
per BIC and blocks banks matching one of two strict-threshold rules:

    Rule 1: total > 50  and chargeback rate > 50%
    Rule 2: total >= 10 and chargeback rate > 80%

Chargebacks with an excluded reason code are dropped from both the
numerator and the denominator.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, case, func, insert, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.apps.billing.repository import ensure_utc
from backend.apps.billing.tables import TABLES, BillingTables
from backend.core.logging import get_logger
from backend.core.observability import metrics

from .config import AutoBlacklistConfig
from .dto import AttemptStatus, AutoBlacklistReport, BicDecision, BicStats

logger = get_logger(__name__)

SOURCES = ("manual", "import", "auto")


def normalize_bic(bic: Optional[str]) -> str:
    return (bic or "").strip().upper()


@dataclass
class BicBlacklistEntry:
    id: int
    bic: str
    is_prefix: bool
    reason: Optional[str]
    source: str
    auto_criteria: Optional[str]
    stats_snapshot: Optional[Dict[str, Any]]
    blacklisted_by: Optional[str]
    created_at: Optional[datetime]

    @classmethod
    def from_row(cls, row) -> "BicBlacklistEntry":
        return cls(
            id=row.id,
            bic=row.bic,
            is_prefix=bool(row.is_prefix),
            reason=row.reason,
            source=row.source,
            auto_criteria=row.auto_criteria,
            stats_snapshot=row.stats_snapshot,
            blacklisted_by=row.blacklisted_by,
            created_at=ensure_utc(row.created_at),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bic": self.bic,
            "is_prefix": self.is_prefix,
            "reason": self.reason,
            "source": self.source,
            "auto_criteria": self.auto_criteria,
            "blacklisted_by": self.blacklisted_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class BicBlacklist:
    def __init__(self, engine: Engine, tables: BillingTables = TABLES):
        self.engine = engine
        self.tables = tables

    def find_match(self, bic: Optional[str]) -> Optional[BicBlacklistEntry]:
        """Exact entry first, then the longest covering prefix entry."""
        value = normalize_bic(bic)
        if not value:
            return None

        t = self.tables.bic_blacklists
        with self.engine.begin() as conn:
            exact = conn.execute(
                select(t).where(t.c.bic == value).where(t.c.is_prefix.is_(False))
            ).fetchone()
            if exact is not None:
                return BicBlacklistEntry.from_row(exact)
            prefixes = conn.execute(select(t).where(t.c.is_prefix.is_(True))).fetchall()

        covering = [row for row in prefixes if value.startswith(normalize_bic(row.bic))]
        if not covering:
            return None
        return BicBlacklistEntry.from_row(max(covering, key=lambda row: len(row.bic)))

    def is_blacklisted(self, bic: Optional[str]) -> bool:
        return self.find_match(bic) is not None

    def add_entry(
        self,
        bic: str,
        is_prefix: bool = False,
        reason: Optional[str] = None,
        source: str = "manual",
        blacklisted_by: Optional[str] = None,
        auto_criteria: Optional[str] = None,
        stats_snapshot: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        """Insert an entry; returns None when ``(bic, is_prefix)`` already exists."""
        value = normalize_bic(bic)
        if not value or len(value) > 11:
            raise ValueError(f"Invalid BIC: {bic!r}")
        if source not in SOURCES:
            raise ValueError(f"Invalid source: {source!r}")

        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    insert(self.tables.bic_blacklists).values(
                        bic=value,
                        is_prefix=is_prefix,
                        reason=reason,
                        source=source,
                        blacklisted_by=blacklisted_by,
                        auto_criteria=auto_criteria,
                        stats_snapshot=stats_snapshot,
                    )
                )
        except IntegrityError:
            return None
        return result.inserted_primary_key[0]

    def list_entries(self, source: Optional[str] = None) -> List[BicBlacklistEntry]:
        t = self.tables.bic_blacklists
        stmt = select(t).order_by(t.c.bic, t.c.is_prefix)
        if source:
            stmt = stmt.where(t.c.source == source)
        with self.engine.begin() as conn:
            return [BicBlacklistEntry.from_row(r) for r in conn.execute(stmt).fetchall()]


@dataclass(frozen=True)
class AutoBlacklistRule:
    label: str
    min_total: int
    total_inclusive: bool
    min_rate: float

    def matches(self, stats: BicStats) -> bool:
        if self.total_inclusive:
            enough = stats.total >= self.min_total
        else:
            enough = stats.total > self.min_total
        return enough and stats.cb_rate > self.min_rate


RULES = (
    AutoBlacklistRule("Rule 1: >50 tx AND >50% CB", min_total=50, total_inclusive=False, min_rate=50),
    AutoBlacklistRule("Rule 2: >=10 tx AND >80% CB", min_total=10, total_inclusive=True, min_rate=80),
)


def first_matching_rule(stats: BicStats) -> Optional[AutoBlacklistRule]:
    for rule in RULES:
        if rule.matches(stats):
            return rule
    return None


class BicAutoBlacklist:
    def __init__(
        self,
        engine: Engine,
        config: Optional[AutoBlacklistConfig] = None,
        blacklist: Optional[BicBlacklist] = None,
        tables: BillingTables = TABLES,
    ):
        self.engine = engine
        self.config = config or AutoBlacklistConfig()
        self.tables = tables
        self.blacklist = blacklist or BicBlacklist(engine, tables)

    def aggregate(self, window_days: int, now: datetime) -> List[BicStats]:
        """Approved and counted chargebacks per BIC over the trailing window."""
        a = self.tables.billing_attempts
        since = now - timedelta(days=window_days)
        bic = func.upper(func.trim(a.c.bic))
        occurred_at = func.coalesce(a.c.gateway_created_at, a.c.created_at)

        counted_chargeback = a.c.status == AttemptStatus.CHARGEBACKED.value
        excluded = sorted(self.config.excluded_reason_codes)
        if excluded:
            code = func.upper(func.trim(a.c.chargeback_reason_code))
            counted_chargeback = and_(
                counted_chargeback,
                or_(a.c.chargeback_reason_code.is_(None), code == "", code.not_in(excluded)),
            )

        approved = func.sum(case((a.c.status == AttemptStatus.APPROVED.value, 1), else_=0))
        chargebacked = func.sum(case((counted_chargeback, 1), else_=0))

        stmt = (
            select(bic.label("bic"), approved.label("approved"), chargebacked.label("chargebacked"))
            .where(a.c.bic.is_not(None))
            .where(func.trim(a.c.bic) != "")
            .where(occurred_at >= since)
            .group_by(bic)
            .order_by(bic)
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).fetchall()

        stats = [BicStats(bic=r.bic, approved=int(r.approved or 0), chargebacked=int(r.chargebacked or 0)) for r in rows]
        return [s for s in stats if s.total > 0]

    def run(
        self,
        window_days: Optional[int] = None,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> AutoBlacklistReport:
        window_days = window_days if window_days is not None else self.config.window_days
        now = ensure_utc(now) if now else datetime.now(timezone.utc)
        report = AutoBlacklistReport(window_days=window_days, dry_run=dry_run)

        for stats in self.aggregate(window_days, now):
            report.evaluated += 1
            rule = first_matching_rule(stats)
            if rule is None:
                continue

            try:
                if self.blacklist.find_match(stats.bic) is not None:
                    report.already_blacklisted += 1
                    continue

                if dry_run:
                    report.added.append(BicDecision(stats=stats, rule=rule.label, written=False))
                    continue

                entry_id = self.blacklist.add_entry(
                    stats.bic,
                    is_prefix=False,
                    reason=f"Auto: {stats.total} tx, {stats.cb_rate}% CB rate",
                    source="auto",
                    blacklisted_by="system",
                    auto_criteria=rule.label,
                    stats_snapshot={
                        "approved": stats.approved,
                        "chargebacked": stats.chargebacked,
                        "total": stats.total,
                        "cb_rate": stats.cb_rate,
                        "period_days": window_days,
                        "calculated_at": now.isoformat(),
                    },
                )
            except SQLAlchemyError as e:
                report.failed += 1
                report.errors.append(f"{stats.bic}: {e}")
                logger.error("bic_auto_blacklist_failed", extra={"bic": stats.bic, "error": str(e)})
                continue

            if entry_id is None:
                report.already_blacklisted += 1
                continue

            report.added.append(BicDecision(stats=stats, rule=rule.label, written=True))
            metrics.increment_bic_auto_added(rule.label)
            logger.info(
                "bic_auto_blacklisted",
                extra={"bic": stats.bic, "rule": rule.label, "total": stats.total, "cb_rate": stats.cb_rate},
            )

        logger.info(
            "bic_auto_blacklist_completed",
            extra={
                "window_days": window_days,
                "dry_run": dry_run,
                "evaluated": report.evaluated,
                "added": len(report.added),
                "already_blacklisted": report.already_blacklisted,
                "failed": report.failed,
            },
        )
        return report
