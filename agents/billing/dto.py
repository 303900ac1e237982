"""Data Transfer Objects for the billing pipeline.

Enumerations for debtor/attempt lifecycles plus the value objects returned
by the engines (skips, score outcomes, run reports).
"""

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class BillingModel(Enum):
    """Collection policy of a billing profile."""
    LEGACY = "legacy"
    FLYWHEEL = "flywheel"
    RECOVERY = "recovery"

    @property
    def cycle_days(self) -> Optional[int]:
        if self is BillingModel.FLYWHEEL:
            return 90
        return None

    @property
    def cycle_months(self) -> Optional[int]:
        if self is BillingModel.RECOVERY:
            return 6
        return None

    @property
    def amount_range(self) -> Optional[tuple[Decimal, Decimal]]:
        if self is BillingModel.FLYWHEEL:
            return Decimal("1.99"), Decimal("4.95")
        if self is BillingModel.RECOVERY:
            return Decimal("29.99"), Decimal("99.99")
        return None

    def next_bill_date(self, from_date: datetime) -> Optional[datetime]:
        """Return the next due date after ``from_date``; legacy profiles have no cadence."""
        if self.cycle_days:
            return from_date + timedelta(days=self.cycle_days)
        if self.cycle_months:
            return add_months(from_date, self.cycle_months)
        return None

    @classmethod
    def from_amount(cls, amount: Decimal) -> "BillingModel":
        for model in (cls.FLYWHEEL, cls.RECOVERY):
            low, high = model.amount_range
            if low <= amount <= high:
                return model
        return cls.LEGACY


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class DebtorStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RECOVERED = "recovered"
    FAILED = "failed"


class ValidationStatus(Enum):
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"


class VerificationStatus(Enum):
    """Debtor-level payee verification state.

    ``failed`` is terminal (the payee did not verify); ``error`` is retried
    by a later dispatch run.
    """
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"
    ERROR = "error"


class AttemptStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    CHARGEBACKED = "chargebacked"
    ERROR = "error"
    VOIDED = "voided"


class SkipReason(Enum):
    """Why an IBAN is currently barred from billing, in priority order."""
    BLACKLISTED = "blacklisted"
    CHARGEBACKED = "chargebacked"
    ALREADY_RECOVERED = "already_recovered"
    RECENTLY_ATTEMPTED = "recently_attempted"


class VerificationResult(Enum):
    VERIFIED = "verified"
    LIKELY_VERIFIED = "likely_verified"
    INCONCLUSIVE = "inconclusive"
    MISMATCH = "mismatch"
    REJECTED = "rejected"


class NameMatch(Enum):
    YES = "yes"
    PARTIAL = "partial"
    NO = "no"
    UNAVAILABLE = "unavailable"
    ERROR = "error"


class JobKind(Enum):
    """Pipeline phase; the value doubles as lock namespace and chunk-size key."""
    VALIDATION = "validation"
    VERIFICATION = "verification"
    BILLING = "billing"

    @property
    def label(self) -> str:
        return self.value.capitalize()


@dataclass(frozen=True)
class Skip:
    """A classified non-eligibility outcome. Not an error."""

    reason: SkipReason
    permanent: bool
    days_ago: Optional[int] = None
    last_status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"reason": self.reason.value, "permanent": self.permanent}
        if self.days_ago is not None:
            data["days_ago"] = self.days_ago
        if self.last_status is not None:
            data["last_status"] = self.last_status
        return data


@dataclass(frozen=True)
class BankLookupResult:
    """Bank metadata for an IBAN as reported by a bank directory."""

    success: bool
    bank_name: Optional[str] = None
    bic: Optional[str] = None
    sdd_supported: bool = False
    country: Optional[str] = None
    source: str = "unknown"
    error: Optional[str] = None


@dataclass(frozen=True)
class NameMatchSignal:
    """Outcome of an external payee-name verification."""

    match: NameMatch
    score: Optional[int] = None
    valid: Optional[bool] = None
    bic: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_conclusive(self) -> bool:
        return self.match in (NameMatch.YES, NameMatch.PARTIAL, NameMatch.NO)


@dataclass(frozen=True)
class ScoreOutcome:
    """Result of a pure score calculation."""

    score: int
    result: VerificationResult
    breakdown: Dict[str, int]
    name_match: Optional[NameMatch] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "result": self.result.value,
            "breakdown": dict(self.breakdown),
            "name_match": self.name_match.value if self.name_match else None,
        }


@dataclass
class VerificationRecord:
    """One persisted payee-verification run."""

    id: int
    debtor_id: int
    iban_hash: Optional[str]
    iban_masked: Optional[str]
    score: int
    result: VerificationResult
    bank_name: Optional[str] = None
    bic: Optional[str] = None
    country: Optional[str] = None
    breakdown: Dict[str, int] = field(default_factory=dict)
    name_match: Optional[NameMatch] = None
    from_cache: bool = False
    cached_from: Optional[int] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "debtor_id": self.debtor_id,
            "iban_masked": self.iban_masked,
            "score": self.score,
            "result": self.result.value,
            "bank_name": self.bank_name,
            "bic": self.bic,
            "country": self.country,
            "breakdown": dict(self.breakdown),
            "name_match": self.name_match.value if self.name_match else None,
            "from_cache": self.from_cache,
            "cached_from": self.cached_from,
        }


@dataclass
class PhaseReport:
    """Outcome of one dispatch phase for one billing model."""

    model: str
    kind: JobKind
    candidates: int = 0
    dedup_skipped: int = 0
    lock_contended: int = 0
    lock_errors: int = 0
    dispatched_ids: List[int] = field(default_factory=list)
    chunks: int = 0
    batch_name: Optional[str] = None
    batch_id: Optional[str] = None

    @property
    def dispatched(self) -> int:
        return len(self.dispatched_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "phase": self.kind.value,
            "candidates": self.candidates,
            "dedup_skipped": self.dedup_skipped,
            "lock_contended": self.lock_contended,
            "lock_errors": self.lock_errors,
            "dispatched": self.dispatched,
            "chunks": self.chunks,
            "batch_name": self.batch_name,
            "batch_id": self.batch_id,
        }


@dataclass
class DispatchReport:
    """Outcome of one dispatch invocation across models and phases."""

    phases: List[PhaseReport] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def add_error(self, error: str) -> None:
        self.errors.append(error)

    def phase(self, model: str, kind: JobKind) -> Optional[PhaseReport]:
        for report in self.phases:
            if report.model == model and report.kind is kind:
                return report
        return None

    @property
    def total_dispatched(self) -> int:
        return sum(p.dispatched for p in self.phases)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phases": [p.to_dict() for p in self.phases],
            "total_dispatched": self.total_dispatched,
            "errors": self.errors,
        }


@dataclass
class ChunkResult:
    """Per-record outcome counts of one chunk job."""

    kind: JobKind
    chunk_index: int
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def add_error(self, debtor_id: int, error: str) -> None:
        self.failed += 1
        self.errors.append(f"{debtor_id}: {error}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "chunk_index": self.chunk_index,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": self.errors,
        }


@dataclass(frozen=True)
class BicStats:
    bic: str
    approved: int
    chargebacked: int

    @property
    def total(self) -> int:
        return self.approved + self.chargebacked

    @property
    def cb_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.chargebacked / self.total * 100, 2)


@dataclass(frozen=True)
class BicDecision:
    """A BIC the auto-blacklist scan decided to block."""

    stats: BicStats
    rule: str
    written: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bic": self.stats.bic,
            "approved": self.stats.approved,
            "chargebacked": self.stats.chargebacked,
            "total": self.stats.total,
            "cb_rate": self.stats.cb_rate,
            "rule": self.rule,
            "written": self.written,
        }


@dataclass
class AutoBlacklistReport:
    window_days: int
    dry_run: bool
    evaluated: int = 0
    added: List[BicDecision] = field(default_factory=list)
    already_blacklisted: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window_days": self.window_days,
            "dry_run": self.dry_run,
            "evaluated": self.evaluated,
            "added": [d.to_dict() for d in self.added],
            "already_blacklisted": self.already_blacklisted,
            "failed": self.failed,
            "errors": self.errors,
        }


@dataclass
class BackfillReport:
    target: str
    dry_run: bool
    missing: int = 0
    updated: int = 0
    cached: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "dry_run": self.dry_run,
            "missing": self.missing,
            "updated": self.updated,
            "cached": self.cached,
            "skipped": self.skipped,
            "failed": self.failed,
        }
