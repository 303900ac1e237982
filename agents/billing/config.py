"""Configuration value objects for the billing pipeline.

Engines receive these explicitly through their constructors; only
``PipelineConfig.from_settings`` reads the process-wide settings.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

from .dto import JobKind, VerificationResult


def parse_csv(value: str, upper: bool = False) -> tuple[str, ...]:
    items = [part.strip() for part in (value or "").split(",")]
    return tuple(item.upper() if upper else item for item in items if item)


def parse_chunk_sizes(value: str) -> Dict[str, int]:
    """Parse ``kind=size`` pairs, e.g. ``validation=100,billing=50``."""
    sizes: Dict[str, int] = {}
    for item in parse_csv(value):
        kind, sep, size = item.partition("=")
        if not sep:
            raise ValueError(f"Invalid chunk size entry: {item!r}")
        size_value = int(size)
        if size_value < 1:
            raise ValueError(f"Chunk size must be positive: {item!r}")
        sizes[kind.strip()] = size_value
    return sizes


@dataclass(frozen=True)
class DeduplicationConfig:
    cooldown_days: int = 30


@dataclass(frozen=True)
class ScoreWeights:
    """Points per dimension; the five weights sum to 100."""

    iban_valid: int = 20
    bank_identified: int = 25
    sepa_sdd: int = 25
    country_supported: int = 15
    name_match: int = 15

    def __post_init__(self):
        total = (
            self.iban_valid + self.bank_identified + self.sepa_sdd
            + self.country_supported + self.name_match
        )
        if total != 100:
            raise ValueError(f"Score weights must sum to 100, got {total}")


@dataclass(frozen=True)
class ScoreBands:
    """Lower cut points (inclusive) of each result band."""

    verified: int = 80
    likely_verified: int = 60
    inconclusive: int = 40
    mismatch: int = 20

    def __post_init__(self):
        if not 100 >= self.verified > self.likely_verified > self.inconclusive > self.mismatch > 0:
            raise ValueError("Score bands must be strictly descending within (0, 100]")

    def classify(self, score: int) -> VerificationResult:
        if score >= self.verified:
            return VerificationResult.VERIFIED
        if score >= self.likely_verified:
            return VerificationResult.LIKELY_VERIFIED
        if score >= self.inconclusive:
            return VerificationResult.INCONCLUSIVE
        if score >= self.mismatch:
            return VerificationResult.MISMATCH
        return VerificationResult.REJECTED


@dataclass(frozen=True)
class ScoringConfig:
    weights: ScoreWeights = field(default_factory=ScoreWeights)
    bands: ScoreBands = field(default_factory=ScoreBands)
    # Name match is only requested once the structural score reaches this
    bav_min_score: int = 60
    bav_enabled: bool = False
    bav_countries: frozenset = frozenset({"DE", "AT", "NL", "FR", "ES", "IT", "BE", "LU", "IE", "PT", "FI"})
    cache_days: int = 30


@dataclass(frozen=True)
class DispatchConfig:
    lock_ttl_seconds: int = 1800
    chunk_sizes: Dict[str, int] = field(
        default_factory=lambda: {"validation": 100, "verification": 50, "billing": 50}
    )
    default_chunk_size: int = 50
    queue: str = "billing"
    models: tuple[str, ...] = ("flywheel", "recovery")
    lock_billing_phase: bool = True
    max_lifetime_amount: Decimal = Decimal("750")

    def chunk_size(self, kind: JobKind) -> int:
        return self.chunk_sizes.get(kind.value, self.default_chunk_size)

    def lock_key(self, kind: JobKind, debtor_id: int) -> str:
        return f"billing:lock:{kind.value}:{debtor_id}"

    def is_lock_guarded(self, kind: JobKind) -> bool:
        return kind is not JobKind.BILLING or self.lock_billing_phase


@dataclass(frozen=True)
class AutoBlacklistConfig:
    window_days: int = 30
    excluded_reason_codes: frozenset = frozenset()


@dataclass(frozen=True)
class BillingConfig:
    max_lifetime_amount: Decimal = Decimal("750")
    circuit_breaker_threshold: int = 10


@dataclass(frozen=True)
class PipelineConfig:
    deduplication: DeduplicationConfig = field(default_factory=DeduplicationConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    auto_blacklist: AutoBlacklistConfig = field(default_factory=AutoBlacklistConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)

    @classmethod
    def from_settings(cls, settings: Optional[object] = None) -> "PipelineConfig":
        """Build the pipeline configuration from environment-backed settings.

        Args:
            settings: Settings object; defaults to ``backend.core.config.settings``

        Returns:
            Fully populated configuration
        """
        if settings is None:
            from backend.core.config import settings as default_settings
            settings = default_settings

        max_lifetime = Decimal(str(settings.MAX_LIFETIME_AMOUNT))
        return cls(
            deduplication=DeduplicationConfig(cooldown_days=settings.BILLING_COOLDOWN_DAYS),
            scoring=ScoringConfig(
                bands=ScoreBands(
                    verified=settings.VOP_BAND_VERIFIED,
                    likely_verified=settings.VOP_BAND_LIKELY_VERIFIED,
                    inconclusive=settings.VOP_BAND_INCONCLUSIVE,
                    mismatch=settings.VOP_BAND_MISMATCH,
                ),
                bav_min_score=settings.VOP_BAV_MIN_SCORE,
                bav_enabled=settings.BAV_ENABLED,
                bav_countries=frozenset(parse_csv(settings.BAV_SUPPORTED_COUNTRIES, upper=True)),
                cache_days=settings.VOP_CACHE_DAYS,
            ),
            dispatch=DispatchConfig(
                lock_ttl_seconds=settings.DISPATCH_LOCK_TTL_SECONDS,
                chunk_sizes=parse_chunk_sizes(settings.DISPATCH_CHUNK_SIZES),
                default_chunk_size=settings.DISPATCH_DEFAULT_CHUNK_SIZE,
                queue=settings.BILLING_QUEUE,
                models=parse_csv(settings.DISPATCH_MODELS),
                lock_billing_phase=settings.DISPATCH_LOCK_BILLING_PHASE,
                max_lifetime_amount=max_lifetime,
            ),
            auto_blacklist=AutoBlacklistConfig(
                window_days=settings.BIC_AUTO_WINDOW_DAYS,
                excluded_reason_codes=frozenset(parse_csv(settings.EXCLUDED_CB_REASON_CODES, upper=True)),
            ),
            billing=BillingConfig(
                max_lifetime_amount=max_lifetime,
                circuit_breaker_threshold=settings.BILLING_CIRCUIT_BREAKER_THRESHOLD,
            ),
        )
