"""Billing agent - eligibility and fraud prevention for recurring SEPA debits.

Decides which debtors may advance through validation, payee verification
and billing, dispatches the work to Celery workers under per-debtor locks,
and maintains a BIC blacklist derived from chargeback statistics.

Key Components:
- Config: explicit configuration value objects built from settings
- Deduplication: priority-ordered skip rules keyed by IBAN hash
- Scoring: payee-verification score and result bands
- Dispatch: three-phase candidate selection, locking and chunking
- BIC blacklist: manual entries and the statistical auto-blacklist
- Backfill: typed targets filling missing BICs
"""

__version__ = "1.0.0"

from .bic_blacklist import BicAutoBlacklist, BicBlacklist
from .config import PipelineConfig
from .deduplication import DeduplicationEngine
from .dispatch import BillingDispatcher
from .dto import (
    JobKind,
    Skip,
    SkipReason,
    VerificationResult,
)
from .scoring import PayeeVerificationScorer

__all__ = [
    "PipelineConfig",
    "DeduplicationEngine",
    "PayeeVerificationScorer",
    "BillingDispatcher",
    "BicBlacklist",
    "BicAutoBlacklist",
    "JobKind",
    "Skip",
    "SkipReason",
    "VerificationResult",
]
