"""Chunk workers for the three pipeline phases.

Each worker processes its debtor IDs one by one: a failing record is
logged and counted, never allowed to stop its siblings. When the chunk
finishes it releases the dispatch locks still owned by its lock token.
"""

from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from backend.apps.billing.repository import BillingRepository, DebtorRecord
from backend.core.locks import LockManager
from backend.core.logging import get_logger
from backend.core.observability import metrics

from .billing import BillingProcessor
from .config import DispatchConfig
from .dto import ChunkResult, JobKind
from .errors import PersistenceError, RecordValidationError
from .scoring import PayeeVerificationScorer
from .validation import DebtorValidator

logger = get_logger(__name__)

# Returns True when the record was processed, False when it was skipped
RecordHandler = Callable[[DebtorRecord], bool]


def run_chunk(
    kind: JobKind,
    debtor_ids: Sequence[int],
    chunk_index: int,
    repository: BillingRepository,
    handler: RecordHandler,
    locks: Optional[LockManager] = None,
    config: Optional[DispatchConfig] = None,
    breaker_threshold: Optional[int] = None,
    lock_token: Optional[str] = None,
) -> ChunkResult:
    """Process ``debtor_ids`` one by one, then release the dispatch locks held by ``lock_token``.

    Without a token the locks are left to expire on their TTL.
    """
    config = config or DispatchConfig()
    result = ChunkResult(kind=kind, chunk_index=chunk_index)
    consecutive_failures = 0

    try:
        debtors = {d.id: d for d in repository.get_debtors(debtor_ids)}
        for position, debtor_id in enumerate(debtor_ids):
            debtor = debtors.get(debtor_id)
            if debtor is None:
                result.skipped += 1
                continue

            try:
                if handler(debtor):
                    result.processed += 1
                else:
                    result.skipped += 1
                consecutive_failures = 0
            except RecordValidationError as e:
                result.skipped += 1
                consecutive_failures = 0
                logger.warning(
                    "chunk_record_invalid",
                    extra={"kind": kind.value, "debtor_id": debtor_id, "errors": e.errors},
                )
            except SQLAlchemyError as e:
                error = PersistenceError(f"{type(e).__name__}: {e}")
                result.add_error(debtor_id, str(error))
                consecutive_failures += 1
                logger.error(
                    "chunk_record_not_persisted",
                    extra={"kind": kind.value, "debtor_id": debtor_id, "error": str(error)},
                )
            except Exception as e:
                result.add_error(debtor_id, str(e))
                consecutive_failures += 1
                logger.error(
                    "chunk_record_failed",
                    extra={"kind": kind.value, "debtor_id": debtor_id, "error": str(e)},
                )

            if breaker_threshold and consecutive_failures >= breaker_threshold:
                remaining = len(debtor_ids) - position - 1
                result.skipped += remaining
                logger.error(
                    "chunk_circuit_open",
                    extra={"kind": kind.value, "chunk_index": chunk_index, "remaining": remaining},
                )
                break
    finally:
        if locks is not None and lock_token and config.is_lock_guarded(kind):
            for debtor_id in debtor_ids:
                locks.release(config.lock_key(kind, debtor_id), lock_token)

    metrics.increment_chunk_records(kind.value, "processed", result.processed)
    metrics.increment_chunk_records(kind.value, "skipped", result.skipped)
    metrics.increment_chunk_records(kind.value, "failed", result.failed)
    logger.info("chunk_completed", extra=result.to_dict())
    return result


def run_validation_chunk(
    debtor_ids: Sequence[int],
    chunk_index: int,
    repository: BillingRepository,
    validator: DebtorValidator,
    locks: Optional[LockManager] = None,
    config: Optional[DispatchConfig] = None,
    lock_token: Optional[str] = None,
) -> ChunkResult:
    def handle(debtor: DebtorRecord) -> bool:
        validator.validate_and_update(debtor)
        return True

    return run_chunk(
        JobKind.VALIDATION, debtor_ids, chunk_index, repository, handle, locks, config, lock_token=lock_token
    )


def run_verification_chunk(
    debtor_ids: Sequence[int],
    chunk_index: int,
    repository: BillingRepository,
    scorer: PayeeVerificationScorer,
    locks: Optional[LockManager] = None,
    config: Optional[DispatchConfig] = None,
    force_refresh: bool = False,
    lock_token: Optional[str] = None,
) -> ChunkResult:
    def handle(debtor: DebtorRecord) -> bool:
        return scorer.verify(debtor, force_refresh=force_refresh) is not None

    return run_chunk(
        JobKind.VERIFICATION, debtor_ids, chunk_index, repository, handle, locks, config, lock_token=lock_token
    )


def run_billing_chunk(
    debtor_ids: Sequence[int],
    chunk_index: int,
    repository: BillingRepository,
    processor: BillingProcessor,
    locks: Optional[LockManager] = None,
    config: Optional[DispatchConfig] = None,
    now: Optional[datetime] = None,
    lock_token: Optional[str] = None,
) -> ChunkResult:
    now = now or datetime.now(timezone.utc)

    def handle(debtor: DebtorRecord) -> bool:
        return processor.charge(debtor, now) is not None

    return run_chunk(
        JobKind.BILLING,
        debtor_ids,
        chunk_index,
        repository,
        handle,
        locks,
        config,
        breaker_threshold=processor.config.circuit_breaker_threshold,
        lock_token=lock_token,
    )
