"""Recurring billing dispatch.

For each billing model three phases run in sequence:

    validation    profile due, debtor not yet valid, passes deduplication
    verification  profile due, debtor valid, payee verification missing/pending/errored
    billing       debtor valid and verified, profile due, under lifetime cap

Every phase selects candidates, claims a dispatch lock per debtor, splits
the claimed IDs into fixed-size chunks and submits them as one named batch.
Debtors whose lock is held by a concurrent run are deferred, not failed.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from backend.apps.billing.repository import BillingRepository, ensure_utc
from backend.core.locks import LockManager, LockStoreError
from backend.core.logging import get_logger
from backend.core.observability import metrics
from backend.core.queue import JobDescriptor, JobQueue, JobQueueError

from . import predicates
from .config import DispatchConfig
from .deduplication import DeduplicationEngine
from .dto import DispatchReport, JobKind, PhaseReport

logger = get_logger(__name__)

TASK_NAMES = {
    JobKind.VALIDATION: "agents.billing.tasks.process_validation_chunk",
    JobKind.VERIFICATION: "agents.billing.tasks.process_verification_chunk",
    JobKind.BILLING: "agents.billing.tasks.process_billing_chunk",
}


def chunked(items: Sequence[int], size: int) -> List[List[int]]:
    if size < 1:
        raise ValueError("chunk size must be positive")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def batch_name(kind: JobKind, model: str) -> str:
    return f"Recurring {kind.label} ({model})"


class BillingDispatcher:
    def __init__(
        self,
        repository: BillingRepository,
        deduplication: DeduplicationEngine,
        locks: LockManager,
        queue: JobQueue,
        config: Optional[DispatchConfig] = None,
    ):
        self.repository = repository
        self.deduplication = deduplication
        self.locks = locks
        self.queue = queue
        self.config = config or DispatchConfig()

    def run(
        self,
        models: Optional[Iterable[str]] = None,
        phases: Optional[Iterable[JobKind]] = None,
        now: Optional[datetime] = None,
        dry_run: bool = False,
    ) -> DispatchReport:
        """Run all phases for every configured billing model."""
        started = time.time()
        now = ensure_utc(now) if now else datetime.now(timezone.utc)
        report = DispatchReport()
        selected_phases = list(phases) if phases is not None else list(JobKind)

        for model in (list(models) if models is not None else self.config.models):
            for kind in selected_phases:
                try:
                    report.phases.append(self.run_phase(model, kind, now, dry_run=dry_run))
                except (SQLAlchemyError, JobQueueError) as e:
                    logger.error(
                        "dispatch_phase_failed",
                        extra={"model": model, "phase": kind.value, "error": str(e)},
                    )
                    report.add_error(f"{model}/{kind.value}: {e}")

        metrics.observe_duration(started, "dispatch_duration_ms")
        logger.info(
            "dispatch_completed",
            extra={"total_dispatched": report.total_dispatched, "errors": len(report.errors)},
        )
        return report

    def candidate_conditions(self, kind: JobKind, now: datetime) -> list:
        tables = self.repository.tables
        if kind is JobKind.VALIDATION:
            return [
                predicates.profile_is_due(now, tables),
                predicates.debtor_not_validated(tables),
            ]
        if kind is JobKind.VERIFICATION:
            return [
                predicates.profile_is_due(now, tables),
                predicates.debtor_is_valid(tables),
                predicates.debtor_awaiting_verification(tables),
            ]
        return [
            predicates.debtor_is_valid(tables),
            predicates.debtor_is_verified(tables),
            predicates.profile_is_due(now, tables),
            predicates.profile_under_lifetime_cap(self.config.max_lifetime_amount, tables),
        ]

    def run_phase(self, model: str, kind: JobKind, now: datetime, dry_run: bool = False) -> PhaseReport:
        report = PhaseReport(model=model, kind=kind)
        candidates = self.repository.candidate_ids(model, self.candidate_conditions(kind, now))
        report.candidates = len(candidates)
        metrics.increment_dispatch_candidates(kind.value, model, len(candidates))

        if kind is JobKind.VALIDATION and candidates:
            skips = self.deduplication.check_batch([h for _, h in candidates if h], now=now)
            report.dedup_skipped = sum(1 for _, h in candidates if h in skips)
            candidates = [(debtor_id, h) for debtor_id, h in candidates if h not in skips]

        debtor_ids = [debtor_id for debtor_id, _ in candidates]
        guarded = self.config.is_lock_guarded(kind)
        # Locks taken by this phase run; workers present it to release them
        token = uuid.uuid4().hex
        if guarded:
            debtor_ids = self._claim(kind, debtor_ids, report, token, dry_run)
            metrics.increment_dispatch_locked(kind.value, model, len(debtor_ids))

        report.dispatched_ids = debtor_ids
        if not debtor_ids:
            logger.info("dispatch_phase_empty", extra=report.to_dict())
            return report

        chunks = chunked(debtor_ids, self.config.chunk_size(kind))
        jobs = []
        for index, chunk in enumerate(chunks):
            job_kwargs = {"debtor_ids": chunk, "chunk_index": index, "model": model}
            if guarded:
                job_kwargs["lock_token"] = token
            jobs.append(JobDescriptor(TASK_NAMES[kind], job_kwargs))
        report.chunks = len(chunks)
        report.batch_name = batch_name(kind, model)

        if dry_run:
            logger.info("dispatch_phase_dry_run", extra=report.to_dict())
            return report

        try:
            handle = self.queue.dispatch_batch(
                report.batch_name, jobs, allow_failures=True, queue=self.config.queue
            )
        except Exception:
            if guarded:
                self._release(kind, debtor_ids, token)
            raise

        report.batch_id = handle.id
        metrics.increment_dispatch_chunks(kind.value, len(chunks))
        logger.info("dispatch_phase_completed", extra=report.to_dict())
        return report

    def _claim(
        self,
        kind: JobKind,
        debtor_ids: Sequence[int],
        report: PhaseReport,
        token: str,
        dry_run: bool = False,
    ) -> List[int]:
        """Claim a lock per debtor; in dry-run only probe whether one is held."""
        claimed: List[int] = []
        for debtor_id in debtor_ids:
            key = self.config.lock_key(kind, debtor_id)
            try:
                if dry_run:
                    acquired = not self.locks.exists(key)
                else:
                    acquired = self.locks.try_acquire(key, self.config.lock_ttl_seconds, token)
            except LockStoreError as e:
                report.lock_errors += 1
                logger.warning("dispatch_lock_error", extra={"key": key, "error": str(e)})
                continue
            if acquired:
                claimed.append(debtor_id)
            else:
                report.lock_contended += 1

        if report.lock_contended:
            metrics.increment_lock_contention(kind.value, report.lock_contended)
        return claimed

    def _release(self, kind: JobKind, debtor_ids: Sequence[int], token: str) -> None:
        for debtor_id in debtor_ids:
            self.locks.release(self.config.lock_key(kind, debtor_id), token)
