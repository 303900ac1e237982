"""Tests for the three-phase dispatch orchestrator."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from agents.billing.config import DispatchConfig
from agents.billing.deduplication import DeduplicationEngine
from agents.billing.dispatch import TASK_NAMES, BillingDispatcher, batch_name, chunked
from agents.billing.dto import JobKind
from backend.core.locks import LockStoreError
from backend.core.observability import metrics
from backend.core.queue import JobQueueError
from tests.billing.fakes import NOW, RecordingJobQueue


@pytest.fixture
def config():
    return DispatchConfig()


@pytest.fixture
def make_dispatcher(engine, repo, locks, config):
    def _make(queue, lock_manager=None, dispatch_config=None):
        return BillingDispatcher(
            repo,
            DeduplicationEngine(engine),
            lock_manager or locks,
            queue,
            dispatch_config or config,
        )

    return _make


@pytest.fixture
def dispatcher(make_dispatcher, job_queue):
    return make_dispatcher(job_queue)


def _billable(make_debtor, **values):
    values.setdefault("validation_status", "valid")
    values.setdefault("verification_status", "verified")
    return make_debtor(**values)


class TestHelpers:
    def test_chunked(self):
        assert chunked(list(range(5)), 2) == [[0, 1], [2, 3], [4]]
        assert chunked([], 3) == []
        with pytest.raises(ValueError):
            chunked([1], 0)

    def test_batch_name(self):
        assert batch_name(JobKind.VALIDATION, "flywheel") == "Recurring Validation (flywheel)"
        assert batch_name(JobKind.BILLING, "recovery") == "Recurring Billing (recovery)"


class TestValidationPhase:
    def test_chunks_150_candidates_into_100_and_50(self, dispatcher, job_queue, locks, make_debtor):
        ids = [make_debtor() for _ in range(150)]

        report = dispatcher.run_phase("flywheel", JobKind.VALIDATION, NOW)

        assert report.candidates == 150
        assert report.dispatched == 150
        assert report.chunks == 2
        batch = job_queue.batches[0]
        assert batch.name == "Recurring Validation (flywheel)"
        assert batch.allow_failures is True
        assert batch.queue == "billing"
        assert [len(job.kwargs["debtor_ids"]) for job in batch.jobs] == [100, 50]
        assert [job.kwargs["chunk_index"] for job in batch.jobs] == [0, 1]
        assert all(job.task_name == TASK_NAMES[JobKind.VALIDATION] for job in batch.jobs)
        assert all(job.kwargs["model"] == "flywheel" for job in batch.jobs)
        assert sorted(job_queue.dispatched_ids()) == ids
        assert report.batch_id == batch.id
        tokens = {job.kwargs["lock_token"] for job in batch.jobs}
        assert len(tokens) == 1
        assert locks.owner(f"billing:lock:validation:{ids[0]}") in tokens

    def test_deduplication_filters_candidates(self, dispatcher, job_queue, make_debtor, add_attempt):
        clean = make_debtor()
        burned = make_debtor()
        add_attempt(burned, status="chargebacked")
        recent = make_debtor()
        add_attempt(recent, created_at=NOW - timedelta(days=2))

        report = dispatcher.run_phase("flywheel", JobKind.VALIDATION, NOW)

        assert report.candidates == 3
        assert report.dedup_skipped == 2
        assert job_queue.dispatched_ids() == [clean]

    def test_selects_only_due_unvalidated_debtors_of_model(self, dispatcher, job_queue, make_debtor):
        due = make_debtor()
        make_debtor(profile={"next_bill_at": NOW + timedelta(days=1)})
        make_debtor(profile={"is_active": False})
        make_debtor(validation_status="valid")
        make_debtor(profile={"billing_model": "recovery"})
        past_due = make_debtor(profile={"next_bill_at": NOW - timedelta(days=1)})

        report = dispatcher.run_phase("flywheel", JobKind.VALIDATION, NOW)

        assert sorted(report.dispatched_ids) == [due, past_due]

    def test_empty_phase_dispatches_nothing(self, dispatcher, job_queue):
        report = dispatcher.run_phase("flywheel", JobKind.VALIDATION, NOW)
        assert report.dispatched == 0
        assert report.batch_name is None
        assert job_queue.batches == []


class TestVerificationPhase:
    def test_selects_missing_pending_and_errored(self, dispatcher, make_debtor):
        missing = make_debtor(validation_status="valid", verification_status=None)
        pending = make_debtor(validation_status="valid", verification_status="pending")
        errored = make_debtor(validation_status="valid", verification_status="error")
        make_debtor(validation_status="valid", verification_status="verified")
        make_debtor(validation_status="valid", verification_status="failed")
        make_debtor(validation_status="invalid")

        report = dispatcher.run_phase("flywheel", JobKind.VERIFICATION, NOW)

        assert sorted(report.dispatched_ids) == [missing, pending, errored]
        assert report.batch_name == "Recurring Verification (flywheel)"

    def test_verification_waits_for_due_profile(self, dispatcher, make_debtor):
        """Test debtors of profiles billed later are not verified ahead of time."""
        due = make_debtor(validation_status="valid")
        make_debtor(validation_status="valid", profile={"next_bill_at": NOW + timedelta(days=60)})
        make_debtor(validation_status="valid", profile={"is_active": False})

        assert dispatcher.run_phase("flywheel", JobKind.VERIFICATION, NOW).dispatched_ids == [due]


class TestBillingPhase:
    def test_selects_verified_due_under_cap(self, dispatcher, make_debtor):
        ok = _billable(make_debtor)
        _billable(make_debtor, verification_status="failed")
        _billable(make_debtor, profile={"lifetime_charged_amount": 750})
        _billable(make_debtor, profile={"next_bill_at": NOW + timedelta(days=3)})
        under_cap = _billable(make_debtor, profile={"lifetime_charged_amount": 745.05})

        report = dispatcher.run_phase("flywheel", JobKind.BILLING, NOW)

        assert sorted(report.dispatched_ids) == [ok, under_cap]

    def test_billing_is_lock_guarded_by_default(self, dispatcher, locks, make_debtor):
        debtor_id = _billable(make_debtor)

        first = dispatcher.run_phase("flywheel", JobKind.BILLING, NOW)
        second = dispatcher.run_phase("flywheel", JobKind.BILLING, NOW)

        assert first.dispatched_ids == [debtor_id]
        assert second.dispatched == 0
        assert second.lock_contended == 1
        assert locks.exists(f"billing:lock:billing:{debtor_id}")

    def test_unlocked_billing_when_disabled(self, make_dispatcher, job_queue, locks, make_debtor):
        dispatcher = make_dispatcher(job_queue, dispatch_config=DispatchConfig(lock_billing_phase=False))
        debtor_id = _billable(make_debtor)

        dispatcher.run_phase("flywheel", JobKind.BILLING, NOW)
        dispatcher.run_phase("flywheel", JobKind.BILLING, NOW)

        assert job_queue.dispatched_ids() == [debtor_id, debtor_id]
        assert locks.acquire_calls == 0
        assert all("lock_token" not in job.kwargs for batch in job_queue.batches for job in batch.jobs)


class TestLocking:
    def test_second_run_is_deferred(self, dispatcher, make_debtor):
        ids = [make_debtor() for _ in range(3)]

        first = dispatcher.run_phase("flywheel", JobKind.VALIDATION, NOW)
        second = dispatcher.run_phase("flywheel", JobKind.VALIDATION, NOW)

        assert first.dispatched_ids == ids
        assert second.dispatched == 0
        assert second.lock_contended == 3
        assert metrics.get_counter("dispatch_lock_contention_total", {"phase": "validation"}) == 3

    def test_lock_expires_after_ttl(self, dispatcher, locks, make_debtor):
        debtor_id = make_debtor()
        dispatcher.run_phase("flywheel", JobKind.VALIDATION, NOW)

        locks.advance(1801)

        assert dispatcher.run_phase("flywheel", JobKind.VALIDATION, NOW).dispatched_ids == [debtor_id]

    def test_concurrent_runs_never_share_a_debtor(self, make_dispatcher, locks, make_debtor):
        ids = [make_debtor() for _ in range(40)]
        queues = [RecordingJobQueue() for _ in range(4)]
        dispatchers = [make_dispatcher(q) for q in queues]

        with ThreadPoolExecutor(max_workers=4) as pool:
            reports = list(pool.map(lambda d: d.run_phase("flywheel", JobKind.VALIDATION, NOW), dispatchers))

        dispatched = [i for q in queues for i in q.dispatched_ids()]
        assert sorted(dispatched) == ids
        assert len(dispatched) == len(set(dispatched))
        assert sum(r.lock_contended for r in reports) == 3 * 40

    def test_phases_use_separate_lock_namespaces(self, dispatcher, locks, make_debtor):
        debtor_id = make_debtor(validation_status="valid")
        dispatcher.run_phase("flywheel", JobKind.VERIFICATION, NOW)
        assert locks.exists(f"billing:lock:verification:{debtor_id}")
        assert not locks.exists(f"billing:lock:validation:{debtor_id}")

    def test_lock_store_error_defers_debtor(self, make_dispatcher, job_queue, make_debtor):
        class BrokenLocks:
            def try_acquire(self, key, ttl_seconds, token):
                raise LockStoreError("connection refused")

            def exists(self, key):
                raise LockStoreError("connection refused")

            def release(self, key, token):
                return False

        make_debtor()
        report = make_dispatcher(job_queue, lock_manager=BrokenLocks()).run_phase("flywheel", JobKind.VALIDATION, NOW)

        assert report.lock_errors == 1
        assert report.dispatched == 0
        assert job_queue.batches == []

    def test_failed_submission_releases_locks(self, make_dispatcher, locks, make_debtor):
        debtor_id = make_debtor()
        dispatcher = make_dispatcher(RecordingJobQueue(fail=True))

        with pytest.raises(JobQueueError):
            dispatcher.run_phase("flywheel", JobKind.VALIDATION, NOW)

        assert not locks.exists(f"billing:lock:validation:{debtor_id}")


class TestDryRun:
    def test_dry_run_selects_without_side_effects(self, dispatcher, job_queue, locks, make_debtor):
        ids = [make_debtor() for _ in range(3)]

        report = dispatcher.run_phase("flywheel", JobKind.VALIDATION, NOW, dry_run=True)

        assert report.dispatched_ids == ids
        assert report.chunks == 1
        assert report.batch_name == "Recurring Validation (flywheel)"
        assert report.batch_id is None
        assert job_queue.batches == []
        assert locks.acquire_calls == 0

    def test_dry_run_reports_held_locks(self, dispatcher, locks, make_debtor):
        held = make_debtor()
        free = make_debtor()
        locks.try_acquire(f"billing:lock:validation:{held}", 60)

        report = dispatcher.run_phase("flywheel", JobKind.VALIDATION, NOW, dry_run=True)

        assert report.dispatched_ids == [free]
        assert report.lock_contended == 1


class TestRun:
    def test_runs_all_phases_for_configured_models(self, dispatcher, job_queue, make_debtor):
        make_debtor()
        make_debtor(profile={"billing_model": "recovery"})
        _billable(make_debtor)

        report = dispatcher.run(now=NOW)

        assert [(p.model, p.kind) for p in report.phases] == [
            ("flywheel", JobKind.VALIDATION),
            ("flywheel", JobKind.VERIFICATION),
            ("flywheel", JobKind.BILLING),
            ("recovery", JobKind.VALIDATION),
            ("recovery", JobKind.VERIFICATION),
            ("recovery", JobKind.BILLING),
        ]
        assert report.phase("flywheel", JobKind.VALIDATION).dispatched == 1
        assert report.phase("flywheel", JobKind.BILLING).dispatched == 1
        assert report.phase("recovery", JobKind.VALIDATION).dispatched == 1
        assert report.total_dispatched == 3
        assert report.errors == []
        assert metrics.get_counter("dispatch_duration_ms") == 1

    def test_model_and_phase_filters(self, dispatcher, make_debtor):
        make_debtor(profile={"billing_model": "recovery"})

        report = dispatcher.run(models=["recovery"], phases=[JobKind.VALIDATION], now=NOW)

        assert len(report.phases) == 1
        assert report.to_dict()["total_dispatched"] == 1

    def test_broker_failure_is_reported_and_run_continues(self, make_dispatcher, locks, make_debtor):
        flywheel = make_debtor()
        recovery = make_debtor(profile={"billing_model": "recovery"})

        report = make_dispatcher(RecordingJobQueue(fail=True)).run(phases=[JobKind.VALIDATION], now=NOW)

        assert [e.split(":")[0] for e in report.errors] == ["flywheel/validation", "recovery/validation"]
        assert not locks.exists(f"billing:lock:validation:{flywheel}")
        assert not locks.exists(f"billing:lock:validation:{recovery}")
