"""Shared fixtures for billing pipeline tests."""

import itertools
from decimal import Decimal

import pytest
import sqlalchemy as sa

from agents.billing import iban as iban_utils
from backend.apps.billing.repository import BillingRepository
from backend.apps.billing.tables import create_schema
from backend.core.observability import metrics
from tests.billing.fakes import InMemoryLockManager, RecordingJobQueue


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset_metrics()
    yield
    metrics.reset_metrics()


@pytest.fixture
def engine(tmp_path):
    eng = sa.create_engine(f"sqlite:///{tmp_path / 'billing.db'}", future=True)
    create_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def repo(engine):
    return BillingRepository(engine)


@pytest.fixture
def locks():
    return InMemoryLockManager()


@pytest.fixture
def job_queue():
    return RecordingJobQueue()


@pytest.fixture
def make_debtor(repo):
    """Create a profile plus debtor; keyword overrides go to the debtor row.

    Pass ``debtor_profile_id`` to attach another debtor to an existing profile.
    """
    counter = itertools.count(1)

    def _make(iban=None, profile=None, **debtor_values):
        n = next(counter)
        iban_hash = iban_utils.iban_hash(iban) if iban else debtor_values.pop("iban_hash", f"hash-{n}")
        profile_id = debtor_values.pop("debtor_profile_id", None)
        if profile_id is None:
            profile_values = {
                "iban_hash": iban_hash,
                "billing_model": "flywheel",
                "is_active": True,
                "billing_amount": Decimal("4.95"),
                "lifetime_charged_amount": Decimal("0"),
                "next_bill_at": None,
            }
            profile_values.update(profile or {})
            profile_id = repo.add_profile(**profile_values)

        values = {
            "debtor_profile_id": profile_id,
            "iban": iban,
            "iban_hash": iban_hash,
            "first_name": "Max",
            "last_name": "Mustermann",
            "email": f"max{n}@example.com",
            "country": "DE",
            "amount": Decimal("4.95"),
            "status": "pending",
            "validation_status": "pending",
        }
        values.update(debtor_values)
        return repo.add_debtor(**values)

    return _make


@pytest.fixture
def add_attempt(repo):
    """Insert a billing attempt row for an existing debtor."""

    def _add(debtor_id, status="approved", created_at=None, **values):
        row = {
            "debtor_id": debtor_id,
            "amount": Decimal("4.95"),
            "status": status,
        }
        if created_at is not None:
            row["created_at"] = created_at
        row.update(values)
        return repo.add_attempt(**row)

    return _add
