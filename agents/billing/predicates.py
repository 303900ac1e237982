"""Named eligibility predicates.

Each predicate exists twice: as a SQLAlchemy clause for candidate
selection and as a plain check for re-verification inside a worker.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import and_, or_, true
from sqlalchemy.sql.elements import ColumnElement

from backend.apps.billing.repository import DebtorRecord, ProfileRecord
from backend.apps.billing.tables import TABLES, BillingTables

from .dto import ValidationStatus, VerificationStatus

_AWAITING_VERIFICATION = (VerificationStatus.PENDING.value, VerificationStatus.ERROR.value)


# SQL clauses ---------------------------------------------------------------

def profile_is_due(now: datetime, tables: BillingTables = TABLES) -> ColumnElement:
    """Active and never billed or next bill date reached."""
    p = tables.debtor_profiles
    return and_(
        p.c.is_active == true(),
        or_(p.c.next_bill_at.is_(None), p.c.next_bill_at <= now),
    )


def profile_under_lifetime_cap(cap: Decimal, tables: BillingTables = TABLES) -> ColumnElement:
    p = tables.debtor_profiles
    return or_(p.c.lifetime_charged_amount.is_(None), p.c.lifetime_charged_amount < cap)


def debtor_not_validated(tables: BillingTables = TABLES) -> ColumnElement:
    return tables.debtors.c.validation_status != ValidationStatus.VALID.value


def debtor_is_valid(tables: BillingTables = TABLES) -> ColumnElement:
    return tables.debtors.c.validation_status == ValidationStatus.VALID.value


def debtor_awaiting_verification(tables: BillingTables = TABLES) -> ColumnElement:
    """No verification yet, or a pending/errored one that should be retried."""
    d = tables.debtors
    return or_(d.c.verification_status.is_(None), d.c.verification_status.in_(_AWAITING_VERIFICATION))


def debtor_is_verified(tables: BillingTables = TABLES) -> ColumnElement:
    return tables.debtors.c.verification_status == VerificationStatus.VERIFIED.value


# Plain checks ----------------------------------------------------------------

def is_due(profile: ProfileRecord, now: datetime) -> bool:
    return profile.is_active and (profile.next_bill_at is None or profile.next_bill_at <= now)


def is_under_lifetime_cap(profile: ProfileRecord, cap: Decimal) -> bool:
    return profile.lifetime_charged_amount is None or profile.lifetime_charged_amount < cap


def is_billable(
    debtor: DebtorRecord,
    profile: Optional[ProfileRecord],
    now: datetime,
    cap: Decimal,
) -> bool:
    return (
        profile is not None
        and debtor.validation_status == ValidationStatus.VALID.value
        and debtor.verification_status == VerificationStatus.VERIFIED.value
        and is_due(profile, now)
        and is_under_lifetime_cap(profile, cap)
    )
