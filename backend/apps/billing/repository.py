"""Repository helpers over the billing tables.

Thin SQLAlchemy Core wrapper: each call opens its own transaction via
``engine.begin()`` so chunk workers commit record by record.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine

from backend.apps.billing.tables import TABLES, BillingTables, utcnow


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes returned by drivers without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class ProfileRecord:
    id: int
    iban_hash: str
    billing_model: str
    is_active: bool
    billing_amount: Optional[Decimal]
    currency: str
    lifetime_charged_amount: Decimal
    next_bill_at: Optional[datetime]
    last_billed_at: Optional[datetime]
    last_success_at: Optional[datetime]

    @classmethod
    def from_row(cls, row) -> "ProfileRecord":
        return cls(
            id=row.id,
            iban_hash=row.iban_hash,
            billing_model=row.billing_model,
            is_active=bool(row.is_active),
            billing_amount=Decimal(str(row.billing_amount)) if row.billing_amount is not None else None,
            currency=row.currency,
            lifetime_charged_amount=Decimal(str(row.lifetime_charged_amount or 0)),
            next_bill_at=ensure_utc(row.next_bill_at),
            last_billed_at=ensure_utc(row.last_billed_at),
            last_success_at=ensure_utc(row.last_success_at),
        )


@dataclass
class DebtorRecord:
    id: int
    upload_id: Optional[int]
    debtor_profile_id: Optional[int]
    iban: Optional[str]
    iban_hash: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    email: Optional[str]
    country: Optional[str]
    amount: Optional[Decimal]
    currency: str
    status: str
    validation_status: str
    verification_status: Optional[str]
    bav_selected: bool
    bic: Optional[str]

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p).strip()

    @classmethod
    def from_row(cls, row) -> "DebtorRecord":
        return cls(
            id=row.id,
            upload_id=row.upload_id,
            debtor_profile_id=row.debtor_profile_id,
            iban=row.iban,
            iban_hash=row.iban_hash,
            first_name=row.first_name,
            last_name=row.last_name,
            email=row.email,
            country=row.country,
            amount=Decimal(str(row.amount)) if row.amount is not None else None,
            currency=row.currency,
            status=row.status,
            validation_status=row.validation_status,
            verification_status=row.verification_status,
            bav_selected=bool(row.bav_selected),
            bic=row.bic,
        )


class BillingRepository:
    """Reads and writes debtors, profiles and billing attempts."""

    def __init__(self, engine: Engine, tables: BillingTables = TABLES):
        self.engine = engine
        self.tables = tables

    # Debtors -----------------------------------------------------------

    def get_debtor(self, debtor_id: int) -> Optional[DebtorRecord]:
        t = self.tables.debtors
        with self.engine.begin() as conn:
            row = conn.execute(select(t).where(t.c.id == debtor_id)).fetchone()
        return DebtorRecord.from_row(row) if row else None

    def get_debtors(self, debtor_ids: Sequence[int]) -> list[DebtorRecord]:
        if not debtor_ids:
            return []
        t = self.tables.debtors
        with self.engine.begin() as conn:
            rows = conn.execute(select(t).where(t.c.id.in_(list(debtor_ids))).order_by(t.c.id)).fetchall()
        return [DebtorRecord.from_row(r) for r in rows]

    def add_debtor(self, **values: Any) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(insert(self.tables.debtors).values(**values))
        return result.inserted_primary_key[0]

    def update_debtor(self, debtor_id: int, **values: Any) -> None:
        t = self.tables.debtors
        with self.engine.begin() as conn:
            conn.execute(update(t).where(t.c.id == debtor_id).values(**values))

    def candidate_ids(self, model: str, conditions: Iterable) -> list[tuple[int, Optional[str]]]:
        """Return ``(debtor_id, iban_hash)`` for debtors of ``model`` matching all conditions."""
        d = self.tables.debtors
        p = self.tables.debtor_profiles
        stmt = (
            select(d.c.id, d.c.iban_hash)
            .select_from(d.join(p, d.c.debtor_profile_id == p.c.id))
            .where(p.c.billing_model == model)
        )
        for condition in conditions:
            stmt = stmt.where(condition)
        with self.engine.begin() as conn:
            rows = conn.execute(stmt.order_by(d.c.id)).fetchall()
        return [(r.id, r.iban_hash) for r in rows]

    # Profiles ----------------------------------------------------------

    def get_profile(self, profile_id: int) -> Optional[ProfileRecord]:
        t = self.tables.debtor_profiles
        with self.engine.begin() as conn:
            row = conn.execute(select(t).where(t.c.id == profile_id)).fetchone()
        return ProfileRecord.from_row(row) if row else None

    def add_profile(self, **values: Any) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(insert(self.tables.debtor_profiles).values(**values))
        return result.inserted_primary_key[0]

    def update_profile(self, profile_id: int, **values: Any) -> None:
        t = self.tables.debtor_profiles
        with self.engine.begin() as conn:
            conn.execute(update(t).where(t.c.id == profile_id).values(**values))

    # Billing attempts --------------------------------------------------

    def add_attempt(self, **values: Any) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(insert(self.tables.billing_attempts).values(**values))
        return result.inserted_primary_key[0]

    def update_attempt(self, attempt_id: int, **values: Any) -> None:
        t = self.tables.billing_attempts
        with self.engine.begin() as conn:
            conn.execute(update(t).where(t.c.id == attempt_id).values(**values))

    def count_attempts(self, debtor_id: int) -> int:
        t = self.tables.billing_attempts
        with self.engine.begin() as conn:
            rows = conn.execute(select(t.c.id).where(t.c.debtor_id == debtor_id)).fetchall()
        return len(rows)

    def mark_chargebacked(
        self,
        attempt_id: int,
        reason_code: Optional[str] = None,
        reason_description: Optional[str] = None,
        chargebacked_at: Optional[datetime] = None,
    ) -> bool:
        """Mark an attempt chargebacked and deduct it from the profile's lifetime revenue.

        Returns False when the attempt does not exist or was already chargebacked.
        """
        a = self.tables.billing_attempts
        p = self.tables.debtor_profiles
        with self.engine.begin() as conn:
            row = conn.execute(
                select(a.c.status, a.c.amount, a.c.debtor_profile_id).where(a.c.id == attempt_id)
            ).fetchone()
            if row is None or row.status == "chargebacked":
                return False

            conn.execute(
                update(a)
                .where(a.c.id == attempt_id)
                .values(
                    status="chargebacked",
                    chargeback_reason_code=reason_code,
                    chargeback_reason_description=reason_description,
                    chargebacked_at=chargebacked_at or utcnow(),
                )
            )

            if row.status == "approved" and row.debtor_profile_id is not None:
                profile = conn.execute(
                    select(p.c.lifetime_charged_amount).where(p.c.id == row.debtor_profile_id)
                ).fetchone()
                if profile is not None:
                    current = Decimal(str(profile.lifetime_charged_amount or 0))
                    remaining = max(Decimal("0"), current - Decimal(str(row.amount)))
                    conn.execute(
                        update(p)
                        .where(p.c.id == row.debtor_profile_id)
                        .values(lifetime_charged_amount=remaining)
                    )
        return True


__all__ = [
    "BillingRepository",
    "DebtorRecord",
    "ProfileRecord",
    "ensure_utc",
]
