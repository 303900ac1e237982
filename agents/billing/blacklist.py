"""General fraud blacklist keyed by IBAN, email or full name."""

from typing import Optional

from sqlalchemy import func, insert, select
from sqlalchemy.engine import Engine

from backend.apps.billing.tables import TABLES, BillingTables

from . import iban as iban_utils


class Blacklist:
    def __init__(self, engine: Engine, tables: BillingTables = TABLES):
        self.engine = engine
        self.tables = tables

    def add(
        self,
        iban: Optional[str] = None,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        bic: Optional[str] = None,
        reason: Optional[str] = None,
        source: str = "manual",
    ) -> int:
        if not (iban or email or (first_name and last_name)):
            raise ValueError("A blacklist entry needs an IBAN, an email or a full name")

        normalized = iban_utils.normalize(iban) if iban else None
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(self.tables.blacklists).values(
                    iban=normalized,
                    iban_hash=iban_utils.iban_hash(normalized) if normalized else None,
                    email=email.strip().lower() if email else None,
                    first_name=first_name.strip() if first_name else None,
                    last_name=last_name.strip() if last_name else None,
                    bic=bic,
                    reason=reason,
                    source=source,
                )
            )
        return result.inserted_primary_key[0]

    def is_iban_blacklisted(self, iban: str) -> bool:
        b = self.tables.blacklists
        return self._exists(select(b.c.id).where(b.c.iban_hash == iban_utils.iban_hash(iban)))

    def is_email_blacklisted(self, email: str) -> bool:
        b = self.tables.blacklists
        return self._exists(select(b.c.id).where(b.c.email == email.strip().lower()))

    def is_name_blacklisted(self, first_name: str, last_name: str) -> bool:
        b = self.tables.blacklists
        return self._exists(
            select(b.c.id)
            .where(func.lower(b.c.first_name) == first_name.strip().lower())
            .where(func.lower(b.c.last_name) == last_name.strip().lower())
        )

    def _exists(self, stmt) -> bool:
        with self.engine.begin() as conn:
            return conn.execute(stmt.limit(1)).fetchone() is not None
