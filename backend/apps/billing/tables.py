"""SQLAlchemy Core table definitions for the billing store."""

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.engine import Engine


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BillingTables:
    metadata: MetaData
    debtor_profiles: Table
    debtors: Table
    billing_attempts: Table
    blacklists: Table
    bic_blacklists: Table
    verification_records: Table


def get_tables(metadata: MetaData) -> BillingTables:
    """Return Table objects for the billing store bound to ``metadata``."""
    debtor_profiles = Table(
        "debtor_profiles",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("iban_hash", String(64), nullable=False, unique=True),
        Column("iban_masked", String(64)),
        Column("billing_model", String(16), nullable=False, default="legacy"),
        Column("is_active", Boolean, nullable=False, default=True),
        Column("billing_amount", Numeric(12, 2)),
        Column("currency", String(3), nullable=False, default="EUR"),
        Column("last_billed_at", DateTime(timezone=True)),
        Column("last_success_at", DateTime(timezone=True)),
        Column("lifetime_charged_amount", Numeric(12, 2), nullable=False, default=0),
        Column("next_bill_at", DateTime(timezone=True)),
        Column("created_at", DateTime(timezone=True), default=utcnow),
        Column("updated_at", DateTime(timezone=True), default=utcnow, onupdate=utcnow),
        extend_existing=True,
    )

    debtors = Table(
        "debtors",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("upload_id", Integer, index=True),
        Column("debtor_profile_id", Integer, ForeignKey("debtor_profiles.id"), index=True),
        Column("iban", String(64)),
        Column("iban_hash", String(64), index=True),
        Column("first_name", String(128)),
        Column("last_name", String(128)),
        Column("email", String(255)),
        Column("country", String(2)),
        Column("amount", Numeric(12, 2)),
        Column("currency", String(3), nullable=False, default="EUR"),
        Column("status", String(16), nullable=False, default="pending"),
        Column("validation_status", String(16), nullable=False, default="pending"),
        Column("validation_errors", JSON),
        Column("validated_at", DateTime(timezone=True)),
        Column("iban_valid", Boolean),
        Column("verification_status", String(16)),
        Column("verified_at", DateTime(timezone=True)),
        Column("name_matched", Boolean),
        Column("bav_selected", Boolean, nullable=False, default=False),
        Column("bic", String(11)),
        Column("created_at", DateTime(timezone=True), default=utcnow),
        Column("updated_at", DateTime(timezone=True), default=utcnow, onupdate=utcnow),
        extend_existing=True,
    )

    billing_attempts = Table(
        "billing_attempts",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("debtor_id", Integer, ForeignKey("debtors.id"), nullable=False, index=True),
        Column("debtor_profile_id", Integer, ForeignKey("debtor_profiles.id")),
        Column("upload_id", Integer),
        Column("transaction_id", String(64)),
        Column("amount", Numeric(12, 2), nullable=False),
        Column("currency", String(3), nullable=False, default="EUR"),
        Column("status", String(16), nullable=False, default="pending"),
        Column("bic", String(11), index=True),
        Column("billing_model", String(16)),
        Column("attempt_number", Integer, nullable=False, default=1),
        Column("error_code", String(32)),
        Column("error_message", Text),
        Column("chargeback_reason_code", String(16)),
        Column("chargeback_reason_description", Text),
        Column("created_at", DateTime(timezone=True), default=utcnow, index=True),
        Column("gateway_created_at", DateTime(timezone=True)),
        Column("chargebacked_at", DateTime(timezone=True)),
        Column("meta", JSON),
        extend_existing=True,
    )

    blacklists = Table(
        "blacklists",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("iban", String(64)),
        Column("iban_hash", String(64), index=True),
        Column("first_name", String(128)),
        Column("last_name", String(128)),
        Column("email", String(255), index=True),
        Column("bic", String(11)),
        Column("reason", Text),
        Column("source", String(32)),
        Column("created_at", DateTime(timezone=True), default=utcnow),
        extend_existing=True,
    )

    bic_blacklists = Table(
        "bic_blacklists",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("bic", String(11), nullable=False),
        Column("is_prefix", Boolean, nullable=False, default=False),
        Column("reason", Text),
        Column("source", String(16), nullable=False, default="manual"),
        Column("auto_criteria", String(64)),
        Column("stats_snapshot", JSON),
        Column("blacklisted_by", String(64)),
        Column("created_at", DateTime(timezone=True), default=utcnow),
        UniqueConstraint("bic", "is_prefix", name="uq_bic_blacklists_bic_prefix"),
        extend_existing=True,
    )

    verification_records = Table(
        "verification_records",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("debtor_id", Integer, ForeignKey("debtors.id"), nullable=False, index=True),
        Column("upload_id", Integer),
        Column("iban_hash", String(64), index=True),
        Column("iban_masked", String(64)),
        Column("iban_valid", Boolean, nullable=False, default=False),
        Column("bank_identified", Boolean, nullable=False, default=False),
        Column("bank_name", String(255)),
        Column("bic", String(11)),
        Column("country", String(2)),
        Column("score", Integer, nullable=False),
        Column("result", String(32), nullable=False),
        Column("name_match", String(16)),
        Column("name_match_score", Integer),
        Column("bav_verified", Boolean, nullable=False, default=False),
        Column("meta", JSON),
        Column("created_at", DateTime(timezone=True), default=utcnow, index=True),
        extend_existing=True,
    )

    return BillingTables(
        metadata=metadata,
        debtor_profiles=debtor_profiles,
        debtors=debtors,
        billing_attempts=billing_attempts,
        blacklists=blacklists,
        bic_blacklists=bic_blacklists,
        verification_records=verification_records,
    )


metadata = MetaData()
TABLES = get_tables(metadata)


def create_schema(engine: Engine) -> None:
    """Create all billing tables (tests and local runs; production uses migrations)."""
    metadata.create_all(engine)
