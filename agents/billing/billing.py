"""Submission of one recurring direct debit for an eligible debtor."""

from datetime import datetime, timezone
from typing import Optional

from backend.apps.billing.repository import BillingRepository, DebtorRecord
from backend.core.logging import get_logger

from . import predicates
from .bic_blacklist import BicBlacklist
from .clients import PaymentGateway
from .config import BillingConfig
from .dto import AttemptStatus, BillingModel, DebtorStatus
from .errors import ExternalServiceFailure

logger = get_logger(__name__)


class BillingProcessor:
    def __init__(
        self,
        repository: BillingRepository,
        gateway: PaymentGateway,
        bic_blacklist: BicBlacklist,
        config: Optional[BillingConfig] = None,
    ):
        self.repository = repository
        self.gateway = gateway
        self.bic_blacklist = bic_blacklist
        self.config = config or BillingConfig()

    def can_bill(self, debtor: DebtorRecord, now: datetime) -> bool:
        """Re-check eligibility at execution time; state may have moved since dispatch."""
        profile = self.repository.get_profile(debtor.debtor_profile_id) if debtor.debtor_profile_id else None
        if not predicates.is_billable(debtor, profile, now, self.config.max_lifetime_amount):
            return False
        if debtor.bic and self.bic_blacklist.is_blacklisted(debtor.bic):
            logger.info("billing_skipped_bic_blacklisted", extra={"debtor_id": debtor.id})
            return False
        return True

    def charge(self, debtor: DebtorRecord, now: Optional[datetime] = None) -> Optional[AttemptStatus]:
        """Bill ``debtor`` once; returns None when it is no longer eligible.

        Raises:
            ExternalServiceFailure: the gateway could not be reached; the
                attempt is recorded with status ``error``
        """
        now = now or datetime.now(timezone.utc)
        if not self.can_bill(debtor, now):
            return None

        profile = self.repository.get_profile(debtor.debtor_profile_id)
        amount = profile.billing_amount or debtor.amount
        attempt_number = self.repository.count_attempts(debtor.id) + 1
        attempt_id = self.repository.add_attempt(
            debtor_id=debtor.id,
            debtor_profile_id=profile.id,
            upload_id=debtor.upload_id,
            amount=amount,
            currency=profile.currency,
            status=AttemptStatus.PENDING.value,
            bic=debtor.bic,
            billing_model=profile.billing_model,
            attempt_number=attempt_number,
            created_at=now,
        )

        try:
            result = self.gateway.charge(
                iban=debtor.iban,
                account_holder=debtor.full_name,
                amount=amount,
                currency=profile.currency,
                reference=f"D{debtor.id}-A{attempt_number}",
            )
        except ExternalServiceFailure as e:
            self.repository.update_attempt(
                attempt_id, status=AttemptStatus.ERROR.value, error_message=str(e)
            )
            raise

        self.repository.update_attempt(
            attempt_id,
            status=result.status.value,
            transaction_id=result.transaction_id,
            bic=result.bic or debtor.bic,
            error_code=result.error_code,
            error_message=result.error_message,
        )

        profile_values = {
            "last_billed_at": now,
            "next_bill_at": BillingModel(profile.billing_model).next_bill_date(now),
        }
        if result.status is AttemptStatus.APPROVED:
            profile_values["last_success_at"] = now
            profile_values["lifetime_charged_amount"] = profile.lifetime_charged_amount + amount
        self.repository.update_profile(profile.id, **profile_values)

        if debtor.status == DebtorStatus.PENDING.value:
            self.repository.update_debtor(debtor.id, status=DebtorStatus.PROCESSING.value)

        logger.info(
            "billing_attempt_submitted",
            extra={"debtor_id": debtor.id, "attempt_id": attempt_id, "status": result.status.value},
        )
        return result.status
