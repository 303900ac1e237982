"""Record-level debtor validation run by the validation chunk job."""

import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from backend.apps.billing.repository import BillingRepository, DebtorRecord
from backend.core.logging import get_logger

from . import iban as iban_utils
from .blacklist import Blacklist
from .dto import ValidationStatus

logger = get_logger(__name__)

MAX_NAME_LENGTH = 35
MIN_AMOUNT = Decimal("1")
MAX_AMOUNT = Decimal("50000")

NAME_PATTERN = re.compile(r"^[^\W\d_]+(?:[ '\-.]+[^\W\d_]+)*\.?$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class DebtorValidator:
    def __init__(self, repository: BillingRepository, blacklist: Blacklist):
        self.repository = repository
        self.blacklist = blacklist

    def validate(self, debtor: DebtorRecord) -> List[str]:
        """Return human-readable validation errors; empty means valid."""
        errors: List[str] = []

        if not debtor.iban:
            errors.append("IBAN is required")
        else:
            result = iban_utils.validate(debtor.iban)
            errors.extend(result.errors)
            if result.valid and not result.is_sepa:
                errors.append(f"IBAN country {result.country_code} is not in the SEPA zone")

        for label, value in (("First name", debtor.first_name), ("Last name", debtor.last_name)):
            errors.extend(self._name_errors(label, value))

        if debtor.amount is None:
            errors.append("Amount is required")
        elif not MIN_AMOUNT <= debtor.amount <= MAX_AMOUNT:
            errors.append(f"Amount must be between {MIN_AMOUNT} and {MAX_AMOUNT}")

        if debtor.email and not EMAIL_PATTERN.match(debtor.email.strip()):
            errors.append("Email address is malformed")

        if debtor.country and not iban_utils.is_sepa_country(debtor.country):
            errors.append(f"Country {debtor.country} is not in the SEPA zone")

        errors.extend(self._blacklist_errors(debtor))
        return errors

    def validate_and_update(self, debtor: DebtorRecord, now: Optional[datetime] = None) -> bool:
        errors = self.validate(debtor)
        status = ValidationStatus.INVALID if errors else ValidationStatus.VALID
        values = {
            "validation_status": status.value,
            "validation_errors": errors or None,
            "validated_at": now or datetime.now(timezone.utc),
            "iban_valid": bool(debtor.iban) and iban_utils.is_valid(debtor.iban),
        }
        if debtor.iban:
            values["iban"] = iban_utils.normalize(debtor.iban)
            values["iban_hash"] = iban_utils.iban_hash(debtor.iban)
        self.repository.update_debtor(debtor.id, **values)

        logger.info(
            "debtor_validated",
            extra={"debtor_id": debtor.id, "status": status.value, "errors": len(errors)},
        )
        return not errors

    @staticmethod
    def _name_errors(label: str, value: Optional[str]) -> List[str]:
        name = (value or "").strip()
        if not name:
            return [f"{label} is required"]
        errors = []
        if len(name) > MAX_NAME_LENGTH:
            errors.append(f"{label} exceeds {MAX_NAME_LENGTH} characters")
        if not NAME_PATTERN.match(name):
            errors.append(f"{label} contains invalid characters")
        return errors

    def _blacklist_errors(self, debtor: DebtorRecord) -> List[str]:
        errors = []
        if debtor.iban and self.blacklist.is_iban_blacklisted(debtor.iban):
            errors.append("IBAN is blacklisted")
        if debtor.email and self.blacklist.is_email_blacklisted(debtor.email):
            errors.append("Email is blacklisted")
        if debtor.first_name and debtor.last_name and self.blacklist.is_name_blacklisted(
            debtor.first_name, debtor.last_name
        ):
            errors.append("Name is blacklisted")
        return errors
