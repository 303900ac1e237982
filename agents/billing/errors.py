"""Error taxonomy for the billing pipeline.

Skips and lock contention are outcomes, not errors; they are returned as
values (see ``dto.Skip`` and ``dto.PhaseReport``).
"""

from typing import Optional


class BillingError(Exception):
    """Base class for billing pipeline errors."""


class RecordValidationError(BillingError):
    """Malformed debtor attributes; recorded per record, never fatal."""

    def __init__(self, debtor_id: Optional[int], errors: list[str]):
        self.debtor_id = debtor_id
        self.errors = list(errors)
        super().__init__(f"debtor {debtor_id} failed validation: {', '.join(self.errors)}")


class ExternalServiceFailure(BillingError):
    """Bank data or verification provider unreachable or erroring."""

    def __init__(self, service: str, message: str, status_code: Optional[int] = None):
        self.service = service
        self.status_code = status_code
        super().__init__(f"{service}: {message}")


class PersistenceError(BillingError):
    """A write to the billing store failed for one record."""
