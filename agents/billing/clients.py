"""Outbound collaborators of the billing pipeline.

Bank lookups (structural or the IBAN API over httpx), the optional
bank-account-verification client and the payment gateway protocol. The
``build_*`` factories pick an implementation from settings.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import httpx

from backend.core.logging import get_logger

from . import iban as iban_utils
from .dto import AttemptStatus, BankLookupResult, NameMatch, NameMatchSignal
from .errors import ExternalServiceFailure

logger = get_logger(__name__)


class BankLookup(Protocol):
    def lookup(self, iban: str) -> BankLookupResult: ...


class BavClient(Protocol):
    def verify(self, iban: str, name: str) -> NameMatchSignal: ...


@dataclass
class GatewayResult:
    status: AttemptStatus
    transaction_id: str | None = None
    bic: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class PaymentGateway(Protocol):
    """Submits one SEPA direct debit; the wire protocol lives outside this package."""

    def charge(
        self,
        iban: str,
        account_holder: str,
        amount: Decimal,
        currency: str,
        reference: str,
    ) -> GatewayResult: ...


class StructuralBankLookup:
    """Derives bank data from the IBAN structure when no directory API is configured."""

    name = "structural"

    def lookup(self, iban: str) -> BankLookupResult:
        validation = iban_utils.validate(iban)
        if not validation.valid:
            return BankLookupResult(success=False, source=self.name, error="invalid_iban")
        return BankLookupResult(
            success=validation.bank_id is not None,
            bic=None,
            sdd_supported=validation.is_sepa,
            country=validation.country_code,
            source=self.name,
        )


class IbanApiClient:
    """Bank directory lookup over HTTP (iban.com v4 response shape).

    Successful lookups are memoized per instance. Instances are built per
    chunk job or per backfill run, so the memo never outlives one unit of work.
    """

    name = "iban_api"

    def __init__(self, url: str, api_key: str, timeout_ms: int = 10000, client: httpx.Client | None = None) -> None:
        self.url = url
        self.api_key = api_key
        timeout = httpx.Timeout(connect=timeout_ms / 1000.0, read=timeout_ms / 1000.0, write=timeout_ms / 1000.0, pool=timeout_ms / 1000.0)
        self.client = client or httpx.Client(timeout=timeout, verify=True, follow_redirects=False)
        self._cache: Dict[str, BankLookupResult] = {}

    def lookup(self, iban: str) -> BankLookupResult:
        key = iban_utils.iban_hash(iban)
        if key in self._cache:
            return replace(self._cache[key], source="cache")

        try:
            resp = self.client.post(
                self.url,
                data={"format": "json", "api_key": self.api_key, "iban": iban_utils.normalize(iban)},
            )
        except httpx.HTTPError as e:
            raise ExternalServiceFailure(self.name, str(e)) from e

        if resp.status_code >= 500:
            raise ExternalServiceFailure(self.name, f"http_{resp.status_code}", resp.status_code)
        if resp.status_code != 200:
            return BankLookupResult(success=False, source=self.name, error=f"http_{resp.status_code}")

        result = self._parse(resp.json())
        if result.success:
            self._cache[key] = result
        return result

    def _parse(self, data: Dict[str, Any]) -> BankLookupResult:
        errors = data.get("errors") or []
        bank = data.get("bank_data") or {}
        sepa = data.get("sepa_data") or {}
        if errors and not bank:
            first = errors[0]
            message = first.get("message") if isinstance(first, dict) else str(first)
            return BankLookupResult(success=False, source=self.name, error=message)

        bic = (bank.get("bic") or "").strip().upper() or None
        return BankLookupResult(
            success=bool(bank.get("bank") or bic),
            bank_name=bank.get("bank") or None,
            bic=bic,
            sdd_supported=str(sepa.get("SDD", "")).upper() == "YES",
            country=bank.get("country_iso") or iban_utils.country_code(data.get("iban")),
            source=self.name,
        )


class HttpBavClient:
    """Payee name verification (bank account verification) over HTTP."""

    name = "bav"

    def __init__(self, url: str, api_key: str, timeout_ms: int = 10000, client: httpx.Client | None = None) -> None:
        self.url = url
        self.api_key = api_key
        timeout = httpx.Timeout(connect=timeout_ms / 1000.0, read=timeout_ms / 1000.0, write=timeout_ms / 1000.0, pool=timeout_ms / 1000.0)
        self.client = client or httpx.Client(timeout=timeout, verify=True, follow_redirects=False)

    def verify(self, iban: str, name: str) -> NameMatchSignal:
        try:
            resp = self.client.post(
                self.url,
                data={"format": "json", "api_key": self.api_key, "iban": iban_utils.normalize(iban), "name": name},
            )
        except httpx.HTTPError as e:
            logger.warning("bav_request_failed", extra={"error": str(e)})
            return NameMatchSignal(match=NameMatch.ERROR, error=str(e))

        if resp.status_code != 200:
            return NameMatchSignal(match=NameMatch.ERROR, error=f"http_{resp.status_code}")

        data = resp.json()
        result = data.get("result", data)
        raw = str(result.get("name_match", "")).lower()
        try:
            match = NameMatch(raw)
        except ValueError:
            match = NameMatch.UNAVAILABLE
        score = result.get("name_match_score")
        return NameMatchSignal(
            match=match,
            score=int(score) if score is not None else None,
            valid=result.get("valid"),
            bic=(result.get("bic") or None),
        )


def build_bank_lookup(settings: Optional[object] = None) -> BankLookup:
    """Return the API-backed lookup when a key is configured, else the structural one."""
    if settings is None:
        from backend.core.config import settings as default_settings
        settings = default_settings
    if settings.IBAN_API_KEY:
        return IbanApiClient(settings.IBAN_API_URL, settings.IBAN_API_KEY, settings.IBAN_API_TIMEOUT_MS)
    return StructuralBankLookup()


def build_bav_client(settings: Optional[object] = None) -> Optional[BavClient]:
    if settings is None:
        from backend.core.config import settings as default_settings
        settings = default_settings
    if settings.BAV_ENABLED and settings.IBAN_API_KEY:
        return HttpBavClient(settings.BAV_API_URL, settings.IBAN_API_KEY, settings.IBAN_API_TIMEOUT_MS)
    return None
