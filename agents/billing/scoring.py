"""Payee-verification scoring.

The score combines four structural dimensions of the debtor's IBAN with an
optional name-match signal from a bank-account-verification provider:

    iban_valid + bank_identified + sepa_sdd + country_supported + name_match

Weights and band cut points come from ``ScoringConfig``. An invalid IBAN
short-circuits to score 0 / rejected without any external call.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import insert, or_, select
from sqlalchemy.engine import Engine

from backend.apps.billing.repository import DebtorRecord, ensure_utc
from backend.apps.billing.tables import TABLES, BillingTables
from backend.core.logging import get_logger
from backend.core.observability import metrics

from . import iban as iban_utils
from .clients import BankLookup, BavClient
from .config import ScoringConfig
from .dto import (
    BankLookupResult,
    NameMatch,
    NameMatchSignal,
    ScoreOutcome,
    ValidationStatus,
    VerificationRecord,
    VerificationResult,
    VerificationStatus,
)
from .errors import RecordValidationError

logger = get_logger(__name__)

# Best to worst
_RESULT_ORDER = [
    VerificationResult.VERIFIED,
    VerificationResult.LIKELY_VERIFIED,
    VerificationResult.INCONCLUSIVE,
    VerificationResult.MISMATCH,
    VerificationResult.REJECTED,
]

_PASSING_RESULTS = (VerificationResult.VERIFIED, VerificationResult.LIKELY_VERIFIED)


def _cap(result: VerificationResult, ceiling: VerificationResult) -> VerificationResult:
    return _RESULT_ORDER[max(_RESULT_ORDER.index(result), _RESULT_ORDER.index(ceiling))]


class PayeeVerificationScorer:
    def __init__(
        self,
        engine: Engine,
        bank_lookup: BankLookup,
        config: Optional[ScoringConfig] = None,
        bav_client: Optional[BavClient] = None,
        tables: BillingTables = TABLES,
    ):
        self.engine = engine
        self.bank_lookup = bank_lookup
        self.config = config or ScoringConfig()
        self.bav_client = bav_client
        self.tables = tables

    # Pure scoring ------------------------------------------------------

    def evaluate(
        self,
        validation: iban_utils.IbanValidation,
        bank: Optional[BankLookupResult],
        name_signal: Optional[NameMatchSignal] = None,
    ) -> ScoreOutcome:
        """Score already-gathered inputs. Deterministic, no I/O."""
        weights = self.config.weights
        breakdown = {
            "iban_valid": 0,
            "bank_identified": 0,
            "sepa_sdd": 0,
            "country_supported": 0,
            "name_match": 0,
        }
        if not validation.valid:
            return ScoreOutcome(score=0, result=VerificationResult.REJECTED, breakdown=breakdown)

        breakdown["iban_valid"] = weights.iban_valid
        if bank is not None and bank.success:
            breakdown["bank_identified"] = weights.bank_identified
        if bank is not None and bank.sdd_supported:
            breakdown["sepa_sdd"] = weights.sepa_sdd
        if iban_utils.is_sepa_country(validation.country_code):
            breakdown["country_supported"] = weights.country_supported

        structural = sum(breakdown.values())
        if name_signal is None or not name_signal.is_conclusive:
            return ScoreOutcome(
                score=structural,
                result=self.config.bands.classify(structural),
                breakdown=breakdown,
                name_match=name_signal.match if name_signal else None,
            )

        if name_signal.match is NameMatch.YES:
            breakdown["name_match"] = weights.name_match
            result = self.config.bands.classify(sum(breakdown.values()))
        elif name_signal.match is NameMatch.PARTIAL:
            if name_signal.score is not None:
                breakdown["name_match"] = round(min(max(name_signal.score, 0), 100) / 100 * weights.name_match)
            else:
                breakdown["name_match"] = weights.name_match // 2
            result = _cap(self.config.bands.classify(sum(breakdown.values())), VerificationResult.LIKELY_VERIFIED)
        else:
            result = VerificationResult.REJECTED

        return ScoreOutcome(
            score=min(sum(breakdown.values()), 100),
            result=result,
            breakdown=breakdown,
            name_match=name_signal.match,
        )

    def calculate(self, debtor: DebtorRecord, name_signal: Optional[NameMatchSignal] = None) -> ScoreOutcome:
        """Score a debtor without persisting anything."""
        validation = iban_utils.validate(debtor.iban)
        if not validation.valid:
            return self.evaluate(validation, None)
        return self.evaluate(validation, self.bank_lookup.lookup(debtor.iban), name_signal)

    # Persisting scoring ------------------------------------------------

    def wants_name_match(self, debtor: DebtorRecord, validation: iban_utils.IbanValidation, structural: int) -> bool:
        return (
            self.bav_client is not None
            and self.config.bav_enabled
            and debtor.bav_selected
            and bool(debtor.full_name)
            and validation.country_code in self.config.bav_countries
            and structural >= self.config.bav_min_score
        )

    def score(
        self,
        debtor: DebtorRecord,
        force_refresh: bool = False,
        now: Optional[datetime] = None,
    ) -> VerificationRecord:
        """Score ``debtor`` and persist one verification record.

        A fresh record for the same IBAN hash is reused (``from_cache``)
        unless ``force_refresh`` is set or the debtor is awaiting a retry
        after a provider error.

        Raises:
            RecordValidationError: the debtor has no IBAN to score
        """
        now = ensure_utc(now) if now else datetime.now(timezone.utc)
        if not debtor.iban:
            raise RecordValidationError(debtor.id, ["IBAN is required"])
        iban_hash = debtor.iban_hash or iban_utils.iban_hash(debtor.iban)

        if not force_refresh and debtor.verification_status != VerificationStatus.ERROR.value:
            cached = self.find_fresh(iban_hash, now)
            if cached is not None:
                return self._reuse(cached, debtor, now)

        validation = iban_utils.validate(debtor.iban)
        bank: Optional[BankLookupResult] = None
        signal: Optional[NameMatchSignal] = None
        if validation.valid:
            bank = self.bank_lookup.lookup(debtor.iban)
            structural = self.evaluate(validation, bank).score
            if self.wants_name_match(debtor, validation, structural):
                signal = self.bav_client.verify(debtor.iban, debtor.full_name)
        outcome = self.evaluate(validation, bank, signal)

        meta: Dict[str, Any] = {
            "breakdown": outcome.breakdown,
            "bank_source": bank.source if bank else None,
        }
        if bank is not None and bank.error:
            meta["bank_error"] = bank.error
        if signal is not None and signal.error:
            meta["name_match_error"] = signal.error

        values = {
            "debtor_id": debtor.id,
            "upload_id": debtor.upload_id,
            "iban_hash": iban_hash,
            "iban_masked": iban_utils.mask(debtor.iban),
            "iban_valid": validation.valid,
            "bank_identified": bool(bank and bank.success),
            "bank_name": bank.bank_name if bank else None,
            "bic": (bank.bic if bank else None) or (signal.bic if signal else None),
            "country": validation.country_code,
            "score": outcome.score,
            "result": outcome.result.value,
            "name_match": outcome.name_match.value if outcome.name_match else None,
            "name_match_score": signal.score if signal else None,
            "bav_verified": bool(signal and signal.is_conclusive),
            "meta": meta,
            "created_at": now,
        }

        debtors = self.tables.debtors
        with self.engine.begin() as conn:
            record_id = conn.execute(insert(self.tables.verification_records).values(**values)).inserted_primary_key[0]
            conn.execute(
                debtors.update()
                .where(debtors.c.id == debtor.id)
                .values(**self._debtor_update(debtor, outcome, signal, values["bic"], now))
            )

        metrics.increment_verification_result(outcome.result.value)
        logger.info(
            "payee_verification_scored",
            extra={
                "debtor_id": debtor.id,
                "score": outcome.score,
                "result": outcome.result.value,
                "name_match": values["name_match"],
            },
        )

        return VerificationRecord(
            id=record_id,
            debtor_id=debtor.id,
            iban_hash=iban_hash,
            iban_masked=values["iban_masked"],
            score=outcome.score,
            result=outcome.result,
            bank_name=values["bank_name"],
            bic=values["bic"],
            country=values["country"],
            breakdown=dict(outcome.breakdown),
            name_match=outcome.name_match,
            created_at=now,
        )

    def verify(
        self,
        debtor: DebtorRecord,
        force_refresh: bool = False,
        now: Optional[datetime] = None,
    ) -> Optional[VerificationRecord]:
        """Score a debtor that passed validation; others are refused with None."""
        if debtor.validation_status != ValidationStatus.VALID.value or not debtor.iban:
            logger.info("payee_verification_refused", extra={"debtor_id": debtor.id})
            return None
        return self.score(debtor, force_refresh=force_refresh, now=now)

    def find_fresh(self, iban_hash: str, now: datetime):
        vr = self.tables.verification_records
        since = now - timedelta(days=self.config.cache_days)
        with self.engine.begin() as conn:
            return conn.execute(
                select(vr)
                .where(vr.c.iban_hash == iban_hash)
                .where(vr.c.created_at >= since)
                # errored name matches are retried, never reused
                .where(or_(vr.c.name_match.is_(None), vr.c.name_match != NameMatch.ERROR.value))
                .order_by(vr.c.created_at.desc(), vr.c.id.desc())
                .limit(1)
            ).fetchone()

    # Internals ---------------------------------------------------------

    @staticmethod
    def _debtor_update(
        debtor: DebtorRecord,
        outcome: ScoreOutcome,
        signal: Optional[NameMatchSignal],
        bic: Optional[str],
        now: datetime,
    ) -> Dict[str, Any]:
        if signal is not None and signal.match is NameMatch.ERROR:
            status = VerificationStatus.ERROR
        elif outcome.result in _PASSING_RESULTS:
            status = VerificationStatus.VERIFIED
        else:
            status = VerificationStatus.FAILED

        update_values: Dict[str, Any] = {"verification_status": status.value, "verified_at": now}
        if outcome.name_match is NameMatch.YES:
            update_values["name_matched"] = True
        elif outcome.name_match is NameMatch.NO:
            update_values["name_matched"] = False
        if bic and not debtor.bic:
            update_values["bic"] = bic
        return update_values

    def _reuse(self, cached, debtor: DebtorRecord, now: datetime) -> VerificationRecord:
        meta = dict(cached.meta or {})
        breakdown = dict(meta.get("breakdown") or {})
        result = VerificationResult(cached.result)
        name_match = NameMatch(cached.name_match) if cached.name_match else None
        outcome = ScoreOutcome(score=cached.score, result=result, breakdown=breakdown, name_match=name_match)

        record_id = cached.id
        if cached.debtor_id != debtor.id:
            meta["cached_from"] = cached.id
            vr = self.tables.verification_records
            debtors = self.tables.debtors
            with self.engine.begin() as conn:
                record_id = conn.execute(
                    insert(vr).values(
                        debtor_id=debtor.id,
                        upload_id=debtor.upload_id,
                        iban_hash=cached.iban_hash,
                        iban_masked=cached.iban_masked,
                        iban_valid=cached.iban_valid,
                        bank_identified=cached.bank_identified,
                        bank_name=cached.bank_name,
                        bic=cached.bic,
                        country=cached.country,
                        score=cached.score,
                        result=cached.result,
                        name_match=cached.name_match,
                        name_match_score=cached.name_match_score,
                        bav_verified=cached.bav_verified,
                        meta=meta,
                        created_at=now,
                    )
                ).inserted_primary_key[0]
                conn.execute(
                    debtors.update()
                    .where(debtors.c.id == debtor.id)
                    .values(**self._debtor_update(debtor, outcome, None, cached.bic, now))
                )

        metrics.increment_verification_result(result.value, cached=True)
        logger.info(
            "payee_verification_cached",
            extra={"debtor_id": debtor.id, "cached_from": cached.id, "result": result.value},
        )
        return VerificationRecord(
            id=record_id,
            debtor_id=debtor.id,
            iban_hash=cached.iban_hash,
            iban_masked=cached.iban_masked,
            score=cached.score,
            result=result,
            bank_name=cached.bank_name,
            bic=cached.bic,
            country=cached.country,
            breakdown=breakdown,
            name_match=name_match,
            from_cache=True,
            cached_from=cached.id,
            created_at=ensure_utc(cached.created_at) if cached.debtor_id == debtor.id else now,
        )
