"""Celery tasks executing dispatched chunks on the billing queue."""

from __future__ import annotations

import importlib
from functools import lru_cache

import sqlalchemy as sa
from sqlalchemy.engine import Engine

from backend.apps.billing.repository import BillingRepository
from backend.core.config import settings
from backend.core.locks import RedisLockManager
from backend.core.logging import get_logger
from backend.core.queue import celery_app

from .billing import BillingProcessor
from .bic_blacklist import BicBlacklist
from .blacklist import Blacklist
from .clients import PaymentGateway, build_bank_lookup, build_bav_client
from .config import PipelineConfig
from .scoring import PayeeVerificationScorer
from .validation import DebtorValidator
from .workers import run_billing_chunk, run_validation_chunk, run_verification_chunk

logger = get_logger(__name__)


@lru_cache(maxsize=1)
def _get_engine() -> Engine:
    return sa.create_engine(settings.database_url, future=True)


@lru_cache(maxsize=1)
def _get_config() -> PipelineConfig:
    return PipelineConfig.from_settings(settings)


@lru_cache(maxsize=1)
def _get_locks() -> RedisLockManager:
    return RedisLockManager.from_url(settings.REDIS_URL)


def load_payment_gateway(path: str) -> PaymentGateway:
    """Instantiate the gateway named by ``package.module:callable``."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise RuntimeError("PAYMENT_GATEWAY must look like 'package.module:callable'")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()


@celery_app.task(name="agents.billing.tasks.process_validation_chunk")
def process_validation_chunk(
    debtor_ids: list[int],
    chunk_index: int = 0,
    model: str | None = None,
    lock_token: str | None = None,
) -> dict:
    engine = _get_engine()
    repository = BillingRepository(engine)
    result = run_validation_chunk(
        debtor_ids,
        chunk_index,
        repository,
        DebtorValidator(repository, Blacklist(engine)),
        locks=_get_locks(),
        config=_get_config().dispatch,
        lock_token=lock_token,
    )
    return {**result.to_dict(), "model": model}


@celery_app.task(name="agents.billing.tasks.process_verification_chunk")
def process_verification_chunk(
    debtor_ids: list[int],
    chunk_index: int = 0,
    model: str | None = None,
    force_refresh: bool = False,
    lock_token: str | None = None,
) -> dict:
    engine = _get_engine()
    config = _get_config()
    scorer = PayeeVerificationScorer(
        engine,
        build_bank_lookup(settings),
        config=config.scoring,
        bav_client=build_bav_client(settings),
    )
    result = run_verification_chunk(
        debtor_ids,
        chunk_index,
        BillingRepository(engine),
        scorer,
        locks=_get_locks(),
        config=config.dispatch,
        force_refresh=force_refresh,
        lock_token=lock_token,
    )
    return {**result.to_dict(), "model": model}


@celery_app.task(name="agents.billing.tasks.process_billing_chunk")
def process_billing_chunk(
    debtor_ids: list[int],
    chunk_index: int = 0,
    model: str | None = None,
    lock_token: str | None = None,
) -> dict:
    engine = _get_engine()
    config = _get_config()
    repository = BillingRepository(engine)
    processor = BillingProcessor(
        repository,
        load_payment_gateway(settings.PAYMENT_GATEWAY),
        BicBlacklist(engine),
        config=config.billing,
    )
    result = run_billing_chunk(
        debtor_ids,
        chunk_index,
        repository,
        processor,
        locks=_get_locks(),
        config=config.dispatch,
        lock_token=lock_token,
    )
    return {**result.to_dict(), "model": model}
