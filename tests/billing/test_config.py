"""Tests for settings parsing into pipeline configuration."""

from decimal import Decimal

import pytest

from agents.billing.config import (
    DispatchConfig,
    PipelineConfig,
    ScoreBands,
    parse_chunk_sizes,
    parse_csv,
)
from agents.billing.dto import JobKind
from backend.core.config import Settings


def test_defaults_from_settings():
    """Test default settings produce the documented configuration."""
    config = PipelineConfig.from_settings(Settings())

    assert config.deduplication.cooldown_days == 30
    assert config.dispatch.chunk_size(JobKind.VALIDATION) == 100
    assert config.dispatch.chunk_size(JobKind.VERIFICATION) == 50
    assert config.dispatch.chunk_size(JobKind.BILLING) == 50
    assert config.dispatch.lock_ttl_seconds == 1800
    assert config.dispatch.models == ("flywheel", "recovery")
    assert config.dispatch.max_lifetime_amount == Decimal("750.0")
    assert config.auto_blacklist.excluded_reason_codes == frozenset({"AC04", "AC06", "AG01", "MD01"})
    assert config.scoring.bands.verified == 80
    assert config.scoring.bav_enabled is False
    assert "DE" in config.scoring.bav_countries
    assert config.billing.circuit_breaker_threshold == 10


def test_environment_overrides(monkeypatch):
    """Test environment variables flow through to the value objects."""
    monkeypatch.setenv("DISPATCH_CHUNK_SIZES", "validation=10")
    monkeypatch.setenv("DISPATCH_DEFAULT_CHUNK_SIZE", "7")
    monkeypatch.setenv("DISPATCH_MODELS", "recovery")
    monkeypatch.setenv("EXCLUDED_CB_REASON_CODES", " ac04, md01 ,")
    monkeypatch.setenv("BILLING_COOLDOWN_DAYS", "14")
    monkeypatch.setenv("BAV_ENABLED", "true")

    config = PipelineConfig.from_settings(Settings())

    assert config.dispatch.chunk_size(JobKind.VALIDATION) == 10
    assert config.dispatch.chunk_size(JobKind.BILLING) == 7
    assert config.dispatch.models == ("recovery",)
    assert config.auto_blacklist.excluded_reason_codes == frozenset({"AC04", "MD01"})
    assert config.deduplication.cooldown_days == 14
    assert config.scoring.bav_enabled is True


def test_parse_csv():
    """Test blank items are dropped and case is optional."""
    assert parse_csv(" a, ,b ") == ("a", "b")
    assert parse_csv("ac04,md01", upper=True) == ("AC04", "MD01")
    assert parse_csv("") == ()


@pytest.mark.parametrize("value", ["validation", "validation=0", "billing=abc"])
def test_parse_chunk_sizes_rejects_garbage(value):
    """Test malformed chunk size entries fail loudly."""
    with pytest.raises(ValueError):
        parse_chunk_sizes(value)


def test_bands_must_descend():
    """Test overlapping bands are rejected."""
    with pytest.raises(ValueError):
        ScoreBands(verified=60, likely_verified=60)


def test_lock_keys_are_namespaced_by_phase():
    """Test lock keys per phase and the billing lock switch."""
    config = DispatchConfig(lock_billing_phase=False)

    assert config.lock_key(JobKind.VALIDATION, 42) == "billing:lock:validation:42"
    assert config.lock_key(JobKind.BILLING, 42) == "billing:lock:billing:42"
    assert config.is_lock_guarded(JobKind.VERIFICATION) is True
    assert config.is_lock_guarded(JobKind.BILLING) is False
