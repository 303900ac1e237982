"""In-process metrics counters and histograms."""

import time
from collections import defaultdict

from backend.core.config import settings

# Global metrics storage
_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "values": [], "buckets": defaultdict(int)})

_BUCKETS = (
    (0.1, "<0.1"),
    (1, "0.1-1.0"),
    (10, "1.0-10.0"),
    (100, "10.0-100.0"),
    (1000, "100.0-1000.0"),
)


def init_metrics() -> None:
    """Initialize metrics if enabled."""
    if not settings.enable_metrics:
        return


def _key(name: str, labels: dict[str, str] | None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"


def increment_counter(name: str, labels: dict[str, str] | None = None, value: float = 1.0) -> None:
    """Increment a counter metric."""
    if not settings.enable_metrics:
        return
    _metrics[_key(name, labels)]["count"] += value


def record_histogram(name: str, value: float, labels: dict[str, str] | None = None) -> None:
    """Record a histogram measurement."""
    if not settings.enable_metrics:
        return

    metrics = _metrics[_key(name, labels)]
    metrics["count"] += 1
    metrics["sum"] += value
    metrics["values"].append(value)

    for upper, bucket in _BUCKETS:
        if value < upper:
            metrics["buckets"][bucket] += 1
            break
    else:
        metrics["buckets"][">=1000.0"] += 1


def observe_duration(start_time: float, name: str, labels: dict[str, str] | None = None) -> None:
    """Observe a duration measurement in milliseconds."""
    record_histogram(name, (time.time() - start_time) * 1000, labels)


def get_counter(name: str, labels: dict[str, str] | None = None) -> float:
    """Return the current value of a counter (0 if never incremented)."""
    data = _metrics.get(_key(name, labels))
    return data["count"] if data else 0


def reset_metrics() -> None:
    """Reset all metrics (useful for testing)."""
    _metrics.clear()


# Dispatch metrics
def increment_dispatch_candidates(phase: str, model: str, n: float = 1.0) -> None:
    increment_counter("dispatch_candidates_total", {"phase": phase, "model": model}, n)


def increment_dispatch_locked(phase: str, model: str, n: float = 1.0) -> None:
    increment_counter("dispatch_locked_total", {"phase": phase, "model": model}, n)


def increment_lock_contention(phase: str, n: float = 1.0) -> None:
    """Candidates deferred because another run holds their lock."""
    increment_counter("dispatch_lock_contention_total", {"phase": phase}, n)


def increment_dispatch_chunks(phase: str, n: float = 1.0) -> None:
    increment_counter("dispatch_chunks_total", {"phase": phase}, n)


# Eligibility metrics
def increment_dedup_skip(reason: str) -> None:
    increment_counter("dedup_skips_total", {"reason": reason})


def increment_verification_result(result: str, cached: bool = False) -> None:
    increment_counter("verification_results_total", {"result": result, "cached": str(cached).lower()})


# Worker metrics
def increment_chunk_records(kind: str, outcome: str, n: float = 1.0) -> None:
    """Per-record outcome inside a chunk job (processed/skipped/failed)."""
    increment_counter("chunk_records_total", {"kind": kind, "outcome": outcome}, n)


# BIC blacklist / backfill metrics
def increment_bic_auto_added(rule: str) -> None:
    increment_counter("bic_auto_blacklisted_total", {"rule": rule})


def increment_backfill_updated(target: str, n: float = 1.0) -> None:
    increment_counter("bic_backfill_updated_total", {"target": target}, n)
