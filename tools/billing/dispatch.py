#!/usr/bin/env python3
"""Run one recurring billing dispatch (validation, verification, billing).

Usage:
    python tools/billing/dispatch.py [--model flywheel] [--phase validation] [--dry-run]
"""
from __future__ import annotations

import argparse
import json
import os
import sys

# Ensure project root on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

import sqlalchemy as sa

from agents.billing.config import PipelineConfig
from agents.billing.deduplication import DeduplicationEngine
from agents.billing.dispatch import BillingDispatcher
from agents.billing.dto import BillingModel, JobKind
from backend.apps.billing.repository import BillingRepository
from backend.core.config import settings
from backend.core.locks import RedisLockManager
from backend.core.observability import init_observability, set_trace_id
from backend.core.observability.logging import set_run_id
from backend.core.queue import CeleryJobQueue


def build_dispatcher(engine=None, locks=None, queue=None, config: PipelineConfig | None = None) -> BillingDispatcher:
    engine = engine or sa.create_engine(settings.database_url, future=True)
    config = config or PipelineConfig.from_settings(settings)
    return BillingDispatcher(
        BillingRepository(engine),
        DeduplicationEngine(engine, config.deduplication),
        locks or RedisLockManager.from_url(settings.REDIS_URL),
        queue or CeleryJobQueue(),
        config.dispatch,
    )


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Dispatch recurring billing jobs")
    p.add_argument(
        "--model",
        action="append",
        choices=[m.value for m in BillingModel],
        help="Billing model to dispatch (repeatable; default: configured models)",
    )
    p.add_argument(
        "--phase",
        action="append",
        choices=[k.value for k in JobKind],
        help="Phase to run (repeatable; default: all three in order)",
    )
    p.add_argument("--dry-run", action="store_true", default=False, help="Select and report without locking or dispatching")
    p.add_argument("--trace-id", default=None)
    p.add_argument("--run-id", default=None, help="Tag every log line of this run (default: derived from trace id)")
    args = p.parse_args(argv)

    init_observability(enable_metrics=settings.enable_metrics)
    trace_id = set_trace_id(args.trace_id)
    set_run_id(args.run_id or f"dispatch-{trace_id[:8]}")

    try:
        dispatcher = build_dispatcher()
        report = dispatcher.run(
            models=args.model,
            phases=[JobKind(v) for v in args.phase] if args.phase else None,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(str(e), file=sys.stderr)
        return 1

    print(json.dumps(report.to_dict(), indent=2))
    return 1 if report.errors else 0


if __name__ == "__main__":
    raise SystemExit(main())
