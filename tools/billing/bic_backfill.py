#!/usr/bin/env python3
"""Fill missing BICs on debtors, billing attempts or verification records.

Usage:
    python tools/billing/bic_backfill.py --target debtors [--limit 500] [--dry-run]
"""
from __future__ import annotations

import argparse
import json
import os
import sys

# Ensure project root on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

import sqlalchemy as sa

from agents.billing.backfill import BackfillTargetKind, run_bic_backfill, target_for
from agents.billing.clients import build_bank_lookup
from backend.core.config import settings
from backend.core.observability import init_observability, set_trace_id


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Backfill missing BICs")
    p.add_argument(
        "--target",
        action="append",
        choices=[k.value for k in BackfillTargetKind],
        help="Entity to backfill (repeatable; default: all)",
    )
    p.add_argument("--limit", type=int, default=None)
    p.add_argument("--dry-run", action="store_true", default=False)
    p.add_argument("--trace-id", default=None)
    args = p.parse_args(argv)

    init_observability(enable_metrics=settings.enable_metrics)
    set_trace_id(args.trace_id)

    kinds = [BackfillTargetKind(v) for v in args.target] if args.target else list(BackfillTargetKind)
    try:
        engine = sa.create_engine(settings.database_url, future=True)
        lookup = build_bank_lookup(settings)
        reports = [
            run_bic_backfill(engine, target_for(kind), lookup, limit=args.limit, dry_run=args.dry_run)
            for kind in kinds
        ]
    except Exception as e:
        print(str(e), file=sys.stderr)
        return 1

    print(json.dumps([r.to_dict() for r in reports], indent=2))
    return 1 if any(r.failed for r in reports) else 0


if __name__ == "__main__":
    raise SystemExit(main())
