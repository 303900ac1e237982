#!/usr/bin/env python3
"""Manage the BIC blacklist.

Usage:
    python tools/billing/bic_blacklist.py auto [--days 30] [--dry-run]
    python tools/billing/bic_blacklist.py add COBADEFF [--prefix] [--reason TEXT]
    python tools/billing/bic_blacklist.py list [--source auto]
"""
from __future__ import annotations

import argparse
import json
import os
import sys

# Ensure project root on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

import sqlalchemy as sa

from agents.billing.bic_blacklist import SOURCES, BicAutoBlacklist, BicBlacklist
from agents.billing.config import PipelineConfig
from backend.core.config import settings
from backend.core.observability import init_observability, set_trace_id


def _auto(engine, args) -> int:
    config = PipelineConfig.from_settings(settings).auto_blacklist
    report = BicAutoBlacklist(engine, config).run(window_days=args.days, dry_run=args.dry_run)
    print(json.dumps(report.to_dict(), indent=2))
    return 1 if report.failed else 0


def _add(engine, args) -> int:
    entry_id = BicBlacklist(engine).add_entry(
        args.bic,
        is_prefix=args.prefix,
        reason=args.reason,
        source=args.source,
        blacklisted_by=args.by,
    )
    if entry_id is None:
        print(f"{args.bic.upper()} is already blacklisted", file=sys.stderr)
        return 2
    print(json.dumps({"id": entry_id, "bic": args.bic.strip().upper(), "is_prefix": args.prefix}))
    return 0


def _list(engine, args) -> int:
    entries = BicBlacklist(engine).list_entries(source=args.source)
    print(json.dumps([e.to_dict() for e in entries], indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="BIC blacklist operations")
    p.add_argument("--trace-id", default=None)
    sub = p.add_subparsers(dest="command", required=True)

    auto = sub.add_parser("auto", help="Blacklist BICs with high chargeback rates")
    auto.add_argument("--days", type=int, default=None, help="Trailing window in days (default from settings)")
    auto.add_argument("--dry-run", action="store_true", default=False)
    auto.set_defaults(handler=_auto)

    add = sub.add_parser("add", help="Add a manual entry")
    add.add_argument("bic")
    add.add_argument("--prefix", action="store_true", default=False, help="Block every BIC starting with this value")
    add.add_argument("--reason", default=None)
    add.add_argument("--source", choices=[s for s in SOURCES if s != "auto"], default="manual")
    add.add_argument("--by", default=None, help="Operator recorded as blacklisted_by")
    add.set_defaults(handler=_add)

    lst = sub.add_parser("list", help="List entries")
    lst.add_argument("--source", choices=list(SOURCES), default=None)
    lst.set_defaults(handler=_list)

    args = p.parse_args(argv)

    init_observability(enable_metrics=settings.enable_metrics)
    set_trace_id(args.trace_id)

    try:
        engine = sa.create_engine(settings.database_url, future=True)
        return args.handler(engine, args)
    except Exception as e:
        print(str(e), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
