#!/usr/bin/env python3
"""
Reconcile the commission ledger and create missing entries.

Dry run by default; --apply writes the entries.

Usage:
    python scripts/backfill.py --admin-id 1
    python scripts/backfill.py --admin-id 1 --sponsor-id 42 --apply
    python scripts/backfill.py --admin-id 1 --violations
"""

import sys
import os
import argparse
from datetime import datetime

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from models.listeners import register_all_listeners
from mlm_system import api

import logging

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


def parse_date(value):
    return datetime.strptime(value, "%Y-%m-%d")


def print_backfill(result):
    mode = "DRY RUN" if result["dry_run"] else "APPLIED"
    print("\n" + "=" * 80)
    print(f"BACKFILL ({mode})")
    print("=" * 80)

    for detail in result["details"]:
        print(
            f"Event {detail['event_id']:6} L{detail['level']:2} -> member {detail['recipient_id']:6}: "
            f"{detail['state']:9} {detail['entry_kind']:10} {detail['amount']:8} KZT"
        )

    print("-" * 80)
    print(f"Events processed:    {result['events_processed']}")
    print(f"Commissions created: {result['commissions_created']}")
    print(f"Already present:     {result['commissions_skipped']}")
    print(f"Total amount:        {result['total_amount']} KZT")

    for error in result["errors"]:
        print(f"❌ Event {error['event_id']}: {error['error']}")

    print("=" * 80 + "\n")


def print_violations(result):
    mode = "DRY RUN" if result["dry_run"] else "APPLIED"
    print("\n" + "=" * 80)
    print(f"INTEGRITY FIX ({mode})")
    print("=" * 80)

    for violation in result["details"]:
        print(
            f"{violation['kind']:14} event {violation['event_id']:6} "
            f"L{violation['level']} member {violation['recipient_id']}: excess {violation['excess']} KZT"
        )
    for violation in result["unfixable"]:
        print(f"⚠️  Not fixable automatically: {violation}")

    print("-" * 80)
    print(f"Violations:  {result['violations_found']}")
    print(f"Reversals:   {result['reversals_created']}")
    print(f"Total:       {result['total_reversed']} KZT")
    print("=" * 80 + "\n")


def main():
    parser = argparse.ArgumentParser(description='Backfill missing commissions')
    parser.add_argument('--admin-id', type=int, required=True, help='Admin member ID')
    parser.add_argument('--sponsor-id', type=int, help='Only commissions owed to this sponsor')
    parser.add_argument('--structure', type=int, choices=[1, 2], help='Only this structure')
    parser.add_argument('--start', type=parse_date, help='Events from YYYY-MM-DD')
    parser.add_argument('--end', type=parse_date, help='Events before YYYY-MM-DD')
    parser.add_argument('--violations', action='store_true',
                        help='Reverse overpaid entries instead of backfilling')
    parser.add_argument('--apply', action='store_true', help='Write entries (default: dry run)')
    args = parser.parse_args()

    Config.initialize_from_env()
    register_all_listeners()

    if args.violations:
        result = api.fix_integrity_violations(args.admin_id, dry_run=not args.apply)
        if not result.get("success"):
            print(f"❌ {result['error']}")
            sys.exit(1)
        print_violations(result)
        return

    result = api.backfill_commissions(
        args.admin_id,
        dry_run=not args.apply,
        target=args.sponsor_id,
        structure_type=args.structure,
        start=args.start,
        end=args.end
    )
    if not result.get("success"):
        print(f"❌ {result['error']}")
        sys.exit(1)

    print_backfill(result)


if __name__ == "__main__":
    main()
