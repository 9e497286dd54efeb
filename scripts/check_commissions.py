#!/usr/bin/env python3
"""
Check commissions for a source event.

Displays the ledger entries of an event next to what the rules expect.

Usage:
    python scripts/check_commissions.py --event-id 123
    python scripts/check_commissions.py --last  # Check last event
"""

import sys
import os
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from core.db import get_session
from models.member import Member
from models.source_event import SourceEvent
from models.commission_entry import CommissionEntry
from mlm_system.services.reconciliation_service import ReconciliationService, ReconciliationState

import logging

logging.basicConfig(level=logging.WARNING)


def main():
    """Check commissions."""
    parser = argparse.ArgumentParser(description='Check commissions for a source event')
    parser.add_argument('--event-id', type=int, help='Source event ID to check')
    parser.add_argument('--last', action='store_true', help='Check last event')
    args = parser.parse_args()

    Config.initialize_from_env()
    session = get_session()

    try:
        # Find event
        if args.last:
            event = session.query(SourceEvent).order_by(SourceEvent.eventID.desc()).first()
        elif args.event_id:
            event = session.get(SourceEvent, args.event_id)
        else:
            print("❌ Specify --event-id or --last")
            return

        if not event:
            print("❌ Event not found")
            return

        payer = session.get(Member, event.memberID)

        print("\n" + "=" * 80)
        print("COMMISSION CHECK")
        print("=" * 80)
        print(f"\nEvent ID: {event.eventID} ({event.eventType}, S{event.structureType})")
        print(f"Payer: {payer.fullName if payer else '?'} (ID: {event.memberID})")
        print(f"Amount: {event.amount} KZT")
        print(f"Date: {event.occurredAt}")

        entries = session.query(CommissionEntry).filter_by(
            sourceEventID=event.eventID
        ).order_by(CommissionEntry.level, CommissionEntry.entryID).all()

        print(f"\n{len(entries)} ledger entr{'y' if len(entries) == 1 else 'ies'}:")
        print("-" * 80)

        for entry in entries:
            member = session.get(Member, entry.recipientID)
            print(
                f"Level {entry.level:2}: "
                f"{(member.fullName if member else '?'):20} "
                f"{entry.percent or '-':>6}% = {entry.amount:8} KZT "
                f"({entry.status:9}) [{entry.entryKind}]"
            )

        print("-" * 80)

        items = ReconciliationService(session).diffEvent(event)
        expected = sum(item.expected for item in items)
        actual = sum(entry.amount for entry in entries)

        print(f"\nTotal in ledger:  {actual} KZT")
        print(f"Expected:         {expected} KZT")

        problems = [item for item in items if item.state != ReconciliationState.OK]
        if not problems:
            print("\n✅ COMMISSION CALCULATION CORRECT!")
        else:
            print("\n⚠️  WARNING: ledger differs from rules:")
            for item in problems:
                print(
                    f"  L{item.level} member {item.recipientId}: {item.state.value} "
                    f"expected {item.expected}, actual {item.actual}"
                    + (f" ({item.reason})" if item.reason else "")
                )

        print("\n" + "=" * 80 + "\n")

    finally:
        session.close()


if __name__ == "__main__":
    main()
