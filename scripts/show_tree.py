#!/usr/bin/env python3
"""
Display a referral structure tree.

Shows the hierarchy below a member with status indicators.

Usage:
    python scripts/show_tree.py --root-id MEMBER_ID [--structure 1|2] [--max-depth DEPTH]
"""

import sys
import os
import argparse
from collections import defaultdict

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import func

from config import Config
from core.db import get_session
from models.member import Member
from models.sponsor_binding import SponsorBinding
from mlm_system.config.structures import StructureType
from mlm_system.services.network_service import NetworkService
from mlm_system.services.subscription_service import SubscriptionService, STATUS_ACTIVE, STATUS_LAPSED

import logging

logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

STATUS_MARKERS = {
    STATUS_ACTIVE: "✅",
    STATUS_LAPSED: "⏸",
}


def print_tree(root, structure_type, max_depth=None):
    """Print ASCII tree of the structure."""
    session = get_session()
    try:
        network = NetworkService(session)
        subscriptions = SubscriptionService(session)
        nodes = network.resolve(root.memberID, structure_type, max_depth)

        children = defaultdict(list)
        for node in nodes:
            children[node.parentId].append(node.member)

        def print_member(member, prefix="", is_last=True, is_root=False):
            connector = "" if is_root else ("└─ " if is_last else "├─ ")
            status = subscriptions.getStatus(member.memberID)
            marker = STATUS_MARKERS.get(status, "❌")
            free_marker = "🎁 " if member.isMarketingFreeAccess else ""

            print(
                f"{prefix}{connector}{free_marker}"
                f"{member.fullName or '-'} (ID:{member.memberID}, {member.referralCode}) {marker}"
            )

            kids = children.get(member.memberID, [])
            for i, child in enumerate(kids):
                new_prefix = prefix if is_root else prefix + ("    " if is_last else "│   ")
                print_member(child, new_prefix, i == len(kids) - 1)

        print("\n" + "=" * 80)
        print(f"STRUCTURE {int(structure_type)} TREE")
        print("=" * 80)
        print("\nLegend:")
        print("  ✅ = Subscription active")
        print("  ⏸ = Subscription lapsed")
        print("  ❌ = Never subscribed")
        print("  🎁 = Marketing free access (generates no commissions)")
        print("\n" + "=" * 80 + "\n")
        print_member(root, is_root=True)
        print(f"\n{len(nodes)} members below root")
        print("\n" + "=" * 80 + "\n")

    finally:
        session.close()


def print_statistics():
    """Print database statistics."""
    session = get_session()
    try:
        total_members = session.query(Member).count()
        subscriptions = SubscriptionService(session)
        active = sum(
            1 for (member_id,) in session.query(Member.memberID)
            if subscriptions.getStatus(member_id) == STATUS_ACTIVE
        )

        print("\n" + "=" * 80)
        print("DATABASE STATISTICS")
        print("=" * 80 + "\n")

        print(f"Total members:      {total_members}")
        if total_members:
            print(f"Subscribed members: {active} ({active / total_members * 100:.1f}%)")

        print("\nBindings by structure:")
        counts = session.query(
            SponsorBinding.structureType,
            func.count(func.distinct(SponsorBinding.memberID))
        ).group_by(SponsorBinding.structureType).all()

        for structure_type, count in counts:
            print(f"  S{structure_type}: {count} bound members")

        print("\n" + "=" * 80 + "\n")

    finally:
        session.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Display referral structure tree')
    parser.add_argument('--root-id', type=int, help='Member ID of root')
    parser.add_argument('--structure', type=int, default=1, choices=[1, 2],
                        help='Structure to display (1 = subscription, 2 = purchase)')
    parser.add_argument('--max-depth', type=int, help='Maximum depth to display')
    parser.add_argument('--stats', action='store_true', help='Show statistics only')
    args = parser.parse_args()

    # Initialize config
    Config.initialize_from_env()

    if args.stats:
        print_statistics()
        return

    if not args.root_id:
        print("❌ Specify --root-id or --stats")
        return

    session = get_session()
    try:
        root = session.get(Member, args.root_id)
        if not root:
            print(f"❌ Member {args.root_id} not found!")
            return

        print_tree(root, StructureType(args.structure), args.max_depth)
        print_statistics()

    finally:
        session.close()


if __name__ == "__main__":
    main()
