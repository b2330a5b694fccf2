#!/usr/bin/env python3
"""
Display sponsorship tree.

Shows the complete participant hierarchy with status indicators and a
genealogy integrity report (cycles, orphans, duplicate referral codes).

Usage:
    python scripts/show_tree.py [--root-id PARTICIPANT_ID] [--max-depth DEPTH] [--stats]
"""

import sys
import os
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import func

from config import Config
from core.db import get_session
from models.participant import Participant
from mlm_system.utils.genealogy import GenealogySnapshot

import logging

logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def print_tree(snapshot: GenealogySnapshot, root_id: int, max_depth=None):
    """Print ASCII tree of the structure below root_id."""
    printed = set()

    def print_node(participant_id, prefix="", is_last=True, depth=0):
        if max_depth and depth > max_depth:
            return
        if participant_id in printed:
            print(f"{prefix}{'└─ ' if is_last else '├─ '}⚠️  (ID:{participant_id}) already shown - cycle")
            return
        printed.add(participant_id)

        node = snapshot.get_node(participant_id)
        connector = "└─ " if is_last else "├─ "
        rank_display = f"[{node.rank}]" if node.rank != "starter" else ""
        root_marker = "👑 " if snapshot.is_root(participant_id) else ""
        corrupt_marker = "⚠️  " if snapshot.is_corrupt(participant_id) else ""
        active_marker = "✅" if node.isActive else "❌"

        print(
            f"{prefix}{connector}{root_marker}{corrupt_marker}"
            f"{node.referralCode} (ID:{participant_id}) {active_marker} {rank_display}"
        )

        children = snapshot.get_children(participant_id)
        for i, child_id in enumerate(children):
            is_last_child = (i == len(children) - 1)
            new_prefix = prefix + ("    " if is_last else "│   ")
            print_node(child_id, new_prefix, is_last_child, depth + 1)

    print("\n" + "=" * 80)
    print("SPONSORSHIP TREE")
    print("=" * 80)
    print("\nLegend:")
    print("  👑 = Tree root (no sponsor)")
    print("  ⚠️  = Data integrity problem (cycle / duplicate referral code)")
    print("  ✅ = Active participant")
    print("  ❌ = Inactive participant")
    print("  [rank] = Participant rank (if not 'starter')")
    print("\n" + "=" * 80 + "\n")
    print_node(root_id)
    print("\n" + "=" * 80 + "\n")


def print_corruption(snapshot: GenealogySnapshot):
    """Print genealogy integrity report."""
    report = snapshot.find_corruption()

    print("GENEALOGY INTEGRITY")
    print("=" * 80 + "\n")

    if not any(report.values()):
        print("No problems found")

    for cycle in report["cycles"]:
        print(f"Cycle:          {' → '.join(str(pid) for pid in cycle + [cycle[0]])}")
    for pid in report["orphans"]:
        print(f"Orphan:         participant {pid} (sponsor missing)")
    for code, owners in report["duplicateCodes"].items():
        print(f"Duplicate code: {code} shared by {owners}")

    print("\n" + "=" * 80 + "\n")


def print_statistics():
    """Print database statistics."""
    session = get_session()
    try:
        total = session.query(Participant).count()
        active = session.query(Participant).filter_by(isActive=True).count()

        print("\n" + "=" * 80)
        print("DATABASE STATISTICS")
        print("=" * 80 + "\n")

        print(f"Total participants:    {total}")
        if not total:
            return
        print(f"Active participants:   {active} ({active/total*100:.1f}%)")
        print(f"Inactive participants: {total - active} ({(total - active)/total*100:.1f}%)")

        print("\nParticipants by rank:")
        rank_counts = session.query(
            Participant.rank,
            func.count(Participant.participantID)
        ).group_by(Participant.rank).all()

        for rank, count in rank_counts:
            print(f"  {rank:12} {count:3} ({count/total*100:.1f}%)")

        capped = session.query(Participant).filter_by(earningsCapReached=True).count()
        print(f"\nAt earnings cap: {capped}")

        print("\n" + "=" * 80 + "\n")

    finally:
        session.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Display sponsorship tree')
    parser.add_argument('--root-id', type=int,
                        help='Participant ID of the root (default: every tree root)')
    parser.add_argument('--max-depth', type=int,
                        help='Maximum depth to display')
    parser.add_argument('--stats', action='store_true',
                        help='Show statistics only')
    args = parser.parse_args()

    # Initialize config
    Config.initialize_from_env()

    if args.stats:
        print_statistics()
        return

    session = get_session()
    try:
        snapshot = GenealogySnapshot.from_session(session)

        if args.root_id:
            if args.root_id not in snapshot:
                print(f"❌ Participant {args.root_id} not found!")
                return
            roots = [args.root_id]
        else:
            roots = [pid for pid in snapshot.participant_ids if snapshot.is_root(pid)]

        for root_id in roots:
            print_tree(snapshot, root_id, args.max_depth)

        print_corruption(snapshot)
        print_statistics()

    finally:
        session.close()


if __name__ == "__main__":
    main()
