"""
CLI utility for memory store maintenance.

Usage:
    python scripts/memory_admin.py --stats
    python scripts/memory_admin.py --rebuild-index
    python scripts/memory_admin.py --transitions sess_0123abcd
    python scripts/memory_admin.py --end-session sess_0123abcd
"""

import argparse
import sys
from datetime import datetime
from pathlib import Path

from tiered_recall.config.settings import Settings
from tiered_recall.errors import TieredRecallError
from tiered_recall.index.ranked_index import RankedIndex
from tiered_recall.memory.tiers import TierManager
from tiered_recall.persist import TurnDatabase, TurnStore


def format_time(ts: float) -> str:
    """Format unix timestamp as human-readable string."""
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def show_stats(store: TurnStore) -> int:
    print(f"Memory store: {store.db.db_path}\n")
    stats = store.db.stats()
    for table, count in stats.items():
        print(f"{table:<15} {count:>10,}")

    tier_counts = store.db.fetch_all("SELECT tier, COUNT(*) FROM turns GROUP BY tier ORDER BY tier")
    if tier_counts:
        print()
        for tier, count in tier_counts:
            print(f"  {tier:<13} {count:>10,}")
    return 0


def rebuild_index(store: TurnStore, settings: Settings) -> int:
    index = RankedIndex.rebuild(store.iter_all_turns(), k1=settings.ranking.k1, b=settings.ranking.b)
    snapshot = index.stats_snapshot()
    print(f"Indexed turns:   {snapshot.doc_count:,}")
    print(f"Total length:    {snapshot.total_length:,}")
    print(f"Avg doc length:  {snapshot.avgdl:.2f}")
    print(f"Distinct terms:  {len(snapshot.doc_freq):,}")
    return 0


def show_transitions(store: TurnStore, session_id: str) -> int:
    transitions = store.get_transitions(session_id=session_id)
    if not transitions:
        print(f"No transitions for session {session_id}")
        return 0

    print(f"{'When':<20} {'Turn':<22} {'From':<6} {'To':<6} Reason")
    print("=" * 80)
    for tr in transitions:
        print(
            f"{format_time(tr.transitioned_at):<20} {tr.turn_id:<22} "
            f"{tr.from_tier.value:<6} {tr.to_tier.value:<6} {tr.reason}"
        )
    return 0


def end_session(store: TurnStore, settings: Settings, session_id: str) -> int:
    index = RankedIndex(k1=settings.ranking.k1, b=settings.ranking.b)
    tiers = TierManager(store, index, cfg=settings.tiers)
    transitions = tiers.end_session(session_id)
    print(f"Ended {session_id}: {len(transitions)} turns moved to cold")
    return 0


def main():
    """CLI entrypoint."""
    parser = argparse.ArgumentParser(
        description="Maintain the tiered memory store"
    )
    parser.add_argument("--stats", action="store_true", help="Show row counts and tier distribution")
    parser.add_argument("--rebuild-index", action="store_true", help="Rebuild the ranked index and print its statistics")
    parser.add_argument("--transitions", metavar="SESSION_ID", help="Show the tier transition log for a session")
    parser.add_argument("--end-session", metavar="SESSION_ID", help="End a session (moves its turns to cold)")
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Database path (default: settings store.db_path)",
    )

    args = parser.parse_args()

    if not (args.stats or args.rebuild_index or args.transitions or args.end_session):
        parser.print_help()
        print("\nError: specify at least one action")
        sys.exit(1)

    settings = Settings.from_env()
    db_path = args.db or Path(settings.store.db_path)
    if not db_path.exists():
        print(f"Memory database not found: {db_path}")
        sys.exit(1)

    exit_code = 0
    try:
        with TurnDatabase(db_path) as db:
            store = TurnStore(db, user_query_cap=settings.store.user_query_cap)
            if args.stats:
                exit_code |= show_stats(store)
            if args.rebuild_index:
                exit_code |= rebuild_index(store, settings)
            if args.transitions:
                exit_code |= show_transitions(store, args.transitions)
            if args.end_session:
                exit_code |= end_session(store, settings, args.end_session)
    except TieredRecallError as e:
        print(f"Error: {e}")
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
