#!/usr/bin/env python3
"""
Live board watcher - prints a board's snapshot every time it changes.
Signs in with the configured Supabase project, seeds the board and follows its change feed.
"""

import argparse
import asyncio
import sys

from campusboard.core.config import validate_realtime_config
from campusboard.core.portal import connect_portal
from campusboard.core.store import Notice
from campusboard.core.tables import TABLES


def print_snapshot(table: str, snapshot: tuple):
    print(f"\n📋 {table}: {len(snapshot)} rows")
    for item in snapshot:
        row = item.to_dict()
        label = row.get("name") or row.get("title") or row.get("id")
        extra = row.get("status") or row.get("votes") or row.get("target_role") or ""
        print(f"  • {label} {extra}")


def print_notice(notice: Notice):
    icon = "❌" if notice.level == "error" else "⚠️ " if notice.level == "warning" else "ℹ️ "
    print(f"{icon} {notice.title}: {notice.message}")


async def watch(table: str, seconds: float):
    portal = await connect_portal()
    store = portal.board(table)
    store.on_snapshot_change(lambda snapshot: print_snapshot(store.table, snapshot))
    store.on_notice(print_notice)

    try:
        actor = await portal.session.current_actor()
        if actor is not None:
            print(f"👤 Signed in as {actor.name or actor.identity} ({actor.role})")
            store.set_actor(actor)

        if not await store.start():
            print(f"💥 Board did not start: {store.last_error}")
            return False

        print(f"🏃 Watching {store.table} ({'forever' if seconds <= 0 else f'{seconds:.0f}s'})")
        if seconds > 0:
            await asyncio.sleep(seconds)
        else:
            await asyncio.Event().wait()
        return True
    finally:
        await portal.teardown()


def main():
    """Main entry point for the board watcher."""
    parser = argparse.ArgumentParser(description="Print live snapshots of a campus board")
    parser.add_argument("table", choices=sorted(TABLES), help="Board to watch")
    parser.add_argument("--seconds", type=float, default=0, help="Stop after this many seconds (0 = run until interrupted)")
    args = parser.parse_args()

    issues = validate_realtime_config()
    if issues:
        for issue in issues:
            print(f"❌ {issue}")
        sys.exit(1)

    try:
        ok = asyncio.run(watch(args.table, args.seconds))
    except KeyboardInterrupt:
        print("\n👋 Shutting down gracefully...")
        ok = True

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
