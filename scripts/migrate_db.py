#!/usr/bin/env python3
"""
Database Migration — Create tables from SQLAlchemy models and seed the calendar.

Usage:
    # Create missing tables:
    python scripts/migrate_db.py

    # Also seed the default send calendar when time_windows is empty:
    python scripts/migrate_db.py --seed-windows

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# (day_of_week, start, end): 0=Sunday; wall clock in settings.timezone
DEFAULT_SEND_WINDOWS = [
    (0, "10:00", "20:00"),
    *[(day, "09:00", "21:00") for day in range(1, 7)],
]


async def _existing_tables(conn, dialect: str) -> list[str]:
    from sqlalchemy import text

    if dialect == "postgresql":
        result = await conn.execute(text(
            "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
        ))
    elif dialect == "mysql":
        result = await conn.execute(text("SHOW TABLES"))
    else:  # sqlite
        result = await conn.execute(text(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        ))
    return [row[0] for row in result.fetchall()]


async def add_event_id_column(conn) -> bool:
    """Add and backfill message_queue.event_id on databases created before it existed."""
    import json
    from sqlalchemy import inspect, text

    columns = await conn.run_sync(
        lambda sync_conn: {c["name"] for c in inspect(sync_conn).get_columns("message_queue")}
    )
    if "event_id" in columns:
        return False

    await conn.execute(text("ALTER TABLE message_queue ADD COLUMN event_id INTEGER"))
    await conn.execute(text(
        "CREATE INDEX ix_message_queue_event_recipient ON message_queue (event_id, recipient)"
    ))
    rows = await conn.execute(text(
        "SELECT id, metadata FROM message_queue WHERE kind = 'EVENT_BROADCAST'"
    ))
    for message_id, metadata in rows.fetchall():
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        event_id = (metadata or {}).get("event_id")
        if isinstance(event_id, int):
            await conn.execute(
                text("UPDATE message_queue SET event_id = :event_id WHERE id = :id"),
                {"event_id": event_id, "id": message_id},
            )
    return True


async def seed_windows() -> int:
    from database.store import SqlQueueStore
    from models.schemas import TimeWindow, WindowKind

    store = SqlQueueStore()
    if await store.list_time_windows(active_only=False):
        print("time_windows already populated, not seeding.")
        return 0
    for day, start, end in DEFAULT_SEND_WINDOWS:
        await store.add_time_window(TimeWindow(
            day_of_week=day, start_time=start, end_time=end,
            kind=WindowKind.SEND, description="default",
        ))
    print(f"Seeded {len(DEFAULT_SEND_WINDOWS)} SEND windows.")
    return len(DEFAULT_SEND_WINDOWS)


async def run_migration(check_only: bool = False, seed: bool = False):
    from config.settings import load_settings
    settings = load_settings()

    from database.session import get_engine, close_db
    from database.models import Base

    engine = get_engine()
    dialect = engine.dialect.name
    defined = set(Base.metadata.tables.keys())

    if check_only:
        print(f"Database: {dialect}")
        print(f"URL: {str(engine.url).split('@')[-1]}")
        print(f"Calendar timezone: {settings.timezone}")
        print(f"Tables defined: {', '.join(sorted(defined))}")

        async with engine.connect() as conn:
            existing = await _existing_tables(conn, dialect)
        print(f"Tables existing: {', '.join(existing) or '(none)'}")

        missing = defined - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        await close_db()
        return

    print("Running database migration...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if await add_event_id_column(conn):
            print("Added message_queue.event_id and backfilled it from metadata.")

    async with engine.connect() as conn:
        tables = await _existing_tables(conn, dialect)
    print(f"Tables created/verified: {', '.join(t for t in tables if t in defined)}")

    if seed:
        await seed_windows()

    await close_db()
    print("Migration complete. ✓")


def main():
    parser = argparse.ArgumentParser(description="Outbound queue database migration")
    parser.add_argument("--check", action="store_true", help="Check status only, no changes")
    parser.add_argument("--seed-windows", action="store_true",
                        help="Seed the default send calendar when time_windows is empty")
    args = parser.parse_args()
    asyncio.run(run_migration(check_only=args.check, seed=args.seed_windows))


if __name__ == "__main__":
    main()
