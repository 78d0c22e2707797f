#!/usr/bin/env python3
"""
Database Migration — Create the job engine tables from SQLAlchemy models.

Usage:
    # Create jobs, rate_windows, usage_metrics, job_events:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check

    # Job counts by status plus the most recent failures:
    python scripts/migrate_db.py --jobs [--workspace WS_ID]
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _table_names(sync_conn) -> list[str]:
    from sqlalchemy import inspect
    return inspect(sync_conn).get_table_names()


async def run_migration(check_only: bool = False):
    from config.settings import load_settings
    load_settings()

    from database.session import get_engine, close_db
    from database.models import Base

    engine = get_engine()
    defined = list(Base.metadata.tables.keys())

    if check_only:
        print(f"Database: {engine.dialect.name}")
        print(f"URL: {str(engine.url).split('@')[-1] if '@' in str(engine.url) else str(engine.url)}")
        print(f"Tables defined: {', '.join(defined)}")

        async with engine.connect() as conn:
            existing = await conn.run_sync(_table_names)
        print(f"Tables existing: {', '.join(existing) or '(none)'}")

        missing = set(defined) - set(existing)
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

    # Verify
    async with engine.connect() as conn:
        tables = await conn.run_sync(_table_names)
    print(f"Tables created/verified: {', '.join(t for t in tables if t in defined)}")

    await close_db()
    print("Migration complete. ✓")


async def show_jobs(workspace_id: str = None, limit: int = 10):
    from config.settings import load_settings
    load_settings()

    from database.session import close_db
    from database.store import SqlJobStore

    store = SqlJobStore()
    counts = await store.count_by_status(workspace_id)
    print(f"Jobs{f' in {workspace_id}' if workspace_id else ''}:")
    for status in ("pending", "processing", "scheduled", "completed", "failed"):
        print(f"  {status:<11} {counts.get(status, 0)}")

    failed = await store.list_failed(workspace_id, limit=limit)
    if failed:
        print(f"Most recent failures ({len(failed)}):")
        for job in failed:
            print(f"  {job.id}  {job.job_type:<15} attempts={job.attempt_count}/{job.max_attempts}"
                  f"  {job.last_error or ''}")
    await close_db()


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--jobs", action="store_true", help="Show job counts and recent failures")
    parser.add_argument("--workspace", default=None, help="Restrict --jobs to one workspace")
    args = parser.parse_args()

    if args.jobs:
        asyncio.run(show_jobs(args.workspace))
    else:
        asyncio.run(run_migration(check_only=args.check))


if __name__ == "__main__":
    main()
