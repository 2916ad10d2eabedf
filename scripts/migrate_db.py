#!/usr/bin/env python3
"""
Database Migration — Create the users / meetups / subscriptions tables.

Usage:
    # Create missing tables:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check

    # Create tables and load demo users and meetups for local development:
    python scripts/migrate_db.py --seed scripts/seed.yaml
"""
import asyncio
import os
import sys
import argparse

import yaml

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def _seed(path: str):
    from database.store import SqlSubscriptionStore
    from models.schemas import Meetup, User

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    store = SqlSubscriptionStore()
    for raw in data.get("users", []):
        await store.upsert_user(User(**raw))
    for raw in data.get("meetups", []):
        await store.upsert_meetup(Meetup(**raw))
    print(f"Seeded {len(data.get('users', []))} users, {len(data.get('meetups', []))} meetups")


async def run_migration(check_only: bool = False, seed_path: str = ""):
    from config.settings import load_settings
    load_settings()

    from database.session import close_db, existing_tables, get_engine, init_db, missing_tables
    from database.models import Base

    engine = get_engine()
    defined = set(Base.metadata.tables.keys())

    if check_only:
        print(f"Database: {engine.dialect.name}")
        print(f"URL: {engine.url.render_as_string(hide_password=True)}")
        print(f"Tables defined: {', '.join(sorted(defined))}")

        missing = await missing_tables()
        if missing:
            print(f"Tables MISSING: {', '.join(missing)}")
            print("Run without --check to create them.")
        else:
            print("All tables exist. ✓")
        await close_db()
        return

    print("Running database migration...")
    await init_db()

    async with engine.connect() as conn:
        tables = await existing_tables(conn)
    print(f"Tables created/verified: {', '.join(t for t in tables if t in defined)}")

    if seed_path:
        await _seed(seed_path)

    await close_db()
    print("Migration complete. ✓")


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--seed", default="", help="YAML file with users and meetups to load")
    args = parser.parse_args()

    asyncio.run(run_migration(check_only=args.check, seed_path=args.seed))


if __name__ == "__main__":
    main()
