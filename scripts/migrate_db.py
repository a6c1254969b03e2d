#!/usr/bin/env python3
"""
Queue Migration — Create the database and Service Broker objects.

Usage:
    # Local:
    python scripts/migrate_db.py

    # Against a specific config file:
    WORKQUEUE_CONFIG=/etc/workqueue.yaml python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run_migration(check_only: bool = False, skip_create: bool = False) -> int:
    from config.settings import load_settings
    settings = load_settings()

    from database.migrator import SqlServerQueueMigrator
    from database.session import safe_url, to_async_url
    from job_queue.broker_names import BrokerNamesProvider
    from job_queue.errors import QueueError

    names = BrokerNamesProvider(host_name=settings.queue.host_name)
    migrator = SqlServerQueueMigrator(
        settings.database.connection_string,
        names,
        connect_attempts=settings.database.connect_attempts,
    )

    print(f"Database: {migrator.database or '(unset)'}")
    print(f"URL: {safe_url(to_async_url(settings.database.connection_string))}")

    try:
        if check_only:
            found = await migrator.existing_objects()
            print(f"Broker enabled: {'yes' if found.pop('broker_enabled') else 'NO'}")
            missing = [key for key, exists in found.items() if not exists]
            for key, exists in found.items():
                print(f"  {'✓' if exists else '✗'} {key}")
            if missing:
                print(f"Objects MISSING: {len(missing)}")
                print("Run without --check to create them.")
                return 1
            print("All broker objects exist. ✓")
            return 0

        print("Running queue migration...")
        if not skip_create:
            await migrator.create_db()
        await migrator.migrate_db()
    except QueueError as e:
        print(f"Migration failed: {e}", file=sys.stderr)
        return 2

    print(f"Queues created/verified: {', '.join(par.queue_name for par in names)}")
    print("Migration complete. ✓")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Service Broker queue migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--skip-create", action="store_true",
                        help="Do not create the database, only broker objects")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check, skip_create=args.skip_create)))


if __name__ == "__main__":
    main()
