#!/usr/bin/env python
"""
Migration Script
Show, apply or revert schema migrations.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from agile_mirror.utils.logger import setup_logging, get_logger
from agile_mirror.database.connection import DatabaseConnection
from agile_mirror.database.migrations.runner import MigrationRunner
from agile_mirror.errors import MigrationFailure


def main():
    """Main entry point for the migration script."""
    parser = argparse.ArgumentParser(description='Manage database schema migrations')
    parser.add_argument(
        'command',
        choices=['status', 'up', 'down'],
        help='status: list executed/pending, up: apply pending, down: revert one'
    )
    parser.add_argument(
        '--name',
        help='Migration to revert with "down" (default: most recent)'
    )
    parser.add_argument(
        '--database-url',
        help='SQLAlchemy URL overriding the configured database'
    )

    args = parser.parse_args()

    # Setup logging
    setup_logging()
    logger = get_logger(__name__)

    db = DatabaseConnection(url=args.database_url)

    try:
        if not db.check_connection():
            print("Error: Cannot connect to database")
            sys.exit(1)

        runner = MigrationRunner(db.engine)

        if args.command == 'status':
            status = runner.status()
            print(f"\n{'='*50}")
            print("Migration Status")
            print(f"{'='*50}")
            for name in status['executed']:
                print(f"  [x] {name}")
            for name in status['pending']:
                print(f"  [ ] {name}")
            print(f"\nExecuted: {len(status['executed'])}  Pending: {len(status['pending'])}")

        elif args.command == 'up':
            applied = runner.run()
            print(f"Applied {len(applied)} migration(s)")
            for name in applied:
                print(f"  + {name}")

        else:
            reverted = runner.rollback(args.name)
            if reverted:
                print(f"Reverted {reverted}")
            else:
                print("Nothing to revert")

    except (MigrationFailure, ValueError) as e:
        logger.error(f"Migration command failed: {e}")
        print(f"\nError: {e}")
        sys.exit(1)
    finally:
        db.dispose()


if __name__ == '__main__':
    main()
