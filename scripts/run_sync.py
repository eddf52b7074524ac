#!/usr/bin/env python
"""
Run Sync Script
Command-line script for mirroring tracker data.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from agile_mirror.utils.logger import setup_logging, get_logger
from agile_mirror.context import EngineContext
from agile_mirror.errors import Busy


def print_operation(operation):
    print(f"\n{'='*50}")
    print(f"Sync {operation.resource_key}")
    print(f"{'='*50}")
    print(f"Operation ID: {operation.id}")
    print(f"Status: {operation.status}")
    print(f"Fetched: {operation.fetched_count}")
    print(f"Inserted: {operation.inserted_count}")
    print(f"Updated: {operation.updated_count}")
    print(f"Unchanged: {operation.unchanged_count}")
    print(f"Failed: {operation.failed_count}")
    if operation.started_at and operation.finished_at:
        print(f"Duration: {(operation.finished_at - operation.started_at).total_seconds():.2f}s")
    if operation.error_message:
        print(f"Error: {operation.error_message}")


def run(context: EngineContext, args) -> bool:
    """Run the requested sync; returns False when anything failed."""
    if args.no_changelog:
        context.sync.sync_changelogs = False

    if args.board is not None:
        operation = context.sync.sync_board_sprints(args.board)
    elif args.sprint is not None:
        operation = context.sync.sync_sprint_issues(args.sprint)
    elif args.kanban is not None:
        operation = context.sync.sync_kanban_board_issues(args.kanban)
    else:
        summary = context.sync.sync_all()
        print(f"\n{'='*50}")
        print("Full Sync Complete")
        print(f"{'='*50}")
        print(f"Operations: {summary['operations']}")
        print(f"Completed: {summary['completed']}")
        print(f"Failed: {summary['failed']}")
        print(f"Skipped (busy): {summary['skipped']}")
        if summary['cancelled']:
            print("Cancelled before completion")
        return summary['failed'] == 0

    print_operation(operation)
    return operation.status == 'completed'


def main():
    """Main entry point for the sync script."""
    parser = argparse.ArgumentParser(description='Mirror Jira boards, sprints and issues')
    parser.add_argument(
        '--board',
        type=int,
        help='Only sync the sprints of this Jira board id'
    )
    parser.add_argument(
        '--sprint',
        type=int,
        help='Only sync the issues of this Jira sprint id'
    )
    parser.add_argument(
        '--kanban',
        type=int,
        help='Only sync the issues of this Jira kanban board id'
    )
    parser.add_argument(
        '--no-changelog',
        action='store_true',
        help='Skip changelog ingestion on a full sync'
    )

    args = parser.parse_args()

    # Setup logging
    setup_logging()
    logger = get_logger(__name__)

    try:
        context = EngineContext().start(scheduler=False)
        try:
            succeeded = run(context, args)
        finally:
            context.stop()
    except Busy as e:
        logger.info(f"Sync skipped: {e}")
        print(f"\nSkipped: {e}")
        return
    except Exception as e:
        logger.error(f"Sync failed: {e}")
        print(f"\nError: {e}")
        sys.exit(1)

    if not succeeded:
        sys.exit(1)


if __name__ == '__main__':
    main()
