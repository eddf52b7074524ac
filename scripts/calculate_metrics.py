#!/usr/bin/env python
"""
Calculate Metrics Script
Recompute sprint, board and flow metrics from the mirror.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from agile_mirror.utils.logger import setup_logging, get_logger
from agile_mirror.context import EngineContext
from agile_mirror.errors import Busy


def run(context: EngineContext, args) -> bool:
    """Run the requested recompute; returns False when anything failed."""
    if args.sprint is not None:
        metrics = context.sprint_metrics.calculate_sprint_metrics(args.sprint)
        if metrics is None:
            print(f"Sprint {args.sprint} not found")
            return False
        print(f"Velocity: {metrics.velocity}")
        print(f"Completion Rate: {metrics.completion_rate}%")
        print(f"Churn Rate: {metrics.churn_rate}")
        print(f"Quality Rate: {metrics.quality_rate}% ({metrics.total_defects} defect(s))")
        print(f"Flags: {', '.join(metrics.data_flags or []) or 'none'}")
        return True

    if args.board is not None:
        metrics = context.sprint_metrics.calculate_board_metrics(args.board)
        if metrics is None:
            print(f"Board {args.board} not found")
            return False
        print(f"Average Velocity: {metrics.average_velocity}")
        print(f"Predicted Velocity: {metrics.predicted_velocity}")
        print(f"Velocity Trend: {metrics.velocity_trend}")
        print(f"Average Quality Rate: {metrics.average_quality_rate}%")
        return True

    if args.kanban is not None:
        metrics = context.flow_metrics.calculate_metrics_for_board(args.kanban)
        if metrics is None:
            print(f"Kanban board {args.kanban} skipped (missing or empty)")
            return True
        print(f"Period: {metrics.period_start} - {metrics.period_end} ({metrics.period_source})")
        print(f"Throughput: {metrics.throughput}")
        print(f"Average Cycle Time: {metrics.average_cycle_time} days")
        print(f"WIP Violations: {metrics.wip_violations}")
        return True

    boards = context.sprint_metrics.calculate_all_boards()
    kanban = context.flow_metrics.calculate_metrics_for_all_boards()
    print(f"\n{'='*50}")
    print("Metrics Recompute Complete")
    print(f"{'='*50}")
    print(f"Boards calculated: {len(boards['calculated'])}")
    print(f"Boards skipped: {len(boards['skipped'])}")
    print(f"Boards failed: {len(boards['failed'])}")
    print(f"Kanban boards calculated: {len(kanban['calculated'])}")
    print(f"Kanban boards skipped: {len(kanban['skipped'])}")
    print(f"Kanban boards failed: {len(kanban['failed'])}")
    return not boards['failed'] and not kanban['failed']


def main():
    """Main entry point for metrics calculation."""
    parser = argparse.ArgumentParser(description='Recompute agile metrics')
    parser.add_argument(
        '--sprint',
        type=int,
        help='Only recompute this local sprint id'
    )
    parser.add_argument(
        '--board',
        type=int,
        help='Only recompute this local board id (sprints and rollup)'
    )
    parser.add_argument(
        '--kanban',
        type=int,
        help='Only recompute this local kanban board id'
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
        logger.info(f"Metrics recompute skipped: {e}")
        print(f"\nSkipped: {e}")
        return
    except Exception as e:
        logger.error(f"Metrics recompute failed: {e}")
        print(f"\nError: {e}")
        sys.exit(1)

    if not succeeded:
        sys.exit(1)


if __name__ == '__main__':
    main()
