"""
Metrics API Blueprint
Provides REST endpoints for recomputing and reading sprint and flow metrics.
"""

from flask import Blueprint, jsonify

from agile_mirror.api import busy_response, get_context
from agile_mirror.database.queries import QueryHelpers, to_dict
from agile_mirror.errors import Busy
from agile_mirror.utils.logger import get_logger

logger = get_logger(__name__)

metrics_bp = Blueprint('metrics', __name__, url_prefix='/api/metrics')


def _not_found(message: str):
    return jsonify({
        'success': False,
        'error': message
    }), 404


# ========================================
# Sprint Metrics
# ========================================

@metrics_bp.route('/sprint/<int:sprint_id>', methods=['GET'])
def get_sprint_metrics(sprint_id: int):
    """
    Get the stored metrics for a sprint.

    Args:
        sprint_id: Local sprint id
    """
    try:
        with get_context().db.session_scope() as session:
            queries = QueryHelpers(session)
            sprint = to_dict(queries.get_sprint(sprint_id))
            metrics = to_dict(queries.get_sprint_metrics(sprint_id))

        if sprint is None:
            return _not_found('Sprint not found')

        return jsonify({
            'success': True,
            'sprint': sprint,
            'metrics': metrics
        })

    except Exception as e:
        logger.error(f"Failed to get metrics for sprint {sprint_id}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@metrics_bp.route('/sprint/<int:sprint_id>/calculate', methods=['POST'])
def calculate_sprint_metrics(sprint_id: int):
    """Recompute the metrics of one sprint."""
    try:
        metrics = get_context().sprint_metrics.calculate_sprint_metrics(sprint_id)
        if metrics is None:
            return _not_found('Sprint not found')

        return jsonify({
            'success': True,
            'metrics': to_dict(metrics)
        })

    except Busy as e:
        return busy_response(e)
    except Exception as e:
        logger.error(f"Metrics calculation for sprint {sprint_id} failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


# ========================================
# Board Metrics
# ========================================

@metrics_bp.route('/board/<int:board_id>', methods=['GET'])
def get_board_metrics(board_id: int):
    """
    Get the rollup and per-sprint metrics for a board.

    Args:
        board_id: Local board id
    """
    try:
        with get_context().db.session_scope() as session:
            queries = QueryHelpers(session)
            board = to_dict(queries.get_board(board_id))
            rollup = to_dict(queries.get_board_metrics(board_id))
            sprints = queries.get_board_sprint_metrics(board_id)

        if board is None:
            return _not_found('Board not found')

        return jsonify({
            'success': True,
            'board': board,
            'metrics': rollup,
            'sprints': sprints
        })

    except Exception as e:
        logger.error(f"Failed to get metrics for board {board_id}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@metrics_bp.route('/board/<int:board_id>/calculate', methods=['POST'])
def calculate_board_metrics(board_id: int):
    """Recompute a board's sprint metrics and rollup."""
    try:
        metrics = get_context().sprint_metrics.calculate_board_metrics(board_id)
        if metrics is None:
            return _not_found('Board not found')

        return jsonify({
            'success': True,
            'metrics': to_dict(metrics)
        })

    except Busy as e:
        return busy_response(e)
    except Exception as e:
        logger.error(f"Metrics calculation for board {board_id} failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


# ========================================
# Kanban Metrics
# ========================================

@metrics_bp.route('/kanban/<int:kanban_board_id>', methods=['GET'])
def get_kanban_metrics(kanban_board_id: int):
    """
    Get the stored flow metrics for a kanban board.

    Args:
        kanban_board_id: Local kanban board id
    """
    try:
        with get_context().db.session_scope() as session:
            metrics = to_dict(QueryHelpers(session).get_kanban_metrics(kanban_board_id))

        if metrics is None:
            return _not_found('No metrics for this kanban board')

        return jsonify({
            'success': True,
            'metrics': metrics
        })

    except Exception as e:
        logger.error(f"Failed to get kanban metrics for board {kanban_board_id}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@metrics_bp.route('/kanban/<int:kanban_board_id>/calculate', methods=['POST'])
def calculate_kanban_metrics(kanban_board_id: int):
    """Recompute flow metrics for a kanban board."""
    try:
        metrics = get_context().flow_metrics.calculate_metrics_for_board(kanban_board_id)

        return jsonify({
            'success': True,
            'skipped': metrics is None,
            'metrics': to_dict(metrics)
        })

    except Busy as e:
        return busy_response(e)
    except Exception as e:
        logger.error(f"Flow metrics for kanban board {kanban_board_id} failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@metrics_bp.route('/calculate', methods=['POST'])
def calculate_all_metrics():
    """Recompute metrics for every board."""
    try:
        context = get_context()
        boards = context.sprint_metrics.calculate_all_boards()
        kanban = context.flow_metrics.calculate_metrics_for_all_boards()

        return jsonify({
            'success': not boards['failed'] and not kanban['failed'],
            'boards': boards,
            'kanban_boards': kanban
        })

    except Exception as e:
        logger.error(f"Metrics recompute failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500
