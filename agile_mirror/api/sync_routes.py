"""
Sync API Blueprint
Provides REST endpoints for triggering and monitoring mirror syncs.
"""

from flask import Blueprint, jsonify, request

from agile_mirror.api import busy_response, get_context
from agile_mirror.database.queries import QueryHelpers, to_dict
from agile_mirror.errors import Busy
from agile_mirror.utils.logger import get_logger

logger = get_logger(__name__)

sync_bp = Blueprint('sync', __name__, url_prefix='/api/sync')


def _operation_response(operation):
    return jsonify({
        'success': operation.status == 'completed',
        'operation': to_dict(operation)
    })


@sync_bp.route('/run', methods=['POST'])
def trigger_full_sync():
    """
    Run a full mirror pass.

    Returns:
        JSON with the pass summary
    """
    try:
        logger.info("Full sync triggered via API")
        summary = get_context().sync.sync_all()
        return jsonify({
            'success': summary['failed'] == 0 and not summary['cancelled'],
            'summary': summary
        })
    except Exception as e:
        logger.error(f"Full sync failed: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500


@sync_bp.route('/projects', methods=['POST'])
def trigger_project_sync():
    """Mirror projects."""
    try:
        return _operation_response(get_context().sync.sync_projects())
    except Busy as e:
        return busy_response(e)
    except Exception as e:
        logger.error(f"Project sync failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/boards', methods=['POST'])
def trigger_board_sync():
    """Mirror boards and their column configuration."""
    try:
        return _operation_response(get_context().sync.sync_boards())
    except Busy as e:
        return busy_response(e)
    except Exception as e:
        logger.error(f"Board sync failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/boards/<int:board_id>/sprints', methods=['POST'])
def trigger_sprint_sync(board_id: int):
    """
    Mirror the sprints of a board.

    Args:
        board_id: Jira board id
    """
    try:
        return _operation_response(get_context().sync.sync_board_sprints(board_id))
    except Busy as e:
        return busy_response(e)
    except Exception as e:
        logger.error(f"Sprint sync for board {board_id} failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/sprints/<int:sprint_id>/issues', methods=['POST'])
def trigger_sprint_issue_sync(sprint_id: int):
    """
    Mirror the issues of a sprint.

    Args:
        sprint_id: Jira sprint id
    """
    try:
        return _operation_response(get_context().sync.sync_sprint_issues(sprint_id))
    except Busy as e:
        return busy_response(e)
    except Exception as e:
        logger.error(f"Issue sync for sprint {sprint_id} failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/kanban/<int:board_id>/issues', methods=['POST'])
def trigger_kanban_issue_sync(board_id: int):
    """
    Mirror the issues of a kanban board.

    Args:
        board_id: Jira board id
    """
    try:
        return _operation_response(get_context().sync.sync_kanban_board_issues(board_id))
    except Busy as e:
        return busy_response(e)
    except Exception as e:
        logger.error(f"Kanban issue sync for board {board_id} failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/issues/<int:issue_id>/changelog', methods=['POST'])
def trigger_changelog_sync(issue_id: int):
    """
    Ingest the changelog of one issue.

    Args:
        issue_id: Local issue id
    """
    try:
        added = get_context().changelog.sync_changelog_for(issue_id)
        return jsonify({
            'success': True,
            'issue_id': issue_id,
            'entries_added': added
        })
    except Busy as e:
        return busy_response(e)
    except Exception as e:
        logger.error(f"Changelog sync for issue {issue_id} failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@sync_bp.route('/cancel', methods=['POST'])
def cancel_sync():
    """Ask the running sync to stop at the next unit boundary."""
    get_context().sync.cancel()
    return jsonify({'success': True})


@sync_bp.route('/status', methods=['GET'])
def get_sync_status():
    """
    Get status of recent sync operations.

    Query params:
        limit: Number of operations to return (default 10)
        type: Only operations of this sync type

    Returns:
        JSON with list of recent operations
    """
    try:
        limit = int(request.args.get('limit', 10))
        sync_type = request.args.get('type')

        with get_context().db.session_scope() as session:
            queries = QueryHelpers(session)
            operations = [to_dict(op) for op in queries.get_recent_sync_operations(limit, sync_type)]
            last_success = to_dict(queries.get_last_successful_sync(sync_type))

        return jsonify({
            'success': True,
            'operations': operations,
            'last_successful': last_success
        })

    except Exception as e:
        logger.error(f"Failed to get sync status: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500


@sync_bp.route('/status/<int:operation_id>', methods=['GET'])
def get_sync_operation(operation_id: int):
    """
    Get details of a specific sync operation.

    Args:
        operation_id: SyncOperation id
    """
    try:
        with get_context().db.session_scope() as session:
            operation = to_dict(QueryHelpers(session).get_sync_operation(operation_id))

        if operation is None:
            return jsonify({
                'success': False,
                'error': 'Operation not found'
            }), 404

        return jsonify({
            'success': True,
            'operation': operation
        })

    except Exception as e:
        logger.error(f"Failed to get sync operation {operation_id}: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 500
