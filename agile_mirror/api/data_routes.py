"""
Mirror Data API Blueprint
Read-only endpoints over the mirrored projects, boards, sprints and issues.
"""

from flask import Blueprint, jsonify, request

from agile_mirror.api import get_context
from agile_mirror.database.queries import QueryHelpers, to_dict
from agile_mirror.utils.logger import get_logger

logger = get_logger(__name__)

data_bp = Blueprint('data', __name__, url_prefix='/api/data')


def _error(message: str, status: int = 500):
    return jsonify({
        'success': False,
        'error': message
    }), status


@data_bp.route('/projects', methods=['GET'])
def get_projects():
    """List mirrored projects."""
    try:
        with get_context().db.session_scope() as session:
            projects = [to_dict(p) for p in QueryHelpers(session).get_projects()]

        return jsonify({
            'success': True,
            'count': len(projects),
            'projects': projects
        })

    except Exception as e:
        logger.error(f"Failed to list projects: {e}")
        return _error(str(e))


@data_bp.route('/boards', methods=['GET'])
def get_boards():
    """
    List mirrored boards.

    Query params:
        type: Only boards of this type (scrum, kanban, simple)
    """
    try:
        board_type = request.args.get('type')
        with get_context().db.session_scope() as session:
            boards = [to_dict(b) for b in QueryHelpers(session).get_boards(board_type)]

        return jsonify({
            'success': True,
            'count': len(boards),
            'boards': boards
        })

    except Exception as e:
        logger.error(f"Failed to list boards: {e}")
        return _error(str(e))


@data_bp.route('/boards/<int:board_id>/sprints', methods=['GET'])
def get_board_sprints(board_id: int):
    """
    List a board's sprints, newest first.

    Query params:
        state: Only sprints in this state
    """
    try:
        state = request.args.get('state')
        with get_context().db.session_scope() as session:
            queries = QueryHelpers(session)
            if queries.get_board(board_id) is None:
                return _error('Board not found', 404)
            sprints = [to_dict(s) for s in queries.get_sprints_by_board(board_id, state)]

        return jsonify({
            'success': True,
            'count': len(sprints),
            'sprints': sprints
        })

    except Exception as e:
        logger.error(f"Failed to list sprints for board {board_id}: {e}")
        return _error(str(e))


@data_bp.route('/sprints/<int:sprint_id>/issues', methods=['GET'])
def get_sprint_issues(sprint_id: int):
    """List the issues currently in a sprint."""
    try:
        with get_context().db.session_scope() as session:
            queries = QueryHelpers(session)
            if queries.get_sprint(sprint_id) is None:
                return _error('Sprint not found', 404)
            issues = [to_dict(i) for i in queries.get_issues_by_sprint(sprint_id)]

        return jsonify({
            'success': True,
            'count': len(issues),
            'issues': issues
        })

    except Exception as e:
        logger.error(f"Failed to list issues for sprint {sprint_id}: {e}")
        return _error(str(e))


@data_bp.route('/issues/<issue_key>', methods=['GET'])
def get_issue(issue_key: str):
    """Get one issue with its change history."""
    try:
        with get_context().db.session_scope() as session:
            queries = QueryHelpers(session)
            issue = queries.get_issue_by_key(issue_key)
            if issue is None:
                return _error('Issue not found', 404)
            changelog = [to_dict(entry) for entry in queries.get_changelog(issue.id)]
            issue = to_dict(issue)

        return jsonify({
            'success': True,
            'issue': issue,
            'changelog': changelog
        })

    except Exception as e:
        logger.error(f"Failed to get issue {issue_key}: {e}")
        return _error(str(e))


@data_bp.route('/kanban', methods=['GET'])
def get_kanban_boards():
    """List mirrored kanban boards with their column configuration."""
    try:
        with get_context().db.session_scope() as session:
            boards = [to_dict(b) for b in QueryHelpers(session).get_kanban_boards()]

        return jsonify({
            'success': True,
            'count': len(boards),
            'kanban_boards': boards
        })

    except Exception as e:
        logger.error(f"Failed to list kanban boards: {e}")
        return _error(str(e))


@data_bp.route('/kanban/<int:kanban_board_id>/issues', methods=['GET'])
def get_kanban_issues(kanban_board_id: int):
    """List the column memberships of a kanban board."""
    try:
        with get_context().db.session_scope() as session:
            memberships = [to_dict(m) for m in QueryHelpers(session).get_kanban_issues(kanban_board_id)]

        return jsonify({
            'success': True,
            'count': len(memberships),
            'issues': memberships
        })

    except Exception as e:
        logger.error(f"Failed to list issues for kanban board {kanban_board_id}: {e}")
        return _error(str(e))
