"""
Lock API Blueprint
Inspect and clean up resource leases.
"""

from flask import Blueprint, jsonify

from agile_mirror.api import get_context
from agile_mirror.utils.logger import get_logger

logger = get_logger(__name__)

locks_bp = Blueprint('locks', __name__, url_prefix='/api/locks')


@locks_bp.route('/status', methods=['GET'])
def get_lock_status():
    """List live leases."""
    try:
        leases = get_context().locks.active_locks()
        return jsonify({
            'success': True,
            'count': len(leases),
            'locks': [lease.to_dict() for lease in leases]
        })
    except Exception as e:
        logger.error(f"Failed to list locks: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@locks_bp.route('/cleanup', methods=['POST'])
def cleanup_locks():
    """Remove expired leases now."""
    try:
        removed = get_context().locks.sweep_expired()
        return jsonify({
            'success': True,
            'removed': removed
        })
    except Exception as e:
        logger.error(f"Lock cleanup failed: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500
