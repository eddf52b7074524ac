"""
API Blueprints
HTTP triggers and read endpoints over the engine context.
"""

from flask import current_app, jsonify

from agile_mirror.errors import Busy

EXTENSION_KEY = 'agile_mirror'


def get_context():
    """Engine context bound to the running app."""
    return current_app.extensions[EXTENSION_KEY]


def busy_response(error: Busy):
    """409 for a resource another worker holds; the caller may retry later."""
    return jsonify({
        'success': False,
        'error': str(error),
        'resource_key': error.resource_key
    }), 409
