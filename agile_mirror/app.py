"""
Flask Application Factory
HTTP entry point exposing the engine's triggers and read accessors.
"""

import os

from flask import Flask, jsonify
from flask_cors import CORS

from agile_mirror.api import EXTENSION_KEY
from agile_mirror.context import EngineContext
from agile_mirror.utils.helpers import utcnow
from agile_mirror.utils.logger import setup_logging, get_logger


def create_app(context: EngineContext = None) -> Flask:
    """
    Application factory for Flask app.

    Args:
        context: Started engine context; a new one is built and started
            (without the scheduler) when omitted

    Returns:
        Configured Flask application
    """
    setup_logging()
    logger = get_logger(__name__)

    if context is None:
        context = EngineContext().start(scheduler=False)

    app = Flask(__name__)
    app.config['SECRET_KEY'] = os.getenv('FLASK_SECRET_KEY', 'dev-secret-key-change-in-production')
    app.config['JSON_SORT_KEYS'] = False
    app.extensions[EXTENSION_KEY] = context

    # Enable CORS
    CORS(app)

    # Register blueprints
    from agile_mirror.api.sync_routes import sync_bp
    from agile_mirror.api.metrics_routes import metrics_bp
    from agile_mirror.api.lock_routes import locks_bp
    from agile_mirror.api.data_routes import data_bp

    app.register_blueprint(sync_bp)
    app.register_blueprint(metrics_bp)
    app.register_blueprint(locks_bp)
    app.register_blueprint(data_bp)

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint."""
        db_healthy = context.db.check_connection()

        return jsonify({
            'status': 'healthy' if db_healthy else 'degraded',
            'timestamp': utcnow().isoformat(),
            'database': 'connected' if db_healthy else 'disconnected',
            'scheduler': 'running' if context.scheduler.running else 'stopped'
        })

    @app.route('/', methods=['GET'])
    def root():
        """Root endpoint with API info."""
        return jsonify({
            'name': 'Agile Mirror API',
            'version': '1.0.0',
            'endpoints': {
                '/health': 'Health check',
                '/api/sync/run': 'Full sync (POST)',
                '/api/sync/boards/<board_id>/sprints': 'Sync board sprints (POST)',
                '/api/sync/sprints/<sprint_id>/issues': 'Sync sprint issues (POST)',
                '/api/sync/kanban/<board_id>/issues': 'Sync kanban issues (POST)',
                '/api/sync/status': 'Recent sync operations (GET)',
                '/api/metrics/sprint/<sprint_id>': 'Sprint metrics (GET)',
                '/api/metrics/board/<board_id>': 'Board metrics (GET)',
                '/api/metrics/kanban/<kanban_board_id>': 'Kanban metrics (GET)',
                '/api/metrics/calculate': 'Recompute all metrics (POST)',
                '/api/locks/status': 'Live leases (GET)',
                '/api/locks/cleanup': 'Sweep expired leases (POST)',
                '/api/data/projects': 'Mirrored projects (GET)',
                '/api/data/boards': 'Mirrored boards (GET)',
                '/api/data/issues/<issue_key>': 'Issue with change history (GET)'
            }
        })

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'success': False,
            'error': 'Not found'
        }), 404

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({
            'success': False,
            'error': 'Internal server error'
        }), 500

    logger.info("Flask application created")

    return app


if __name__ == '__main__':
    # Development server
    engine_context = EngineContext().start()
    application = create_app(engine_context)

    try:
        application.run(
            host='0.0.0.0',
            port=int(os.getenv('FLASK_PORT', 6922)),
            debug=os.getenv('FLASK_DEBUG', 'false').lower() == 'true'
        )
    finally:
        engine_context.stop()
