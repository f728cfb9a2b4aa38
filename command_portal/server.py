#!/usr/bin/env python3
"""
Command Portal Server
=====================
Flask + Socket.IO application serving the portal's JSON API.

Run with: python3 -m command_portal
Access at: http://localhost:3001
"""

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_socketio import SocketIO
from werkzeug.exceptions import HTTPException

from command_portal import PORTAL_VERSION
from command_portal import debug_logger as log
from command_portal.config_loader import PortalConfig, get_config
from command_portal.errors import (
    PolicyDeniedError,
    PortalError,
    ValidationError,
    safe_error_response,
)
from command_portal.rate_limit import init_rate_limits, rate_limited
from command_portal.routes import register_blueprints
from command_portal.services import PortalServices

# =============================================================================
# ERROR HANDLERS
# =============================================================================

def _handle_portal_error(exc):
    if not exc.public:
        body, status = safe_error_response(exc, 'Request failed', request.endpoint)
        return jsonify(body), status

    if isinstance(exc, (ValidationError, PolicyDeniedError)):
        event = 'policy_denied' if isinstance(exc, PolicyDeniedError) else 'validation_rejected'
        fields = {'reason': exc.reason, 'endpoint': request.endpoint}
        if 'value' in exc.details:
            fields['input'] = repr(exc.details['value'])
        log.log_security_event(event, **fields)

    body, status = exc.to_response()
    return jsonify(body), status


def _handle_unexpected_error(exc):
    if isinstance(exc, HTTPException):
        return jsonify({'error': exc.name}), exc.code
    log.log_http_error(exc, request)
    body, status = safe_error_response(exc, 'Internal server error', request.endpoint)
    return jsonify(body), status


def _handle_not_found(exc):
    return jsonify({'error': 'Not found'}), 404


def _handle_method_not_allowed(exc):
    return jsonify({'error': 'Method not allowed'}), 405

# =============================================================================
# APPLICATION FACTORY
# =============================================================================

def create_app(config=None, services=None, async_mode='threading', **overrides):
    """
    Build the Flask app, its Socket.IO server and the service container.

    Args:
        config: PortalConfig; built from file/env (plus `overrides`) when None
        services: PortalServices with test doubles; built from config when None
        async_mode: Socket.IO async mode ('eventlet' when monkey patched)
        overrides: nested config sections merged last, e.g. database={'path': ...}
    """
    config = config or PortalConfig(overrides=overrides or None)

    log_dir = config.get('logging', 'log_dir')
    log.initialize(config.get_path('logging', 'log_dir') if log_dir else None,
                   level=config.get('logging', 'level', 'DEBUG'))

    app = Flask(__name__)
    app.config['SECRET_KEY'] = config.get('server', 'secret_key')
    CORS(app, origins=config.get('server', 'cors_origins', '*'))
    socketio = SocketIO(app, cors_allowed_origins=config.get('server', 'cors_origins', '*'),
                        async_mode=async_mode)

    if services is None:
        services = PortalServices(config, emit=lambda event, data: socketio.emit(event, data))
    services.db.ensure_tables()
    app.extensions['command_portal'] = services
    app.extensions['command_portal_socketio'] = socketio

    @app.before_request
    def before_request_logging():
        """Log all incoming HTTP requests"""
        log.log_http_request(request)

    @app.after_request
    def after_request_logging(response):
        """Log all HTTP responses"""
        return log.log_http_response(response, request)

    init_rate_limits(app, services.limiters)

    app.register_error_handler(PortalError, _handle_portal_error)
    app.register_error_handler(404, _handle_not_found)
    app.register_error_handler(405, _handle_method_not_allowed)
    app.register_error_handler(Exception, _handle_unexpected_error)

    register_blueprints(app)

    @app.route('/api/version')
    @rate_limited('standard')
    def api_version():
        return jsonify({'name': 'command-portal', 'version': PORTAL_VERSION})

    @socketio.on('connect')
    def handle_connect(auth=None):
        log.debug('SOCKETIO', 'Client connected', {'sid': request.sid})
        socketio.emit('tabby:status', services.tabby.status, to=request.sid)

    @socketio.on('disconnect')
    def handle_disconnect(reason=None):
        log.debug('SOCKETIO', 'Client disconnected', {'sid': request.sid})

    log.info('FLASK', 'Command Portal app created', {
        'version': PORTAL_VERSION,
        'async_mode': async_mode,
        'blueprints': sorted(app.blueprints),
    })
    return app

# =============================================================================
# MAIN
# =============================================================================

def main(async_mode='threading'):
    config = get_config()
    app = create_app(config, async_mode=async_mode)
    socketio = app.extensions['command_portal_socketio']
    host = config.get('server', 'host')
    port = config.get('server', 'port')

    print(f"""
╔═══════════════════════════════════════════════════════════════╗
║                    COMMAND PORTAL {PORTAL_VERSION:<28}║
║                                                               ║
║  API at: http://{host}:{port:<38}║
║  Press Ctrl+C to stop the server                              ║
╚═══════════════════════════════════════════════════════════════╝
    """)
    socketio.run(app, host=host, port=port, debug=False, allow_unsafe_werkzeug=async_mode == 'threading')
