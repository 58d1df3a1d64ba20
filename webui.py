#!/usr/bin/env python3
"""
Status and health server for Coolify Patrol
"""

import hmac
import logging
import os
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request, Response
from flask_socketio import SocketIO, emit

from patrol import Watcher, __version__

app = Flask(__name__)
app.config['SECRET_KEY'] = os.urandom(32).hex()
socketio = SocketIO(app)

# Global variables
watcher: Optional[Watcher] = None

logger = logging.getLogger(__name__)

# Basic auth is only enforced when both variables are set
AUTH_USER = os.environ.get('WEBUI_USER', '').strip()
AUTH_PASSWORD = os.environ.get('WEBUI_PASSWORD', '').strip()
AUTH_ENABLED = bool(AUTH_USER and AUTH_PASSWORD)

OPEN_ENDPOINTS = ('health',)


def _check_credentials(username: str, password: str) -> bool:
    """Verify credentials using constant-time comparison."""
    return (hmac.compare_digest(username or '', AUTH_USER) and
            hmac.compare_digest(password or '', AUTH_PASSWORD))


@app.before_request
def require_auth():
    """Enforce basic auth on all requests except the health probe when enabled."""
    if not AUTH_ENABLED or request.endpoint in OPEN_ENDPOINTS:
        return None

    auth = request.authorization
    if auth and _check_credentials(auth.username, auth.password):
        return None

    return Response(
        'Authentication required', 401,
        {'WWW-Authenticate': 'Basic realm="coolify-patrol"'}
    )


@app.before_request
def require_csrf():
    """Reject state-changing requests missing the X-Requested-With header.

    Browsers block cross-origin custom headers by default, so requiring
    this header on POST/PUT/DELETE prevents cross-site request forgery
    without tokens or extra dependencies.
    """
    if request.method in ('POST', 'PUT', 'DELETE'):
        if request.headers.get('X-Requested-With') != 'XMLHttpRequest':
            return jsonify({'error': 'CSRF check failed'}), 403


def emit_progress(event_type: str, data: Dict[str, Any]) -> None:
    """Forward watcher progress to connected Socket.IO clients."""
    socketio.emit('check_progress', {'event': event_type, 'data': data}, namespace='/')
    if event_type == 'cycle_complete':
        socketio.emit('check_complete', data, namespace='/')


def init_app(new_watcher: Watcher) -> Flask:
    """Attach the running watcher and stream its progress events."""
    global watcher
    watcher = new_watcher
    watcher.progress_callback = emit_progress
    return app


def serve(host: str = '0.0.0.0', port: int = 8080) -> None:
    logger.info(f"Starting HTTP server on {host}:{port}")
    socketio.run(app, host=host, port=port, use_reloader=False,
                 log_output=False, allow_unsafe_werkzeug=True)


@app.route('/health')
def health():
    """Liveness probe."""
    return jsonify({'ok': True, 'version': __version__})


@app.route('/status')
def status():
    """Snapshot of every watched application."""
    if not watcher:
        return jsonify({'error': 'Watcher not running'}), 503
    return jsonify(watcher.get_status().to_dict())


@app.route('/api/status')
def api_status():
    """Alias of /status for the UI."""
    return status()


@app.route('/api/version')
def api_version():
    """Get application version."""
    return jsonify({'version': __version__})


@app.route('/api/check', methods=['POST'])
def api_check():
    """Trigger an out-of-schedule check cycle."""
    if not watcher:
        return jsonify({'error': 'Watcher not running'}), 503

    if watcher.is_checking or not watcher.request_check():
        return jsonify({'error': 'Check already in progress'}), 409

    return jsonify({'status': 'started'})


@socketio.on('connect')
def handle_connect():
    """Handle client connection, rejecting unauthenticated Socket.IO when auth is enabled."""
    if AUTH_ENABLED:
        auth = request.authorization
        if not auth or not _check_credentials(auth.username, auth.password):
            return False  # Reject connection

    emit('connected', {'status': 'Connected to Coolify Patrol'})

    if watcher:
        emit('status_update', watcher.get_status().to_dict())
