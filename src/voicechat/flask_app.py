#!/usr/bin/env python3
"""
VoiceChat Flask App Base - Common Flask application patterns
"""
from typing import Callable, List, Optional

from flask import Flask, jsonify
from flask_cors import CORS

from .logging_utils import setup_logger

logger = setup_logger("voicechat.flask_app", "flask_app.log")


class VoiceChatFlaskApp:
    """Base class for VoiceChat Flask applications with common patterns"""

    def __init__(self, name: str, cors_origins: Optional[List[str]] = None):
        self.app = Flask(name)
        self.name = name

        CORS(self.app, origins=cors_origins or ["*"])

        self._add_common_routes()

    def _add_common_routes(self):
        """Liveness route shared by every VoiceChat service"""

        @self.app.route('/health')
        def health():
            return jsonify({'ok': True})

    def add_route(self, rule: str, methods: Optional[list] = None, **options):
        """Decorator to add routes to the Flask app"""
        def decorator(f: Callable):
            self.app.add_url_rule(rule, f.__name__, f, methods=methods, **options)
            return f
        return decorator

    def run(self, host: str = '0.0.0.0', port: int = 8081, debug: bool = False, **kwargs):
        """Run the Flask app with common configuration"""
        try:
            logger.info(f"Starting {self.name} on http://{host}:{port}")
            self.app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True, **kwargs)
        except OSError as e:
            if "Address already in use" in str(e):
                logger.warning(f"Port {port} already in use for {self.name}")
            else:
                logger.error(f"Failed to start {self.name}: {e}")
            raise


__all__ = ["VoiceChatFlaskApp"]
