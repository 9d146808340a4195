# mission_control/routes/__init__.py
"""
Collects the blueprint instances from the route modules and provides a
function to register them on the Flask app.
"""
import logging
from flask import Flask

from .api_routes import api_bp
from .integrity_routes import integrity_bp
from .monitor_routes import monitor_bp
from .status_routes import status_bp

logger = logging.getLogger(__name__)


def register_routes(app: Flask):
    """Register all blueprints with the Flask app."""
    app.register_blueprint(integrity_bp)
    app.register_blueprint(monitor_bp)
    app.register_blueprint(status_bp)
    app.register_blueprint(api_bp)

    logger.info("All application blueprints registered.")
