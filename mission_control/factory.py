import http
import logging
import time
from typing import Any, Callable, Dict, Optional

import click
from flask import Flask, g, jsonify
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from mission_control.config import Config
from mission_control.exceptions import AuthError
from mission_control.extensions import cors, init_store
from mission_control.kv_store import KeyValueStore
from mission_control.logging_config import assign_correlation_id, setup_logging
from mission_control.routes import register_routes
from mission_control.systems.admission_system import admission_system
from mission_control.systems.health_monitor import PagerClient, health_monitor
from mission_control.systems.integrity_system import integrity_system
from mission_control.systems.status import get_backend_status
from mission_control.utils.clock import now_ms

logger = logging.getLogger(__name__)


def create_app(config_overrides: Optional[Dict[str, Any]] = None,
               store: Optional[KeyValueStore] = None,
               pager: Optional[PagerClient] = None,
               http_session=None,
               clock: Callable[[], int] = now_ms) -> Flask:
    """Creates and configures the Flask application."""
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    setup_logging(app)
    logger.info("Creating Flask application instance.")

    hops = app.config.get("PROXY_TRUSTED_HOPS", 0)
    if hops:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=hops, x_proto=hops)
        logger.info(f"Trusting {hops} proxy hop(s) for client addresses.")

    cors.init_app(app, origins=app.config.get("CORS_ORIGINS", ["*"]))
    store = init_store(app, store, clock=clock)
    logger.info("Core Flask extensions initialized.")

    admission_system.init_app(app, store, clock=clock)
    integrity_system.init_app(app, store, clock=clock)
    health_monitor.init_app(
        app,
        store,
        pager=pager,
        session=http_session,
        verifier=integrity_system if app.config.get("MONITOR_VERIFY_SIGNATURES") else None,
        clock=clock,
    )
    logger.info("All custom systems initialized.")

    register_routes(app)
    register_request_hooks(app)
    register_error_handlers(app)
    register_cli_commands(app)

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    if app.config.get("MONITOR_ENABLED") and not app.config.get("TESTING"):
        health_monitor.start()

    logger.info("Flask app created successfully!")
    return app


def register_request_hooks(app: Flask) -> None:
    @app.before_request
    def start_request():
        assign_correlation_id()
        g.request_started = time.perf_counter()

    @app.after_request
    def finish_request(response):
        response.headers.setdefault("X-Request-ID", g.get("correlation_id", ""))
        started = g.get("request_started")
        if started is not None:
            integrity_system.stats.record(response.status_code, (time.perf_counter() - started) * 1000)
        return response


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(AuthError)
    def handle_auth_error(e: AuthError):
        return jsonify({"error": e.message}), e.status

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        if isinstance(e, HTTPException):
            return jsonify({"error": e.name, "message": e.description}), e.code
        logger.error(f"Unhandled error: {e}", exc_info=True)
        return jsonify({"error": "Internal Server Error"}), http.HTTPStatus.INTERNAL_SERVER_ERROR


def register_cli_commands(app: Flask) -> None:
    @app.cli.command("healthcheck")
    def healthcheck_command() -> None:
        """Pings the store and prints each system's status."""
        status = get_backend_status()
        for name in ("store", "admission", "integrity", "monitor", "auth"):
            entry = status[name]
            mark = "OK" if entry.get("healthy") else "FAIL"
            click.echo(f"  - {name:<10} {mark:<5} {entry.get('info')}")
        if not status["systemHealthy"]:
            raise click.exceptions.Exit(1)

    @app.cli.command("monitor-tick")
    def monitor_tick_command() -> None:
        """Runs one monitoring tick over the configured targets."""
        if not health_monitor.config.targets:
            click.secho("No MONITOR_TARGETS configured.", fg="yellow")
            return
        results = health_monitor.run_tick()
        for url, result in results.items():
            if result.success:
                click.secho(f"OK    {url}", fg="green")
            else:
                click.secho(f"FAIL  {url}: {result.error}", fg="red")
