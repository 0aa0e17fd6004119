"""Forge3D application entrypoint.

Builds the Flask app, wires the service container, and registers every
blueprint under /api.
"""

from __future__ import annotations

import re
from typing import Optional

from flask import Flask, g
from flask_cors import CORS

from forge3d.config import config as default_config
from forge3d.services.container import EXTENSION_KEY, Services, build_services


def _init_storage() -> None:
    from forge3d.db import init_db

    # Verifies connectivity and creates missing tables
    init_db()


def create_app(services: Optional[Services] = None, config=None) -> Flask:
    cfg = config or (services.config if services else default_config)
    app = Flask(__name__)

    if services is None:
        cfg.log_summary()
        for warning in cfg.validate():
            print(f"[CONFIG] WARNING: {warning}")
        if cfg.STORE_BACKEND == "postgres":
            _init_storage()
        services = build_services(cfg)

    if cfg.ALLOW_ALL_ORIGINS:
        origins = [re.compile(r".*")]
    else:
        origins = cfg.ALLOWED_ORIGINS

    CORS(
        app,
        resources={r"/api/*": {"origins": origins}},
        supports_credentials=True,
        allow_headers=["Content-Type", "Authorization", "X-Admin-Key", "X-Requested-With"],
        expose_headers=["Content-Type"],
        methods=["GET", "POST", "OPTIONS"],
    )

    app.extensions[EXTENSION_KEY] = services

    @app.before_request
    def _identity_default():
        g.user_id = None

    from forge3d.routes import register_blueprints
    from forge3d.utils.error_handlers import register_error_handlers

    register_blueprints(app)
    register_error_handlers(app)

    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=default_config.PORT)
