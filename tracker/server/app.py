"""Flask application entrypoint."""

from __future__ import annotations

import logging
from typing import Optional

from flask import Flask

from ..config import Settings, configure_logging
from .auth import init_auth
from .datastore import DataStore
from .routes.admin import register_admin_routes
from .routes.api import register_api_routes

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, datastore: Optional[DataStore] = None) -> Flask:
    settings = settings or Settings.from_env()
    app = Flask(__name__)
    app.config["SECRET_KEY"] = settings.secret_key
    app.config["SETTINGS"] = settings

    datastore = datastore or DataStore(settings.store_path)
    app.config["DATASTORE"] = datastore

    init_auth(app)
    register_api_routes(app)
    register_admin_routes(app)
    logger.info("Tracker store ready at %s", datastore.store_path)
    return app


if __name__ == "__main__":
    _settings = Settings.from_env()
    configure_logging(_settings.log_level)
    create_app(_settings).run(debug=True)
