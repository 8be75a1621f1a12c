"""Dependency helpers for retrieving shared services."""

from __future__ import annotations

from flask import current_app
from itsdangerous import URLSafeTimedSerializer

from .datastore import DataStore

TOKEN_SALT = "tracker-session"


def get_datastore() -> DataStore:
    datastore = current_app.config.get("DATASTORE")
    if datastore is None:
        raise RuntimeError("DataStore has not been initialised on the Flask app")
    return datastore


def get_token_serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=TOKEN_SALT)
