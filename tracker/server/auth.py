"""Bearer-token authentication and authorisation helpers."""

from __future__ import annotations

import secrets
import threading
import time
from typing import Any, Dict, Optional, Tuple

from flask import Flask, abort, current_app, g, jsonify, request
from itsdangerous import BadSignature, SignatureExpired

from .deps import get_datastore, get_token_serializer

TOKEN_MAX_AGE = 30 * 24 * 60 * 60

_revoked_lock = threading.Lock()


def issue_token(user: Dict[str, Any]) -> str:
    return get_token_serializer().dumps({"uid": user["id"], "sid": secrets.token_hex(8)})


def revoke_token(token: str) -> None:
    """Deny ``token`` until it would have expired anyway; expired entries are dropped."""
    revoked = current_app.config["REVOKED_TOKENS"]
    try:
        _, issued_at = get_token_serializer().loads(token, max_age=TOKEN_MAX_AGE, return_timestamp=True)
    except (SignatureExpired, BadSignature):
        return
    now = time.time()
    with _revoked_lock:
        for stale in [item for item, expires_at in revoked.items() if expires_at <= now]:
            del revoked[stale]
        revoked[token] = issued_at.timestamp() + TOKEN_MAX_AGE


def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _user_for_token(token: str, revoked: Dict[str, float]) -> Optional[Dict[str, Any]]:
    if token in revoked:
        return None
    try:
        payload = get_token_serializer().loads(token, max_age=TOKEN_MAX_AGE)
    except (SignatureExpired, BadSignature):
        return None
    if not isinstance(payload, dict):
        return None
    return get_datastore().find_user_by_id(str(payload.get("uid", "")))


def require_login() -> Dict[str, Any]:
    user = getattr(g, "user", None)
    if not user:
        abort(401, description="Not logged in")
    return user


def require_admin() -> Dict[str, Any]:
    user = require_login()
    if not get_datastore().is_admin(user["id"]):
        abort(403, description="Admin access required")
    return user


def api_user_guard() -> Tuple[Optional[Dict[str, Any]], Optional[Tuple[Any, int]]]:
    user = getattr(g, "user", None)
    if not user:
        return None, (jsonify({"error": "Not logged in"}), 401)
    return user, None


def init_auth(app: Flask) -> None:
    """Register the token hook and JSON error handlers on the app."""

    app.config.setdefault("REVOKED_TOKENS", {})

    @app.before_request
    def load_current_user() -> None:
        token = _bearer_token()
        g.token = token
        g.user = _user_for_token(token, app.config["REVOKED_TOKENS"]) if token else None

    def _json_error(error: Any) -> Any:
        return jsonify({"error": getattr(error, "description", str(error))}), error.code

    for code in (400, 401, 403, 404, 405):
        app.register_error_handler(code, _json_error)
