"""API route registration."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from flask import abort, g, jsonify, request

from ..auth import api_user_guard, issue_token, require_login, revoke_token
from ..datastore import DataStore

logger = logging.getLogger(__name__)


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        abort(400, description="Expected a JSON object")
    return payload


def _json_list(payload: Dict[str, Any], key: str) -> List[Any]:
    value = payload.get(key, [])
    if not isinstance(value, list):
        abort(400, description=f"'{key}' must be a list")
    return value


def _public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": user["id"], "email": user["email"]}


def register_api_routes(app) -> None:
    datastore: DataStore = app.config["DATASTORE"]

    # Identity ----------------------------------------------------------

    @app.post("/api/auth/signup")
    def api_signup() -> Any:
        payload = _json_body()
        profile = payload.get("profile") or {}
        if not isinstance(profile, dict):
            abort(400, description="'profile' must be an object")
        try:
            user = datastore.register_user(
                str(payload.get("email", "")),
                str(payload.get("password", "")),
                profile,
            )
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        return jsonify({"user": _public_user(user)}), 201

    @app.post("/api/auth/signin")
    def api_signin() -> Any:
        payload = _json_body()
        user = datastore.verify_credentials(str(payload.get("email", "")), str(payload.get("password", "")))
        if not user:
            return jsonify({"error": "Invalid email or password. Please check your credentials."}), 401
        return jsonify({"token": issue_token(user), "user": _public_user(user)})

    @app.post("/api/auth/signout")
    def api_signout() -> Any:
        require_login()
        revoke_token(g.token)
        return jsonify({"ok": True})

    @app.get("/api/auth/session")
    def api_session() -> Any:
        user, error = api_user_guard()
        if error:
            return error
        return jsonify({"user": _public_user(user)})

    @app.post("/api/auth/reset-password")
    def api_reset_password() -> Any:
        payload = _json_body()
        email = str(payload.get("email", "")).strip()
        if not email:
            return jsonify({"error": "Please enter a valid email address."}), 400
        if datastore.request_password_reset(email):
            # Delivery of the token belongs to the mail collaborator.
            logger.info("Password reset issued for %s", email)
        return jsonify({"ok": True})

    @app.post("/api/auth/reset-password/confirm")
    def api_confirm_reset() -> Any:
        payload = _json_body()
        try:
            done = datastore.complete_password_reset(str(payload.get("token", "")), str(payload.get("password", "")))
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        if not done:
            return jsonify({"error": "Reset link is invalid or has expired"}), 400
        return jsonify({"ok": True})

    @app.get("/api/admins/<user_id>")
    def api_is_admin(user_id: str) -> Any:
        require_login()
        return jsonify({"user_id": user_id, "is_admin": datastore.is_admin(user_id)})

    # Catalog -----------------------------------------------------------

    @app.get("/api/catalog")
    def api_catalog() -> Any:
        user = require_login()
        scope = request.args.get("scope", "shared")
        if scope == "own":
            categories = datastore.list_categories(user["id"])
            problems = datastore.list_problems(user["id"])
        elif scope == "shared":
            categories = datastore.list_shared_categories()
            problems = datastore.list_shared_problems()
        else:
            abort(400, description="scope must be 'own' or 'shared'")
        return jsonify({"categories": categories, "problems": problems})

    @app.put("/api/catalog")
    def api_upsert_catalog() -> Any:
        user = require_login()
        payload = _json_body()
        try:
            written = datastore.upsert_catalog(
                _json_list(payload, "categories"),
                _json_list(payload, "problems"),
                user["id"],
            )
        except PermissionError as exc:
            return jsonify({"error": str(exc)}), 403
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        return jsonify({"written": written})

    @app.post("/api/catalog/delete")
    def api_delete_catalog() -> Any:
        user = require_login()
        payload = _json_body()
        try:
            removed_categories, removed_problems = datastore.delete_catalog_rows(
                [str(item) for item in _json_list(payload, "category_ids")],
                [str(item) for item in _json_list(payload, "problem_ids")],
                user["id"],
            )
        except PermissionError as exc:
            return jsonify({"error": str(exc)}), 403
        return jsonify({"categories": removed_categories, "problems": removed_problems})

    # Progress overlay --------------------------------------------------

    @app.get("/api/progress")
    def api_progress() -> Any:
        user = require_login()
        return jsonify({"progress": datastore.list_progress(user["id"])})

    @app.put("/api/progress")
    def api_upsert_progress() -> Any:
        user = require_login()
        payload = _json_body()
        try:
            written = datastore.upsert_progress(_json_list(payload, "rows"), user["id"])
        except PermissionError as exc:
            return jsonify({"error": str(exc)}), 403
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        return jsonify({"written": written})

    @app.get("/api/changes")
    def api_changes() -> Any:
        return jsonify({"revision": datastore.revision})
