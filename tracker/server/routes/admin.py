"""Admin-facing route registration."""

from __future__ import annotations

from typing import Any

from flask import abort, jsonify, request

from ..auth import require_admin
from ..datastore import DataStore


def register_admin_routes(app) -> None:
    datastore: DataStore = app.config["DATASTORE"]

    @app.get("/api/admin/users")
    def admin_users() -> Any:
        require_admin()
        admin_ids = set(datastore.list_admin_ids())
        users = []
        for user in datastore.store.get("users", []):
            profile = datastore.get_profile(user["id"]) or {}
            users.append({
                "id": user["id"],
                "email": user["email"],
                "name": profile.get("name", ""),
                "is_admin": user["id"] in admin_ids,
                "created_at": user.get("created_at", 0),
            })
        users.sort(key=lambda item: (not item["is_admin"], item["email"].lower()))
        return jsonify({"users": users})

    @app.post("/api/admin/admins/<user_id>")
    def admin_set_admin(user_id: str) -> Any:
        current = require_admin()
        payload = request.get_json(silent=True) or {}
        make_admin = bool(payload.get("admin", True))
        if not make_admin and user_id == current["id"]:
            abort(400, description="Admins cannot remove themselves from the allow-list")
        if not datastore.set_admin(user_id, make_admin):
            abort(404, description="User not found")
        return jsonify({"user_id": user_id, "is_admin": make_admin})

    @app.get("/api/admin/progress/<problem_id>")
    def admin_problem_progress(problem_id: str) -> Any:
        require_admin()
        return jsonify({"problem_id": problem_id, "progress": datastore.list_progress_for_problem(problem_id)})
