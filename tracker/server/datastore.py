"""Data access layer for the tracker's authoritative store."""

from __future__ import annotations

import hashlib
import json
import os
import re
import secrets
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from werkzeug.security import check_password_hash, generate_password_hash

from ..config import DATA_DIR

STORE_PATH = DATA_DIR / "store.json"

DEFAULT_STORE_PAYLOAD: Dict[str, Any] = {
    "users": [],
    "profiles": [],
    "app_admins": [],
    "categories": [],
    "problems": [],
    "user_problem_progress": [],
    "password_resets": [],
    "revision": 0,
}

PROFILE_FIELDS = ("name", "dob", "university", "city", "country", "state")
DIFFICULTIES = {"Easy", "Medium", "Hard"}
MIN_PASSWORD_LENGTH = 6
RESET_TOKEN_TTL = 60 * 60
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _clone_default(payload: Any) -> Any:
    return json.loads(json.dumps(payload, ensure_ascii=False))


def _now_ts() -> int:
    return int(time.time())


def _sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class DataStore:
    """JSON-file backed tables for users, the admin catalog and progress overlays.

    Mutations bump ``revision`` and notify registered listeners once the
    store has been written, which is how change subscriptions are driven.
    """

    def __init__(self, store_path: Optional[Path] = None) -> None:
        self.store_path = Path(store_path) if store_path else STORE_PATH
        self._lock = threading.RLock()
        self._listeners: List[Callable[[int], None]] = []
        self._store_mtime: float = 0.0
        self._load_store()

    def _load_store(self) -> None:
        self.store = self._load_json_file(self.store_path, DEFAULT_STORE_PAYLOAD)
        for key, default in DEFAULT_STORE_PAYLOAD.items():
            self.store.setdefault(key, _clone_default(default))
        for row in self.store["categories"]:
            row["order_index"] = int(row.get("order_index", 0) or 0)
        for row in self.store["problems"]:
            row["completed"] = bool(row.get("completed", False))
            row.setdefault("note", "")
        for row in self.store["user_problem_progress"]:
            row["completed"] = bool(row.get("completed", False))
            row.setdefault("note", "")
        try:
            self.store["revision"] = int(self.store.get("revision", 0) or 0)
        except (TypeError, ValueError):
            self.store["revision"] = 0
        self._store_mtime = self._store_file_mtime()

    def _load_json_file(self, path: Path, default_payload: Any) -> Any:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            data = _clone_default(default_payload)
            self._write_json(path, data)
            return data
        text = text.strip()
        if not text:
            data = _clone_default(default_payload)
            self._write_json(path, data)
            return data
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            data = _clone_default(default_payload)
            self._write_json(path, data)
            return data

    def _write_json(self, path: Path, payload: Any) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=".store-", suffix=".json", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=False, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _save_store(self) -> None:
        self._write_json(self.store_path, self.store)
        self._store_mtime = self._store_file_mtime()

    def _store_file_mtime(self) -> float:
        try:
            return self.store_path.stat().st_mtime
        except FileNotFoundError:
            return 0.0

    def _ensure_store_fresh(self) -> None:
        current_mtime = self._store_file_mtime()
        if current_mtime and current_mtime > self._store_mtime:
            # Re-load store data when another process updates the backing file.
            self._load_store()

    def _commit(self) -> int:
        self.store["revision"] += 1
        self._save_store()
        return self.store["revision"]

    def _notify(self, revision: int) -> None:
        for listener in list(self._listeners):
            listener(revision)

    # Change notifications ----------------------------------------------

    @property
    def revision(self) -> int:
        with self._lock:
            self._ensure_store_fresh()
            return self.store["revision"]

    def add_listener(self, listener: Callable[[int], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # User operations ---------------------------------------------------

    def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        email_lower = email.strip().lower()
        for user in self.store.get("users", []):
            if user["email"].lower() == email_lower:
                return user
        return None

    def find_user_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        for user in self.store.get("users", []):
            if user["id"] == user_id:
                return user
        return None

    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        for profile in self.store.get("profiles", []):
            if profile["user_id"] == user_id:
                return profile
        return None

    def register_user(self, email: str, password: str, profile: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        email = email.strip()
        if not EMAIL_PATTERN.match(email):
            raise ValueError("Please enter a valid email address.")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValueError("Password must be at least 6 characters long.")
        with self._lock:
            self._ensure_store_fresh()
            if self.find_user_by_email(email):
                raise ValueError("An account with this email already exists. Please sign in instead.")
            user = {
                "id": uuid.uuid4().hex,
                "email": email,
                "password_hash": generate_password_hash(password),
                "created_at": _now_ts(),
            }
            self.store["users"].append(user)
            profile = profile or {}
            self.store["profiles"].append({
                "user_id": user["id"],
                "email": email,
                **{name: str(profile.get(name, "") or "") for name in PROFILE_FIELDS},
                "created_at": user["created_at"],
            })
            revision = self._commit()
        self._notify(revision)
        return user

    def verify_credentials(self, email: str, password: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_store_fresh()
            user = self.find_user_by_email(email)
            if not user:
                return None
            try:
                if check_password_hash(user["password_hash"], password):
                    return user
            except ValueError:
                return None
            return None

    def update_password(self, user_id: str, password: str) -> None:
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValueError("Password must be at least 6 characters long.")
        with self._lock:
            user = self.find_user_by_id(user_id)
            if not user:
                raise LookupError("User not found")
            user["password_hash"] = generate_password_hash(password)
            self._save_store()

    def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a one-time reset token; unknown emails get ``None`` and no record."""
        with self._lock:
            self._ensure_store_fresh()
            user = self.find_user_by_email(email)
            if not user:
                return None
            token = secrets.token_urlsafe(24)
            resets = [item for item in self.store["password_resets"] if item["user_id"] != user["id"]]
            resets.append({"user_id": user["id"], "token_hash": _sha256_hex(token), "created_at": _now_ts()})
            self.store["password_resets"] = resets
            self._save_store()
            return token

    def complete_password_reset(self, token: str, password: str) -> bool:
        token_hash = _sha256_hex(token)
        with self._lock:
            self._ensure_store_fresh()
            match = None
            for item in self.store["password_resets"]:
                if item["token_hash"] == token_hash:
                    match = item
                    break
            if not match or _now_ts() - int(match.get("created_at", 0)) > RESET_TOKEN_TTL:
                return False
            self.update_password(match["user_id"], password)
            self.store["password_resets"] = [item for item in self.store["password_resets"] if item is not match]
            self._save_store()
            return True

    # Admin allow-list --------------------------------------------------

    def is_admin(self, user_id: Optional[str]) -> bool:
        if not user_id:
            return False
        with self._lock:
            self._ensure_store_fresh()
            return user_id in self.store["app_admins"]

    def list_admin_ids(self) -> List[str]:
        with self._lock:
            self._ensure_store_fresh()
            return list(self.store["app_admins"])

    def set_admin(self, user_id: str, is_admin: bool) -> bool:
        with self._lock:
            self._ensure_store_fresh()
            if not self.find_user_by_id(user_id):
                return False
            admins = self.store["app_admins"]
            if is_admin and user_id not in admins:
                admins.append(user_id)
            elif not is_admin and user_id in admins:
                admins.remove(user_id)
            else:
                return True
            revision = self._commit()
        self._notify(revision)
        return True

    # Catalog reads -----------------------------------------------------

    def list_categories(self, owner_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_store_fresh()
            rows = [dict(row) for row in self.store["categories"] if row["user_id"] == owner_id]
        return sorted(rows, key=lambda row: row["order_index"])

    def list_problems(self, owner_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_store_fresh()
            return [dict(row) for row in self.store["problems"] if row["user_id"] == owner_id]

    def list_shared_categories(self) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_store_fresh()
            admins = set(self.store["app_admins"])
            rows = [dict(row) for row in self.store["categories"] if row["user_id"] in admins]
        return sorted(rows, key=lambda row: row["order_index"])

    def list_shared_problems(self) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_store_fresh()
            admins = set(self.store["app_admins"])
            return [dict(row) for row in self.store["problems"] if row["user_id"] in admins]

    # Catalog mutations -------------------------------------------------

    def upsert_catalog(
        self,
        categories: Iterable[Dict[str, Any]],
        problems: Iterable[Dict[str, Any]],
        owner_id: str,
    ) -> int:
        """Insert or update catalog rows owned by ``owner_id``; returns rows written."""
        categories = list(categories)
        problems = list(problems)
        with self._lock:
            self._ensure_store_fresh()
            if owner_id not in self.store["app_admins"]:
                raise PermissionError("Only the catalog admin can edit categories and problems")
            category_index = {row["id"]: row for row in self.store["categories"]}
            problem_index = {row["id"]: row for row in self.store["problems"]}
            category_rows = [self._normalise_category(raw, owner_id) for raw in categories]
            problem_rows = [self._normalise_problem(raw, owner_id) for raw in problems]
            for row in category_rows:
                existing = category_index.get(row["id"])
                if existing and existing["user_id"] != owner_id:
                    raise PermissionError(f"Category {existing['id']} belongs to another user")
            for row in problem_rows:
                existing = problem_index.get(row["id"])
                if existing and existing["user_id"] != owner_id:
                    raise PermissionError(f"Problem {existing['id']} belongs to another user")

            # Nothing is written unless every problem has an owned parent.
            owned_categories = {row["id"] for row in self.store["categories"] if row["user_id"] == owner_id}
            owned_categories.update(row["id"] for row in category_rows)
            for row in problem_rows:
                if row["category_id"] not in owned_categories:
                    raise ValueError(f"Problem {row['id']} references unknown category {row['category_id']}")

            now = _now_ts()
            written = 0
            for row in category_rows:
                existing = category_index.get(row["id"])
                if existing:
                    existing.update(row)
                    existing["updated_at"] = now
                else:
                    row["created_at"] = now
                    row["updated_at"] = now
                    self.store["categories"].append(row)
                    category_index[row["id"]] = row
                written += 1

            for row in problem_rows:
                existing = problem_index.get(row["id"])
                if existing:
                    existing.update(row)
                    existing["updated_at"] = now
                else:
                    row["created_at"] = now
                    row["updated_at"] = now
                    self.store["problems"].append(row)
                    problem_index[row["id"]] = row
                written += 1

            if not written:
                return 0
            revision = self._commit()
        self._notify(revision)
        return written

    def delete_catalog_rows(
        self,
        category_ids: Iterable[str],
        problem_ids: Iterable[str],
        owner_id: str,
    ) -> Tuple[int, int]:
        """Delete owned rows, problems before categories; cascades to overlays."""
        category_ids = set(category_ids)
        problem_ids = set(problem_ids)
        with self._lock:
            self._ensure_store_fresh()
            if owner_id not in self.store["app_admins"]:
                raise PermissionError("Only the catalog admin can edit categories and problems")
            removed_problems = self._delete_problems(
                lambda row: row["user_id"] == owner_id and row["id"] in problem_ids
            )
            doomed_categories = {
                row["id"] for row in self.store["categories"]
                if row["user_id"] == owner_id and row["id"] in category_ids
            }
            removed_problems += self._delete_problems(lambda row: row["category_id"] in doomed_categories)
            before = len(self.store["categories"])
            self.store["categories"] = [
                row for row in self.store["categories"] if row["id"] not in doomed_categories
            ]
            removed_categories = before - len(self.store["categories"])
            if not (removed_categories or removed_problems):
                return 0, 0
            revision = self._commit()
        self._notify(revision)
        return removed_categories, removed_problems

    def _delete_problems(self, predicate: Callable[[Dict[str, Any]], bool]) -> int:
        doomed: Set[str] = {row["id"] for row in self.store["problems"] if predicate(row)}
        if not doomed:
            return 0
        self.store["problems"] = [row for row in self.store["problems"] if row["id"] not in doomed]
        self.store["user_problem_progress"] = [
            row for row in self.store["user_problem_progress"] if row["problem_id"] not in doomed
        ]
        return len(doomed)

    def _normalise_category(self, raw: Dict[str, Any], owner_id: str) -> Dict[str, Any]:
        category_id = str(raw.get("id") or "").strip()
        if not category_id:
            raise ValueError("Category id is required")
        title = str(raw.get("title") or "").strip()
        if not title:
            raise ValueError("Category title cannot be empty")
        try:
            order_index = int(raw.get("order_index", 0) or 0)
        except (TypeError, ValueError):
            raise ValueError("Category order_index must be an integer")
        return {"id": category_id, "title": title, "order_index": order_index, "user_id": owner_id}

    def _normalise_problem(self, raw: Dict[str, Any], owner_id: str) -> Dict[str, Any]:
        problem_id = str(raw.get("id") or "").strip()
        if not problem_id:
            raise ValueError("Problem id is required")
        title = str(raw.get("title") or "").strip()
        if not title:
            raise ValueError("Problem title cannot be empty")
        difficulty = raw.get("difficulty")
        if difficulty not in DIFFICULTIES:
            raise ValueError(f"Invalid difficulty: {difficulty!r}")
        return {
            "id": problem_id,
            "category_id": str(raw.get("category_id") or ""),
            "title": title,
            "url": str(raw.get("url") or ""),
            "platform": str(raw.get("platform") or ""),
            "difficulty": difficulty,
            "completed": bool(raw.get("completed", False)),
            "note": raw.get("note") or "",
            "user_id": owner_id,
        }

    # Progress overlays -------------------------------------------------

    def list_progress(self, user_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_store_fresh()
            return [dict(row) for row in self.store["user_problem_progress"] if row["user_id"] == user_id]

    def list_progress_for_problem(self, problem_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_store_fresh()
            return [dict(row) for row in self.store["user_problem_progress"] if row["problem_id"] == problem_id]

    def upsert_progress(self, rows: Iterable[Dict[str, Any]], user_id: str) -> int:
        """Upsert overlay rows keyed by ``(user_id, problem_id)`` for one user."""
        rows = list(rows)
        with self._lock:
            self._ensure_store_fresh()
            known_problems = {row["id"] for row in self.store["problems"]}
            for raw in rows:
                if str(raw.get("user_id")) != user_id:
                    raise PermissionError("Progress rows can only be written for the signed-in user")
                if str(raw.get("problem_id")) not in known_problems:
                    raise ValueError(f"Unknown problem {raw.get('problem_id')!r}")
            index = {
                (row["user_id"], row["problem_id"]): row
                for row in self.store["user_problem_progress"]
            }
            now = _now_ts()
            for raw in rows:
                key = (user_id, str(raw["problem_id"]))
                values = {"completed": bool(raw.get("completed", False)), "note": raw.get("note") or ""}
                existing = index.get(key)
                if existing:
                    existing.update(values)
                    existing["updated_at"] = now
                else:
                    row = {"user_id": key[0], "problem_id": key[1], **values, "updated_at": now}
                    self.store["user_problem_progress"].append(row)
                    index[key] = row
            if not rows:
                return 0
            revision = self._commit()
        self._notify(revision)
        return len(rows)
