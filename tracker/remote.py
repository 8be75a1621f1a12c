"""Remote store contract, the in-process implementation and the shared client."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .config import Settings
from .errors import RemoteReadError, RemoteWriteError, SessionError
from .models import CategoryRow, ProblemRow, ProgressOverlay, Session
from .server.datastore import DataStore

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[], None]
AuthCallback = Callable[[bool], None]
Unsubscribe = Callable[[], None]
CatalogRows = Tuple[List[CategoryRow], List[ProblemRow]]

INVALID_CREDENTIALS = "Invalid email or password. Please check your credentials."


class RemoteStore(ABC):
    """Authoritative catalog and overlay tables plus the identity collaborator.

    Every data operation may raise a ``RemoteError`` subtype. Identity
    operations return a user-facing error message, or ``None`` on success.
    """

    def __init__(self) -> None:
        self._auth_listeners: List[AuthCallback] = []
        self._authenticated = False

    # Identity ----------------------------------------------------------

    @abstractmethod
    async def get_session(self) -> Optional[Session]:
        ...

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> Optional[str]:
        ...

    @abstractmethod
    async def sign_up(self, email: str, password: str, profile: Optional[Dict[str, Any]] = None) -> Optional[str]:
        ...

    @abstractmethod
    async def sign_out(self) -> None:
        ...

    @abstractmethod
    async def reset_password(self, email: str) -> Optional[str]:
        ...

    def on_auth_change(self, callback: AuthCallback) -> Unsubscribe:
        self._auth_listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._auth_listeners:
                self._auth_listeners.remove(callback)

        return unsubscribe

    def _publish_auth(self, authenticated: bool) -> None:
        # Only transitions are published, never repeats of the same state.
        if authenticated == self._authenticated:
            return
        self._authenticated = authenticated
        for callback in list(self._auth_listeners):
            try:
                callback(authenticated)
            except Exception:
                logger.exception("Auth change listener failed")

    # Catalog and overlay -------------------------------------------------

    @abstractmethod
    async def is_admin(self, user_id: str) -> bool:
        ...

    @abstractmethod
    async def fetch_catalog_as_admin(self, user_id: str) -> CatalogRows:
        ...

    @abstractmethod
    async def fetch_catalog_shared(self) -> CatalogRows:
        ...

    @abstractmethod
    async def fetch_overlay(self, user_id: str) -> List[ProgressOverlay]:
        ...

    @abstractmethod
    async def upsert_catalog(self, categories: List[CategoryRow], problems: List[ProblemRow], owner_id: str) -> None:
        ...

    @abstractmethod
    async def delete_catalog_rows(self, category_ids: Iterable[str], problem_ids: Iterable[str], owner_id: str) -> None:
        ...

    @abstractmethod
    async def upsert_overlay(self, rows: List[ProgressOverlay]) -> None:
        ...

    @abstractmethod
    def subscribe_to_changes(self, callback: ChangeCallback) -> Unsubscribe:
        ...

    async def close(self) -> None:
        return None


class InProcessRemoteStore(RemoteStore):
    """Remote contract served straight from a ``DataStore`` in this process."""

    def __init__(self, datastore: DataStore) -> None:
        super().__init__()
        self.datastore = datastore
        self._session: Optional[Session] = None

    async def get_session(self) -> Optional[Session]:
        if self._session is None:
            return None
        try:
            user = self.datastore.find_user_by_id(self._session.user_id)
        except (OSError, ValueError) as exc:
            raise SessionError(str(exc)) from exc
        if not user:
            self._session = None
            self._publish_auth(False)
            return None
        return self._session

    async def sign_in(self, email: str, password: str) -> Optional[str]:
        user = self.datastore.verify_credentials(email, password)
        if not user:
            return INVALID_CREDENTIALS
        self._session = Session(user_id=user["id"], email=user["email"])
        self._publish_auth(True)
        return None

    async def sign_up(self, email: str, password: str, profile: Optional[Dict[str, Any]] = None) -> Optional[str]:
        try:
            self.datastore.register_user(email, password, profile)
        except ValueError as exc:
            return str(exc)
        return None

    async def sign_out(self) -> None:
        self._session = None
        self._publish_auth(False)

    async def reset_password(self, email: str) -> Optional[str]:
        try:
            token = self.datastore.request_password_reset(email)
        except OSError as exc:
            return f"Password reset failed: {exc}"
        if token:
            logger.info("Password reset issued for %s", email)
        return None

    def _require_user(self, user_id: Optional[str], error_cls: type) -> str:
        if self._session is None:
            raise error_cls("Not signed in")
        if user_id is not None and user_id != self._session.user_id:
            raise error_cls("Rows belong to another user")
        return self._session.user_id

    async def is_admin(self, user_id: str) -> bool:
        try:
            return self.datastore.is_admin(user_id)
        except (OSError, ValueError) as exc:
            raise RemoteReadError(str(exc)) from exc

    async def fetch_catalog_as_admin(self, user_id: str) -> CatalogRows:
        self._require_user(user_id, RemoteReadError)
        try:
            categories = self.datastore.list_categories(user_id)
            problems = self.datastore.list_problems(user_id)
        except (OSError, ValueError) as exc:
            raise RemoteReadError(str(exc)) from exc
        return (
            [CategoryRow.from_dict(row) for row in categories],
            [ProblemRow.from_dict(row) for row in problems],
        )

    async def fetch_catalog_shared(self) -> CatalogRows:
        self._require_user(None, RemoteReadError)
        try:
            categories = self.datastore.list_shared_categories()
            problems = self.datastore.list_shared_problems()
        except (OSError, ValueError) as exc:
            raise RemoteReadError(str(exc)) from exc
        return (
            [CategoryRow.from_dict(row) for row in categories],
            [ProblemRow.from_dict(row) for row in problems],
        )

    async def fetch_overlay(self, user_id: str) -> List[ProgressOverlay]:
        self._require_user(user_id, RemoteReadError)
        try:
            rows = self.datastore.list_progress(user_id)
        except (OSError, ValueError) as exc:
            raise RemoteReadError(str(exc)) from exc
        return [ProgressOverlay.from_dict(row) for row in rows]

    async def upsert_catalog(self, categories: List[CategoryRow], problems: List[ProblemRow], owner_id: str) -> None:
        self._require_user(owner_id, RemoteWriteError)
        try:
            self.datastore.upsert_catalog(
                [row.to_dict() for row in categories],
                [row.to_dict() for row in problems],
                owner_id,
            )
        except (OSError, ValueError, PermissionError) as exc:
            raise RemoteWriteError(str(exc)) from exc

    async def delete_catalog_rows(self, category_ids: Iterable[str], problem_ids: Iterable[str], owner_id: str) -> None:
        self._require_user(owner_id, RemoteWriteError)
        try:
            self.datastore.delete_catalog_rows(category_ids, problem_ids, owner_id)
        except (OSError, ValueError, PermissionError) as exc:
            raise RemoteWriteError(str(exc)) from exc

    async def upsert_overlay(self, rows: List[ProgressOverlay]) -> None:
        user_id = self._require_user(None, RemoteWriteError)
        try:
            self.datastore.upsert_progress([row.to_dict() for row in rows], user_id)
        except (OSError, ValueError, PermissionError) as exc:
            raise RemoteWriteError(str(exc)) from exc

    def subscribe_to_changes(self, callback: ChangeCallback) -> Unsubscribe:
        return self.datastore.add_listener(lambda revision: callback())


# Process-wide client ---------------------------------------------------

_client: Optional[RemoteStore] = None
_client_lock = threading.Lock()


def build_remote_client(settings: Settings) -> RemoteStore:
    if settings.remote_url:
        from .http_remote import HttpRemoteStore

        return HttpRemoteStore(
            settings.remote_url,
            timeout=settings.request_timeout,
            poll_interval=settings.poll_interval,
        )
    return InProcessRemoteStore(DataStore(settings.store_path))


def get_remote_client(settings: Optional[Settings] = None) -> RemoteStore:
    """Return the single remote client, constructing it on first use."""
    global _client
    if _client is not None:
        return _client
    with _client_lock:
        if _client is None:
            _client = build_remote_client(settings or Settings.from_env())
    return _client


def reset_remote_client() -> None:
    global _client
    with _client_lock:
        _client = None
