"""Remote store contract over HTTP against the tracker server."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

import httpx

from .errors import RemoteError, RemoteReadError, RemoteWriteError, ResourceExhaustedError, SessionError
from .models import CategoryRow, ProblemRow, ProgressOverlay, Session
from .remote import CatalogRows, ChangeCallback, RemoteStore, Unsubscribe

logger = logging.getLogger(__name__)

THROTTLED_STATUSES = {429, 503}

T = TypeVar("T")


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return response.reason_phrase


def _parse_rows(payload: Dict[str, Any], key: str, factory: Callable[[Dict[str, Any]], T], error_cls: type) -> List[T]:
    rows = payload.get(key, [])
    if not isinstance(rows, list):
        raise error_cls(f"malformed response: '{key}' is not a list")
    try:
        return [factory(row) for row in rows]
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise error_cls(f"malformed {key} row: {exc!r}") from exc


def _catalog_rows(payload: Dict[str, Any]) -> CatalogRows:
    return (
        _parse_rows(payload, "categories", CategoryRow.from_dict, RemoteReadError),
        _parse_rows(payload, "problems", ProblemRow.from_dict, RemoteReadError),
    )


class HttpRemoteStore(RemoteStore):
    """Bearer-token client for ``tracker.server``.

    A 429 or 503 from any endpoint raises ``ResourceExhaustedError`` so the
    save scheduler backs off; other failures raise the read or write error
    matching the operation. Change notifications poll ``/api/changes``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        poll_interval: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__()
        self.poll_interval = poll_interval
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self._token: Optional[str] = None
        self._session: Optional[Session] = None
        self._change_listeners: List[ChangeCallback] = []
        self._poll_task: Optional[asyncio.Task] = None

    def _headers(self) -> Dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self._client.request(method, path, headers=self._headers(), **kwargs)

    async def _request(self, method: str, path: str, error_cls: type, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._send(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise error_cls(f"{method} {path} failed: {exc}") from exc
        if response.status_code in THROTTLED_STATUSES:
            raise ResourceExhaustedError(f"{method} {path}: {response.status_code} {_error_message(response)}")
        if response.status_code >= 400:
            raise error_cls(f"{method} {path}: {response.status_code} {_error_message(response)}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise error_cls(f"{method} {path}: invalid JSON response") from exc
        if not isinstance(payload, dict):
            raise error_cls(f"{method} {path}: expected a JSON object")
        return payload

    # Identity ----------------------------------------------------------

    async def get_session(self) -> Optional[Session]:
        if not self._token:
            return None
        try:
            response = await self._send("GET", "/api/auth/session")
        except httpx.HTTPError as exc:
            raise SessionError(f"session lookup failed: {exc}") from exc
        if response.status_code == 401:
            self._token = None
            self._session = None
            self._publish_auth(False)
            return None
        if response.status_code >= 400:
            raise SessionError(f"session lookup failed: {response.status_code} {_error_message(response)}")
        try:
            user = response.json()["user"]
            self._session = Session(user_id=str(user["id"]), email=str(user.get("email", "")), token=self._token)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise SessionError(f"session lookup failed: malformed response ({exc!r})") from exc
        return self._session

    async def sign_in(self, email: str, password: str) -> Optional[str]:
        try:
            response = await self._send("POST", "/api/auth/signin", json={"email": email, "password": password})
        except httpx.HTTPError:
            return "Sign in failed. Please try again."
        if response.status_code >= 400:
            return _error_message(response)
        try:
            payload = response.json()
            token = str(payload["token"])
            user = payload.get("user") or {}
            session = Session(user_id=str(user["id"]), email=str(user.get("email", "")), token=token)
        except (AttributeError, KeyError, TypeError, ValueError):
            return "Sign in failed. Please try again."
        self._token = token
        self._session = session
        self._publish_auth(True)
        return None

    async def sign_up(self, email: str, password: str, profile: Optional[Dict[str, Any]] = None) -> Optional[str]:
        body = {"email": email, "password": password, "profile": profile or {}}
        try:
            response = await self._send("POST", "/api/auth/signup", json=body)
        except httpx.HTTPError as exc:
            return f"Signup failed: {exc}"
        if response.status_code >= 400:
            return _error_message(response)
        return None

    async def sign_out(self) -> None:
        if self._token:
            try:
                await self._send("POST", "/api/auth/signout")
            except httpx.HTTPError as exc:
                logger.error("Sign out error: %s", exc)
        self._token = None
        self._session = None
        self._publish_auth(False)

    async def reset_password(self, email: str) -> Optional[str]:
        try:
            response = await self._send("POST", "/api/auth/reset-password", json={"email": email})
        except httpx.HTTPError:
            return "Password reset failed"
        if response.status_code >= 400:
            return _error_message(response)
        return None

    # Catalog and overlay -------------------------------------------------

    async def is_admin(self, user_id: str) -> bool:
        payload = await self._request("GET", f"/api/admins/{user_id}", RemoteReadError)
        return bool(payload.get("is_admin"))

    async def fetch_catalog_as_admin(self, user_id: str) -> CatalogRows:
        payload = await self._request("GET", "/api/catalog", RemoteReadError, params={"scope": "own"})
        categories, problems = _catalog_rows(payload)
        return (
            [row for row in categories if row.user_id == user_id],
            [row for row in problems if row.user_id == user_id],
        )

    async def fetch_catalog_shared(self) -> CatalogRows:
        payload = await self._request("GET", "/api/catalog", RemoteReadError, params={"scope": "shared"})
        return _catalog_rows(payload)

    async def fetch_overlay(self, user_id: str) -> List[ProgressOverlay]:
        payload = await self._request("GET", "/api/progress", RemoteReadError)
        rows = _parse_rows(payload, "progress", ProgressOverlay.from_dict, RemoteReadError)
        return [row for row in rows if row.user_id == user_id]

    async def upsert_catalog(self, categories: List[CategoryRow], problems: List[ProblemRow], owner_id: str) -> None:
        body = {
            "categories": [row.to_dict() for row in categories],
            "problems": [row.to_dict() for row in problems],
        }
        await self._request("PUT", "/api/catalog", RemoteWriteError, json=body)

    async def delete_catalog_rows(self, category_ids: Iterable[str], problem_ids: Iterable[str], owner_id: str) -> None:
        body = {"category_ids": list(category_ids), "problem_ids": list(problem_ids)}
        await self._request("POST", "/api/catalog/delete", RemoteWriteError, json=body)

    async def upsert_overlay(self, rows: List[ProgressOverlay]) -> None:
        await self._request("PUT", "/api/progress", RemoteWriteError, json={"rows": [row.to_dict() for row in rows]})

    def subscribe_to_changes(self, callback: ChangeCallback) -> Unsubscribe:
        self._change_listeners.append(callback)
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_changes())

        def unsubscribe() -> None:
            if callback in self._change_listeners:
                self._change_listeners.remove(callback)
            if not self._change_listeners and self._poll_task is not None:
                self._poll_task.cancel()
                self._poll_task = None

        return unsubscribe

    async def _poll_changes(self) -> None:
        last_revision: Optional[int] = None
        while True:
            try:
                payload = await self._request("GET", "/api/changes", RemoteReadError)
                revision = int(payload.get("revision", 0))
            except (RemoteError, TypeError, ValueError) as exc:
                logger.debug("Change poll failed: %s", exc)
            else:
                if last_revision is not None and revision != last_revision:
                    for callback in list(self._change_listeners):
                        try:
                            callback()
                        except Exception:
                            logger.exception("Remote change listener failed")
                last_revision = revision
            await asyncio.sleep(self.poll_interval)

    async def close(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        await self._client.aclose()
