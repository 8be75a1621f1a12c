"""Tests for the HTTP remote client against the Flask app through a mock transport."""

import asyncio

import httpx
import pytest

from conftest import ADMIN_EMAIL, LEARNER_EMAIL, PASSWORD, arrays_catalog

from tracker.catalog import sample_catalog
from tracker.errors import RemoteReadError, RemoteWriteError, ResourceExhaustedError, SessionError
from tracker.http_remote import HttpRemoteStore
from tracker.models import ProgressOverlay, Role, RoleKind
from tracker.reconcile import LoadSource, Reconciler
from tracker.server.auth import revoke_token


def _failing_store(handler) -> HttpRemoteStore:
    return HttpRemoteStore("http://tracker.test", transport=httpx.MockTransport(handler))


class TestIdentity:
    @pytest.mark.asyncio
    async def test_sign_in_and_session(self, http_remote, accounts):
        assert await http_remote.get_session() is None
        assert await http_remote.sign_in(ADMIN_EMAIL, PASSWORD) is None
        session = await http_remote.get_session()
        assert session.user_id == accounts["admin"]
        assert session.token
        assert await http_remote.is_admin(accounts["admin"]) is True

    @pytest.mark.asyncio
    async def test_bad_credentials_return_message(self, http_remote, accounts):
        error = await http_remote.sign_in(ADMIN_EMAIL, "wrong-password")
        assert error.startswith("Invalid email or password")

    @pytest.mark.asyncio
    async def test_sign_up_reports_duplicates(self, http_remote, accounts):
        error = await http_remote.sign_up(LEARNER_EMAIL, PASSWORD, {"name": "Again"})
        assert "already exists" in error

    @pytest.mark.asyncio
    async def test_auth_changes_are_published_once_per_transition(self, http_remote, accounts):
        events = []
        http_remote.on_auth_change(events.append)
        await http_remote.sign_in(LEARNER_EMAIL, PASSWORD)
        await http_remote.sign_in(LEARNER_EMAIL, PASSWORD)
        await http_remote.sign_out()
        await http_remote.sign_out()
        assert events == [True, False]

    @pytest.mark.asyncio
    async def test_revoked_token_drops_session(self, http_remote, app, accounts):
        await http_remote.sign_in(LEARNER_EMAIL, PASSWORD)
        with app.test_request_context():
            revoke_token(http_remote._token)
        assert await http_remote.get_session() is None


class TestReconcileOverHttp:
    @pytest.mark.asyncio
    async def test_admin_save_and_subuser_overlay(self, http_remote, cache, datastore, accounts):
        reconciler = Reconciler(http_remote, cache)
        await http_remote.sign_in(ADMIN_EMAIL, PASSWORD)
        assert (await reconciler.resolve_role()).kind is RoleKind.ADMIN
        assert await reconciler.save(arrays_catalog(), Role.admin(accounts["admin"]))
        assert not (await reconciler.push(arrays_catalog(), Role.admin(accounts["admin"]))).changed

        await http_remote.sign_out()
        await http_remote.sign_in(LEARNER_EMAIL, PASSWORD)
        learner = await reconciler.resolve_role()
        assert learner == Role.subuser(accounts["learner"])
        await http_remote.upsert_overlay([ProgressOverlay(accounts["learner"], "p1", True, "")])

        tree = await reconciler.load(learner)
        assert reconciler.last_source is LoadSource.REMOTE
        assert tree[0].problems[0].completed is True
        assert datastore.list_problems(accounts["admin"])[0]["completed"] is False

    @pytest.mark.asyncio
    async def test_change_polling_fires_on_new_revision(self, http_remote, datastore, accounts):
        fired = asyncio.Event()
        unsubscribe = http_remote.subscribe_to_changes(fired.set)
        await asyncio.sleep(0.05)
        datastore.set_admin(accounts["learner"], True)
        await asyncio.wait_for(fired.wait(), timeout=2)
        unsubscribe()


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_throttling_is_resource_exhaustion(self):
        store = _failing_store(lambda request: httpx.Response(429, json={"error": "slow down"}))
        try:
            with pytest.raises(ResourceExhaustedError):
                await store.upsert_overlay([])
            with pytest.raises(ResourceExhaustedError):
                await store.fetch_catalog_shared()
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_server_errors_map_to_operation(self):
        store = _failing_store(lambda request: httpx.Response(500, json={"error": "db down"}))
        try:
            with pytest.raises(RemoteReadError, match="db down"):
                await store.fetch_overlay("u1")
            with pytest.raises(RemoteWriteError):
                await store.delete_catalog_rows(["c1"], [], "u1")
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_connection_failure_is_read_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        store = _failing_store(refuse)
        try:
            with pytest.raises(RemoteReadError):
                await store.is_admin("u1")
            assert await store.sign_in(ADMIN_EMAIL, PASSWORD) == "Sign in failed. Please try again."
        finally:
            await store.close()


def _portal_store(catalog_body=None) -> HttpRemoteStore:
    """Sign-in works; every later response is whatever an intercepting portal returns."""

    def handler(request):
        if request.url.path == "/api/auth/signin":
            return httpx.Response(200, json={"token": "t0k3n", "user": {"id": "u1", "email": "u1@example.com"}})
        if request.url.path == "/api/auth/session" and catalog_body is not None:
            return httpx.Response(200, json={"user": {"id": "u1", "email": "u1@example.com"}})
        if request.url.path.startswith("/api/admins/") and catalog_body is not None:
            return httpx.Response(200, json={"user_id": "u1", "is_admin": False})
        if catalog_body is not None:
            return httpx.Response(200, json=catalog_body)
        return httpx.Response(200, text="<html>login to wifi</html>", headers={"Content-Type": "text/html"})

    return _failing_store(handler)


class TestMalformedResponses:
    @pytest.mark.asyncio
    async def test_html_session_response_is_a_session_error(self, cache):
        store = _portal_store()
        try:
            assert await store.sign_in(ADMIN_EMAIL, PASSWORD) is None
            with pytest.raises(SessionError):
                await store.get_session()

            cache.write(arrays_catalog())
            reconciler = Reconciler(store, cache)
            assert await reconciler.load() == arrays_catalog()
            assert reconciler.last_source is LoadSource.CACHE
        finally:
            await store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [[], {"categories": "c1"}, {"categories": [{"title": "no id"}]}])
    async def test_malformed_catalog_body_falls_back_to_sample(self, cache, body):
        store = _portal_store(catalog_body=body)
        try:
            await store.sign_in(LEARNER_EMAIL, PASSWORD)
            with pytest.raises(RemoteReadError):
                await store.fetch_catalog_shared()

            reconciler = Reconciler(store, cache)
            assert await reconciler.load() == sample_catalog()
            assert reconciler.last_source is LoadSource.SAMPLE
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_malformed_overlay_rows_are_read_errors(self):
        store = _portal_store(catalog_body={"progress": [{"completed": True}]})
        try:
            await store.sign_in(LEARNER_EMAIL, PASSWORD)
            with pytest.raises(RemoteReadError):
                await store.fetch_overlay("u1")
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_sign_in_without_token_fails_softly(self):
        store = _failing_store(lambda request: httpx.Response(200, json={"user": {"id": "u1"}}))
        events = []
        store.on_auth_change(events.append)
        try:
            assert await store.sign_in(ADMIN_EMAIL, PASSWORD) == "Sign in failed. Please try again."
            assert await store.get_session() is None
            assert events == []
        finally:
            await store.close()
