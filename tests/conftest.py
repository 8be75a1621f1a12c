"""Shared fixtures for the tracker test suite."""

from __future__ import annotations

import asyncio
from typing import Dict, List

import httpx
import pytest
import pytest_asyncio

from tracker.config import Settings
from tracker.http_remote import HttpRemoteStore
from tracker.local_cache import LocalCache
from tracker.models import Category, Difficulty, Platform, Problem
from tracker.remote import InProcessRemoteStore, reset_remote_client
from tracker.server.app import create_app
from tracker.server.datastore import DataStore

ADMIN_EMAIL = "admin@example.com"
LEARNER_EMAIL = "learner@example.com"
PASSWORD = "secret123"


def arrays_catalog() -> List[Category]:
    """One category ``c1`` holding one easy problem ``p1``."""
    return [
        Category(
            id="c1",
            title="Arrays",
            order_index=0,
            problems=[
                Problem(
                    id="p1",
                    title="Two Sum",
                    url="https://leetcode.com/problems/two-sum/",
                    platform=Platform.LEETCODE,
                    difficulty=Difficulty.EASY,
                )
            ],
        )
    ]


def two_category_catalog() -> List[Category]:
    return [
        Category(
            id="c1",
            title="Arrays",
            order_index=0,
            problems=[
                Problem(id="p1", title="Two Sum", difficulty=Difficulty.EASY),
                Problem(id="p2", title="Three Sum", difficulty=Difficulty.MEDIUM),
            ],
        ),
        Category(
            id="c2",
            title="Graphs",
            order_index=1,
            problems=[Problem(id="p3", title="Course Schedule", platform=Platform.GFG, difficulty=Difficulty.HARD)],
        ),
    ]


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stands in for ``asyncio.sleep``: records delays and advances the fake clock."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        self.clock.advance(delay)
        await asyncio.sleep(0)


class FlakyRemote(InProcessRemoteStore):
    """In-process remote with switchable read, write and session failures."""

    def __init__(self, datastore: DataStore) -> None:
        super().__init__(datastore)
        self.session_error = None
        self.admin_error = None
        self.read_error = None
        self.write_errors: List[Exception] = []
        self.writes: List[str] = []

    def _check_read(self) -> None:
        if self.read_error is not None:
            raise self.read_error

    def _check_write(self, name: str) -> None:
        self.writes.append(name)
        if self.write_errors:
            raise self.write_errors.pop(0)

    async def get_session(self):
        if self.session_error is not None:
            raise self.session_error
        return await super().get_session()

    async def is_admin(self, user_id):
        if self.admin_error is not None:
            raise self.admin_error
        return await super().is_admin(user_id)

    async def fetch_catalog_as_admin(self, user_id):
        self._check_read()
        return await super().fetch_catalog_as_admin(user_id)

    async def fetch_catalog_shared(self):
        self._check_read()
        return await super().fetch_catalog_shared()

    async def fetch_overlay(self, user_id):
        self._check_read()
        return await super().fetch_overlay(user_id)

    async def upsert_catalog(self, categories, problems, owner_id):
        self._check_write("upsert_catalog")
        await super().upsert_catalog(categories, problems, owner_id)

    async def delete_catalog_rows(self, category_ids, problem_ids, owner_id):
        self._check_write("delete_catalog_rows")
        await super().delete_catalog_rows(category_ids, problem_ids, owner_id)

    async def upsert_overlay(self, rows):
        self._check_write("upsert_overlay")
        await super().upsert_overlay(rows)


def flask_bridge(app) -> httpx.MockTransport:
    """Route httpx requests into the Flask test client."""
    client = app.test_client()

    def handler(request: httpx.Request) -> httpx.Response:
        headers = {}
        if "authorization" in request.headers:
            headers["Authorization"] = request.headers["authorization"]
        if "content-type" in request.headers:
            headers["Content-Type"] = request.headers["content-type"]
        response = client.open(
            request.url.path,
            method=request.method,
            headers=headers,
            data=request.content,
            query_string=request.url.query.decode("ascii"),
        )
        return httpx.Response(
            response.status_code,
            headers={"Content-Type": response.content_type},
            content=response.get_data(),
        )

    return httpx.MockTransport(handler)


@pytest.fixture(autouse=True)
def _fresh_remote_client():
    reset_remote_client()
    yield
    reset_remote_client()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        store_path=tmp_path / "store.json",
        cache_path=tmp_path / "cache.json",
        secret_key="test-secret",
    )


@pytest.fixture
def datastore(tmp_path) -> DataStore:
    return DataStore(tmp_path / "store.json")


@pytest.fixture
def accounts(datastore) -> Dict[str, str]:
    admin = datastore.register_user(ADMIN_EMAIL, PASSWORD, {"name": "Admin"})
    learner = datastore.register_user(LEARNER_EMAIL, PASSWORD, {"name": "Learner"})
    datastore.set_admin(admin["id"], True)
    return {"admin": admin["id"], "learner": learner["id"]}


@pytest.fixture
def cache(tmp_path) -> LocalCache:
    return LocalCache(tmp_path / "cache.json")


@pytest.fixture
def remote(datastore) -> InProcessRemoteStore:
    return InProcessRemoteStore(datastore)


@pytest.fixture
def flaky_remote(datastore) -> FlakyRemote:
    return FlakyRemote(datastore)


@pytest.fixture
def app(settings, datastore):
    flask_app = create_app(settings, datastore)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest_asyncio.fixture
async def http_remote(app):
    store = HttpRemoteStore("http://tracker.test", transport=flask_bridge(app), poll_interval=0.01)
    yield store
    await store.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock) -> RecordingSleep:
    return RecordingSleep(clock)
