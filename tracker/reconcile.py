"""Merge remote catalog and overlay rows into one tree, and write it back."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from .catalog import flatten_problems, sample_catalog
from .errors import RemoteError, RemoteReadError, RemoteWriteError, SessionError
from .local_cache import LocalCache
from .models import Category, CategoryRow, ProblemRow, ProgressOverlay, Role, RoleKind
from .remote import RemoteStore

logger = logging.getLogger(__name__)


class LoadSource(str, Enum):
    REMOTE = "remote"
    CACHE = "cache"
    SAMPLE = "sample"


@dataclass
class PushResult:
    upserted_categories: int = 0
    upserted_problems: int = 0
    deleted_categories: int = 0
    deleted_problems: int = 0
    upserted_overlays: int = 0

    @property
    def changed(self) -> bool:
        return any((
            self.upserted_categories,
            self.upserted_problems,
            self.deleted_categories,
            self.deleted_problems,
            self.upserted_overlays,
        ))


def build_tree(
    category_rows: Iterable[CategoryRow],
    problem_rows: Iterable[ProblemRow],
    overlay: Optional[Dict[str, ProgressOverlay]] = None,
) -> List[Category]:
    """Project rows to a tree.

    With ``overlay`` set, ``completed``/``note`` come from the caller's own
    overlay rows and default to ``False``/``""``; without it they are read
    from the problem rows.
    """
    grouped: Dict[str, List[ProblemRow]] = {}
    for row in problem_rows:
        grouped.setdefault(row.category_id, []).append(row)

    tree = []
    for category in sorted(category_rows, key=lambda row: row.order_index):
        problems = []
        for row in grouped.get(category.id, []):
            if overlay is None:
                problems.append(row.to_problem())
                continue
            entry = overlay.get(row.id)
            problems.append(row.to_problem(
                completed=entry.completed if entry else False,
                note=entry.note if entry else "",
            ))
        tree.append(Category(id=category.id, title=category.title, order_index=category.order_index, problems=problems))
    return tree


class Reconciler:
    def __init__(
        self,
        remote: RemoteStore,
        cache: LocalCache,
        sample: Optional[Callable[[], List[Category]]] = None,
    ) -> None:
        self.remote = remote
        self.cache = cache
        self._sample = sample or sample_catalog
        self.last_source: Optional[LoadSource] = None
        self.last_role: Role = Role.unauthenticated()

    async def resolve_role(self) -> Role:
        try:
            session = await self.remote.get_session()
        except (SessionError, RemoteError) as exc:
            logger.warning("Session lookup failed, continuing unauthenticated: %s", exc)
            return Role.unauthenticated()
        if session is None:
            return Role.unauthenticated()
        try:
            admin = await self.remote.is_admin(session.user_id)
        except RemoteError as exc:
            logger.warning("Admin check failed for %s, treating as sub-user: %s", session.user_id, exc)
            admin = False
        return Role.admin(session.user_id) if admin else Role.subuser(session.user_id)

    async def load(self, role: Optional[Role] = None) -> List[Category]:
        """Return the best available tree; never raises."""
        if role is None:
            role = await self.resolve_role()
        self.last_role = role
        if role.is_authenticated:
            try:
                categories = await self._fetch(role)
            except RemoteError as exc:
                logger.error("Remote load error, falling back to local: %s", exc)
            else:
                self.cache.write(categories)
                self.last_source = LoadSource.REMOTE
                return categories
        return self._load_local()

    async def _fetch(self, role: Role) -> List[Category]:
        if role.is_admin:
            category_rows, problem_rows = await self.remote.fetch_catalog_as_admin(role.user_id)
            return build_tree(category_rows, problem_rows)
        (category_rows, problem_rows), overlay_rows = await asyncio.gather(
            self.remote.fetch_catalog_shared(),
            self.remote.fetch_overlay(role.user_id),
        )
        overlay = {row.problem_id: row for row in overlay_rows if row.user_id == role.user_id}
        return build_tree(category_rows, problem_rows, overlay)

    def _load_local(self) -> List[Category]:
        cached = self.cache.read()
        if cached:
            self.last_source = LoadSource.CACHE
            return cached
        self.last_source = LoadSource.SAMPLE
        return self._sample()

    async def save(self, categories: List[Category], role: Role) -> bool:
        """Persist locally, then push remotely; returns whether the push landed."""
        self.cache.write(categories)
        try:
            await self.push(categories, role)
        except RemoteError as exc:
            logger.error("Failed to save data remotely, kept local copy: %s", exc)
            return False
        return True

    async def push(self, categories: List[Category], role: Role) -> PushResult:
        """Write the remote half of a save. Raises ``RemoteWriteError`` on failure."""
        try:
            if role.kind is RoleKind.ADMIN:
                result = await self._push_catalog(categories, role.user_id)
                logger.info("Catalog saved by admin %s", role.user_id)
            elif role.kind is RoleKind.SUBUSER:
                result = await self._push_overlay(categories, role.user_id)
                logger.info("User progress saved for %s", role.user_id)
            else:
                logger.debug("No authenticated session, saved to local storage only")
                result = PushResult()
        except RemoteReadError as exc:
            raise RemoteWriteError(f"could not read current rows: {exc}") from exc
        return result

    async def _push_catalog(self, categories: List[Category], owner_id: str) -> PushResult:
        existing_categories, existing_problems = await self.remote.fetch_catalog_as_admin(owner_id)
        desired_categories = [
            CategoryRow(id=category.id, title=category.title, order_index=index, user_id=owner_id)
            for index, category in enumerate(categories)
        ]
        desired_problems = [
            ProblemRow(
                id=problem.id,
                category_id=category.id,
                title=problem.title,
                url=problem.url,
                platform=problem.platform,
                difficulty=problem.difficulty,
                completed=problem.completed,
                note=problem.note or "",
                user_id=owner_id,
            )
            for category in categories
            for problem in category.problems
        ]

        current_categories = {row.id: row for row in existing_categories}
        current_problems = {row.id: row for row in existing_problems}
        category_upserts = [row for row in desired_categories if current_categories.get(row.id) != row]
        problem_upserts = [row for row in desired_problems if current_problems.get(row.id) != row]
        category_deletes = sorted(set(current_categories) - {row.id for row in desired_categories})
        problem_deletes = sorted(set(current_problems) - {row.id for row in desired_problems})

        if category_upserts or problem_upserts:
            await self.remote.upsert_catalog(category_upserts, problem_upserts, owner_id)
        # Children first so no problem row is left pointing at a deleted category.
        if problem_deletes:
            await self.remote.delete_catalog_rows([], problem_deletes, owner_id)
        if category_deletes:
            await self.remote.delete_catalog_rows(category_deletes, [], owner_id)

        return PushResult(
            upserted_categories=len(category_upserts),
            upserted_problems=len(problem_upserts),
            deleted_categories=len(category_deletes),
            deleted_problems=len(problem_deletes),
        )

    async def _push_overlay(self, categories: List[Category], user_id: str) -> PushResult:
        overlay_rows, (_, shared_problems) = await asyncio.gather(
            self.remote.fetch_overlay(user_id),
            self.remote.fetch_catalog_shared(),
        )
        current = {row.problem_id: row for row in overlay_rows}
        known = {row.id for row in shared_problems}
        upserts: Dict[str, ProgressOverlay] = {}
        for problem in flatten_problems(categories):
            if problem.id not in known:
                continue
            row = ProgressOverlay(user_id=user_id, problem_id=problem.id, completed=problem.completed, note=problem.note or "")
            existing = current.get(problem.id)
            if existing is None and not row.completed and not row.note:
                continue
            if existing == row:
                continue
            upserts[problem.id] = row
        if upserts:
            await self.remote.upsert_overlay(list(upserts.values()))
        return PushResult(upserted_overlays=len(upserts))
