"""Client-side controller: owns the in-memory tree and routes every edit
through the save scheduler with the caller's resolved role."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Set

from .catalog import filter_categories, generate_id, progress_summary, random_unsolved
from .config import Settings
from .local_cache import LocalCache
from .models import Category, Difficulty, Problem, Role
from .reconcile import Reconciler
from .remote import RemoteStore, get_remote_client
from .scheduler import ConnectionStatus, SavePolicy, SaveScheduler, SaveState

logger = logging.getLogger(__name__)


def _reindex(categories: List[Category]) -> List[Category]:
    return [replace(category, order_index=index) for index, category in enumerate(categories)]


class SyncEngine:
    def __init__(
        self,
        remote: RemoteStore,
        cache: LocalCache,
        policy: Optional[SavePolicy] = None,
        **scheduler_options: Any,
    ) -> None:
        self.remote = remote
        self.cache = cache
        self.reconciler = Reconciler(remote, cache)
        self.scheduler = SaveScheduler(self.reconciler, policy, **scheduler_options)
        self.categories: List[Category] = []
        self.role = Role.unauthenticated()
        self.loading = True
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribers: List[Callable[[], None]] = []
        self._reload_tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SyncEngine":
        settings = settings or Settings.from_env()
        cache = LocalCache(settings.cache_path, settings.cache_key)
        return cls(get_remote_client(settings), cache, settings.save_policy())

    # Lifecycle ---------------------------------------------------------

    async def start(self) -> List[Category]:
        self._loop = asyncio.get_running_loop()
        await self.reload()
        self._unsubscribers.append(self.remote.subscribe_to_changes(self._on_remote_change))
        self._unsubscribers.append(self.remote.on_auth_change(self._on_auth_change))
        return self.categories

    async def stop(self) -> None:
        self._loop = None
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for task in list(self._reload_tasks):
            task.cancel()
        await self.scheduler.teardown(self.categories, self.role)
        await self.scheduler.drain()

    async def reload(self) -> List[Category]:
        self.role = await self.reconciler.resolve_role()
        self.categories = await self.reconciler.load(self.role)
        self.loading = False
        return self.categories

    async def wait_idle(self) -> None:
        """Wait for queued refreshes and scheduled saves to settle."""
        while True:
            # Let callbacks queued with call_soon_threadsafe spawn their tasks.
            await asyncio.sleep(0)
            if not self._reload_tasks and not self.scheduler.pending:
                return
            await asyncio.gather(*list(self._reload_tasks), return_exceptions=True)
            await self.scheduler.drain()

    def _on_remote_change(self) -> None:
        self._request_reload(remote_change=True)

    def _on_auth_change(self, authenticated: bool) -> None:
        logger.info("Auth state changed: %s", "signed in" if authenticated else "signed out")
        self._request_reload(remote_change=False)

    def _request_reload(self, remote_change: bool) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._spawn_reload, remote_change)

    def _spawn_reload(self, remote_change: bool) -> None:
        if self._loop is None:
            return
        if remote_change and self.scheduler.state is not SaveState.IDLE:
            # A local snapshot is still on its way out; it would be clobbered.
            logger.debug("Skipping remote refresh while a save is pending")
            return
        task = asyncio.ensure_future(self.reload())
        self._reload_tasks.add(task)
        task.add_done_callback(self._reload_tasks.discard)

    # Identity ----------------------------------------------------------

    async def sign_in(self, email: str, password: str) -> Optional[str]:
        return await self.remote.sign_in(email, password)

    async def sign_up(self, email: str, password: str, profile: Optional[Dict[str, Any]] = None) -> Optional[str]:
        return await self.remote.sign_up(email, password, profile)

    async def sign_out(self) -> None:
        await self.remote.sign_out()

    async def reset_password(self, email: str) -> Optional[str]:
        return await self.remote.reset_password(email)

    # Views -------------------------------------------------------------

    @property
    def can_edit(self) -> bool:
        return not self.loading and self.role.is_admin

    @property
    def status(self) -> ConnectionStatus:
        return self.scheduler.status

    def progress(self) -> Dict[str, int]:
        return progress_summary(self.categories)

    def filtered(self, search: str = "", difficulty: Optional[Difficulty] = None) -> List[Category]:
        return filter_categories(self.categories, search, difficulty)

    def random_unsolved(self) -> Optional[Problem]:
        return random_unsolved(self.categories)

    # Catalog edits (admin only) -----------------------------------------

    def _require_admin(self) -> None:
        if not self.role.is_admin:
            raise PermissionError("Only the catalog admin can edit categories and problems")

    def _category_position(self, category_id: str) -> int:
        for index, category in enumerate(self.categories):
            if category.id == category_id:
                return index
        raise LookupError(f"Unknown category {category_id!r}")

    def _problem_position(self, category: Category, problem_id: str) -> int:
        for index, problem in enumerate(category.problems):
            if problem.id == problem_id:
                return index
        raise LookupError(f"Unknown problem {problem_id!r} in category {category.id!r}")

    async def _commit(self, categories: List[Category], immediate: bool = False) -> None:
        self.categories = categories
        if immediate:
            await self.scheduler.schedule_immediate(categories, self.role)
        else:
            await self.scheduler.schedule(categories, self.role)

    async def create_category(self, title: str) -> Category:
        self._require_admin()
        title = title.strip()
        if not title:
            raise ValueError("Category title cannot be empty")
        category = Category(id=generate_id("c"), title=title, order_index=len(self.categories))
        await self._commit(self.categories + [category], immediate=True)
        return category

    async def update_category(self, category_id: str, title: str) -> Category:
        self._require_admin()
        title = title.strip()
        if not title:
            raise ValueError("Category title cannot be empty")
        position = self._category_position(category_id)
        categories = list(self.categories)
        categories[position] = replace(categories[position], title=title)
        await self._commit(categories)
        return categories[position]

    async def move_category(self, category_id: str, new_index: int) -> None:
        self._require_admin()
        position = self._category_position(category_id)
        categories = list(self.categories)
        category = categories.pop(position)
        new_index = max(0, min(new_index, len(categories)))
        categories.insert(new_index, category)
        await self._commit(_reindex(categories))

    async def delete_category(self, category_id: str) -> None:
        self._require_admin()
        position = self._category_position(category_id)
        categories = list(self.categories)
        del categories[position]
        await self._commit(_reindex(categories))

    async def add_problem(self, category_id: str, problem: Problem) -> Problem:
        self._require_admin()
        if not problem.title.strip():
            raise ValueError("Problem title cannot be empty")
        position = self._category_position(category_id)
        categories = list(self.categories)
        target = categories[position]
        categories[position] = target.with_problems(target.problems + [problem])
        await self._commit(categories, immediate=True)
        return problem

    async def update_problem(self, category_id: str, problem_id: str, **changes: Any) -> Problem:
        self._require_admin()
        return await self._replace_problem(category_id, problem_id, lambda problem: replace(problem, **changes))

    async def delete_problem(self, category_id: str, problem_id: str) -> None:
        self._require_admin()
        position = self._category_position(category_id)
        categories = list(self.categories)
        target = categories[position]
        index = self._problem_position(target, problem_id)
        categories[position] = target.with_problems(target.problems[:index] + target.problems[index + 1:])
        await self._commit(categories)

    # Personal progress (every role) -------------------------------------

    async def toggle_completed(self, category_id: str, problem_id: str) -> Problem:
        return await self._replace_problem(
            category_id, problem_id, lambda problem: replace(problem, completed=not problem.completed)
        )

    async def set_note(self, category_id: str, problem_id: str, note: str) -> Problem:
        return await self._replace_problem(category_id, problem_id, lambda problem: replace(problem, note=note))

    async def _replace_problem(
        self,
        category_id: str,
        problem_id: str,
        updater: Callable[[Problem], Problem],
    ) -> Problem:
        position = self._category_position(category_id)
        categories = list(self.categories)
        target = categories[position]
        index = self._problem_position(target, problem_id)
        problems = list(target.problems)
        problems[index] = updater(problems[index])
        categories[position] = target.with_problems(problems)
        await self._commit(categories)
        return problems[index]
