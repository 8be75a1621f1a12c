"""Debounced, rate-limited remote saves with bounded exponential backoff.

Every call captures a full snapshot of the tree, so a later save simply
supersedes an earlier one and a retry can resend the same payload as-is.

State machine of the pending write::

    IDLE ──schedule (cool-down)──> DEBOUNCED_PENDING ──timer──> IN_FLIGHT
    IDLE ──schedule / immediate──> IN_FLIGHT
    IN_FLIGHT ──ok / give up──> IDLE
    IN_FLIGHT ──resource exhausted──> BACKOFF_PENDING ──timer──> IN_FLIGHT

Any new schedule cancels a timer that has not fired yet, whichever kind.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set

from .errors import RemoteError, ResourceExhaustedError
from .models import Category, Role
from .reconcile import Reconciler

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class SaveState(str, Enum):
    IDLE = "idle"
    DEBOUNCED_PENDING = "debounced-pending"
    IN_FLIGHT = "in-flight"
    BACKOFF_PENDING = "backoff-pending"


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass(frozen=True)
class SavePolicy:
    debounce_delay: float = 0.1
    min_interval: float = 0.5
    base_delay: float = 1.0
    max_retries: int = 3
    max_retry_duration: float = 30.0

    def retry_delay(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)


class SaveScheduler:
    def __init__(
        self,
        reconciler: Reconciler,
        policy: Optional[SavePolicy] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.reconciler = reconciler
        self.policy = policy or SavePolicy()
        self._clock = clock
        self._sleep = sleep
        self.last_save_time: Optional[float] = None
        self.state = SaveState.IDLE
        self.status = ConnectionStatus.CONNECTED
        self._generation = 0
        self._pending: Optional[asyncio.Task] = None
        self._pending_state = SaveState.IDLE
        self._tasks: Set[asyncio.Task] = set()
        self._write_lock = asyncio.Lock()
        self._status_listeners: List[Callable[[ConnectionStatus], None]] = []

    # Public API --------------------------------------------------------

    async def schedule(self, categories: List[Category], role: Role) -> None:
        """Save locally now; push remotely now or after the debounce delay."""
        snapshot = list(categories)
        self.reconciler.cache.write(snapshot)
        self._cancel_pending()
        generation = self._next_generation()
        if self._in_cooldown():
            self._set_pending(self._debounced(snapshot, role, generation), SaveState.DEBOUNCED_PENDING)
            return
        await self._write(snapshot, role, generation)

    async def schedule_immediate(self, categories: List[Category], role: Role) -> None:
        """Save locally and push remotely right away, ignoring the cool-down."""
        snapshot = list(categories)
        self.reconciler.cache.write(snapshot)
        self._cancel_pending()
        generation = self._next_generation()
        await self._write(snapshot, role, generation, supersedable=False)

    async def teardown(self, categories: List[Category], role: Role) -> None:
        """Best-effort final push before shutdown: one attempt, no retries."""
        self._cancel_pending()
        self._next_generation()
        if not categories:
            self.state = SaveState.IDLE
            return
        snapshot = list(categories)
        self.reconciler.cache.write(snapshot)
        async with self._write_lock:
            try:
                await self.reconciler.push(snapshot, role)
            except RemoteError as exc:
                logger.warning("Final flush failed, data kept locally: %s", exc)
            else:
                self.last_save_time = self._clock()
        self.state = SaveState.IDLE

    @property
    def pending(self) -> bool:
        return bool(self._tasks)

    async def drain(self) -> None:
        """Wait until every debounced write and retry has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def on_status_change(self, callback: Callable[[ConnectionStatus], None]) -> Callable[[], None]:
        self._status_listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._status_listeners:
                self._status_listeners.remove(callback)

        return unsubscribe

    # Internals ---------------------------------------------------------

    def _in_cooldown(self) -> bool:
        if self.last_save_time is None:
            return False
        return self._clock() - self.last_save_time < self.policy.min_interval

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _set_pending(self, coro, state: SaveState) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._pending = task
        self._pending_state = state
        self.state = state

    def _cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
        self._pending_state = SaveState.IDLE

    def _fire_pending(self) -> None:
        # The timer has elapsed; from here on the write is no longer cancellable.
        if self._pending is asyncio.current_task():
            self._pending = None
            self._pending_state = SaveState.IDLE

    def _settle(self) -> None:
        if self._pending is not None and not self._pending.done():
            self.state = self._pending_state
        else:
            self.state = SaveState.IDLE

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is self.status:
            return
        self.status = status
        for callback in list(self._status_listeners):
            try:
                callback(status)
            except Exception:
                logger.exception("Connection status listener failed")

    async def _debounced(self, snapshot: List[Category], role: Role, generation: int) -> None:
        await self._sleep(self.policy.debounce_delay)
        self._fire_pending()
        await self._write(snapshot, role, generation)

    async def _retry(
        self,
        snapshot: List[Category],
        role: Role,
        generation: int,
        attempt: int,
        started: float,
        delay: float,
    ) -> None:
        await self._sleep(delay)
        self._fire_pending()
        await self._write(snapshot, role, generation, attempt=attempt, started=started)

    async def _write(
        self,
        snapshot: List[Category],
        role: Role,
        generation: int,
        *,
        supersedable: bool = True,
        attempt: int = 0,
        started: Optional[float] = None,
    ) -> None:
        if started is None:
            started = self._clock()
        async with self._write_lock:
            if supersedable and generation != self._generation:
                logger.debug("Dropping save superseded by a newer snapshot")
                return
            self.state = SaveState.IN_FLIGHT
            try:
                await self.reconciler.push(snapshot, role)
            except ResourceExhaustedError as exc:
                failure: RemoteError = exc
                retryable = True
            except RemoteError as exc:
                failure = exc
                retryable = False
            else:
                self.last_save_time = self._clock()
                self._set_status(ConnectionStatus.CONNECTED)
                self._settle()
                return

        logger.error("Failed to save data remotely: %s", failure)
        if generation != self._generation:
            self._settle()
            return
        if retryable and attempt < self.policy.max_retries:
            delay = self.policy.retry_delay(attempt)
            if self._clock() - started + delay <= self.policy.max_retry_duration:
                logger.warning(
                    "Retrying save in %.2fs (attempt %d/%d)", delay, attempt + 1, self.policy.max_retries
                )
                self._set_status(ConnectionStatus.ERROR)
                self._set_pending(
                    self._retry(snapshot, role, generation, attempt + 1, started, delay),
                    SaveState.BACKOFF_PENDING,
                )
                return
        if attempt == 0:
            logger.warning("Initial save failed, data saved locally as backup")
        self._set_status(ConnectionStatus.ERROR if retryable else ConnectionStatus.DISCONNECTED)
        # Let the next local edit go straight to the remote store.
        self.last_save_time = None
        self._settle()
