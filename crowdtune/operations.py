"""Serial pipeline for every call against the Spotify Web API.

Spotify is rate limited and its playlist writes are order sensitive, so all
components submit their work here instead of calling the API directly. One
worker task drains the pending list strictly one at a time. Critical
operations (starting playback, switching playlists) skip the line.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Awaitable, Callable

from .errors import OperationTimeout
from .metrics import operation_seconds, operations_total, pending_operations

log = logging.getLogger(__name__)

Task = Callable[[], Awaitable[Any]]


class Category(Enum):
    CRITICAL = auto()
    VERY_LONG_RUNNING = auto()
    LONG_RUNNING = auto()
    DEFAULT = auto()


CRITICAL_OPERATIONS = frozenset({"play", "switch_playlist"})
VERY_LONG_RUNNING_OPERATIONS = frozenset({"add_random_tracks"})
LONG_RUNNING_OPERATIONS = frozenset({"get_all_liked_songs", "populate_overflow", "ensure_overflow"})


@dataclass(frozen=True)
class OperationTimeouts:
    """Per-category deadlines in seconds."""

    critical: float = 5.0
    default: float = 10.0
    long_running: float = 30.0
    very_long_running: float = 60.0

    def for_category(self, category: Category) -> float:
        return {
            Category.CRITICAL: self.critical,
            Category.VERY_LONG_RUNNING: self.very_long_running,
            Category.LONG_RUNNING: self.long_running,
            Category.DEFAULT: self.default,
        }[category]


@dataclass(frozen=True)
class Failure:
    """Returned in place of a result when an operation fails or times out."""

    error: str
    exception: BaseException | None = None
    success: bool = False

    def __bool__(self) -> bool:
        return False


@dataclass
class Operation:
    task: Task
    description: str
    priority: bool
    deadline: float
    future: asyncio.Future = field(repr=False)


def categorize(description: str) -> Category:
    """Map a description such as ``"switch_playlist:active"`` to its category."""
    name = description.split(":", 1)[0].strip()
    if name in CRITICAL_OPERATIONS:
        return Category.CRITICAL
    if name in VERY_LONG_RUNNING_OPERATIONS:
        return Category.VERY_LONG_RUNNING
    if name in LONG_RUNNING_OPERATIONS:
        return Category.LONG_RUNNING
    return Category.DEFAULT


class OperationQueue:
    """FIFO of Spotify operations with a bypass lane for critical ones."""

    def __init__(self, timeouts: OperationTimeouts | None = None) -> None:
        self.timeouts = timeouts or OperationTimeouts()
        self._pending: deque[Operation] = deque()
        self._worker: asyncio.Task | None = None
        self._current: Operation | None = None
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def current(self) -> str | None:
        """Description of the non-critical operation in flight, if any."""
        return self._current.description if self._current else None

    async def submit(
        self, task: Task, description: str = "unnamed", priority: bool = False
    ) -> Any:
        """Run ``task`` through the pipeline and return its result or a Failure.

        Never raises for a failed task: errors and timeouts come back as a
        ``Failure`` so callers do not need to catch.
        """
        category = categorize(description)
        deadline = self.timeouts.for_category(category)

        if category is Category.CRITICAL:
            return await self._run(task, description, category, deadline)

        if self._closed:
            return Failure(f"Operation ({description}) rejected: queue closed")

        loop = asyncio.get_running_loop()
        op = Operation(task, description, priority, deadline, loop.create_future())
        if priority:
            self._pending.appendleft(op)
        else:
            self._pending.append(op)
        pending_operations.set(len(self._pending))
        self._ensure_worker()
        return await op.future

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._pending:
            op = self._pending.popleft()
            pending_operations.set(len(self._pending))
            if op.future.done():
                # Caller went away while the operation was waiting.
                continue
            self._current = op
            try:
                result = await self._run(
                    op.task, op.description, categorize(op.description), op.deadline
                )
            finally:
                self._current = None
            if not op.future.done():
                op.future.set_result(result)

    async def _run(
        self, task: Task, description: str, category: Category, deadline: float
    ) -> Any:
        label = category.name.lower()
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(task(), timeout=deadline)
        except asyncio.TimeoutError:
            log.warning("Operation (%s) timed out after %.1fs", description, deadline)
            operations_total.labels(category=label, outcome="timeout").inc()
            return Failure(
                f"Operation ({description}) timed out",
                OperationTimeout(f"Operation ({description}) timed out"),
            )
        except Exception as exc:
            log.error("Operation (%s) failed: %s", description, exc)
            operations_total.labels(category=label, outcome="error").inc()
            return Failure(str(exc) or exc.__class__.__name__, exc)
        finally:
            operation_seconds.labels(category=label).observe(time.monotonic() - started)
        operations_total.labels(category=label, outcome="ok").inc()
        return result

    async def close(self) -> None:
        """Fail everything still waiting and stop the worker."""
        self._closed = True
        while self._pending:
            op = self._pending.popleft()
            if not op.future.done():
                op.future.set_result(Failure(f"Operation ({op.description}) cancelled: queue closed"))
        pending_operations.set(0)
        current = self._current
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        if current is not None and not current.future.done():
            current.future.set_result(Failure(f"Operation ({current.description}) cancelled: queue closed"))
