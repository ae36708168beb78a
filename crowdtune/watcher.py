"""Polls Spotify for the currently playing track and reports transitions."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from .events import EventBus, PlaybackEvent
from .metrics import track_transitions_total
from .operations import Failure, OperationQueue
from .spotify_client import PlaybackState, SpotifyRemote

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlaybackSnapshot:
    """What was playing at one poll. Two snapshots are equal when the track is."""

    track_ref: str
    name: str = field(default="", compare=False)
    artists: tuple[str, ...] = field(default=(), compare=False)
    duration_ms: int = field(default=0, compare=False)
    progress_ms: int = field(default=0, compare=False)
    context_uri: str | None = field(default=None, compare=False)
    is_playing: bool = field(default=False, compare=False)

    @property
    def title(self) -> str:
        if not self.artists:
            return self.name or self.track_ref
        return f"{self.name} - {', '.join(self.artists)}"

    @property
    def remaining_ms(self) -> int:
        return max(0, self.duration_ms - self.progress_ms)

    @classmethod
    def from_state(cls, state: PlaybackState | None) -> PlaybackSnapshot | None:
        if state is None or state.track is None:
            return None
        track = state.track
        return cls(
            track_ref=track.id,
            name=track.name,
            artists=track.artists,
            duration_ms=track.duration_ms,
            progress_ms=state.progress_ms,
            context_uri=state.context_uri,
            is_playing=state.is_playing,
        )


class PlaybackWatcher:
    """Periodic playback poller.

    Every ``interval`` seconds the loop calls :meth:`trigger`, which schedules a
    :meth:`check` ``debounce`` seconds later. Triggers that arrive while a
    check is already scheduled or running are collapsed into it.
    """

    def __init__(
        self,
        remote: SpotifyRemote,
        operations: OperationQueue,
        events: EventBus,
        interval: float = 5.0,
        debounce: float = 1.0,
    ) -> None:
        self.remote = remote
        self.operations = operations
        self.events = events
        self.interval = interval
        self.debounce = debounce
        self.last_state: PlaybackState | None = None
        self._snapshot: PlaybackSnapshot | None = None
        self._stopped = False
        self._task: asyncio.Task | None = None
        self._scheduled: asyncio.TimerHandle | None = None
        self._checking: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    @property
    def snapshot(self) -> PlaybackSnapshot | None:
        return self._snapshot

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._poll_loop())
            log.info("Playback watcher started (every %.1fs)", self.interval)

    async def stop(self) -> None:
        if self._scheduled is not None:
            self._scheduled.cancel()
            self._scheduled = None
        for task in (self._task, self._checking):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._checking = None

    def trigger(self) -> None:
        """Request a check soon. Safe to call from timers and callbacks."""
        if self._scheduled is not None:
            return
        loop = asyncio.get_running_loop()
        self._scheduled = loop.call_later(self.debounce, self._fire)

    def _fire(self) -> None:
        self._scheduled = None
        if self._checking is not None and not self._checking.done():
            return
        self._checking = asyncio.get_running_loop().create_task(self.check())

    async def _poll_loop(self) -> None:
        while True:
            self.trigger()
            await asyncio.sleep(self.interval)

    async def fetch_current(self) -> PlaybackState | None | Failure:
        return await self.operations.submit(
            self.remote.get_current_playback, "get_current_playback"
        )

    async def check(self) -> bool:
        """Poll once. Returns True when a new track was detected."""
        if self._lock.locked():
            return False
        async with self._lock:
            state = await self.fetch_current()
            if isinstance(state, Failure):
                log.debug("Playback poll failed: %s", state.error)
                return False
            self.last_state = state
            current = PlaybackSnapshot.from_state(state)
            if current is None:
                if self._snapshot is not None and not self._stopped:
                    self._stopped = True
                    log.info("Nothing is playing")
                    await self.events.publish(PlaybackEvent.PLAYBACK_STOPPED)
                return False

            resumed = self._stopped
            self._stopped = False
            previous = self._snapshot
            self._snapshot = current
            new_track = previous is None or previous != current
            if not new_track and not resumed:
                return False

            if new_track:
                track_transitions_total.inc()
                log.info("Now playing: %s", current.title)
            if previous is not None and new_track:
                await self.events.publish(PlaybackEvent.TRACK_CHANGED, previous, current)
            await self.events.publish(PlaybackEvent.NOW_PLAYING, current)
            return new_track
