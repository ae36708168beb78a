"""The state machine tying the collaborative queue to Spotify playback.

Two signal sources feed it: track transitions detected by the watcher's
polling, and song-duration timers. Timers only ask the watcher to poll early;
only a detected transition or a poll that finds nothing playing changes state.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum, auto

from .events import EventBus, PlaybackEvent
from .metrics import queue_size
from .operations import Failure
from .playback import PlaybackController
from .playlists import PlaylistReconciler
from .song_queue import SEED_USER, CollaborativeQueue, Song, SongView
from .spotify_client import RemoteTrack
from .track_ref import playlist_uri
from .watcher import PlaybackSnapshot, PlaybackWatcher

log = logging.getLogger(__name__)

MAX_SKIP = 5
# grace period after a track's predicted end before polling
TIMER_SLACK = 0.5


class SyncState(Enum):
    NO_TRACK = auto()
    PLAYING = auto()


@dataclass(frozen=True)
class AddSongResult:
    success: bool
    archive_name: str | None = None
    active_name: str | None = None
    error: str | None = None
    position: int | None = None
    track_ref: str | None = None
    title: str | None = None


class SyncCoordinator:
    def __init__(
        self,
        queue: CollaborativeQueue,
        playlists: PlaylistReconciler,
        controller: PlaybackController,
        watcher: PlaybackWatcher,
        events: EventBus,
    ) -> None:
        self.queue = queue
        self.playlists = playlists
        self.controller = controller
        self.watcher = watcher
        self.events = events
        self.state = SyncState.NO_TRACK
        self.current: PlaybackSnapshot | None = None
        self._last_transition: tuple[str, str] | None = None
        # Refs retired by skip whose transition has not been seen yet
        self._skipped: set[str] = set()
        self._timer: asyncio.TimerHandle | None = None

        events.subscribe(PlaybackEvent.TRACK_CHANGED, self.on_track_changed)
        events.subscribe(PlaybackEvent.NOW_PLAYING, self.on_now_playing)
        events.subscribe(PlaybackEvent.PLAYBACK_STOPPED, self.on_playback_stopped)

    @property
    def playing_ref(self) -> str | None:
        return self.current.track_ref if self.current else None

    async def start(self) -> None:
        await self.playlists.ensure_overflow_has_fixed_size()
        await self.seed_queue()
        self.watcher.start()

    def close(self) -> None:
        self._cancel_timer()

    # ── commands ─────────────────────────────────────────────────────────

    async def add_song(
        self,
        title: str,
        ref: str | None,
        user_id: str,
        priority: bool = False,
    ) -> AddSongResult:
        result = await self.playlists.add_to_playlists(title, ref, priority)
        if not result.success:
            return AddSongResult(success=False, error=result.error)

        track_id = result.track_ref
        details = self.playlists.track_details(track_id)
        if details is not None:
            title = details.title

        if track_id != self.playing_ref:
            self._skipped.discard(track_id)
        before = self.queue.peek()
        self.queue.drop_seeded(keep_ref=self.playing_ref)
        song = self.queue.find(track_id)
        if song is not None:
            # Adding a queued song again counts as a vote for it.
            self.queue.vote(self.queue.position_of(song) - 1, user_id)
        else:
            song = self.queue.add(title, track_id, user_id)
            if song is None:
                log.warning("Queue full, %s was added to Spotify only", track_id)
                await self._queue_changed()
                return AddSongResult(success=False, error="The queue is full.")
        log.info("User %s added %s", user_id, song.title)

        await self._promote_head(before)
        await self._queue_changed()
        return AddSongResult(
            success=True,
            archive_name=result.archive_name,
            active_name=result.active_name,
            position=self.queue.position_of(song),
            track_ref=track_id,
            title=song.title,
        )

    async def vote(self, index: int, user_id: str) -> bool:
        """Vote for the song at 0-based ``index``."""
        before = self.queue.peek()
        if not self.queue.vote(index, user_id):
            return False
        await self._promote_head(before)
        await self._queue_changed()
        return True

    def get_queue(self) -> list[SongView]:
        return self.queue.views(self.playing_ref)

    async def search(self, query: str, limit: int = 5) -> list[RemoteTrack] | Failure:
        return await self.playlists.search(query, limit)

    async def skip(self, count: int = 1) -> list[str]:
        """Retire up to ``count`` tracks and move playback on. Returns their titles.

        A playing track that nobody queued counts as the first one skipped.
        """
        count = max(1, min(count, MAX_SKIP))
        skipped: list[str] = []
        playing = self.current
        if playing is not None and self.queue.find(playing.track_ref) is None:
            await self._retire(playing.track_ref)
            skipped.append(playing.title)
        while len(skipped) < count:
            song = self.queue.remove_first()
            if song is None:
                break
            await self._retire(song.track_ref)
            skipped.append(song.title)
        if not skipped:
            return skipped
        log.info("Skipped %d track(s): %s", len(skipped), ", ".join(skipped))

        if not self.queue:
            await self.seed_queue()
        head = self.queue.peek()
        if head is not None and not head.seeded:
            await self.controller.play_track(head.track_ref)
        else:
            target = await self.controller.resolve_target()
            if target is not None:
                await self.controller.switch_to(target)
        self.watcher.trigger()
        await self._queue_changed()
        return skipped

    async def ensure_playing_from_correct_context(
        self, force_playlist_id: str | None = None
    ) -> bool:
        return await self.controller.ensure_playing_from_correct_context(force_playlist_id)

    async def seed_queue(self) -> int:
        """Fill an empty queue from the active playlist, else the overflow one."""
        if self.queue:
            return 0
        tracks = await self.playlists.get_playlist_tracks()
        if tracks is None:
            return 0
        source = tracks.active or tracks.overflow
        added = 0
        for track in source:
            if track.id in self._skipped or self.queue.find(track.id):
                continue
            if self.queue.add(track.title, track.id, SEED_USER, seeded=True) is not None:
                added += 1
        if added:
            log.info("Seeded the queue with %d tracks", added)
            await self._queue_changed()
        return added

    # ── watcher events ───────────────────────────────────────────────────

    async def on_track_changed(self, previous: PlaybackSnapshot, current: PlaybackSnapshot) -> None:
        transition = (previous.track_ref, current.track_ref)
        if transition == self._last_transition:
            log.debug("Ignoring repeated transition %s -> %s", *transition)
            return
        self._last_transition = transition
        self.state = SyncState.PLAYING
        self.current = current
        log.info("Track changed: %s -> %s", previous.title, current.title)

        if previous.track_ref in self._skipped:
            self._skipped.discard(previous.track_ref)
            log.debug("%s was already retired by skip", previous.track_ref)
        else:
            await self._retire(previous.track_ref)
        song = self.queue.find(previous.track_ref)
        if song is not None:
            self.queue.remove(song)

        if not self.queue:
            await self.seed_queue()

        force = None
        ids = await self.playlists.managed_playlist_ids()
        if ids is not None:
            active_id, overflow_id = ids
            if (
                current.context_uri == playlist_uri(overflow_id)
                and await self.playlists.active_track_count() > 0
            ):
                force = active_id
        await self.controller.ensure_playing_from_correct_context(force)

        await self._queue_changed()
        await self.events.publish(PlaybackEvent.TRACK_TRANSITIONED, previous, current)

    async def on_now_playing(self, current: PlaybackSnapshot) -> None:
        self.state = SyncState.PLAYING
        self.current = current
        self._schedule_timer(current)

    async def on_playback_stopped(self) -> None:
        log.info("Playback stopped")
        self.state = SyncState.NO_TRACK
        self.current = None
        self._cancel_timer()

    # ── internals ────────────────────────────────────────────────────────

    async def _retire(self, track_ref: str) -> None:
        if track_ref == self.playing_ref:
            # The watcher will still report this track ending.
            self._skipped.add(track_ref)
        await self.playlists.handle_track_removal(track_ref)

    async def _promote_head(self, before: Song | None) -> None:
        """Move a new queue head to the front of the active playlist and play it."""
        head = self.queue.peek()
        if head is None or head is before or head.seeded:
            return
        if head.track_ref == self.playing_ref:
            return
        await self.controller.play_track(head.track_ref)

    def _schedule_timer(self, snapshot: PlaybackSnapshot) -> None:
        self._cancel_timer()
        if not snapshot.duration_ms:
            return
        delay = snapshot.remaining_ms / 1000 + TIMER_SLACK
        self._timer = asyncio.get_running_loop().call_later(delay, self.watcher.trigger)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _queue_changed(self) -> None:
        queue_size.set(len(self.queue))
        await self.events.publish(PlaybackEvent.QUEUE_CHANGED, self.get_queue())
