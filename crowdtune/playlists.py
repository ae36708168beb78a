"""Owns the two Spotify playlists the bot plays from.

The *active* playlist mirrors what users queued; the *overflow* playlist is a
fixed-size pool of random tracks from the user's library, played whenever the
active one is empty. Every added track is also appended to a dated archive
playlist.

Each public method submits exactly one operation to the OperationQueue. The
private ``_`` helpers are what those operations run and they call the remote
directly, so an operation never waits on another queued operation.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Awaitable, Callable

from .errors import CrowdtuneError, NotFound, RemoteServiceError, ValidationError
from .operations import Failure, OperationQueue
from .spotify_client import RemoteTrack, SpotifyRemote
from .track_ref import RefKind, classify, is_valid_track_id, normalize_track_ref

log = logging.getLogger(__name__)

CACHE_TTL = 10.0
LIBRARY_TTL = 300.0
LIBRARY_PAGE_SIZE = 50
LIBRARY_MAX_TRACKS = 200


def archive_playlist_name(day: date | None = None) -> str:
    day = day or date.today()
    return f"{day:%m-%d-%Y} Archive"


@dataclass
class PlaylistCache:
    active_playlist_id: str | None = None
    overflow_playlist_id: str | None = None
    active_tracks: list[str] = field(default_factory=list)
    overflow_tracks: list[str] = field(default_factory=list)
    refreshed_at: float | None = None

    def is_fresh(self, now: float, ttl: float = CACHE_TTL) -> bool:
        return self.refreshed_at is not None and now - self.refreshed_at < ttl

    def invalidate(self) -> None:
        self.refreshed_at = None


@dataclass(frozen=True)
class AddResult:
    success: bool
    track_ref: str | None = None
    archive_name: str | None = None
    active_name: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class PlaylistTracks:
    active: list[RemoteTrack]
    overflow: list[RemoteTrack]


def _user_error(failure: Failure, fallback: str) -> str:
    exc = failure.exception
    if isinstance(exc, CrowdtuneError):
        return exc.user_message
    return fallback


class PlaylistReconciler:
    def __init__(
        self,
        remote: SpotifyRemote,
        operations: OperationQueue,
        active_name: str = "Active Stream Playlist",
        overflow_name: str = "New Playlist",
        overflow_size: int = 5,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
        archive: bool = True,
    ) -> None:
        self.remote = remote
        self.operations = operations
        self.active_name = active_name
        self.overflow_name = overflow_name
        self.overflow_size = overflow_size
        self.archive_enabled = archive
        self.cache = PlaylistCache()
        self._rng = rng or random.Random()
        self._clock = clock
        self._details: dict[str, RemoteTrack] = {}
        self._archive_ids: dict[str, str] = {}
        self._library: list[RemoteTrack] = []
        self._library_at: float | None = None

    @property
    def active_playlist_id(self) -> str | None:
        return self.cache.active_playlist_id

    @property
    def overflow_playlist_id(self) -> str | None:
        return self.cache.overflow_playlist_id

    def track_details(self, track_id: str) -> RemoteTrack | None:
        return self._details.get(track_id)

    # ── public operations ────────────────────────────────────────────────

    async def get_or_create_active(self) -> str | None:
        result = await self.operations.submit(self._active_id, "get_or_create_active")
        return None if isinstance(result, Failure) else result

    async def get_or_create_overflow(self) -> str | None:
        result = await self.operations.submit(self._overflow_id, "get_or_create_overflow")
        return None if isinstance(result, Failure) else result

    async def get_or_create_archive(self) -> str | None:
        result = await self.operations.submit(self._archive_id, "get_or_create_archive")
        return None if isinstance(result, Failure) else result

    async def managed_playlist_ids(self) -> tuple[str, str] | None:
        result = await self.operations.submit(self._ensure_ids, "get_or_create_playlists")
        return None if isinstance(result, Failure) else result

    async def search(self, query: str, limit: int = 5) -> list[RemoteTrack] | Failure:
        async def _search() -> list[RemoteTrack]:
            tracks = await self.remote.search_tracks(query, limit=limit)
            self._remember(tracks)
            return tracks

        return await self.operations.submit(_search, f"search_tracks:{query}")

    async def add_to_playlists(
        self, title: str, ref: str | None = None, priority: bool = False
    ) -> AddResult:
        """Resolve a track and add it to the archive and active playlists."""
        if ref and normalize_track_ref(ref) is None:
            return AddResult(success=False, error=ValidationError.user_message)
        result = await self.operations.submit(
            lambda: self._add_to_playlists(title, ref),
            f"add_to_playlists:{title}",
            priority,
        )
        if isinstance(result, Failure):
            return AddResult(
                success=False,
                error=_user_error(result, "Could not add the song to Spotify."),
            )
        return result

    async def remove_from_active(self, ref: str) -> bool:
        track_id = normalize_track_ref(ref)
        if track_id is None:
            log.warning("Refusing to remove invalid track reference %r", ref)
            return False
        result = await self.operations.submit(
            lambda: self._remove_from_active(track_id),
            f"remove_from_active:{track_id}",
        )
        return result is True

    async def handle_track_removal(self, ref: str, removal_count: int = 1) -> bool:
        """Retire a finished track from both playlists, refilling overflow."""
        track_id = normalize_track_ref(ref)
        if track_id is None:
            log.warning("Refusing to retire invalid track reference %r", ref)
            return False
        result = await self.operations.submit(
            lambda: self._handle_track_removal(track_id, removal_count),
            f"handle_track_removal:{track_id}",
            priority=True,
        )
        return result is True

    async def ensure_overflow_has_fixed_size(self, target_size: int | None = None) -> int | None:
        """Bring the overflow playlist to exactly ``target_size`` tracks.

        Returns the resulting track count, or None if Spotify could not be
        reached.
        """
        result = await self.operations.submit(
            lambda: self._ensure_overflow_size(target_size), "ensure_overflow"
        )
        return None if isinstance(result, Failure) else result

    async def get_all_liked_songs(self) -> list[RemoteTrack]:
        result = await self.operations.submit(self._liked_songs, "get_all_liked_songs")
        if isinstance(result, Failure):
            return list(self._library)
        return result

    async def get_playlist_tracks(self, force: bool = False) -> PlaylistTracks | None:
        async def _tracks() -> PlaylistTracks:
            cache = await self._refresh(force=force)
            return PlaylistTracks(
                active=self._expand(cache.active_tracks),
                overflow=self._expand(cache.overflow_tracks),
            )

        result = await self.operations.submit(_tracks, "get_playlist_tracks")
        return None if isinstance(result, Failure) else result

    async def active_track_count(self) -> int:
        async def _count() -> int:
            cache = await self._refresh()
            return len(cache.active_tracks)

        result = await self.operations.submit(_count, "get_playlist_length")
        return 0 if isinstance(result, Failure) else result

    async def promote_in_active(self, ref: str) -> bool:
        """Move ``ref`` to the front of the active playlist."""
        track_id = normalize_track_ref(ref)
        if track_id is None:
            return False

        async def _move() -> bool:
            active_id, _ = await self._ensure_ids()
            cache = await self._refresh(force=True)
            try:
                index = cache.active_tracks.index(track_id)
            except ValueError:
                log.info("Track %s is not in the active playlist", track_id)
                return False
            if index:
                await self.remote.reorder_playlist(active_id, index, 0)
                self.cache.invalidate()
            return True

        result = await self.operations.submit(_move, f"reorder_active:{track_id}")
        return result is True

    # ── playlist ids ─────────────────────────────────────────────────────

    async def _ensure_ids(self) -> tuple[str, str]:
        cache = self.cache
        if cache.active_playlist_id and cache.overflow_playlist_id:
            return cache.active_playlist_id, cache.overflow_playlist_id

        playlists = {p.name: p.id for p in await self.remote.list_user_playlists()}
        log.debug("Fetched %d user playlists", len(playlists))
        if not cache.active_playlist_id:
            cache.active_playlist_id = playlists.get(self.active_name) or await self._create(
                self.active_name, "Currently playing songs from the stream"
            )
        if not cache.overflow_playlist_id:
            cache.overflow_playlist_id = playlists.get(self.overflow_name) or await self._create(
                self.overflow_name, "Random songs from Liked Music"
            )
        return cache.active_playlist_id, cache.overflow_playlist_id

    async def _create(self, name: str, description: str) -> str:
        log.info("Playlist %r not found, creating it", name)
        created = await self.remote.create_playlist(name, description=description, public=True)
        return created.id

    async def _active_id(self) -> str:
        return (await self._ensure_ids())[0]

    async def _overflow_id(self) -> str:
        return (await self._ensure_ids())[1]

    async def _archive_id(self) -> str:
        name = archive_playlist_name()
        if name not in self._archive_ids:
            playlists = await self.remote.list_user_playlists()
            existing = next((p for p in playlists if p.name == name), None)
            self._archive_ids = {
                name: existing.id if existing else await self._create(
                    name, f"Archive of all songs added on {name}"
                )
            }
        return self._archive_ids[name]

    # ── cache ────────────────────────────────────────────────────────────

    async def _refresh(self, force: bool = False) -> PlaylistCache:
        if not force and self.cache.is_fresh(self._clock()):
            return self.cache
        active_id, overflow_id = await self._ensure_ids()
        active, overflow = await asyncio.gather(
            self.remote.get_playlist_tracks(active_id),
            self.remote.get_playlist_tracks(overflow_id),
        )
        self._remember(active)
        self._remember(overflow)
        self.cache.active_tracks = [t.id for t in active]
        self.cache.overflow_tracks = [t.id for t in overflow]
        self.cache.refreshed_at = self._clock()
        return self.cache

    def _remember(self, tracks: list[RemoteTrack]) -> None:
        for track in tracks:
            self._details[track.id] = track

    def _expand(self, track_ids: list[str]) -> list[RemoteTrack]:
        return [self._details.get(t) or RemoteTrack(id=t, name=t) for t in track_ids]

    # ── library ──────────────────────────────────────────────────────────

    async def _liked_songs(self) -> list[RemoteTrack]:
        now = self._clock()
        if (
            self._library
            and self._library_at is not None
            and now - self._library_at < LIBRARY_TTL
        ):
            return list(self._library)

        pages = await asyncio.gather(
            *(
                self.remote.list_saved_tracks(offset, LIBRARY_PAGE_SIZE)
                for offset in range(0, LIBRARY_MAX_TRACKS, LIBRARY_PAGE_SIZE)
            ),
            return_exceptions=True,
        )
        tracks: list[RemoteTrack] = []
        seen: set[str] = set()
        failed = 0
        for page in pages:
            if isinstance(page, Exception):
                failed += 1
                log.warning("Failed to fetch a page of liked songs: %s", page)
                continue
            for track in page:
                if track.id not in seen:
                    seen.add(track.id)
                    tracks.append(track)

        if failed and not tracks:
            log.warning("Liked songs unavailable, using %d cached tracks", len(self._library))
            return list(self._library)

        self._remember(tracks)
        self._library = tracks
        self._library_at = now
        log.info("Fetched %d liked songs", len(tracks))
        return list(tracks)

    async def _random_library_tracks(self, count: int, exclude: set[str] | None = None) -> list[str]:
        """Pick ``count`` distinct library tracks uniformly at random."""
        if count <= 0:
            return []
        exclude = exclude or set()
        pool = [t.id for t in await self._liked_songs() if t.id not in exclude]
        if not pool:
            log.warning("No liked songs available to pick from")
            return []
        return self._rng.sample(pool, min(count, len(pool)))

    # ── operation bodies ─────────────────────────────────────────────────

    async def _resolve(self, title: str, ref: str | None) -> str:
        if ref:
            track_id = normalize_track_ref(ref)
            if track_id is None:
                raise ValidationError(f"Invalid track reference: {ref!r}")
            return track_id

        kind, value = classify(title)
        if kind is not RefKind.SEARCH_QUERY:
            return value

        results = await self.remote.search_tracks(title, limit=10)
        self._remember(results)
        log.info("Search returned %d results for %r", len(results), title)
        for track in results:
            if is_valid_track_id(track.id):
                return track.id
        raise NotFound(f"No tracks found for {title!r}")

    async def _quietly(self, coro: Awaitable, what: str) -> None:
        try:
            await coro
        except RemoteServiceError as exc:
            log.warning("Failed to %s: %s", what, exc)

    async def _add_to_playlists(self, title: str, ref: str | None) -> AddResult:
        track_id = await self._resolve(title, ref)
        active_id, _ = await self._ensure_ids()
        cache = await self._refresh()

        writes = []
        archive_name = None
        if self.archive_enabled:
            archive_name = archive_playlist_name()
            archive_id = await self._archive_id()
            writes.append(self._quietly(
                self.remote.add_tracks_to_playlist(archive_id, [track_id]),
                f"add {track_id} to the archive",
            ))
        if track_id in cache.active_tracks:
            log.info("Track %s already in the active playlist, not adding it again", track_id)
        else:
            writes.append(self.remote.add_tracks_to_playlist(active_id, [track_id]))
        try:
            await asyncio.gather(*writes)
        finally:
            self.cache.invalidate()

        try:
            await self._ensure_overflow_size()
        except RemoteServiceError as exc:
            log.warning("Overflow size check after adding %s failed: %s", track_id, exc)

        return AddResult(
            success=True,
            track_ref=track_id,
            archive_name=archive_name,
            active_name=self.active_name,
        )

    async def _remove_from_active(self, track_id: str) -> bool:
        active_id, _ = await self._ensure_ids()
        cache = await self._refresh(force=True)
        if track_id not in cache.active_tracks:
            log.info("Track %s not found in the active playlist", track_id)
            return False
        await self.remote.remove_tracks_from_playlist(active_id, [track_id])
        self.cache.invalidate()
        log.info("Removed %s from the active playlist", track_id)
        return True

    async def _handle_track_removal(self, track_id: str, removal_count: int) -> bool:
        active_id, overflow_id = await self._ensure_ids()
        cache = await self._refresh()
        exclude = set(cache.overflow_tracks) | {track_id}

        async def _backfill() -> None:
            picks = await self._random_library_tracks(removal_count, exclude)
            if picks:
                await self.remote.add_tracks_to_playlist(overflow_id, picks)

        jobs = [
            self._quietly(
                self.remote.remove_tracks_from_playlist(active_id, [track_id]),
                f"remove {track_id} from the active playlist",
            ),
            self._quietly(
                self.remote.remove_tracks_from_playlist(overflow_id, [track_id]),
                f"remove {track_id} from the overflow playlist",
            ),
            self._quietly(_backfill(), "backfill the overflow playlist"),
        ]
        try:
            await asyncio.gather(*jobs)
        finally:
            self.cache.invalidate()

        await self._ensure_overflow_size()
        return True

    async def _ensure_overflow_size(self, target_size: int | None = None) -> int:
        target = self.overflow_size if target_size is None else target_size
        overflow_id = await self._overflow_id()
        cache = await self._refresh()
        current = list(cache.overflow_tracks)
        count = len(current)

        if count == target:
            log.debug("Overflow playlist already has %d tracks", count)
            return count

        if count > target:
            excess = count - target
            await self.remote.remove_tracks_from_playlist(
                overflow_id, current[:excess], positions=list(range(excess))
            )
            self.cache.invalidate()
            log.info("Removed %d excess tracks from the overflow playlist", excess)
            return target

        if count == 0:
            log.info("Overflow playlist empty, populating it with %d tracks", target)
        picks = await self._random_library_tracks(target - count, exclude=set(current))
        if picks:
            await self.remote.add_tracks_to_playlist(overflow_id, picks)
            self.cache.invalidate()
            log.info("Added %d tracks to the overflow playlist", len(picks))
        return count + len(picks)
