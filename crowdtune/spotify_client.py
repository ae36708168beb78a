from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, TypeVar

import requests
import spotipy
from spotipy.exceptions import SpotifyException

from .auth import AuthGuard, SpotifyCredentials
from .errors import (
    AuthExpired,
    NotFound,
    RemoteServiceError,
    TransientError,
    ValidationError,
)
from .track_ref import is_valid_track_id, track_uri

log = logging.getLogger(__name__)

T = TypeVar("T")

_BATCH = 100


@dataclass(frozen=True)
class RemoteTrack:
    """A track as Spotify describes it, trimmed to what the bot displays."""

    id: str
    name: str
    artists: tuple[str, ...] = ()
    album: str = ""
    duration_ms: int = 0
    url: str = ""

    @property
    def uri(self) -> str:
        return track_uri(self.id)

    @property
    def artist_names(self) -> str:
        return ", ".join(self.artists)

    @property
    def title(self) -> str:
        if not self.artists:
            return self.name
        return f"{self.name} - {self.artists[0]}"

    @classmethod
    def from_item(cls, track: dict) -> RemoteTrack:
        return cls(
            id=track["id"],
            name=track.get("name", "Unknown"),
            artists=tuple(a["name"] for a in track.get("artists", [])),
            album=(track.get("album") or {}).get("name", ""),
            duration_ms=track.get("duration_ms", 0) or 0,
            url=(track.get("external_urls") or {}).get("spotify", ""),
        )


@dataclass(frozen=True)
class Device:
    id: str
    name: str
    type: str = ""
    is_active: bool = False


@dataclass(frozen=True)
class PlaylistInfo:
    id: str
    name: str
    track_count: int = 0


@dataclass(frozen=True)
class PlaybackState:
    track: RemoteTrack | None
    progress_ms: int = 0
    is_playing: bool = False
    device: Device | None = None
    context_uri: str | None = None


def translate_error(exc: Exception) -> RemoteServiceError:
    """Map a spotipy/requests failure onto the Crowdtune taxonomy."""
    if isinstance(exc, SpotifyException):
        status = exc.http_status
        message = f"Spotify {status}: {exc.msg}"
        if status == 401:
            return AuthExpired(message, status)
        if status == 404:
            return NotFound(message, status)
        if status == 429 or (status is not None and status >= 500):
            return TransientError(message, status)
        return RemoteServiceError(message, status)
    return TransientError(f"Spotify request failed: {exc}")


def _tracks_from_page(items: list[dict], key: str | None = "track") -> list[RemoteTrack]:
    tracks: list[RemoteTrack] = []
    for item in items:
        track = item.get(key) if key else item
        # Local files and podcast episodes have no usable track id.
        if not track or not is_valid_track_id(track.get("id")):
            continue
        tracks.append(RemoteTrack.from_item(track))
    return tracks


class SpotifyRemote:
    """Async facade over spotipy for the operations the bot performs.

    spotipy blocks, so each request runs in the loop's default executor. Every
    public method goes through the AuthGuard and raises the errors from
    ``crowdtune.errors``.
    """

    def __init__(
        self,
        credentials: SpotifyCredentials,
        auth: AuthGuard | None = None,
        client_factory: Callable[..., spotipy.Spotify] = spotipy.Spotify,
        search_attempts: int = 3,
        search_backoff: float = 1.0,
    ) -> None:
        self._credentials = credentials
        self.auth = auth or AuthGuard(credentials.refresh)
        self._client_factory = client_factory
        self._sp: spotipy.Spotify | None = None
        self._token: str | None = None
        self._user_id: str | None = None
        self.search_attempts = search_attempts
        self.search_backoff = search_backoff

    @property
    def available(self) -> bool:
        return bool(self._credentials.access_token or self._credentials.refresh_token)

    @property
    def client(self) -> spotipy.Spotify:
        token = self._credentials.access_token
        if self._sp is None or token != self._token:
            self._sp = self._client_factory(
                auth=token, requests_timeout=10, retries=0, status_retries=0
            )
            self._token = token
        return self._sp

    async def _call(self, fn: Callable[[spotipy.Spotify], T]) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, lambda: fn(self.client))
        except (SpotifyException, requests.exceptions.RequestException) as exc:
            raise translate_error(exc) from exc

    async def _request(self, fn: Callable[[spotipy.Spotify], T]) -> T:
        return await self.auth.execute_with_token_refresh(lambda: self._call(fn))

    # ── search / tracks ──────────────────────────────────────────────────

    async def search_tracks(self, query: str, limit: int = 5) -> list[RemoteTrack]:
        """Search tracks, retrying transient failures with a fixed backoff."""
        for attempt in range(1, self.search_attempts + 1):
            try:
                results = await self._request(
                    lambda sp: sp.search(q=query, type="track", limit=limit)
                )
                break
            except TransientError as exc:
                if attempt == self.search_attempts:
                    raise
                log.warning("Search attempt %d for %r failed: %s. Retrying...",
                            attempt, query, exc)
                await asyncio.sleep(self.search_backoff)
        items = (results or {}).get("tracks", {}).get("items", [])
        return _tracks_from_page(items, key=None)

    async def get_track(self, track_id: str) -> RemoteTrack:
        if not is_valid_track_id(track_id):
            raise ValidationError(f"Invalid track id: {track_id!r}")
        data = await self._request(lambda sp: sp.track(track_id))
        return RemoteTrack.from_item(data)

    # ── playback ─────────────────────────────────────────────────────────

    async def get_current_playback(self) -> PlaybackState | None:
        data = await self._request(lambda sp: sp.current_playback())
        if not data:
            return None
        item = data.get("item")
        track = (
            RemoteTrack.from_item(item)
            if item and is_valid_track_id(item.get("id"))
            else None
        )
        device_data = data.get("device")
        device = (
            Device(
                id=device_data.get("id") or "",
                name=device_data.get("name", ""),
                type=device_data.get("type", ""),
                is_active=bool(device_data.get("is_active")),
            )
            if device_data
            else None
        )
        context = data.get("context") or {}
        return PlaybackState(
            track=track,
            progress_ms=data.get("progress_ms") or 0,
            is_playing=bool(data.get("is_playing")),
            device=device,
            context_uri=context.get("uri"),
        )

    async def play(
        self,
        context_uri: str,
        offset_ref: str | None = None,
        device_id: str | None = None,
    ) -> None:
        kwargs: dict = {"context_uri": context_uri}
        if offset_ref:
            kwargs["offset"] = {"uri": track_uri(offset_ref)}
            kwargs["position_ms"] = 0
        if device_id:
            kwargs["device_id"] = device_id
        await self._request(lambda sp: sp.start_playback(**kwargs))

    async def transfer_playback(self, device_id: str) -> None:
        await self._request(lambda sp: sp.transfer_playback(device_id, force_play=False))

    async def list_devices(self) -> list[Device]:
        data = await self._request(lambda sp: sp.devices())
        return [
            Device(
                id=d["id"],
                name=d.get("name", ""),
                type=d.get("type", ""),
                is_active=bool(d.get("is_active")),
            )
            for d in (data or {}).get("devices", [])
            if d.get("id")
        ]

    # ── playlists ────────────────────────────────────────────────────────

    async def list_user_playlists(self) -> list[PlaylistInfo]:
        def _collect(sp: spotipy.Spotify) -> list[PlaylistInfo]:
            playlists: list[PlaylistInfo] = []
            resp = sp.current_user_playlists(limit=50)
            while resp:
                for item in resp["items"]:
                    if item:
                        playlists.append(PlaylistInfo(
                            id=item["id"],
                            name=item.get("name", ""),
                            track_count=(item.get("tracks") or {}).get("total", 0),
                        ))
                resp = sp.next(resp) if resp.get("next") else None
            return playlists

        return await self._request(_collect)

    async def create_playlist(
        self, name: str, description: str = "", public: bool = True
    ) -> PlaylistInfo:
        if self._user_id is None:
            me = await self._request(lambda sp: sp.current_user())
            self._user_id = me["id"]
        user_id = self._user_id
        data = await self._request(
            lambda sp: sp.user_playlist_create(
                user_id, name, public=public, description=description
            )
        )
        return PlaylistInfo(id=data["id"], name=data.get("name", name))

    async def get_playlist_tracks(self, playlist_id: str) -> list[RemoteTrack]:
        def _collect(sp: spotipy.Spotify) -> list[RemoteTrack]:
            tracks: list[RemoteTrack] = []
            resp = sp.playlist_items(playlist_id, additional_types=("track",))
            while resp:
                tracks.extend(_tracks_from_page(resp["items"]))
                resp = sp.next(resp) if resp.get("next") else None
            return tracks

        return await self._request(_collect)

    async def add_tracks_to_playlist(self, playlist_id: str, refs: list[str]) -> None:
        uris = [track_uri(r) for r in refs]
        for i in range(0, len(uris), _BATCH):
            batch = uris[i:i + _BATCH]
            await self._request(lambda sp: sp.playlist_add_items(playlist_id, batch))

    async def remove_tracks_from_playlist(
        self,
        playlist_id: str,
        refs: list[str],
        positions: list[int] | None = None,
    ) -> None:
        """Remove tracks; with ``positions`` only those occurrences go."""
        if positions is not None:
            items = [
                {"uri": track_uri(ref), "positions": [pos]}
                for ref, pos in zip(refs, positions)
            ]
            await self._request(
                lambda sp: sp.playlist_remove_specific_occurrences_of_items(playlist_id, items)
            )
            return
        uris = [track_uri(r) for r in refs]
        for i in range(0, len(uris), _BATCH):
            batch = uris[i:i + _BATCH]
            await self._request(
                lambda sp: sp.playlist_remove_all_occurrences_of_items(playlist_id, batch)
            )

    async def reorder_playlist(
        self, playlist_id: str, range_start: int, insert_before: int
    ) -> None:
        await self._request(
            lambda sp: sp.playlist_reorder_items(
                playlist_id, range_start=range_start, insert_before=insert_before
            )
        )

    # ── library ──────────────────────────────────────────────────────────

    async def list_saved_tracks(self, offset: int = 0, limit: int = 50) -> list[RemoteTrack]:
        data = await self._request(
            lambda sp: sp.current_user_saved_tracks(limit=limit, offset=offset)
        )
        return _tracks_from_page((data or {}).get("items", []))
