"""Keeps the Spotify device playing from the right managed playlist."""
from __future__ import annotations

import logging

from .errors import NotFound
from .operations import Failure, OperationQueue
from .playlists import PlaylistReconciler
from .spotify_client import Device, PlaybackState, SpotifyRemote
from .track_ref import normalize_track_ref, playlist_uri

log = logging.getLogger(__name__)


class PlaybackController:
    def __init__(
        self,
        remote: SpotifyRemote,
        operations: OperationQueue,
        playlists: PlaylistReconciler,
    ) -> None:
        self.remote = remote
        self.operations = operations
        self.playlists = playlists

    async def resolve_target(self) -> str | None:
        """The playlist playback should come from: active if it has tracks, else overflow."""
        ids = await self.playlists.managed_playlist_ids()
        if ids is None:
            return None
        active_id, overflow_id = ids
        if await self.playlists.active_track_count() > 0:
            return active_id
        await self.playlists.ensure_overflow_has_fixed_size()
        return overflow_id

    async def ensure_playing_from_correct_context(
        self, force_playlist_id: str | None = None
    ) -> bool:
        """Switch playlists if Spotify is idle, elsewhere, or must be forced.

        Returns True when a switch was issued and succeeded.
        """
        target = force_playlist_id or await self.resolve_target()
        if target is None:
            log.warning("Could not resolve a playlist to play from")
            return False

        state = await self.operations.submit(
            self.remote.get_current_playback, "get_current_playback"
        )
        if isinstance(state, Failure):
            return False

        reason = self._switch_reason(state, target, forced=force_playlist_id is not None)
        if reason is None:
            return False
        log.info("Switching playback to playlist %s (%s)", target, reason)
        return await self.switch_to(target)

    def _switch_reason(
        self, state: PlaybackState | None, target: str, forced: bool
    ) -> str | None:
        if state is None or state.device is None:
            return "nothing playing"
        if forced:
            return "forced" if state.context_uri != playlist_uri(target) else None
        if not state.is_playing:
            return "playback paused"
        managed = {
            playlist_uri(pid)
            for pid in (self.playlists.active_playlist_id, self.playlists.overflow_playlist_id)
            if pid
        }
        if state.context_uri not in managed:
            return "playing outside the managed playlists"
        return None

    async def switch_to(self, playlist_id: str, offset_ref: str | None = None) -> bool:
        """Start ``playlist_id`` on a device, transferring playback if needed."""

        async def _switch() -> None:
            device = await self._select_device()
            if not device.is_active:
                log.info("Transferring playback to %s", device.name)
                await self.remote.transfer_playback(device.id)
            await self.remote.play(
                playlist_uri(playlist_id), offset_ref=offset_ref, device_id=device.id
            )

        result = await self.operations.submit(_switch, f"switch_playlist:{playlist_id}")
        return not isinstance(result, Failure)

    async def _select_device(self) -> Device:
        devices = await self.remote.list_devices()
        if not devices:
            raise NotFound("No Spotify devices available")
        return next((d for d in devices if d.is_active), devices[0])

    async def play_track(self, ref: str) -> bool:
        """Bring ``ref`` to the front of the active playlist and play it now."""
        track_id = normalize_track_ref(ref)
        if track_id is None:
            return False
        active_id = self.playlists.active_playlist_id or await self.playlists.get_or_create_active()
        if active_id is None:
            return False
        await self.playlists.promote_in_active(track_id)

        result = await self.operations.submit(
            lambda: self.remote.play(playlist_uri(active_id), offset_ref=track_id),
            f"play:{track_id}",
        )
        if not isinstance(result, Failure):
            return True
        # No active device: pick one and start the playlist at the track.
        log.info("Direct play of %s failed (%s), switching device", track_id, result.error)
        return await self.switch_to(active_id, offset_ref=track_id)
