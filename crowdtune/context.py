from __future__ import annotations

import logging

from .auth import AuthGuard, SpotifyCredentials
from .config import Settings
from .events import EventBus
from .operations import Failure, OperationQueue
from .playback import PlaybackController
from .playlists import PlaylistReconciler
from .song_queue import CollaborativeQueue
from .spotify_client import SpotifyRemote
from .sync import SyncCoordinator
from .watcher import PlaybackWatcher

log = logging.getLogger(__name__)


class SyncContext:
    """Every component of one running instance, wired together once."""

    def __init__(self, settings: Settings, remote: SpotifyRemote | None = None) -> None:
        self.settings = settings
        if remote is None:
            credentials = SpotifyCredentials(
                client_id=settings.spotify_client_id,
                client_secret=settings.spotify_client_secret,
                redirect_uri=settings.spotify_redirect_uri,
                access_token=settings.spotify_access_token,
                refresh_token=settings.spotify_refresh_token,
                env_file=settings.env_file,
            )
            auth = AuthGuard(credentials.refresh, settings.token_refresh_minutes * 60)
            remote = SpotifyRemote(credentials, auth)
        self.remote = remote
        self.operations = OperationQueue()
        self.events = EventBus()
        self.queue = CollaborativeQueue()
        self.playlists = PlaylistReconciler(
            remote,
            self.operations,
            active_name=settings.active_playlist_name,
            overflow_name=settings.overflow_playlist_name,
            overflow_size=settings.overflow_size,
        )
        self.controller = PlaybackController(remote, self.operations, self.playlists)
        self.watcher = PlaybackWatcher(
            remote,
            self.operations,
            self.events,
            interval=settings.poll_interval,
            debounce=settings.poll_debounce,
        )
        self.coordinator = SyncCoordinator(
            self.queue, self.playlists, self.controller, self.watcher, self.events
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> SyncContext:
        return cls(settings)

    async def start(self) -> None:
        if self.settings.spotify_refresh_token:
            self.remote.auth.start()
        else:
            log.warning("SPOTIFY_REFRESH_TOKEN not set, tokens will not be refreshed")
        await self.coordinator.start()
        await self.log_devices()

    async def log_devices(self) -> None:
        devices = await self.operations.submit(self.remote.list_devices, "list_devices")
        if isinstance(devices, Failure):
            log.warning("Could not list Spotify devices: %s", devices.error)
            return
        if not devices:
            log.warning("No Spotify devices found. Open Spotify on a device to start playback.")
        for device in devices:
            log.info("Spotify device: %s (%s)%s", device.name, device.type,
                     " [active]" if device.is_active else "")

    async def close(self) -> None:
        self.coordinator.close()
        await self.watcher.stop()
        await self.remote.auth.stop()
        await self.operations.close()
