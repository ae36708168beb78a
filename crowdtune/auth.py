"""Spotify credentials and the single-retry auth guard."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

from dotenv import set_key
from spotipy.cache_handler import MemoryCacheHandler
from spotipy.oauth2 import SpotifyOAuth

from .errors import AuthExpired, AuthFailure
from .metrics import token_refreshes_total

log = logging.getLogger(__name__)

T = TypeVar("T")

SPOTIFY_SCOPES = (
    "user-read-private",
    "user-read-email",
    "user-read-currently-playing",
    "user-read-playback-state",
    "user-modify-playback-state",
    "user-library-read",
    "playlist-modify-public",
    "playlist-modify-private",
    "playlist-read-private",
    "playlist-read-collaborative",
)


class SpotifyCredentials:
    """Holds the user token pair and persists refreshed tokens to the env file."""

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str,
        access_token: str | None = None,
        refresh_token: str | None = None,
        env_file: str | None = ".env",
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.access_token = access_token
        self.refresh_token = refresh_token
        self._env_file = Path(env_file) if env_file else None

    def oauth(self) -> SpotifyOAuth:
        return SpotifyOAuth(
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uri=self.redirect_uri,
            scope=" ".join(SPOTIFY_SCOPES),
            cache_handler=MemoryCacheHandler(),
            open_browser=False,
        )

    async def refresh(self) -> None:
        if not self.refresh_token:
            raise AuthFailure("No Spotify refresh token configured")
        loop = asyncio.get_running_loop()
        token_info = await loop.run_in_executor(
            None, lambda: self.oauth().refresh_access_token(self.refresh_token)
        )
        self.access_token = token_info["access_token"]
        if token_info.get("refresh_token"):
            self.refresh_token = token_info["refresh_token"]
        self._persist()
        log.info("Spotify access token refreshed")

    def _persist(self) -> None:
        if self._env_file is None:
            return
        try:
            set_key(str(self._env_file), "SPOTIFY_ACCESS_TOKEN", self.access_token or "")
            if self.refresh_token:
                set_key(str(self._env_file), "SPOTIFY_REFRESH_TOKEN", self.refresh_token)
        except OSError as exc:
            log.warning("Failed to save tokens to %s: %s", self._env_file, exc)


class AuthGuard:
    """Runs remote calls, refreshing credentials once on an expired token."""

    def __init__(
        self,
        refresher: Callable[[], Awaitable[None]],
        refresh_interval: float = 30 * 60,
    ) -> None:
        self._refresher = refresher
        self.refresh_interval = refresh_interval
        self.refresh_count = 0
        self._task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    async def execute_with_token_refresh(self, op: Callable[[], Awaitable[T]]) -> T:
        try:
            return await op()
        except AuthExpired:
            log.info("Spotify rejected the access token, refreshing once")
            await self.refresh(reason="expired")
        try:
            return await op()
        except AuthExpired as exc:
            raise AuthFailure("Spotify rejected the refreshed access token") from exc

    async def refresh(self, reason: str = "scheduled") -> None:
        async with self._lock:
            try:
                await self._refresher()
            except AuthFailure:
                raise
            except Exception as exc:
                raise AuthFailure(f"Token refresh failed: {exc}") from exc
            self.refresh_count += 1
            token_refreshes_total.labels(reason=reason).inc()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._refresh_loop())

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _refresh_loop(self) -> None:
        # Refresh up front so a stale token from the env file is replaced.
        while True:
            try:
                await self.refresh()
            except AuthFailure as exc:
                log.error("Scheduled token refresh failed: %s", exc)
            await asyncio.sleep(self.refresh_interval)
