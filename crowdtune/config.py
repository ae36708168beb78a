from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


def _float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


@dataclass
class Settings:
    """Process configuration, read from the environment (and ``.env``)."""

    discord_token: str | None = None
    spotify_client_id: str | None = None
    spotify_client_secret: str | None = None
    spotify_redirect_uri: str = "http://localhost:8888/callback"
    spotify_access_token: str | None = None
    spotify_refresh_token: str | None = None
    queue_channel: str = "music-queue"
    active_playlist_name: str = "Active Stream Playlist"
    overflow_playlist_name: str = "New Playlist"
    overflow_size: int = 5
    poll_interval: float = 5.0
    poll_debounce: float = 1.0
    token_refresh_minutes: float = 30.0
    web_port: int | None = None
    metrics_port: int = 9090
    env_file: str = ".env"

    @classmethod
    def from_env(cls, env_file: str | None = None) -> Settings:
        env_file = env_file or os.getenv("ENV_FILE", ".env")
        load_dotenv(env_file)
        web_port = os.getenv("WEB_PORT")
        return cls(
            discord_token=os.getenv("DISCORD_TOKEN"),
            spotify_client_id=os.getenv("SPOTIFY_CLIENT_ID"),
            spotify_client_secret=os.getenv("SPOTIFY_CLIENT_SECRET"),
            spotify_redirect_uri=os.getenv(
                "SPOTIFY_REDIRECT_URI", "http://localhost:8888/callback"
            ),
            spotify_access_token=os.getenv("SPOTIFY_ACCESS_TOKEN"),
            spotify_refresh_token=os.getenv("SPOTIFY_REFRESH_TOKEN"),
            queue_channel=os.getenv("QUEUE_CHANNEL", "music-queue"),
            active_playlist_name=os.getenv("ACTIVE_PLAYLIST_NAME", "Active Stream Playlist"),
            overflow_playlist_name=os.getenv("OVERFLOW_PLAYLIST_NAME", "New Playlist"),
            overflow_size=_int("OVERFLOW_SIZE", 5),
            poll_interval=_float("POLL_INTERVAL", 5.0),
            poll_debounce=_float("POLL_DEBOUNCE", 1.0),
            token_refresh_minutes=_float("TOKEN_REFRESH_MINUTES", 30.0),
            web_port=int(web_port) if web_port else None,
            metrics_port=_int("METRICS_PORT", 9090),
            env_file=env_file,
        )
