import re
from enum import Enum, auto


class RefKind(Enum):
    TRACK_ID = auto()
    TRACK_URI = auto()
    TRACK_URL = auto()
    SEARCH_QUERY = auto()


# Spotify ids are base-62 strings of exactly 22 characters.
_TRACK_ID_RE = re.compile(r"^[A-Za-z0-9]{22}$")

_TRACK_URI_RE = re.compile(r"^spotify:track:([A-Za-z0-9]{22})$")

_TRACK_URL_RE = re.compile(
    r"(?:https?://)?open\.spotify\.com/(?:intl-[a-z]+/)?track/([A-Za-z0-9]{22})(?:[/?#]\S*)?$"
)


def is_valid_track_id(value: str | None) -> bool:
    return bool(value) and _TRACK_ID_RE.match(value) is not None


def classify(query: str) -> tuple[RefKind, str]:
    """Return (RefKind, cleaned_value) for user input.

    For any track form the cleaned value is the bare 22-character id.
    Anything else is treated as a search query and returned stripped.
    """
    query = query.strip()

    if _TRACK_ID_RE.match(query):
        return RefKind.TRACK_ID, query

    m = _TRACK_URI_RE.match(query)
    if m:
        return RefKind.TRACK_URI, m.group(1)

    m = _TRACK_URL_RE.match(query)
    if m:
        return RefKind.TRACK_URL, m.group(1)

    return RefKind.SEARCH_QUERY, query


def normalize_track_ref(value: str | None) -> str | None:
    """Reduce an id, ``spotify:track:`` URI or open.spotify.com URL to the bare id."""
    if not value:
        return None
    kind, cleaned = classify(value)
    if kind is RefKind.SEARCH_QUERY:
        return None
    return cleaned


def track_uri(track_id: str) -> str:
    return f"spotify:track:{track_id}"


def playlist_uri(playlist_id: str) -> str:
    return f"spotify:playlist:{playlist_id}"


def track_url(track_id: str) -> str:
    return f"https://open.spotify.com/track/{track_id}"
