"""
pytest configuration and shared fixtures for crowdtune tests.
"""

import random

import pytest

from crowdtune.errors import NotFound
from crowdtune.events import EventBus
from crowdtune.operations import OperationQueue
from crowdtune.playback import PlaybackController
from crowdtune.playlists import PlaylistReconciler
from crowdtune.song_queue import CollaborativeQueue
from crowdtune.spotify_client import Device, PlaybackState, PlaylistInfo, RemoteTrack
from crowdtune.sync import SyncCoordinator
from crowdtune.track_ref import playlist_uri
from crowdtune.watcher import PlaybackWatcher


def ref(n):
    """A valid 22-character track id for test track ``n``."""
    return f"trk{n:019d}"


class FakeRemote:
    """In-memory stand-in for SpotifyRemote."""

    def __init__(self):
        self.catalog = {}
        self.playlists = {}
        self.library = []
        self.devices = [Device(id="dev1", name="Laptop", type="Computer", is_active=False)]
        self.playback = None
        self.search_results = {}
        self.calls = []
        self.errors = {}
        self._next_playlist = 1

    # ── test helpers ──

    def track(self, n):
        t = RemoteTrack(
            id=ref(n),
            name=f"Song {n}",
            artists=(f"Artist {n}",),
            album=f"Album {n}",
            duration_ms=180_000,
        )
        self.catalog[t.id] = t
        return t

    def add_library(self, numbers):
        self.library.extend(self.track(n) for n in numbers)

    def make_playlist(self, name, numbers=()):
        playlist_id = f"pl{self._next_playlist}"
        self._next_playlist += 1
        self.playlists[playlist_id] = {"name": name, "tracks": [self.track(n).id for n in numbers]}
        return playlist_id

    def playlist_id(self, name):
        return next((pid for pid, p in self.playlists.items() if p["name"] == name), None)

    def tracks_of(self, name):
        return list(self.playlists[self.playlist_id(name)]["tracks"])

    def play_now(self, n, context_id=None, progress_ms=0):
        self.devices = [
            Device(id=d.id, name=d.name, type=d.type, is_active=d.id == "dev1")
            for d in self.devices
        ]
        self.playback = PlaybackState(
            track=self.track(n),
            progress_ms=progress_ms,
            is_playing=True,
            device=Device(id="dev1", name="Laptop", is_active=True),
            context_uri=playlist_uri(context_id) if context_id else None,
        )

    def fail_next(self, method, exc):
        self.errors.setdefault(method, []).append(exc)

    def called(self, method):
        return [c for c in self.calls if c[0] == method]

    def _record(self, method, *args):
        self.calls.append((method, *args))
        pending = self.errors.get(method)
        if pending:
            raise pending.pop(0)

    # ── remote contract ──

    async def search_tracks(self, query, limit=5):
        self._record("search_tracks", query, limit)
        return [self.track(n) for n in self.search_results.get(query, [])][:limit]

    async def get_track(self, track_id):
        self._record("get_track", track_id)
        if track_id not in self.catalog:
            raise NotFound(f"Unknown track {track_id}")
        return self.catalog[track_id]

    async def get_current_playback(self):
        self._record("get_current_playback")
        return self.playback

    async def play(self, context_uri, offset_ref=None, device_id=None):
        self._record("play", context_uri, offset_ref, device_id)
        playlist_id = context_uri.rsplit(":", 1)[-1]
        tracks = self.playlists.get(playlist_id, {}).get("tracks", [])
        track_id = offset_ref or (tracks[0] if tracks else None)
        device = next((d for d in self.devices if d.id == device_id), None) or next(
            (d for d in self.devices if d.is_active), None
        )
        if device is None:
            raise NotFound("No active device")
        self.playback = PlaybackState(
            track=self.catalog.get(track_id),
            is_playing=True,
            device=device,
            context_uri=context_uri,
        )

    async def transfer_playback(self, device_id):
        self._record("transfer_playback", device_id)
        self.devices = [
            Device(id=d.id, name=d.name, type=d.type, is_active=d.id == device_id)
            for d in self.devices
        ]

    async def list_devices(self):
        self._record("list_devices")
        return list(self.devices)

    async def list_user_playlists(self):
        self._record("list_user_playlists")
        return [
            PlaylistInfo(id=pid, name=p["name"], track_count=len(p["tracks"]))
            for pid, p in self.playlists.items()
        ]

    async def create_playlist(self, name, description="", public=True):
        self._record("create_playlist", name)
        playlist_id = self.make_playlist(name)
        return PlaylistInfo(id=playlist_id, name=name)

    async def get_playlist_tracks(self, playlist_id):
        self._record("get_playlist_tracks", playlist_id)
        return [self.catalog[t] for t in self.playlists[playlist_id]["tracks"]]

    async def add_tracks_to_playlist(self, playlist_id, refs):
        self._record("add_tracks_to_playlist", playlist_id, list(refs))
        self.playlists[playlist_id]["tracks"].extend(refs)

    async def remove_tracks_from_playlist(self, playlist_id, refs, positions=None):
        self._record("remove_tracks_from_playlist", playlist_id, list(refs), positions)
        tracks = self.playlists[playlist_id]["tracks"]
        if positions is not None:
            for pos in sorted(positions, reverse=True):
                del tracks[pos]
        else:
            tracks[:] = [t for t in tracks if t not in refs]

    async def reorder_playlist(self, playlist_id, range_start, insert_before):
        self._record("reorder_playlist", playlist_id, range_start, insert_before)
        tracks = self.playlists[playlist_id]["tracks"]
        item = tracks.pop(range_start)
        if insert_before > range_start:
            insert_before -= 1
        tracks.insert(insert_before, item)

    async def list_saved_tracks(self, offset=0, limit=50):
        self._record("list_saved_tracks", offset, limit)
        return self.library[offset:offset + limit]


ACTIVE = "Active Stream Playlist"
OVERFLOW = "New Playlist"


@pytest.fixture
def fake_remote():
    return FakeRemote()


@pytest.fixture
def operations():
    return OperationQueue()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def reconciler(fake_remote, operations):
    return PlaylistReconciler(
        fake_remote,
        operations,
        active_name=ACTIVE,
        overflow_name=OVERFLOW,
        overflow_size=5,
        rng=random.Random(1234),
    )


@pytest.fixture
def controller(fake_remote, operations, reconciler):
    return PlaybackController(fake_remote, operations, reconciler)


@pytest.fixture
def watcher(fake_remote, operations, events):
    return PlaybackWatcher(fake_remote, operations, events, interval=0.05, debounce=0.01)


@pytest.fixture
def coordinator(reconciler, controller, watcher, events):
    return SyncCoordinator(CollaborativeQueue(), reconciler, controller, watcher, events)
