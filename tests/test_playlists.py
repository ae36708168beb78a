"""
Tests for the playlist reconciler.
"""

import random
from datetime import date

import pytest

from crowdtune.errors import NotFound, TransientError, ValidationError
from crowdtune.playlists import PlaylistReconciler, archive_playlist_name

from conftest import ACTIVE, OVERFLOW, ref


def test_archive_playlist_name():
    assert archive_playlist_name(date(2024, 3, 7)) == "03-07-2024 Archive"


@pytest.mark.asyncio
class TestPlaylistIds:
    """Tests for finding or creating the managed playlists."""

    async def test_creates_missing_playlists_once(self, fake_remote, reconciler):
        active_id = await reconciler.get_or_create_active()
        overflow_id = await reconciler.get_or_create_overflow()

        assert fake_remote.playlists[active_id]["name"] == ACTIVE
        assert fake_remote.playlists[overflow_id]["name"] == OVERFLOW
        assert len(fake_remote.called("create_playlist")) == 2

        assert await reconciler.managed_playlist_ids() == (active_id, overflow_id)
        assert len(fake_remote.called("list_user_playlists")) == 1
        assert len(fake_remote.called("create_playlist")) == 2

    async def test_finds_existing_playlists_by_name(self, fake_remote, reconciler):
        active_id = fake_remote.make_playlist(ACTIVE)
        overflow_id = fake_remote.make_playlist(OVERFLOW)

        assert await reconciler.managed_playlist_ids() == (active_id, overflow_id)
        assert fake_remote.called("create_playlist") == []


@pytest.mark.asyncio
class TestOverflowSize:
    """Tests for ensure_overflow_has_fixed_size."""

    async def test_removes_excess_oldest_first(self, fake_remote, reconciler):
        """Scenario: 7 overflow tracks are trimmed to exactly 5."""
        fake_remote.make_playlist(OVERFLOW, range(1, 8))

        assert await reconciler.ensure_overflow_has_fixed_size(5) == 5

        removals = fake_remote.called("remove_tracks_from_playlist")
        assert len(removals) == 1
        assert removals[0][2] == [ref(1), ref(2)]
        assert fake_remote.tracks_of(OVERFLOW) == [ref(n) for n in range(3, 8)]

    async def test_repopulates_empty_overflow(self, fake_remote, reconciler):
        """Scenario: an empty overflow gets exactly 5 distinct library tracks."""
        fake_remote.add_library(range(100, 110))
        fake_remote.make_playlist(OVERFLOW)

        assert await reconciler.ensure_overflow_has_fixed_size(5) == 5

        tracks = fake_remote.tracks_of(OVERFLOW)
        library = {t.id for t in fake_remote.library}
        assert len(tracks) == 5
        assert len(set(tracks)) == 5
        assert set(tracks) <= library

    async def test_fills_shortfall_without_duplicates(self, fake_remote, reconciler):
        fake_remote.add_library(range(1, 10))
        fake_remote.make_playlist(OVERFLOW, [1, 2, 3])

        assert await reconciler.ensure_overflow_has_fixed_size() == 5

        tracks = fake_remote.tracks_of(OVERFLOW)
        assert tracks[:3] == [ref(1), ref(2), ref(3)]
        assert len(set(tracks)) == 5

    async def test_idempotent(self, fake_remote, reconciler):
        fake_remote.add_library(range(100, 120))
        fake_remote.make_playlist(OVERFLOW, [1, 2])

        await reconciler.ensure_overflow_has_fixed_size()
        first = fake_remote.tracks_of(OVERFLOW)
        writes = len(fake_remote.called("add_tracks_to_playlist"))

        assert await reconciler.ensure_overflow_has_fixed_size() == 5
        assert fake_remote.tracks_of(OVERFLOW) == first
        assert len(fake_remote.called("add_tracks_to_playlist")) == writes
        assert fake_remote.called("remove_tracks_from_playlist") == []

    async def test_empty_library(self, fake_remote, reconciler):
        fake_remote.make_playlist(OVERFLOW)

        assert await reconciler.ensure_overflow_has_fixed_size() == 0
        assert fake_remote.called("add_tracks_to_playlist") == []


@pytest.mark.asyncio
class TestAddToPlaylists:
    """Tests for add_to_playlists."""

    async def test_adds_to_archive_and_active(self, fake_remote, reconciler):
        fake_remote.track(42)

        result = await reconciler.add_to_playlists("Song 42", ref(42))

        assert result.success is True
        assert result.track_ref == ref(42)
        assert result.active_name == ACTIVE
        assert result.archive_name == archive_playlist_name()
        assert fake_remote.tracks_of(ACTIVE) == [ref(42)]
        assert fake_remote.tracks_of(archive_playlist_name()) == [ref(42)]

    async def test_accepts_urls(self, fake_remote, reconciler):
        fake_remote.track(42)

        result = await reconciler.add_to_playlists(
            "Song 42", f"https://open.spotify.com/track/{ref(42)}?si=x"
        )

        assert result.success is True
        assert fake_remote.tracks_of(ACTIVE) == [ref(42)]

    async def test_invalid_ref_rejected_before_remote(self, fake_remote, reconciler):
        result = await reconciler.add_to_playlists("Song", "not-a-track")

        assert result.success is False
        assert result.error == ValidationError.user_message
        assert fake_remote.calls == []

    async def test_resolves_by_search(self, fake_remote, reconciler):
        fake_remote.search_results["my song"] = [7, 8]

        result = await reconciler.add_to_playlists("my song")

        assert result.success is True
        assert result.track_ref == ref(7)
        assert fake_remote.tracks_of(ACTIVE) == [ref(7)]

    async def test_no_search_results(self, fake_remote, reconciler):
        result = await reconciler.add_to_playlists("nothing matches")

        assert result.success is False
        assert result.error == NotFound.user_message
        assert fake_remote.called("add_tracks_to_playlist") == []

    async def test_does_not_duplicate_active_member(self, fake_remote, reconciler):
        fake_remote.make_playlist(ACTIVE, [42])

        result = await reconciler.add_to_playlists("Song 42", ref(42))

        assert result.success is True
        assert fake_remote.tracks_of(ACTIVE) == [ref(42)]
        assert fake_remote.tracks_of(archive_playlist_name()) == [ref(42)]

    async def test_always_checks_overflow_size(self, fake_remote, reconciler):
        fake_remote.add_library(range(100, 110))
        fake_remote.track(42)

        await reconciler.add_to_playlists("Song 42", ref(42))

        assert len(fake_remote.tracks_of(OVERFLOW)) == 5

    async def test_active_write_failure_reported(self, fake_remote, reconciler):
        fake_remote.track(42)
        fake_remote.make_playlist(ACTIVE)
        fake_remote.make_playlist(OVERFLOW)
        fake_remote.fail_next("add_tracks_to_playlist", TransientError("Spotify 502", 502))
        fake_remote.fail_next("add_tracks_to_playlist", TransientError("Spotify 502", 502))

        result = await reconciler.add_to_playlists("Song 42", ref(42))

        assert result.success is False
        assert result.error == TransientError.user_message


@pytest.mark.asyncio
class TestTrackRemoval:
    """Tests for remove_from_active and handle_track_removal."""

    async def test_remove_from_active(self, fake_remote, reconciler):
        fake_remote.make_playlist(ACTIVE, [1, 2])

        assert await reconciler.remove_from_active(ref(2)) is True
        assert await reconciler.remove_from_active(ref(2)) is False
        assert fake_remote.tracks_of(ACTIVE) == [ref(1)]

    async def test_remove_invalid_ref(self, fake_remote, reconciler):
        assert await reconciler.remove_from_active("bogus") is False
        assert fake_remote.calls == []

    async def test_retiring_overflow_track_backfills(self, fake_remote, reconciler):
        fake_remote.add_library(range(100, 110))
        fake_remote.make_playlist(ACTIVE, [1])
        fake_remote.make_playlist(OVERFLOW, range(10, 15))

        assert await reconciler.handle_track_removal(ref(10)) is True

        overflow = fake_remote.tracks_of(OVERFLOW)
        assert ref(10) not in overflow
        assert len(overflow) == 5
        assert overflow[:4] == [ref(n) for n in range(11, 15)]
        assert fake_remote.tracks_of(ACTIVE) == [ref(1)]

    async def test_retiring_active_track_refreshes_overflow(self, fake_remote, reconciler):
        """Every retirement rotates one fresh library track into overflow."""
        fake_remote.add_library(range(100, 110))
        fake_remote.make_playlist(ACTIVE, [1, 2])
        fake_remote.make_playlist(OVERFLOW, range(10, 15))
        overflow_id = fake_remote.playlist_id(OVERFLOW)

        assert await reconciler.handle_track_removal(ref(1)) is True

        assert fake_remote.tracks_of(ACTIVE) == [ref(2)]
        backfills = [c for c in fake_remote.called("add_tracks_to_playlist") if c[1] == overflow_id]
        assert len(backfills) == 1
        assert len(backfills[0][2]) == 1
        overflow = fake_remote.tracks_of(OVERFLOW)
        assert len(overflow) == 5
        assert overflow[:4] == [ref(n) for n in range(11, 15)]
        assert overflow[4] in {ref(n) for n in range(100, 110)}

    async def test_promote_in_active(self, fake_remote, reconciler):
        fake_remote.make_playlist(ACTIVE, [1, 2, 3])

        assert await reconciler.promote_in_active(ref(3)) is True
        assert fake_remote.tracks_of(ACTIVE) == [ref(3), ref(1), ref(2)]

        assert await reconciler.promote_in_active(ref(3)) is True
        assert fake_remote.tracks_of(ACTIVE) == [ref(3), ref(1), ref(2)]

        assert await reconciler.promote_in_active(ref(99)) is False


@pytest.mark.asyncio
class TestLikedSongs:
    """Tests for the cached library scan."""

    @pytest.fixture
    def clock(self):
        now = [1000.0]
        return now

    @pytest.fixture
    def timed_reconciler(self, fake_remote, operations, clock):
        return PlaylistReconciler(
            fake_remote, operations, ACTIVE, OVERFLOW,
            rng=random.Random(0), clock=lambda: clock[0],
        )

    async def test_fetches_four_pages(self, fake_remote, timed_reconciler):
        fake_remote.add_library(range(1, 61))

        songs = await timed_reconciler.get_all_liked_songs()

        assert len(songs) == 60
        offsets = sorted(c[1] for c in fake_remote.called("list_saved_tracks"))
        assert offsets == [0, 50, 100, 150]

    async def test_cached_for_five_minutes(self, fake_remote, timed_reconciler, clock):
        fake_remote.add_library(range(1, 6))

        await timed_reconciler.get_all_liked_songs()
        clock[0] += 299
        await timed_reconciler.get_all_liked_songs()
        assert len(fake_remote.called("list_saved_tracks")) == 4

        clock[0] += 2
        await timed_reconciler.get_all_liked_songs()
        assert len(fake_remote.called("list_saved_tracks")) == 8

    async def test_falls_back_to_cache_on_failure(self, fake_remote, timed_reconciler, clock):
        fake_remote.add_library(range(1, 6))
        first = await timed_reconciler.get_all_liked_songs()

        clock[0] += 301
        for _ in range(4):
            fake_remote.fail_next("list_saved_tracks", TransientError("Spotify 503", 503))

        assert await timed_reconciler.get_all_liked_songs() == first
