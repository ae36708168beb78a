"""
Tests for the vote-ranked collaborative queue.
"""

import random

from crowdtune.song_queue import SEED_USER, CollaborativeQueue, Song

from conftest import ref


def assert_sorted(queue):
    songs = queue.list()
    for a, b in zip(songs, songs[1:]):
        assert (a.votes, -a.added_at) >= (b.votes, -b.added_at)


class TestSong:
    """Tests for the Song dataclass."""

    def test_submitter_vote(self):
        song = Song(title="A", track_ref=ref(1), added_by="alice")

        assert song.votes == 1
        assert song.voters == {"alice"}
        assert song.has_voted("alice")

    def test_add_vote_once_per_user(self):
        song = Song(title="A", track_ref=ref(1), added_by="alice")

        assert song.add_vote("bob") is True
        assert song.add_vote("bob") is False
        assert song.votes == 2
        assert song.voters == {"alice", "bob"}


class TestCollaborativeQueue:
    """Tests for CollaborativeQueue ordering and voting."""

    def test_ties_keep_insertion_order(self):
        queue = CollaborativeQueue()
        queue.add("A", ref(1), "alice")
        queue.add("B", ref(2), "bob")

        assert [s.title for s in queue.list()] == ["A", "B"]

    def test_vote_reorders(self):
        """Scenario: A and B tie, a vote for B moves it ahead, popping returns B."""
        queue = CollaborativeQueue()
        queue.add("A", ref(1), "alice")
        queue.add("B", ref(2), "bob")

        assert queue.vote(1, "carol") is True
        assert [s.title for s in queue.list()] == ["B", "A"]

        assert queue.remove_first().title == "B"
        assert [s.title for s in queue.list()] == ["A"]

    def test_duplicate_vote_rejected(self):
        queue = CollaborativeQueue()
        queue.add("A", ref(1), "alice")

        assert queue.vote(0, "alice") is False
        assert queue.vote(0, "bob") is True
        assert queue.vote(0, "bob") is False
        assert queue.peek().votes == 2

    def test_out_of_range_vote(self):
        queue = CollaborativeQueue()
        queue.add("A", ref(1), "alice")

        assert queue.vote(5, "bob") is False
        assert queue.vote(-1, "bob") is False

    def test_random_votes_keep_order_and_counts(self):
        """Voter sets never repeat users and the order always holds."""
        rng = random.Random(7)
        queue = CollaborativeQueue()
        for i in range(8):
            queue.add(f"Song {i}", ref(i), f"user{i}")

        for _ in range(200):
            queue.vote(rng.randrange(-1, 10), f"user{rng.randrange(12)}")
            assert_sorted(queue)
            for song in queue.list():
                assert song.votes == len(song.voters)

    def test_remove_first_and_peek_on_empty(self):
        queue = CollaborativeQueue()

        assert queue.peek() is None
        assert queue.remove_first() is None
        assert queue.list() == []

    def test_list_is_a_copy(self):
        queue = CollaborativeQueue()
        queue.add("A", ref(1), "alice")

        queue.list().clear()

        assert len(queue) == 1

    def test_full_queue(self):
        queue = CollaborativeQueue(max_size=1)

        assert queue.add("A", ref(1), "alice") is not None
        assert queue.add("B", ref(2), "bob") is None

    def test_drop_seeded_keeps_playing(self):
        queue = CollaborativeQueue()
        queue.add("Seed 1", ref(1), SEED_USER, seeded=True)
        queue.add("Seed 2", ref(2), SEED_USER, seeded=True)
        queue.add("User", ref(3), "alice")

        assert queue.drop_seeded(keep_ref=ref(1)) == 1
        assert {s.track_ref for s in queue.list()} == {ref(1), ref(3)}

    def test_views(self):
        queue = CollaborativeQueue()
        queue.add("A", ref(1), "alice")
        queue.add("B", ref(2), "bob")

        views = queue.views(playing_ref=ref(1))

        assert [v.position for v in views] == [1, 2]
        assert views[0].playing is True
        assert views[1].playing is False
        assert views[1].added_by == "bob"

    def test_views_are_stable_snapshots(self):
        """Building views twice over an unchanged queue gives equal views."""
        queue = CollaborativeQueue()
        queue.add("A", ref(1), "alice")
        queue.add("B", ref(2), "bob")

        assert queue.views(playing_ref=ref(1)) == queue.views(playing_ref=ref(1))

    def test_position_and_find(self):
        queue = CollaborativeQueue()
        a = queue.add("A", ref(1), "alice")
        b = queue.add("B", ref(2), "bob")

        assert queue.position_of(b) == 2
        assert queue.find(ref(1)) is a
        assert queue.remove(a) is True
        assert queue.remove(a) is False
        assert queue.position_of(a) is None
