from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field

# added_by value for songs placed in the queue from a playlist, not by a user
SEED_USER = "spotify"

_sequence = itertools.count()


@dataclass
class Song:
    """One candidate track in the collaborative queue."""

    title: str
    track_ref: str
    added_by: str
    votes: int = 1
    voters: set[str] = field(default_factory=set)
    added_at: float = field(default_factory=time.monotonic)
    seeded: bool = False
    seq: int = field(default_factory=lambda: next(_sequence), repr=False)

    def __post_init__(self) -> None:
        # Submitting a song counts as the submitter's vote.
        if not self.voters:
            self.voters = {self.added_by}
        self.votes = len(self.voters)

    def has_voted(self, user_id: str) -> bool:
        return user_id in self.voters

    def add_vote(self, user_id: str) -> bool:
        if user_id in self.voters:
            return False
        self.voters.add(user_id)
        self.votes = len(self.voters)
        return True


@dataclass(frozen=True)
class SongView:
    """Read-only snapshot of a queued song for display layers."""

    position: int
    title: str
    track_ref: str
    added_by: str
    votes: int
    playing: bool = False
    seeded: bool = False


class CollaborativeQueue:
    """Vote-ranked song list: most votes first, earlier submissions win ties."""

    def __init__(self, max_size: int = 100) -> None:
        self.songs: list[Song] = []
        self.max_size = max_size

    def __len__(self) -> int:
        return len(self.songs)

    def _sort(self) -> None:
        # Ties go to the earlier submission.
        self.songs.sort(key=lambda s: (-s.votes, s.added_at, s.seq))

    def add(self, title: str, track_ref: str, user_id: str, seeded: bool = False) -> Song | None:
        """Add a song with the submitter's vote. Returns None if the queue is full."""
        if len(self.songs) >= self.max_size:
            return None
        song = Song(title=title, track_ref=track_ref, added_by=user_id, seeded=seeded)
        self.songs.append(song)
        self._sort()
        return song

    def vote(self, index: int, user_id: str) -> bool:
        """Vote for the song at 0-based index. False on a bad index or repeat vote."""
        if index < 0 or index >= len(self.songs):
            return False
        if not self.songs[index].add_vote(user_id):
            return False
        self._sort()
        return True

    def remove_first(self) -> Song | None:
        if not self.songs:
            return None
        return self.songs.pop(0)

    def remove(self, song: Song) -> bool:
        try:
            self.songs.remove(song)
        except ValueError:
            return False
        return True

    def peek(self) -> Song | None:
        return self.songs[0] if self.songs else None

    def list(self) -> list[Song]:
        return list(self.songs)

    def position_of(self, song: Song) -> int | None:
        """1-indexed position of ``song``, or None if it is no longer queued."""
        for i, s in enumerate(self.songs):
            if s is song:
                return i + 1
        return None

    def find(self, track_ref: str) -> Song | None:
        return next((s for s in self.songs if s.track_ref == track_ref), None)

    def drop_seeded(self, keep_ref: str | None = None) -> int:
        """Remove playlist-seeded placeholders, except the one for ``keep_ref``."""
        before = len(self.songs)
        self.songs = [s for s in self.songs if not s.seeded or s.track_ref == keep_ref]
        return before - len(self.songs)

    def clear(self) -> None:
        self.songs.clear()

    def views(self, playing_ref: str | None = None) -> list[SongView]:
        return [
            SongView(
                position=i + 1,
                title=s.title,
                track_ref=s.track_ref,
                added_by=s.added_by,
                votes=s.votes,
                playing=playing_ref is not None and s.track_ref == playing_ref,
                seeded=s.seeded,
            )
            for i, s in enumerate(self.songs)
        ]
