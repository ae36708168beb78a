from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable

log = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[Any]]


class PlaybackEvent(Enum):
    # Raised by the watcher: (previous, current) snapshots
    TRACK_CHANGED = "track_changed"
    # Raised by the watcher: (current,)
    NOW_PLAYING = "now_playing"
    # Raised by the watcher when a poll finds nothing playing: ()
    PLAYBACK_STOPPED = "playback_stopped"
    # Raised by the coordinator once a transition has been reconciled
    TRACK_TRANSITIONED = "track_transitioned"
    # Raised by the coordinator whenever the collaborative queue changes
    QUEUE_CHANGED = "queue_changed"


class EventBus:
    """In-process publish/subscribe over the fixed PlaybackEvent vocabulary.

    Handlers run in subscription order. A failing handler is logged and does
    not stop the others. Handlers must tolerate seeing the same event twice.
    """

    def __init__(self) -> None:
        self._handlers: dict[PlaybackEvent, list[Handler]] = defaultdict(list)

    def subscribe(self, event: PlaybackEvent, handler: Handler) -> None:
        if not isinstance(event, PlaybackEvent):
            raise TypeError(f"Unknown event: {event!r}")
        if handler not in self._handlers[event]:
            self._handlers[event].append(handler)

    def unsubscribe(self, event: PlaybackEvent, handler: Handler) -> None:
        try:
            self._handlers[event].remove(handler)
        except ValueError:
            pass

    async def publish(self, event: PlaybackEvent, *args: Any) -> None:
        for handler in list(self._handlers[event]):
            try:
                await handler(*args)
            except Exception:
                log.exception("Handler %r failed for %s", handler, event.value)
