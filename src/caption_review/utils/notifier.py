"""Fan-out of state snapshots to async subscribers."""

import asyncio
from typing import AsyncIterator, Callable, Generic, List, Optional, TypeVar

T = TypeVar("T")


class SnapshotNotifier(Generic[T]):
    """Publishes snapshots to every open stream.

    Each call to ``stream`` is an independent subscription that starts with the
    snapshot current at subscription time and ends at the first terminal one.
    """

    def __init__(self, is_terminal: Callable[[T], bool]):
        self.is_terminal = is_terminal
        self._subscribers: List[asyncio.Queue] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, snapshot: T):
        for queue in list(self._subscribers):
            queue.put_nowait(snapshot)

    def close(self):
        """End all open streams."""
        for queue in list(self._subscribers):
            queue.put_nowait(None)

    async def stream(self, current: Callable[[], T]) -> AsyncIterator[T]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            snapshot: Optional[T] = current()
            while snapshot is not None:
                yield snapshot
                if self.is_terminal(snapshot):
                    break
                snapshot = await queue.get()
        finally:
            self._subscribers.remove(queue)
