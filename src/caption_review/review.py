"""Review queue engine.

Builds a shuffled queue of (image, caption) cards and tracks the current
identity's vote on each card:

1. The queue is shuffled once per source list and kept until the source changes
2. Votes are applied locally first and reconciled with the vote store in the background
3. Remote writes for one caption are serialized; different captions sync independently
4. Remote failures are logged and never roll back local state
5. A single cursor moves forward (skip or auto-advance) and back through a bounded undo history
"""

import asyncio
import logging
import random
from collections import Counter, deque
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Sequence, Tuple, Union

from .clients.vote_store import VoteStore
from .exceptions import AuthenticationError, ValidationError
from .models import (
    QueueSnapshot,
    QueueStatus,
    ReviewCard,
    SourceImage,
    VoteHistoryEntry,
    VoteState,
    utc_now,
)
from .utils.auth import SessionProvider
from .utils.notifier import SnapshotNotifier

logger = logging.getLogger(__name__)


def flatten_cards(images: Sequence[SourceImage]) -> List[ReviewCard]:
    """One card per non-empty caption, first occurrence of a caption id wins."""
    cards = []
    seen = set()
    for image in images:
        for caption in image.captions:
            content = (caption.content or "").strip()
            if not content or caption.id in seen:
                continue
            seen.add(caption.id)
            cards.append(
                ReviewCard(
                    caption_id=caption.id,
                    content=content,
                    image_id=image.id,
                    image_url=image.url,
                )
            )
    return cards


def _source_key(images: Sequence[SourceImage]) -> Tuple:
    return tuple(
        (image.id, image.url, tuple((c.id, c.content) for c in image.captions))
        for image in images
    )


class ReviewQueueEngine:
    """Review session over one shuffled queue of cards.

    Must be driven from a running event loop: votes schedule background
    reconciliation tasks and auto-advance timers.
    """

    def __init__(
        self,
        vote_store: VoteStore,
        session: Optional[SessionProvider] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        config = config or {}
        self.vote_store = vote_store
        self.session = session
        self.auto_advance = config.get("auto_advance", True)
        self.auto_advance_delay = float(config.get("auto_advance_delay", 0.8))
        self.require_identity = config.get("require_identity", True)
        self.rng = random.Random(config.get("seed"))

        # Queue state
        self.queue: Tuple[ReviewCard, ...] = ()
        self.position = 0
        self.generation = 0
        self.closed = False
        self._source_key: Optional[Tuple] = None
        self._index: Dict[str, int] = {}

        # Vote state
        self.votes: Dict[str, VoteState] = {}
        self.history: Deque[VoteHistoryEntry] = deque(maxlen=config.get("history_limit", 50))
        self.sync_failures = 0

        # Background work
        self._advance_task: Optional[asyncio.Task] = None
        self._sync_tasks: Dict[asyncio.Task, str] = {}
        self._sync_locks: Dict[str, asyncio.Lock] = {}
        self._notifier: SnapshotNotifier[QueueSnapshot] = SnapshotNotifier(
            lambda snapshot: snapshot.is_terminal
        )

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def build_queue(
        self, images: Sequence[Union[SourceImage, Dict[str, Any]]]
    ) -> Tuple[ReviewCard, ...]:
        """
        Build the shuffled queue for a source list.

        Calling again with an unchanged source list returns the existing queue
        untouched, keeping the order and the cursor.
        """
        images = [
            image if isinstance(image, SourceImage) else SourceImage.from_dict(image)
            for image in images
        ]
        key = _source_key(images)
        if key == self._source_key and not self.closed:
            return self.queue

        cards = flatten_cards(images)
        self.rng.shuffle(cards)

        self._cancel_advance()
        self._notifier.close()
        self._prune_sync_locks()

        self.generation += 1
        self.closed = False
        self._source_key = key
        self.queue = tuple(cards)
        self._index = {card.caption_id: i for i, card in enumerate(self.queue)}
        self.position = 0
        self.votes = {}
        self.history.clear()

        if self.queue:
            logger.info(f"Built review queue with {len(self.queue)} cards from {len(images)} images")
        else:
            logger.info("Nothing to review")
        self._publish()
        return self.queue

    @property
    def status(self) -> QueueStatus:
        if self.closed:
            return QueueStatus.CLOSED
        if not self.queue:
            return QueueStatus.EMPTY
        if self.position >= len(self.queue):
            return QueueStatus.COMPLETED
        return QueueStatus.REVIEWING

    @property
    def current_card(self) -> Optional[ReviewCard]:
        if self.closed or self.position >= len(self.queue):
            return None
        return self.queue[self.position]

    @property
    def can_go_back(self) -> bool:
        return bool(self.history) and not self.closed

    def vote_for(self, caption_id: str) -> VoteState:
        return self.votes.get(caption_id, VoteState.UNVOTED)

    def tally(self) -> Dict[str, int]:
        counts = Counter(self.votes.values())
        return {
            "upvoted": counts[VoteState.UPVOTED],
            "downvoted": counts[VoteState.DOWNVOTED],
        }

    def snapshot(self) -> QueueSnapshot:
        card = self.current_card
        tally = self.tally()
        return QueueSnapshot(
            status=self.status,
            position=self.position,
            total=len(self.queue),
            card=card,
            vote=self.vote_for(card.caption_id) if card else VoteState.UNVOTED,
            can_go_back=self.can_go_back,
            upvoted=tally["upvoted"],
            downvoted=tally["downvoted"],
            generation=self.generation,
        )

    def snapshots(self) -> AsyncIterator[QueueSnapshot]:
        """Stream of snapshots for the current queue, ending at a terminal state."""
        return self._notifier.stream(self.snapshot)

    # ------------------------------------------------------------------
    # Voting
    # ------------------------------------------------------------------

    def vote(self, card: Union[ReviewCard, str], value: int) -> VoteState:
        """
        Apply a vote transition and reconcile it with the vote store in the background.

        Args:
            card: Card (or caption id) anywhere in the current queue
            value: 1 for upvote, -1 for downvote; repeating the held vote clears it

        Returns:
            The new local vote state

        Raises:
            ValidationError: unknown card or vote value
            AuthenticationError: no identity while one is required
        """
        if value not in (1, -1):
            raise ValidationError(f"Vote must be 1 or -1, got {value!r}")
        if self.closed:
            raise ValidationError("Review session is closed")

        caption_id = card.caption_id if isinstance(card, ReviewCard) else str(card)
        if caption_id not in self._index:
            raise ValidationError(f"Caption {caption_id} is not in the review queue")

        identity_id = self._identity()
        if identity_id is None and self.require_identity:
            logger.warning("Vote rejected: not authenticated")
            raise AuthenticationError("Sign in to vote")

        previous = self.vote_for(caption_id)
        new_state = VoteState.UNVOTED if previous.value == value else VoteState(value)
        queue_position = self._index[caption_id]

        self.history.append(VoteHistoryEntry(self.position, caption_id, previous))
        self._set_vote(caption_id, new_state)
        self._publish()
        logger.debug(f"Caption {caption_id}: {previous.name} -> {new_state.name}")

        if identity_id is not None:
            self._schedule_sync(caption_id, identity_id, new_state)

        if self.auto_advance and queue_position == self.position:
            self.schedule_advance()

        return new_state

    async def reload_votes(self) -> int:
        """Load the identity's stored votes for the cards of the current queue.

        Local votes cast while the request was in flight are kept.
        """
        identity_id = self._identity()
        if identity_id is None or not self.queue:
            return 0

        generation = self.generation
        records = await self.vote_store.list_votes(identity_id, list(self._index))
        if generation != self.generation:
            logger.debug("Queue replaced while loading votes, ignoring result")
            return 0

        loaded = 0
        for record in records:
            state = VoteState.from_value(record.vote_value)
            if record.caption_id not in self._index or record.caption_id in self.votes:
                continue
            if state is not VoteState.UNVOTED:
                self.votes[record.caption_id] = state
                loaded += 1

        logger.info(f"Loaded {loaded} stored votes")
        self._publish()
        return loaded

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    def advance(self) -> bool:
        """Move to the next card. Cancels a pending auto-advance. No-op past the end."""
        self._cancel_advance()
        return self._step()

    def schedule_advance(self, delay: Optional[float] = None) -> asyncio.Task:
        """Advance after a delay unless the cursor moves first or the timer is cancelled."""
        self._cancel_advance()
        delay = self.auto_advance_delay if delay is None else delay
        self._advance_task = asyncio.create_task(self._deferred_advance(delay, self.position))
        return self._advance_task

    def back(self) -> bool:
        """Undo the most recent vote: restore the cursor held before it and the card's previous vote.

        Available whenever undo history exists, including at position 0, so a
        vote can be undone before its auto-advance moves the cursor.
        """
        if not self.can_go_back:
            return False

        self._cancel_advance()
        entry = self.history.pop()
        self.position = entry.queue_position
        self._set_vote(entry.caption_id, entry.previous_state)
        self._publish()
        logger.debug(f"Back to position {entry.queue_position}, restored {entry.previous_state.name}")

        # Keep the remote row in line with the restored local state
        identity_id = self._identity()
        if identity_id is not None:
            self._schedule_sync(entry.caption_id, identity_id, entry.previous_state)
        return True

    def _step(self) -> bool:
        if self.closed or self.position >= len(self.queue):
            return False
        self.position += 1
        if self.position == len(self.queue):
            logger.info("All captions reviewed")
        self._publish()
        return True

    async def _deferred_advance(self, delay: float, expected_position: int):
        await asyncio.sleep(delay)
        if self._advance_task is asyncio.current_task():
            self._advance_task = None
        if self.position == expected_position:
            self._step()

    def _cancel_advance(self):
        if self._advance_task is not None and not self._advance_task.done():
            self._advance_task.cancel()
        self._advance_task = None

    # ------------------------------------------------------------------
    # Remote reconciliation
    # ------------------------------------------------------------------

    def _schedule_sync(self, caption_id: str, identity_id: str, state: VoteState):
        task = asyncio.create_task(self._sync_vote(caption_id, identity_id, state, self.generation))
        self._sync_tasks[task] = caption_id
        task.add_done_callback(lambda t: self._sync_tasks.pop(t, None))

    async def _sync_vote(
        self, caption_id: str, identity_id: str, state: VoteState, generation: int
    ):
        lock = self._sync_locks.setdefault(caption_id, asyncio.Lock())
        async with lock:
            try:
                if state is VoteState.UNVOTED:
                    await self.vote_store.delete_vote(caption_id, identity_id)
                else:
                    now = utc_now()
                    existing = await self.vote_store.find_vote(caption_id, identity_id)
                    if existing:
                        await self.vote_store.update_vote(existing.record_id, state.value, now)
                    else:
                        await self.vote_store.insert_vote(
                            caption_id, identity_id, state.value, created_at=now, modified_at=now
                        )
                logger.debug(f"Vote saved for caption {caption_id}")
            except Exception as e:
                logger.error(f"Error saving vote for caption {caption_id}: {e}")
                if generation == self.generation:
                    self.sync_failures += 1

    def _prune_sync_locks(self):
        # Locks of captions with queued or running writes must survive
        pending = set(self._sync_tasks.values())
        self._sync_locks = {
            caption_id: lock for caption_id, lock in self._sync_locks.items() if caption_id in pending
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def settle(self):
        """Wait for a pending auto-advance and all in-flight vote writes."""
        if self._advance_task is not None:
            await asyncio.wait({self._advance_task})
        if self._sync_tasks:
            await asyncio.wait(set(self._sync_tasks))

    async def close(self):
        """End the session: cancel timers and in-flight writes, end snapshot streams."""
        self._cancel_advance()
        pending = list(self._sync_tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.closed = True
        self._publish()
        logger.debug("Review session closed")

    def _identity(self) -> Optional[str]:
        return self.session.current_identity_id() if self.session else None

    def _set_vote(self, caption_id: str, state: VoteState):
        if state is VoteState.UNVOTED:
            self.votes.pop(caption_id, None)
        else:
            self.votes[caption_id] = state

    def _publish(self):
        self._notifier.publish(self.snapshot())
