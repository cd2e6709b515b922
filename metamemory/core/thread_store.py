"""ThreadStore: thread table, lifecycle transitions, and priority scoring."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta

from ..types import (
    Message,
    MetamemoryState,
    Thread,
    ThreadClass,
    ThreadStatus,
)
from .time_utils import EPOCH, ensure_utc, utcnow

logger = logging.getLogger(__name__)

CLASS_WEIGHTS: dict[ThreadClass, int] = {
    ThreadClass.CORE: 100,
    ThreadClass.ACTIVE: 80,
    ThreadClass.COMPLETE: 60,
    ThreadClass.EPHEMERAL: 20,
}

RECENT_WINDOW = timedelta(hours=1)
RECENT_BOOST = 20
DAY_WINDOW = timedelta(hours=24)
DAY_BOOST = 10
SIZE_PENALTY = 10
DEFAULT_SIZE_PENALTY_THRESHOLD = 50
MAX_PRIORITY = 100

EPHEMERAL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^(hi|hello|hey|greetings|good\s+(morning|afternoon|evening))[\s!.,]*$",
        r"^(thanks|thank\s+you|ty|thx)[\s!.,]*$",
        r"^(bye|goodbye|see\s+you|later|ttyl)[\s!.,]*$",
        r"^(how\s+are\s+you|how's\s+it\s+going|what's\s+up)[\s!?.,]*$",
        r"^(yes|no|ok|okay|sure|got\s+it|understood|makes\s+sense)[\s!.,]*$",
        r"^(great|nice|awesome|cool|perfect|excellent)[\s!.,]*$",
    )
]
SOCIAL_NAME_PATTERN = re.compile(r"chat|social|greeting|small[\s-]*talk|farewell", re.IGNORECASE)


def is_social_chatter(text: str) -> bool:
    """True for greetings, thanks, farewells and bare acknowledgements."""
    stripped = text.strip()
    return any(p.match(stripped) for p in EPHEMERAL_PATTERNS)


def thread_name_for(tag: str) -> str:
    """Human-readable label for a topic tag: 'api-design' -> 'Api Design'."""
    words = [w for w in re.split(r"[-_\s]+", tag) if w]
    return " ".join(w.capitalize() for w in words) or tag


def compute_priority(
    thread: Thread,
    now: datetime | None = None,
    preserved: bool = False,
    size_penalty_threshold: int = DEFAULT_SIZE_PENALTY_THRESHOLD,
) -> int:
    """Score a thread in [0, 100]: class weight + recency boost - size penalty."""
    if preserved:
        return MAX_PRIORITY

    now = ensure_utc(now) or utcnow()
    score = CLASS_WEIGHTS[thread.thread_class]

    age = now - ensure_utc(thread.last_updated)
    if age <= RECENT_WINDOW:
        score += RECENT_BOOST
    elif age <= DAY_WINDOW:
        score += DAY_BOOST

    if len(thread.messages) > size_penalty_threshold:
        score -= SIZE_PENALTY

    return max(0, min(MAX_PRIORITY, score))


def rank_threads(
    threads: dict[str, Thread],
    now: datetime | None = None,
    preserve_ids: set[str] | frozenset[str] = frozenset(),
    size_penalty_threshold: int = DEFAULT_SIZE_PENALTY_THRESHOLD,
) -> list[tuple[Thread, int]]:
    """Threads with their priorities, highest first; ties keep insertion order."""
    scored = [
        (
            thread,
            compute_priority(
                thread, now,
                preserved=thread.id in preserve_ids,
                size_penalty_threshold=size_penalty_threshold,
            ),
        )
        for thread in threads.values()
    ]
    # sorted() is stable, so equal scores keep dict order
    return sorted(scored, key=lambda pair: pair[1], reverse=True)


def classify_heuristic(thread: Thread, messages: list[Message]) -> ThreadClass:
    """Infer a class from thread content when no model proposal is available."""
    if any(m.role in ("system", "developer") for m in messages):
        return ThreadClass.CORE

    if thread.status == ThreadStatus.COMPLETE:
        return ThreadClass.COMPLETE

    if messages:
        chatter = sum(1 for m in messages if is_social_chatter(m.content))
        avg_length = sum(len(m.content) for m in messages) / len(messages)
        if chatter / len(messages) > 0.6 or (len(messages) < 5 and avg_length < 50):
            return ThreadClass.EPHEMERAL

    if SOCIAL_NAME_PATTERN.search(thread.name or thread.id):
        return ThreadClass.EPHEMERAL

    return ThreadClass.ACTIVE


class ThreadStore:
    """Mutating operations over the thread table of one MetamemoryState.

    The store never copies; callers that need a pure update hand it a copy.
    """

    def __init__(self, state: MetamemoryState) -> None:
        self.state = state

    @property
    def threads(self) -> dict[str, Thread]:
        return self.state.threads

    def get(self, thread_id: str) -> Thread | None:
        return self.state.threads.get(thread_id)

    def get_or_create(
        self,
        thread_id: str,
        name: str | None = None,
        thread_class: ThreadClass | None = None,
        now: datetime | None = None,
    ) -> Thread:
        """Return the thread keyed by *thread_id*, creating it on first sight.

        The name and class proposals only apply to new threads; an existing
        thread keeps its identity.
        """
        thread = self.state.threads.get(thread_id)
        if thread is not None:
            return thread
        now = ensure_utc(now) or utcnow()
        thread = Thread(
            id=thread_id,
            name=name or thread_name_for(thread_id),
            thread_class=thread_class or ThreadClass.ACTIVE,
            created_at=now,
            last_updated=now,
        )
        self.state.threads[thread_id] = thread
        logger.debug("Created thread %s (%s)", thread_id, thread.thread_class.value)
        return thread

    def _member_time(self, message_id: str) -> datetime | None:
        entry = self.state.metamemory.get(message_id)
        return ensure_utc(entry.timestamp) if entry else None

    def add_message(
        self,
        thread_id: str,
        message_id: str,
        timestamp: datetime | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Add a member to a thread in chronological position.

        Returns False if the message was already a member. A complete thread
        whose new member is newer than its completion is reactivated.
        """
        thread = self.state.threads[thread_id]
        if message_id in thread.messages:
            return False

        now = ensure_utc(now) or utcnow()
        timestamp = ensure_utc(timestamp)
        self._insert_member(thread, message_id, timestamp)
        thread.last_updated = now

        if thread.status == ThreadStatus.COMPLETE:
            completed_at = ensure_utc(thread.completed_at) or EPOCH
            if (timestamp or now) > completed_at:
                thread.status = ThreadStatus.ACTIVE
                thread.completed_at = None
                logger.info("Reactivated thread %s (new message %s)", thread_id, message_id)
        return True

    def _insert_member(self, thread: Thread, message_id: str, timestamp: datetime | None) -> None:
        position = len(thread.messages)
        if timestamp is not None:
            while position > 0:
                prev = self._member_time(thread.messages[position - 1])
                if prev is None or prev <= timestamp:
                    break
                position -= 1
        thread.messages.insert(position, message_id)

    def resolve(self, tag: str) -> str:
        """The thread id a tag maps to, following merges."""
        if tag in self.state.threads:
            return tag
        for thread in self.state.threads.values():
            if tag in thread.aliases:
                return thread.id
        return tag

    def merge_threads(
        self,
        target_id: str,
        source_ids: list[str],
        now: datetime | None = None,
    ) -> list[str]:
        """Fold source threads into *target_id* and delete them.

        Members keep chronological order without duplicates, and each
        metadata entry points at the target instead of the source. The
        source tags become aliases of the target so later rounds that use
        them land in the same thread. The target's status is left alone.
        Returns the ids actually merged.
        """
        target_id = self.resolve(target_id)
        target = self.state.threads.get(target_id)
        if target is None:
            logger.debug("Merge target %s does not exist; skipping", target_id)
            return []

        now = ensure_utc(now) or utcnow()
        merged = []
        for source_id in source_ids:
            source_id = self.resolve(source_id)
            source = self.state.threads.get(source_id)
            if source is None or source_id == target_id:
                continue

            for message_id in source.messages:
                if message_id not in target.messages:
                    self._insert_member(target, message_id, self._member_time(message_id))
                entry = self.state.metamemory.get(message_id)
                if entry is None:
                    continue
                thread_ids = [target_id if tid == source_id else tid for tid in entry.thread_ids]
                entry.thread_ids = list(dict.fromkeys(thread_ids))

            for alias in [source_id, *source.aliases]:
                if alias not in target.aliases:
                    target.aliases.append(alias)
            target.last_updated = now
            del self.state.threads[source_id]
            merged.append(source_id)
            logger.info("Merged thread %s into %s (%d message(s))", source_id, target_id, len(source.messages))
        return merged

    def mark_complete(self, thread_id: str, now: datetime | None = None) -> bool:
        """Move a thread to complete status. Returns False if it already was."""
        thread = self.state.threads.get(thread_id)
        if thread is None or thread.status == ThreadStatus.COMPLETE:
            return False
        thread.status = ThreadStatus.COMPLETE
        thread.completed_at = ensure_utc(now) or utcnow()
        logger.info("Thread %s marked complete", thread_id)
        return True

    def set_class(self, thread_id: str, thread_class: ThreadClass) -> None:
        thread = self.state.threads.get(thread_id)
        if thread is not None and thread.thread_class != thread_class:
            logger.debug(
                "Thread %s class %s -> %s",
                thread_id, thread.thread_class.value, thread_class.value,
            )
            thread.thread_class = thread_class

    def latest_activity(self, thread: Thread) -> datetime:
        """Timestamp of the newest member message, else last_updated."""
        times = [t for t in (self._member_time(mid) for mid in thread.messages) if t is not None]
        if times:
            return max(times)
        return ensure_utc(thread.last_updated)

    def find_inactive(self, now: datetime, timeout_seconds: float) -> list[str]:
        """Ids of active-status threads whose newest member is older than the timeout."""
        now = ensure_utc(now)
        cutoff = timedelta(seconds=timeout_seconds)
        return [
            thread.id
            for thread in self.state.threads.values()
            if thread.status == ThreadStatus.ACTIVE
            and now - self.latest_activity(thread) > cutoff
        ]

    def vocabulary(self, limit: int) -> dict[str, ThreadClass]:
        """Tag -> class for the *limit* most recently updated threads."""
        recent = sorted(
            self.state.threads.values(),
            key=lambda t: ensure_utc(t.last_updated),
            reverse=True,
        )[:limit]
        return {t.id: t.thread_class for t in recent}
