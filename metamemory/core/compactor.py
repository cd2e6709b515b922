"""HistoryCompactor: fold low-priority threads into summaries, keep the rest."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from ..token_counter import estimate_tokens
from ..types import (
    CompactedMessage,
    CompactionConfig,
    CompactionMetadata,
    CompactionOptions,
    CompactionResult,
    CompactionThresholds,
    Disposition,
    Message,
    MetamemoryState,
    Thread,
    ThreadClass,
    ThreadStatus,
)
from .thread_store import rank_threads
from .time_utils import EPOCH, ensure_utc, utcnow

logger = logging.getLogger(__name__)

MIDDLE_SECTION_LABEL = "Middle section of active thread"


def decide_disposition(
    thread: Thread,
    priority: int,
    thresholds: CompactionThresholds,
    preserved: bool = False,
) -> Disposition:
    """Preserve or summarize, from class, status, priority and the override."""
    if preserved:
        return Disposition.PRESERVE
    if thread.thread_class in (ThreadClass.EPHEMERAL, ThreadClass.COMPLETE):
        return Disposition.SUMMARIZE
    if thread.thread_class == ThreadClass.ACTIVE and thread.status == ThreadStatus.COMPLETE:
        return Disposition.SUMMARIZE
    if priority < thresholds.for_class(thread.thread_class):
        return Disposition.SUMMARIZE
    # core, or active class with active status
    return Disposition.PRESERVE


class HistoryCompactor:
    """Build a compacted view of a message history from thread state.

    ``compact_history`` is a pure function of its inputs: the state is only
    read, and every call returns a fresh CompactionResult.
    """

    def __init__(
        self,
        config: CompactionConfig | None = None,
        token_counter: Callable[[str], int] | None = None,
    ) -> None:
        self.config = config or CompactionConfig()
        self.token_counter = token_counter or estimate_tokens

    def compact_history(
        self,
        messages: list[Message],
        state: MetamemoryState,
        options: CompactionOptions | None = None,
        now: datetime | None = None,
    ) -> CompactionResult:
        options = options or CompactionOptions()
        now = ensure_utc(now) or utcnow()
        original_tokens = sum(self.token_counter(m.content) for m in messages)

        ranked = rank_threads(
            state.threads, now,
            preserve_ids=options.preserve_thread_ids,
            size_penalty_threshold=self.config.size_penalty_threshold,
        )

        # First occurrence of each id; a repeated id stays an orphan.
        position: dict[str, int] = {}
        for i, m in enumerate(messages):
            if m.id and m.id not in position:
                position[m.id] = i

        # Claim each message once, for the highest-priority thread holding it.
        claimed: set[int] = set()
        claims: list[tuple[Thread, int, list[int]]] = []
        for thread, priority in ranked:
            owned = sorted({
                position[mid]
                for mid in thread.messages
                if mid in position and position[mid] not in claimed
            })
            claimed.update(owned)
            if owned:
                claims.append((thread, priority, owned))

        orphans = [i for i in range(len(messages)) if i not in claimed]
        if messages and len(orphans) / len(messages) > self.config.orphan_ratio_threshold:
            logger.info(
                "Orphan ratio %d/%d exceeds %.2f; returning history uncompacted",
                len(orphans), len(messages), self.config.orphan_ratio_threshold,
            )
            return self.passthrough(messages, state, fallback=True)

        forward_time = self._forward_filled_times(messages)
        entries: list[tuple[tuple[datetime, int], CompactedMessage]] = []
        metadata = CompactionMetadata(original_count=len(messages), original_tokens=original_tokens)

        for thread, priority, owned in claims:
            preserved = thread.id in options.preserve_thread_ids
            disposition = decide_disposition(
                thread, priority, self.config.thresholds, preserved=preserved,
            )
            logger.debug(
                "Thread %s (%s/%s, priority %d, %d claimed): %s",
                thread.id, thread.thread_class.value, thread.status.value,
                priority, len(owned), disposition.value,
            )

            if disposition == Disposition.SUMMARIZE:
                metadata.threads_summarized.add(thread.id)
                compacted = self._summarize_thread(thread, [messages[i] for i in owned])
                entries.append(((forward_time[owned[0]], owned[0]), compacted))
                continue

            metadata.threads_preserved.add(thread.id)
            if thread.thread_class == ThreadClass.ACTIVE:
                entries.extend(self._shape_active(thread, owned, messages, state, forward_time, options))
            else:
                entries.extend(
                    ((forward_time[i], i), self._verbatim(messages[i], state, thread.id))
                    for i in owned
                )

        for i in orphans:
            entries.append(((forward_time[i], i), self._verbatim(messages[i], state, None)))

        entries.sort(key=lambda pair: pair[0])
        compacted_messages = [cm for _, cm in entries]

        metadata.compacted_count = len(compacted_messages)
        metadata.compacted_tokens = sum(self.token_counter(cm.content) for cm in compacted_messages)

        if options.target_token_count is not None and metadata.compacted_tokens > options.target_token_count:
            logger.info(
                "Compacted history is %d tokens, above the %d token target",
                metadata.compacted_tokens, options.target_token_count,
            )
        logger.info(
            "Compacted %d -> %d messages (%d -> %d tokens), %d preserved / %d summarized threads",
            metadata.original_count, metadata.compacted_count,
            metadata.original_tokens, metadata.compacted_tokens,
            len(metadata.threads_preserved), len(metadata.threads_summarized),
        )
        return CompactionResult(messages=compacted_messages, metadata=metadata)

    def passthrough(
        self,
        messages: list[Message],
        state: MetamemoryState,
        fallback: bool = False,
    ) -> CompactionResult:
        """The history as-is, one verbatim CompactedMessage per message."""
        compacted = [self._verbatim(m, state, None) for m in messages]
        tokens = sum(self.token_counter(m.content) for m in messages)
        return CompactionResult(
            messages=compacted,
            metadata=CompactionMetadata(
                original_count=len(messages),
                compacted_count=len(compacted),
                original_tokens=tokens,
                compacted_tokens=tokens,
                fallback=fallback,
            ),
        )

    # -- shaping --

    def _shape_active(
        self,
        thread: Thread,
        owned: list[int],
        messages: list[Message],
        state: MetamemoryState,
        forward_time: list[datetime],
        options: CompactionOptions,
    ) -> list[tuple[tuple[datetime, int], CompactedMessage]]:
        """Keep the head and tail verbatim; collapse a long middle."""
        head_n = self.config.head_messages
        tail_n = self.config.tail_messages

        def keep(indices: list[int]):
            return [((forward_time[i], i), self._verbatim(messages[i], state, thread.id)) for i in indices]

        if len(owned) <= head_n + tail_n:
            return keep(owned)

        head = owned[:head_n]
        middle = owned[head_n:len(owned) - tail_n]
        tail = owned[len(owned) - tail_n:]

        if len(middle) > self.config.middle_collapse_threshold and not options.aggressive_mode:
            section = self._section_summary(thread, [messages[i] for i in middle])
            return keep(head) + [((forward_time[middle[0]], middle[0]), section)] + keep(tail)
        return keep(head) + keep(middle) + keep(tail)

    @staticmethod
    def _verbatim(message: Message, state: MetamemoryState, thread_id: str | None) -> CompactedMessage:
        entry = state.metamemory.get(message.id) if message.id else None
        thread_ids = list(entry.thread_ids) if entry and entry.thread_ids else []
        if thread_id is not None and thread_id not in thread_ids:
            thread_ids.insert(0, thread_id)
        return CompactedMessage(
            role=message.role,
            content=message.content,
            timestamp=message.timestamp,
            thread_ids=thread_ids,
            is_compacted=False,
            message_id=message.id,
        )

    @staticmethod
    def _summarize_thread(thread: Thread, folded: list[Message]) -> CompactedMessage:
        if thread.summary:
            content = thread.summary
            if thread.key_points:
                content += "\nKey points: " + "; ".join(thread.key_points)
        else:
            topic = thread.id.replace("-", " ").lower()
            content = f"[{thread.name or thread.id}: {len(folded)} messages about {topic}]"
        return CompactedMessage(
            role="system",
            content=content,
            timestamp=folded[0].timestamp,
            thread_ids=[thread.id],
            is_compacted=True,
            original_message_ids=[m.id for m in folded],
        )

    @staticmethod
    def _section_summary(thread: Thread, folded: list[Message]) -> CompactedMessage:
        users = sum(1 for m in folded if m.role == "user")
        assistants = sum(1 for m in folded if m.role == "assistant")
        return CompactedMessage(
            role="system",
            content=f"[{MIDDLE_SECTION_LABEL}: {users} user messages, {assistants} assistant responses]",
            timestamp=folded[0].timestamp,
            thread_ids=[thread.id],
            is_compacted=True,
            original_message_ids=[m.id for m in folded],
        )

    @staticmethod
    def _forward_filled_times(messages: list[Message]) -> list[datetime]:
        """Each message's timestamp, or the previous known one, for ordering."""
        result: list[datetime] = []
        last = EPOCH
        for m in messages:
            ts = ensure_utc(m.timestamp)
            if ts is not None:
                last = ts
            result.append(last)
        return result
