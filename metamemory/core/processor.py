"""MessageProcessor: trigger evaluation, windowed tagging, and state merging."""

from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import TYPE_CHECKING

from ..types import (
    Message,
    MessageMetadataEntry,
    MetamemoryState,
    ProcessingConfig,
    ProcessingRound,
    ProcessingTrigger,
    TaggingRequest,
    ThreadStatus,
    TriggerType,
)
from .tagger import MessageTagger, normalize_tag
from .thread_store import ThreadStore
from .time_utils import ensure_utc, utcnow

if TYPE_CHECKING:
    from .summarizer import ThreadSummarizer

logger = logging.getLogger(__name__)


def newly_completed(prior: MetamemoryState, updated: MetamemoryState) -> list[str]:
    """Thread ids that are complete in *updated* but were not in *prior*."""
    result = []
    for thread_id, thread in updated.threads.items():
        if thread.status != ThreadStatus.COMPLETE:
            continue
        before = prior.threads.get(thread_id)
        if before is None or before.status != ThreadStatus.COMPLETE:
            result.append(thread_id)
    return result


def adopt_state(target: MetamemoryState, source: MetamemoryState) -> None:
    """Copy every field of *source* onto *target* so existing references see it."""
    target.metamemory = source.metamemory
    target.threads = source.threads
    target.last_processed_index = source.last_processed_index
    target.last_processed_time = source.last_processed_time
    target.processing = source.processing


class MessageProcessor:
    """Drive tagging rounds over a growing message history.

    A round is split into three steps so it can run off-thread:
    ``prepare_round`` snapshots what to send, ``run_round`` calls the tagger,
    and ``merge_round`` folds the result into a state as a pure function.
    ``process_messages`` chains them synchronously.
    """

    def __init__(self, config: ProcessingConfig, tagger: MessageTagger) -> None:
        self.config = config
        self.tagger = tagger

    # -- triggers --

    def should_process(
        self,
        messages: list[Message],
        state: MetamemoryState,
        trigger: ProcessingTrigger,
        now: datetime | None = None,
    ) -> bool:
        """Whether *trigger* fires. Never fires while a round is in flight."""
        if state.processing:
            return False

        if trigger.type == TriggerType.MANUAL:
            return True

        if trigger.type == TriggerType.INTERVAL:
            return len(messages) - state.last_processed_index >= self.config.process_interval

        if trigger.type == TriggerType.TIME_GAP:
            if state.last_processed_time is None:
                return True
            threshold = trigger.threshold if trigger.threshold is not None else self.config.time_gap_threshold
            now = ensure_utc(now) or utcnow()
            elapsed = (now - ensure_utc(state.last_processed_time)).total_seconds()
            return elapsed >= threshold

        if trigger.type == TriggerType.LARGE_MESSAGE:
            if not messages:
                return False
            threshold = trigger.threshold if trigger.threshold is not None else self.config.large_message_threshold
            return len(messages[-1].content) > threshold

        return False

    def detect_trigger(
        self,
        messages: list[Message],
        state: MetamemoryState,
        now: datetime | None = None,
    ) -> ProcessingTrigger | None:
        """Suggest the first trigger that would fire: interval, large message, time gap."""
        for trigger_type in (TriggerType.INTERVAL, TriggerType.LARGE_MESSAGE, TriggerType.TIME_GAP):
            trigger = ProcessingTrigger(type=trigger_type)
            if trigger_type == TriggerType.TIME_GAP and state.last_processed_time is None:
                # nothing processed yet: wait for an interval rather than fire on silence
                continue
            if self.should_process(messages, state, trigger, now=now):
                return trigger
        return None

    # -- round steps --

    def prepare_round(
        self,
        messages: list[Message],
        state: MetamemoryState,
        trigger: ProcessingTrigger,
    ) -> ProcessingRound:
        """Snapshot the window, vocabulary and prior metadata for one round."""
        window = messages[-self.config.window_size:] if self.config.window_size > 0 else []
        taggable = [m for m in window if m.id]
        if len(taggable) < len(window):
            logger.debug("Skipping %d window message(s) without ids", len(window) - len(taggable))

        store = ThreadStore(state)
        request = TaggingRequest(
            messages=list(taggable),
            vocabulary=store.vocabulary(self.config.max_threads_to_track),
            existing={
                m.id: copy.deepcopy(state.metamemory[m.id])
                for m in taggable
                if m.id in state.metamemory
            },
        )
        return ProcessingRound(trigger=trigger, end_index=len(messages), request=request)

    def _has_new_messages(self, round_: ProcessingRound) -> bool:
        return any(m.id not in round_.request.existing for m in round_.request.messages)

    def run_round(self, round_: ProcessingRound) -> ProcessingRound:
        """Call the tagger. Failures are recorded on the round, never raised."""
        if not round_.request.messages:
            return round_
        if round_.trigger.type == TriggerType.TIME_GAP and not self._has_new_messages(round_):
            # completion check only
            return round_

        try:
            round_.result = self.tagger.tag(round_.request)
        except Exception as e:
            logger.warning(f"Tagging round failed ({round_.trigger.type.value}): {e}")
            round_.error = str(e)
        return round_

    def merge_round(
        self,
        prior: MetamemoryState,
        round_: ProcessingRound,
        now: datetime | None = None,
    ) -> MetamemoryState:
        """Fold a finished round into a copy of *prior* and return the copy.

        Results are applied by message id, so merging against a state whose
        history has grown since the round started is safe.
        """
        if round_.failed:
            return self.fail_round(prior)

        now = ensure_utc(now) or utcnow()
        state = copy.deepcopy(prior)
        store = ThreadStore(state)
        by_id = {m.id: m for m in round_.request.messages}
        result = round_.result

        if result is not None:
            for message_id, tagged in result.message_tags.items():
                message = by_id.get(message_id)
                if message is None:
                    continue
                entry = state.metamemory.get(message_id)
                if entry is None:
                    entry = MessageMetadataEntry(timestamp=ensure_utc(message.timestamp))
                    state.metamemory[message_id] = entry
                if tagged.summary:
                    entry.summary = tagged.summary

                for tag in tagged.tags:
                    thread = store.get_or_create(
                        store.resolve(tag),
                        name=result.tag_names.get(tag),
                        thread_class=result.tag_classes.get(tag),
                        now=now,
                    )
                    entry.topic_tags.add(tag)
                    if thread.id not in entry.thread_ids:
                        entry.thread_ids.append(thread.id)
                    store.add_message(thread.id, message_id, message.timestamp, now=now)

            for target, sources in result.merges.items():
                store.merge_threads(normalize_tag(target), [normalize_tag(s) for s in sources], now=now)

            for tag in result.completed_tags:
                store.mark_complete(store.resolve(normalize_tag(tag)), now=now)

        if round_.trigger.type == TriggerType.TIME_GAP:
            for thread_id in store.find_inactive(now, self.config.thread_inactivity_timeout):
                store.mark_complete(thread_id, now=now)

        state.last_processed_index = max(prior.last_processed_index, round_.end_index)
        state.last_processed_time = now
        state.processing = False

        logger.info(
            "Processed %d message(s) via %s: %d thread(s), %d message(s) tracked",
            len(round_.request.messages), round_.trigger.type.value,
            len(state.threads), len(state.metamemory),
        )
        return state

    @staticmethod
    def fail_round(prior: MetamemoryState) -> MetamemoryState:
        """A failed round leaves state untouched apart from releasing the guard."""
        state = copy.deepcopy(prior)
        state.processing = False
        return state

    # -- synchronous entry point --

    def process_messages(
        self,
        messages: list[Message],
        state: MetamemoryState,
        trigger: ProcessingTrigger,
        summarizer: ThreadSummarizer | None = None,
        now: datetime | None = None,
    ) -> MetamemoryState:
        """Run one round if *trigger* fires and return the resulting state.

        When it does not fire, *state* itself is returned unchanged. Threads
        that become complete during the round are summarized if a summarizer
        is given.
        """
        if not self.should_process(messages, state, trigger, now=now):
            return state

        round_ = self.run_round(self.prepare_round(messages, state, trigger))
        updated = self.merge_round(state, round_, now=now)

        if summarizer is not None and not round_.failed:
            completed = newly_completed(state, updated)
            if completed:
                updated = summarizer.summarize_threads(updated, messages, thread_ids=completed, now=now)
        return updated
