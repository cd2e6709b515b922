"""ThreadSummarizer: structured per-thread summaries from a configurable LLM."""

from __future__ import annotations

import copy
import json
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta

from ..types import (
    LLMProvider,
    Message,
    MetamemoryState,
    SummarizationError,
    SummarizerConfig,
    Thread,
    ThreadClass,
    ThreadStatus,
    ThreadSummaryResult,
)
from .response_parsing import extract_json_object, string_list
from .tagger import parse_thread_class
from .thread_store import ThreadStore, classify_heuristic
from .time_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

SUMMARIZER_SYSTEM_PROMPT = (
    "You are a conversation archivist. Output valid JSON only. "
    "No markdown fences, no extra text."
)

THREAD_SUMMARY_PROMPT = """\
Summarize the following conversation thread.

Thread:
- ID: {thread_id}
- Name: {name}
- Current status: {status}
- Current class: {thread_class}
- Message count: {count}

Messages:
{messages_json}

Instructions:
1. Write a 2-3 sentence summary capturing the essence of the thread. Keep
   specific names, numbers and decisions.
2. Extract 3-5 key points or decisions.
3. List unresolved open questions, if any.
4. Classify the thread:
   - "core": system messages, constraints, fundamental setup
   - "active": currently being worked on
   - "complete": task finished
   - "ephemeral": social chat, temporary discussion
5. Give the status: "active" if work is ongoing, "complete" if it is done.
6. Rate importance 0-100 (100 = critical, 0 = can be discarded).

Respond with JSON:
{{
  "title": "...",
  "summary": "...",
  "key_points": ["..."],
  "open_questions": ["..."],
  "class": "active",
  "status": "active",
  "importance": 50
}}"""


def apply_summaries(
    prior: MetamemoryState,
    results: list[ThreadSummaryResult],
    now: datetime | None = None,
) -> MetamemoryState:
    """Fold summary results into a copy of *prior*.

    Status only ever moves active -> complete here; a summary never reopens
    a thread.
    """
    now = ensure_utc(now) or utcnow()
    state = copy.deepcopy(prior)
    store = ThreadStore(state)

    for result in results:
        thread = state.threads.get(result.thread_id)
        if thread is None:
            continue
        thread.summary = result.summary
        thread.key_points = list(result.key_points)
        thread.open_questions = list(result.open_questions)
        if result.title:
            thread.name = result.title
        if result.thread_class is not None:
            store.set_class(thread.id, result.thread_class)
        if result.status == ThreadStatus.COMPLETE:
            store.mark_complete(thread.id, now=now)

    return state


class ThreadSummarizer:
    """Summarize threads independently, concurrently when there are several."""

    def __init__(
        self,
        llm_provider: LLMProvider,
        config: SummarizerConfig,
        inactivity_timeout: float = 300.0,
    ) -> None:
        self.llm = llm_provider
        self.config = config
        self.inactivity_timeout = inactivity_timeout

    def select_threads(self, state: MetamemoryState, now: datetime | None = None) -> list[str]:
        """Threads worth summarizing: big enough, complete, or gone quiet.

        Complete threads that already carry a summary are skipped.
        """
        now = ensure_utc(now) or utcnow()
        store = ThreadStore(state)
        cutoff = timedelta(seconds=self.inactivity_timeout)
        selected = []
        for thread in state.threads.values():
            if thread.status == ThreadStatus.COMPLETE and thread.summary:
                continue
            if (
                len(thread.messages) >= self.config.min_messages
                or thread.status == ThreadStatus.COMPLETE
                or now - store.latest_activity(thread) > cutoff
            ):
                selected.append(thread.id)
        return selected

    def summarize_thread(self, thread: Thread, messages: list[Message]) -> ThreadSummaryResult:
        """Summarize one thread. Raises SummarizationError on failure."""
        if not messages:
            raise SummarizationError(f"Thread {thread.id} has no messages in the history")

        limit = self.config.max_content_chars
        payload = [
            {
                "role": m.role,
                "content": m.content if len(m.content) <= limit else m.content[:limit] + "...",
            }
            for m in messages
        ]
        prompt = THREAD_SUMMARY_PROMPT.format(
            thread_id=thread.id,
            name=thread.name,
            status=thread.status.value,
            thread_class=thread.thread_class.value,
            count=len(messages),
            messages_json=json.dumps(payload, indent=2, ensure_ascii=False),
        )

        try:
            response = self.llm.complete(
                system=SUMMARIZER_SYSTEM_PROMPT,
                user=prompt,
                max_tokens=self.config.max_tokens,
            )
        except Exception as e:
            raise SummarizationError(f"Summarizer model call failed for {thread.id}: {e}") from e

        data = extract_json_object(response)
        if data is None or not isinstance(data.get("summary"), str) or not data["summary"].strip():
            raise SummarizationError(f"Summarizer returned no usable summary for {thread.id}")

        thread_class = (
            parse_thread_class(data["class"]) if isinstance(data.get("class"), str) else None
        )
        if thread_class is None and thread.thread_class == ThreadClass.ACTIVE:
            thread_class = classify_heuristic(thread, messages)

        status = None
        if isinstance(data.get("status"), str) and data["status"].strip().lower() == "complete":
            status = ThreadStatus.COMPLETE

        importance = data.get("importance")
        if not isinstance(importance, (int, float)) or isinstance(importance, bool):
            importance = None

        title = data.get("title")
        return ThreadSummaryResult(
            thread_id=thread.id,
            summary=data["summary"].strip(),
            key_points=string_list(data.get("key_points", [])),
            open_questions=string_list(data.get("open_questions", [])),
            status=status,
            thread_class=thread_class,
            title=title.strip() if isinstance(title, str) else "",
            importance=int(max(0, min(100, importance))) if importance is not None else None,
        )

    def generate_summaries(
        self,
        state: MetamemoryState,
        messages: list[Message],
        thread_ids: list[str] | None = None,
        now: datetime | None = None,
    ) -> list[ThreadSummaryResult]:
        """Summarize the given (or selected) threads; failed threads are left out."""
        if thread_ids is None:
            thread_ids = self.select_threads(state, now=now)
        by_id = {m.id: m for m in messages if m.id}

        jobs: list[tuple[Thread, list[Message]]] = []
        for thread_id in thread_ids:
            thread = state.threads.get(thread_id)
            if thread is None:
                logger.debug("Unknown thread %s requested for summary", thread_id)
                continue
            members = [by_id[mid] for mid in thread.messages if mid in by_id]
            if members:
                jobs.append((thread, members))

        if not jobs:
            return []

        if len(jobs) == 1:
            thread, members = jobs[0]
            try:
                return [self.summarize_thread(thread, members)]
            except SummarizationError as e:
                logger.warning(f"Thread summary failed: {e}")
                return []

        max_workers = min(self.config.max_concurrent_summaries, len(jobs))
        results: list[ThreadSummaryResult | None] = [None] * len(jobs)
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_idx = {
                executor.submit(self.summarize_thread, thread, members): i
                for i, (thread, members) in enumerate(jobs)
            }
            for future in as_completed(future_to_idx):
                idx = future_to_idx[future]
                try:
                    results[idx] = future.result()
                except SummarizationError as e:
                    logger.warning(f"Thread summary failed: {e}")

        return [r for r in results if r is not None]

    def summarize_threads(
        self,
        state: MetamemoryState,
        messages: list[Message],
        thread_ids: list[str] | None = None,
        now: datetime | None = None,
    ) -> MetamemoryState:
        """Summarize threads and return an updated copy of *state*."""
        results = self.generate_summaries(state, messages, thread_ids=thread_ids, now=now)
        if not results:
            return state
        logger.info("Summarized %d thread(s): %s", len(results), ", ".join(r.thread_id for r in results))
        return apply_summaries(state, results, now=now)
