"""Shared fixtures for metamemory tests."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from metamemory.types import (
    KeywordTagConfig,
    Message,
    MessageMetadataEntry,
    MessageTags,
    MetamemoryState,
    TaggingRequest,
    TaggingResult,
    Thread,
    ThreadClass,
    ThreadStatus,
)


SUMMARY_RESPONSE = (
    '{"title": "Billing Bug", "summary": "Tracked down a rounding bug in invoice totals.", '
    '"key_points": ["Totals used float math", "Switched to Decimal"], '
    '"open_questions": [], "class": "complete", "status": "complete", "importance": 70}'
)


@pytest.fixture
def ts() -> datetime:
    return datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def keyword_config() -> KeywordTagConfig:
    return KeywordTagConfig(
        tag_keywords={
            "billing": ["invoice", "refund", "charge"],
            "deploy": ["deploy", "rollout", "kubernetes"],
        },
        tag_patterns={
            "billing": [r"\bINV-\d+\b"],
        },
        tag_classes={"deploy": "core"},
    )


@pytest.fixture
def support_messages(ts) -> list[Message]:
    return [
        Message(role="user", content="Hello!", timestamp=ts, id="msg1"),
        Message(role="user", content="Invoice INV-2041 shows the wrong total.", timestamp=ts + timedelta(seconds=30), id="msg2"),
        Message(role="assistant", content="The invoice rounds each line before summing; I'll fix that.", timestamp=ts + timedelta(minutes=1), id="msg3"),
        Message(role="user", content="Also, can we deploy the fix to kubernetes tonight?", timestamp=ts + timedelta(minutes=2), id="msg4"),
        Message(role="assistant", content="Yes, it is scheduled for 22:00 once CI is green.", timestamp=ts + timedelta(minutes=3), id="msg5"),
    ]


def make_conversation(ts: datetime, count: int, start: int = 1, step_seconds: int = 30) -> list[Message]:
    """Alternating user/assistant messages msg{start}..msg{start+count-1}."""
    messages = []
    for offset in range(count):
        n = start + offset
        role = "user" if offset % 2 == 0 else "assistant"
        messages.append(Message(
            role=role,
            content=f"{role} message number {n} about the ongoing work item",
            timestamp=ts + timedelta(seconds=step_seconds * (n - 1)),
            id=f"msg{n}",
        ))
    return messages


def build_state(
    messages: list[Message],
    threads: dict[str, list[str]],
    classes: dict[str, ThreadClass] | None = None,
    statuses: dict[str, ThreadStatus] | None = None,
    last_updated: datetime | None = None,
) -> MetamemoryState:
    """A state whose threads hold the given message ids, in message order."""
    classes = classes or {}
    statuses = statuses or {}
    by_id = {m.id: m for m in messages if m.id}
    updated = last_updated or datetime.now(timezone.utc)

    state = MetamemoryState()
    for thread_id, member_ids in threads.items():
        state.threads[thread_id] = Thread(
            id=thread_id,
            name=thread_id.replace("-", " ").title(),
            thread_class=classes.get(thread_id, ThreadClass.ACTIVE),
            status=statuses.get(thread_id, ThreadStatus.ACTIVE),
            messages=list(member_ids),
            created_at=updated,
            last_updated=updated,
        )
        for mid in member_ids:
            entry = state.metamemory.setdefault(
                mid,
                MessageMetadataEntry(timestamp=by_id[mid].timestamp if mid in by_id else None),
            )
            entry.thread_ids.append(thread_id)
            entry.topic_tags.add(thread_id)
    return state


class MockLLMProvider:
    """Mock LLM provider for testing tagging and summaries."""

    def __init__(self, response: str | None = None, responder=None, error: Exception | None = None):
        self.calls: list[dict] = []
        self.response = response or SUMMARY_RESPONSE
        self.responder = responder
        self.error = error
        self._lock = threading.Lock()

    def complete(self, system: str, user: str, max_tokens: int) -> str:
        with self._lock:
            self.calls.append({"system": system, "user": user, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        if self.responder is not None:
            return self.responder(system, user)
        return self.response


class ScriptedTagger:
    """Tagger that assigns tags from a fixed id -> tags table."""

    def __init__(
        self,
        tags_by_id: dict[str, list[str]] | None = None,
        default_tags: list[str] | None = None,
        classes: dict[str, ThreadClass] | None = None,
        completed: list[str] | None = None,
        merges: dict[str, list[str]] | None = None,
        error: Exception | None = None,
        gate: threading.Event | None = None,
    ):
        self.tags_by_id = tags_by_id or {}
        self.default_tags = default_tags or ["general"]
        self.classes = classes or {}
        self.completed = completed or []
        self.merges = merges or {}
        self.error = error
        self.gate = gate
        self.calls: list[TaggingRequest] = []

    def tag(self, request: TaggingRequest) -> TaggingResult:
        self.calls.append(request)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error

        result = TaggingResult(source="mock")
        for m in request.messages:
            tags = self.tags_by_id.get(m.id, self.default_tags)
            result.message_tags[m.id] = MessageTags(tags=list(tags), summary=m.content[:40])
            for tag in tags:
                if tag in self.classes and tag not in request.vocabulary:
                    result.tag_classes[tag] = self.classes[tag]
        result.completed_tags = list(self.completed)
        result.merges = {k: list(v) for k, v in self.merges.items()}
        return result
