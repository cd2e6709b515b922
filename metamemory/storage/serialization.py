"""Plain-dict (JSON-ready) encoding of messages, state and compaction results.

Mappings become dicts, sets become sorted lists and timestamps become
ISO-8601 strings, so a snapshot survives process and task boundaries.
"""

from __future__ import annotations

from ..types import (
    CompactedMessage,
    CompactionResult,
    Message,
    MessageMetadataEntry,
    MetamemoryState,
    Thread,
    ThreadClass,
    ThreadStatus,
)
from .helpers import dt_to_str, str_to_dt

STATE_FORMAT_VERSION = 1


def message_to_dict(message: Message) -> dict:
    data = {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "timestamp": dt_to_str(message.timestamp),
    }
    if message.metadata:
        data["metadata"] = message.metadata
    return data


def message_from_dict(data: dict) -> Message:
    return Message(
        role=data["role"],
        content=data.get("content", ""),
        timestamp=str_to_dt(data.get("timestamp")),
        id=data.get("id"),
        metadata=data.get("metadata"),
    )


def _entry_to_dict(entry: MessageMetadataEntry) -> dict:
    return {
        "thread_ids": list(entry.thread_ids),
        "topic_tags": sorted(entry.topic_tags),
        "summary": entry.summary,
        "timestamp": dt_to_str(entry.timestamp),
    }


def _entry_from_dict(data: dict) -> MessageMetadataEntry:
    return MessageMetadataEntry(
        thread_ids=list(data.get("thread_ids", [])),
        topic_tags=set(data.get("topic_tags", [])),
        summary=data.get("summary", ""),
        timestamp=str_to_dt(data.get("timestamp")),
    )


def _thread_to_dict(thread: Thread) -> dict:
    return {
        "id": thread.id,
        "name": thread.name,
        "class": thread.thread_class.value,
        "status": thread.status.value,
        "messages": list(thread.messages),
        "summary": thread.summary,
        "key_points": list(thread.key_points),
        "open_questions": list(thread.open_questions),
        "created_at": dt_to_str(thread.created_at),
        "last_updated": dt_to_str(thread.last_updated),
        "completed_at": dt_to_str(thread.completed_at),
        "aliases": list(thread.aliases),
    }


def _thread_from_dict(thread_id: str, data: dict) -> Thread:
    thread = Thread(
        id=data.get("id", thread_id),
        name=data.get("name", ""),
        thread_class=ThreadClass(data.get("class", ThreadClass.ACTIVE.value)),
        status=ThreadStatus(data.get("status", ThreadStatus.ACTIVE.value)),
        messages=list(data.get("messages", [])),
        summary=data.get("summary"),
        key_points=list(data.get("key_points", [])),
        open_questions=list(data.get("open_questions", [])),
        completed_at=str_to_dt(data.get("completed_at")),
        aliases=list(data.get("aliases", [])),
    )
    if data.get("created_at"):
        thread.created_at = str_to_dt(data["created_at"])
    if data.get("last_updated"):
        thread.last_updated = str_to_dt(data["last_updated"])
    return thread


def state_to_dict(state: MetamemoryState) -> dict:
    return {
        "format_version": STATE_FORMAT_VERSION,
        "metamemory": {mid: _entry_to_dict(e) for mid, e in state.metamemory.items()},
        "threads": {tid: _thread_to_dict(t) for tid, t in state.threads.items()},
        "last_processed_index": state.last_processed_index,
        "last_processed_time": dt_to_str(state.last_processed_time),
        "processing": state.processing,
    }


def state_from_dict(data: dict, reset_guard: bool = True) -> MetamemoryState:
    """Rebuild a state from ``state_to_dict`` output.

    A restored state has no round in flight, so the processing guard is
    cleared unless *reset_guard* is False.
    """
    return MetamemoryState(
        metamemory={mid: _entry_from_dict(e) for mid, e in data.get("metamemory", {}).items()},
        threads={tid: _thread_from_dict(tid, t) for tid, t in data.get("threads", {}).items()},
        last_processed_index=data.get("last_processed_index", 0),
        last_processed_time=str_to_dt(data.get("last_processed_time")),
        processing=False if reset_guard else bool(data.get("processing", False)),
    )


def compacted_message_to_dict(message: CompactedMessage) -> dict:
    data = {
        "role": message.role,
        "content": message.content,
        "timestamp": dt_to_str(message.timestamp),
        "thread_ids": list(message.thread_ids),
        "is_compacted": message.is_compacted,
    }
    if message.is_compacted:
        data["original_message_ids"] = list(message.original_message_ids or [])
    elif message.message_id is not None:
        data["id"] = message.message_id
    return data


def compaction_result_to_dict(result: CompactionResult) -> dict:
    meta = result.metadata
    return {
        "messages": [compacted_message_to_dict(m) for m in result.messages],
        "metadata": {
            "original_count": meta.original_count,
            "compacted_count": meta.compacted_count,
            "original_tokens": meta.original_tokens,
            "compacted_tokens": meta.compacted_tokens,
            "threads_preserved": sorted(meta.threads_preserved),
            "threads_summarized": sorted(meta.threads_summarized),
            "fallback": meta.fallback,
        },
    }
