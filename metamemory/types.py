"""All dataclasses, enums, Protocols, and errors for metamemory."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol, runtime_checkable


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ThreadClass(str, Enum):
    """Static importance tier of a thread."""
    CORE = "core"           # instructions, constraints, setup
    ACTIVE = "active"       # work in progress
    COMPLETE = "complete"   # finished task
    EPHEMERAL = "ephemeral" # greetings, thanks, small talk


class ThreadStatus(str, Enum):
    """Lifecycle state of a thread, independent of its class."""
    ACTIVE = "active"
    COMPLETE = "complete"


class TriggerType(str, Enum):
    INTERVAL = "interval"
    TIME_GAP = "time_gap"
    LARGE_MESSAGE = "large_message"
    MANUAL = "manual"


class Disposition(str, Enum):
    """What the compactor does with a thread's claimed messages."""
    PRESERVE = "preserve"
    SUMMARIZE = "summarize"


# ---------------------------------------------------------------------------
# Messages & State
# ---------------------------------------------------------------------------

@dataclass
class Message:
    role: str  # "user", "assistant", "system", "developer", "tool"
    content: str
    timestamp: datetime | None = None
    id: str | None = None  # messages without an id are never tagged
    metadata: dict | None = None


@dataclass
class MessageMetadataEntry:
    """Tagging outcome for one message id."""
    thread_ids: list[str] = field(default_factory=list)  # ordered, no duplicates
    topic_tags: set[str] = field(default_factory=set)
    summary: str = ""
    timestamp: datetime | None = None  # copied from the source message


@dataclass
class Thread:
    id: str  # the topic tag
    name: str = ""
    thread_class: ThreadClass = ThreadClass.ACTIVE
    status: ThreadStatus = ThreadStatus.ACTIVE
    messages: list[str] = field(default_factory=list)  # chronological member ids
    summary: str | None = None
    key_points: list[str] = field(default_factory=list)
    open_questions: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    aliases: list[str] = field(default_factory=list)  # tags of threads merged into this one


@dataclass
class MetamemoryState:
    """Per-task aggregate. Dict insertion order is kept for tie-breaking."""
    metamemory: dict[str, MessageMetadataEntry] = field(default_factory=dict)
    threads: dict[str, Thread] = field(default_factory=dict)
    last_processed_index: int = 0
    last_processed_time: datetime | None = None
    processing: bool = False


# ---------------------------------------------------------------------------
# Processing & Tagging
# ---------------------------------------------------------------------------

@dataclass
class ProcessingTrigger:
    type: TriggerType
    threshold: float | None = None  # seconds for time_gap, characters for large_message


@dataclass
class TaggingRequest:
    messages: list[Message]
    vocabulary: dict[str, ThreadClass] = field(default_factory=dict)  # tag -> class
    existing: dict[str, MessageMetadataEntry] = field(default_factory=dict)


@dataclass
class MessageTags:
    tags: list[str] = field(default_factory=list)
    summary: str = ""


@dataclass
class TaggingResult:
    message_tags: dict[str, MessageTags] = field(default_factory=dict)
    tag_classes: dict[str, ThreadClass] = field(default_factory=dict)  # proposals for new tags
    tag_names: dict[str, str] = field(default_factory=dict)
    completed_tags: list[str] = field(default_factory=list)  # threads the tagger closed
    merges: dict[str, list[str]] = field(default_factory=dict)  # target tag -> duplicate tags
    source: str = "llm"  # "llm" or "keyword"


@dataclass
class ProcessingRound:
    """One tagging round, from dispatch to (possibly failed) result."""
    trigger: ProcessingTrigger
    end_index: int
    request: TaggingRequest
    result: TaggingResult | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class ThreadSummaryResult:
    thread_id: str
    summary: str
    key_points: list[str] = field(default_factory=list)
    open_questions: list[str] = field(default_factory=list)
    status: ThreadStatus | None = None
    thread_class: ThreadClass | None = None
    title: str = ""
    importance: int | None = None


# ---------------------------------------------------------------------------
# Compaction
# ---------------------------------------------------------------------------

@dataclass
class CompactionOptions:
    aggressive_mode: bool = False
    target_token_count: int | None = None
    preserve_thread_ids: set[str] = field(default_factory=set)


@dataclass
class CompactedMessage:
    role: str
    content: str
    timestamp: datetime | None = None
    thread_ids: list[str] = field(default_factory=list)
    is_compacted: bool = False
    original_message_ids: list[str] | None = None  # only when is_compacted
    message_id: str | None = None  # source id of a verbatim message


@dataclass
class CompactionMetadata:
    original_count: int = 0
    compacted_count: int = 0
    original_tokens: int = 0
    compacted_tokens: int = 0
    threads_preserved: set[str] = field(default_factory=set)
    threads_summarized: set[str] = field(default_factory=set)
    fallback: bool = False  # orphan ratio too high; history returned as-is


@dataclass
class CompactionResult:
    messages: list[CompactedMessage] = field(default_factory=list)
    metadata: CompactionMetadata = field(default_factory=CompactionMetadata)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class MetamemoryError(Exception):
    pass


class ConfigValidationError(MetamemoryError):
    def __init__(self, errors: list[str]):
        super().__init__("Invalid metamemory configuration: " + "; ".join(errors))
        self.errors = errors


class TaggingError(MetamemoryError):
    pass


class SummarizationError(MetamemoryError):
    pass


class LLMProviderError(MetamemoryError):
    def __init__(self, message: str, provider: str, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


# ---------------------------------------------------------------------------
# LLM Provider
# ---------------------------------------------------------------------------

@runtime_checkable
class LLMProvider(Protocol):
    def complete(self, system: str, user: str, max_tokens: int) -> str: ...


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class CompactionThresholds:
    """Per-class priority floor; a thread scoring below it is summarized."""
    core: int = 100
    active: int = 80
    complete: int = 60
    ephemeral: int = 20

    def for_class(self, thread_class: ThreadClass) -> int:
        return getattr(self, thread_class.value)


@dataclass
class ProcessingConfig:
    window_size: int = 20
    process_interval: int = 5
    thread_inactivity_timeout: float = 300.0  # seconds
    max_threads_to_track: int = 50
    time_gap_threshold: float = 60.0  # seconds
    large_message_threshold: int = 2000  # characters


@dataclass
class CompactionConfig:
    thresholds: CompactionThresholds = field(default_factory=CompactionThresholds)
    orphan_ratio_threshold: float = 0.5
    size_penalty_threshold: int = 50
    head_messages: int = 3
    tail_messages: int = 5
    middle_collapse_threshold: int = 10


@dataclass
class KeywordTagConfig:
    """Keyword/regex-based tag configuration (deterministic fallback)."""
    tag_keywords: dict[str, list[str]] = field(default_factory=dict)
    tag_patterns: dict[str, list[str]] = field(default_factory=dict)
    tag_classes: dict[str, str] = field(default_factory=dict)


@dataclass
class TaggerConfig:
    type: str = "keyword"  # "llm" or "keyword"
    provider: str = ""
    model: str = ""
    max_tokens: int = 4096
    max_content_chars: int = 500
    disable_thinking: bool = False  # prepend /no_think (qwen3)
    keyword_fallback: KeywordTagConfig | None = None


@dataclass
class SummarizerConfig:
    provider: str = ""  # empty = no LLM summaries
    model: str = ""
    max_tokens: int = 1000
    temperature: float = 0.3
    min_messages: int = 5
    max_content_chars: int = 1000
    max_concurrent_summaries: int = 4
    summarize_on_complete: bool = True


@dataclass
class StorageConfig:
    root: str = ".metamemory/state"


@dataclass
class MetamemoryConfig:
    version: str = "0.1"
    enabled: bool = True
    token_counter: str = "estimate"
    processing: ProcessingConfig = field(default_factory=ProcessingConfig)
    compaction: CompactionConfig = field(default_factory=CompactionConfig)
    tagger: TaggerConfig = field(default_factory=TaggerConfig)
    summarizer: SummarizerConfig = field(default_factory=SummarizerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    providers: dict[str, dict] = field(default_factory=dict)
