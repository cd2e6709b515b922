"""metamemory: topic-thread tracking and history compaction for LLM conversations."""

from .config import load_config
from .engine import Metamemory
from .session import MetamemorySession
from .types import (
    CompactedMessage,
    CompactionOptions,
    CompactionResult,
    ConfigValidationError,
    Message,
    MetamemoryConfig,
    MetamemoryState,
    ProcessingTrigger,
    Thread,
    ThreadClass,
    ThreadStatus,
    TriggerType,
)

__version__ = "0.1.0"

__all__ = [
    "Metamemory",
    "MetamemorySession",
    "load_config",
    "CompactedMessage",
    "CompactionOptions",
    "CompactionResult",
    "ConfigValidationError",
    "Message",
    "MetamemoryConfig",
    "MetamemoryState",
    "ProcessingTrigger",
    "Thread",
    "ThreadClass",
    "ThreadStatus",
    "TriggerType",
]
