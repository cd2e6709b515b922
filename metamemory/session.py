"""MetamemorySession: one task's history, state, and background worker."""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import Future, ThreadPoolExecutor

from .core.processor import adopt_state
from .engine import Metamemory
from .storage.filesystem import FilesystemStateStore
from .types import (
    CompactionOptions,
    CompactionResult,
    Message,
    MetamemoryState,
    ProcessingTrigger,
)

logger = logging.getLogger(__name__)


class MetamemorySession:
    """Per-task wrapper around a shared Metamemory.

    Each session owns an isolated MetamemoryState and a single-worker pool,
    so rounds for one task run in order and never touch another task's
    threads. ``fire_processing`` returns immediately; ``wait_for_processing``
    blocks until the pending round has been folded in.
    """

    def __init__(
        self,
        metamemory: Metamemory,
        task_id: str | None = None,
        state: MetamemoryState | None = None,
        store: FilesystemStateStore | None = None,
    ) -> None:
        self.metamemory = metamemory
        self.task_id = task_id or str(uuid.uuid4())
        self.state = state or MetamemoryState()
        self.messages: list[Message] = []
        self.store = store
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"metamemory-{self.task_id[:8]}")
        self._pending: Future | None = None

    @classmethod
    def resume(
        cls,
        metamemory: Metamemory,
        task_id: str,
        store: FilesystemStateStore,
        messages: list[Message] | None = None,
    ) -> MetamemorySession:
        """Rebuild a session from the store's snapshot (empty state if none)."""
        state = store.load_state(task_id)
        if state is None:
            logger.info("No saved state for task %s; starting fresh", task_id)
        session = cls(metamemory, task_id=task_id, state=state, store=store)
        if messages:
            session.messages.extend(messages)
        return session

    def append(self, *messages: Message) -> None:
        self.messages.extend(messages)

    def fire_processing(self, trigger: ProcessingTrigger | None = None) -> Future | None:
        """Submit a tagging round for the current history, if one fires."""
        future = self.metamemory.process_in_background(
            self.messages, self.state, trigger=trigger, executor=self._pool,
        )
        if future is not None:
            self._pending = future
        return future

    def wait_for_processing(self) -> None:
        """Block until the pending round finishes."""
        if self._pending is not None:
            self._pending.result()  # raises if the round crashed
            self._pending = None

    def process(self, trigger: ProcessingTrigger | None = None) -> MetamemoryState:
        """Run a round synchronously after any pending one."""
        self.wait_for_processing()
        updated = self.metamemory.process(self.messages, self.state, trigger)
        if updated is not self.state:
            adopt_state(self.state, updated)
        return self.state

    def summarize(self, thread_ids: list[str] | None = None) -> MetamemoryState:
        self.wait_for_processing()
        updated = self.metamemory.summarize(self.state, self.messages, thread_ids=thread_ids)
        if updated is not self.state:
            adopt_state(self.state, updated)
        return self.state

    def compact(self, options: CompactionOptions | None = None) -> CompactionResult:
        return self.metamemory.compact(self.messages, self.state, options)

    def save(self) -> None:
        if self.store is None:
            raise ValueError("Session has no state store configured")
        self.wait_for_processing()
        self.store.save_state(self.task_id, self.state)

    def close(self) -> None:
        """Finish pending work, persist if a store is set, release the worker."""
        try:
            self.wait_for_processing()
            if self.store is not None:
                self.store.save_state(self.task_id, self.state)
        finally:
            self._pool.shutdown(wait=True)
