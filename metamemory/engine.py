"""Metamemory: facade wiring tagger, processor, summarizer and compactor together."""

from __future__ import annotations

import copy
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable

from .config import apply_options, load_config, validate_config
from .core.compactor import HistoryCompactor
from .core.processor import MessageProcessor, adopt_state, newly_completed
from .core.summarizer import ThreadSummarizer, apply_summaries
from .core.tagger import MessageTagger, build_tagger
from .core.time_utils import utcnow
from .token_counter import create_token_counter
from .types import (
    CompactionOptions,
    CompactionResult,
    ConfigValidationError,
    LLMProvider,
    Message,
    MetamemoryConfig,
    MetamemoryState,
    ProcessingRound,
    ProcessingTrigger,
)

logger = logging.getLogger(__name__)

StateCallback = Callable[[MetamemoryState], None]


class Metamemory:
    """Bounded-memory thread tracking for one agent.

    Usage:
        mm = Metamemory(config_path="./metamemory.yaml")
        state = MetamemoryState()

        # After each turn
        mm.process_in_background(history, state)

        # Before sending history to the model
        result = mm.compact(history, state)

    One Metamemory may serve many tasks, but each task owns its own
    MetamemoryState (see MetamemorySession). The background worker pool is
    released by ``close()``, or on leaving a ``with`` block.
    """

    def __init__(
        self,
        config_path: str | Path | None = None,
        config: MetamemoryConfig | None = None,
        tagger: MessageTagger | None = None,
        summarizer: ThreadSummarizer | None = None,
        llm_provider: LLMProvider | None = None,
        max_workers: int = 2,
    ) -> None:
        self.config = config or load_config(config_path)
        errors = validate_config(self.config)
        if errors:
            raise ConfigValidationError(errors)

        self._enabled = self.config.enabled
        self._token_counter = create_token_counter(self.config.token_counter)
        self._guard_lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="metamemory")

        self._init_tagger(tagger, llm_provider)
        self._init_summarizer(summarizer, llm_provider)
        self._init_processor()
        self._init_compactor()

    # -- wiring --

    def _init_tagger(self, tagger: MessageTagger | None, llm_provider: LLMProvider | None) -> None:
        if tagger is not None:
            self._tagger = tagger
            return
        provider = llm_provider
        if provider is None and self.config.tagger.type == "llm":
            name = self.config.tagger.provider
            provider = self._build_provider(name, self.config.providers.get(name, {}), self.config.tagger.model)
        self._tagger = build_tagger(self.config.tagger, provider)

    def _init_summarizer(self, summarizer: ThreadSummarizer | None, llm_provider: LLMProvider | None) -> None:
        if summarizer is not None:
            self._summarizer: ThreadSummarizer | None = summarizer
            return
        provider = llm_provider
        name = self.config.summarizer.provider
        if provider is None and name:
            provider = self._build_provider(name, self.config.providers.get(name, {}), self.config.summarizer.model)
        self._summarizer = None
        if provider is not None:
            self._summarizer = ThreadSummarizer(
                llm_provider=provider,
                config=self.config.summarizer,
                inactivity_timeout=self.config.processing.thread_inactivity_timeout,
            )

    def _init_processor(self) -> None:
        self._processor = MessageProcessor(config=self.config.processing, tagger=self._tagger)

    def _init_compactor(self) -> None:
        self._compactor = HistoryCompactor(
            config=self.config.compaction,
            token_counter=self._token_counter,
        )

    def _build_provider(self, provider_name: str, provider_config: dict, model: str = ""):
        """Build an LLM provider from config."""
        ptype = provider_config.get("type", provider_name)

        if ptype == "generic_openai":
            from .providers.generic_openai import GenericOpenAIProvider
            return GenericOpenAIProvider(
                base_url=provider_config.get("base_url", "http://127.0.0.1:11434/v1"),
                model=model or provider_config.get("model", "qwen3:4b-instruct-2507-fp16"),
                temperature=self.config.summarizer.temperature,
                api_key=provider_config.get("api_key", "not-needed"),
            )

        if ptype == "anthropic":
            api_key_env = provider_config.get("api_key_env", "ANTHROPIC_API_KEY")
            api_key = provider_config.get("api_key") or os.environ.get(api_key_env, "")
            if api_key:
                from .providers.anthropic import AnthropicProvider
                return AnthropicProvider(
                    api_key=api_key,
                    model=model or provider_config.get("model", "claude-haiku-4-5"),
                    temperature=self.config.summarizer.temperature,
                )
            logger.warning("No API key for provider '%s' (%s unset)", provider_name, api_key_env)

        return None

    @property
    def tagger(self) -> MessageTagger:
        return self._tagger

    @property
    def summarizer(self) -> ThreadSummarizer | None:
        return self._summarizer

    @property
    def processor(self) -> MessageProcessor:
        return self._processor

    @property
    def compactor(self) -> HistoryCompactor:
        return self._compactor

    # -- configuration --

    def configure(self, **options: Any) -> None:
        """Update processing options and compaction thresholds.

        Unset options keep their current values. Raises ConfigValidationError
        immediately if any value is invalid; nothing changes in that case.
        """
        self.config = apply_options(self.config, **options)
        self._init_processor()
        self._init_compactor()
        if self._summarizer is not None:
            self._summarizer.inactivity_timeout = self.config.processing.thread_inactivity_timeout
        logger.debug("Reconfigured: %s", self.config.processing)

    def enable(self, enabled: bool = True) -> None:
        self._enabled = enabled

    def is_enabled(self) -> bool:
        return self._enabled

    # -- processing --

    def should_process(
        self,
        messages: list[Message],
        state: MetamemoryState,
        trigger: ProcessingTrigger | None = None,
    ) -> ProcessingTrigger | None:
        """The trigger that would fire now (the given one, or a detected one)."""
        if not self._enabled:
            return None
        if trigger is None:
            return self._processor.detect_trigger(messages, state)
        return trigger if self._processor.should_process(messages, state, trigger) else None

    def process(
        self,
        messages: list[Message],
        state: MetamemoryState,
        trigger: ProcessingTrigger | None = None,
    ) -> MetamemoryState:
        """Run a tagging round synchronously and return the updated state."""
        trigger = self.should_process(messages, state, trigger)
        if trigger is None:
            return state
        summarizer = self._summarizer if self.config.summarizer.summarize_on_complete else None
        return self._processor.process_messages(messages, state, trigger, summarizer=summarizer)

    def process_in_background(
        self,
        messages: list[Message],
        state: MetamemoryState,
        trigger: ProcessingTrigger | None = None,
        callback: StateCallback | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> Future | None:
        """Dispatch a tagging round without waiting for it.

        Returns None when nothing fires, including while another round is in
        flight for *state* (skipped, not queued). Otherwise the round's
        results are folded into *state* in place when it finishes, and
        *callback* is called with it.
        """
        with self._guard_lock:
            fired = self.should_process(messages, state, trigger)
            if fired is None:
                return None
            state.processing = True
            snapshot = list(messages)
            round_ = self._processor.prepare_round(snapshot, state, fired)

        pool = executor or self._pool
        try:
            return pool.submit(self._run_background_round, round_, state, snapshot, callback)
        except RuntimeError:
            # pool already shut down
            with self._guard_lock:
                state.processing = False
            raise

    def _run_background_round(
        self,
        round_: ProcessingRound,
        state: MetamemoryState,
        messages: list[Message],
        callback: StateCallback | None,
    ) -> MetamemoryState:
        try:
            round_ = self._processor.run_round(round_)
            completed: list[str] = []
            with self._guard_lock:
                merged = self._processor.merge_round(state, round_, now=utcnow())
                if (
                    not round_.failed
                    and self._summarizer is not None
                    and self.config.summarizer.summarize_on_complete
                ):
                    completed = newly_completed(state, merged)
                # keep the guard raised until summaries are folded in too
                merged.processing = bool(completed)
                adopt_state(state, merged)
                snapshot = copy.deepcopy(state)

            if completed:
                results = self._summarizer.generate_summaries(snapshot, messages, thread_ids=completed)
                with self._guard_lock:
                    if results:
                        adopt_state(state, apply_summaries(state, results))
                    state.processing = False
        except Exception:
            with self._guard_lock:
                state.processing = False
            logger.exception("Background processing round crashed")
            raise

        if callback is not None:
            callback(state)
        return state

    # -- compaction --

    def compact(
        self,
        messages: list[Message],
        state: MetamemoryState,
        options: CompactionOptions | None = None,
    ) -> CompactionResult:
        """Compacted view of *messages*. Disabled instances return them as-is."""
        if not self._enabled:
            return self._compactor.passthrough(messages, state)
        return self._compactor.compact_history(messages, state, options)

    # -- summaries --

    def summarize(
        self,
        state: MetamemoryState,
        messages: list[Message],
        thread_ids: list[str] | None = None,
    ) -> MetamemoryState:
        """Summarize the given (or automatically selected) threads."""
        if self._summarizer is None:
            logger.warning("summarize() called but no summarizer provider is configured")
            return state
        return self._summarizer.summarize_threads(state, messages, thread_ids=thread_ids)

    def summarize_in_background(
        self,
        state: MetamemoryState,
        messages: list[Message],
        thread_ids: list[str] | None = None,
        callback: StateCallback | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> Future | None:
        """Summarize without blocking; results are applied to *state* in place."""
        if self._summarizer is None:
            return None
        snapshot = list(messages)
        pool = executor or self._pool

        def _run() -> MetamemoryState:
            results = self._summarizer.generate_summaries(state, snapshot, thread_ids=thread_ids)
            if results:
                with self._guard_lock:
                    adopt_state(state, apply_summaries(state, results))
            if callback is not None:
                callback(state)
            return state

        return pool.submit(_run)

    def close(self) -> None:
        """Wait for in-flight work and release the worker pool."""
        self._pool.shutdown(wait=True)

    def __enter__(self) -> Metamemory:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
