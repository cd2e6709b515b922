"""Tests for the Metamemory facade: wiring, configure, and background rounds."""

import threading
from datetime import timedelta

import pytest
import yaml

from metamemory import Metamemory
from metamemory.core.summarizer import ThreadSummarizer
from metamemory.core.tagger import KeywordMessageTagger, LLMMessageTagger
from metamemory.providers import GenericOpenAIProvider
from metamemory.types import (
    CompactionOptions,
    ConfigValidationError,
    MetamemoryConfig,
    MetamemoryState,
    ProcessingConfig,
    ProcessingTrigger,
    SummarizerConfig,
    TaggingError,
    ThreadClass,
    ThreadStatus,
    TriggerType,
)

from conftest import SUMMARY_RESPONSE, MockLLMProvider, ScriptedTagger, build_state, make_conversation

MANUAL = ProcessingTrigger(type=TriggerType.MANUAL)


@pytest.fixture
def make_engine():
    created = []

    def _make(**kwargs):
        kwargs.setdefault("config", MetamemoryConfig())
        engine = Metamemory(**kwargs)
        created.append(engine)
        return engine

    yield _make
    for engine in created:
        engine.close()


class BrokenSummarizer:
    def summarize_threads(self, state, messages, thread_ids=None, now=None):
        raise RuntimeError("summarizer exploded")

    def generate_summaries(self, state, messages, thread_ids=None, now=None):
        raise RuntimeError("summarizer exploded")


class TestWiring:
    def test_invalid_config_rejected(self):
        config = MetamemoryConfig(processing=ProcessingConfig(window_size=0))
        with pytest.raises(ConfigValidationError) as exc:
            Metamemory(config=config)
        assert any("window_size" in e for e in exc.value.errors)

    def test_defaults(self, make_engine):
        engine = make_engine()
        assert isinstance(engine.tagger, KeywordMessageTagger)
        assert engine.summarizer is None
        assert engine.is_enabled()

    def test_llm_provider_used_for_tagging_and_summaries(self, make_engine):
        config = MetamemoryConfig()
        config.tagger.type = "llm"
        engine = make_engine(config=config, llm_provider=MockLLMProvider())
        assert isinstance(engine.tagger, LLMMessageTagger)
        assert isinstance(engine.summarizer, ThreadSummarizer)

    def test_providers_built_from_config(self, make_engine, tmp_path):
        path = tmp_path / "metamemory.yaml"
        path.write_text(yaml.dump({
            "tagger": {"type": "llm", "provider": "local", "model": "qwen3:4b"},
            "summarizer": {"provider": "local"},
            "providers": {"local": {"type": "generic_openai", "base_url": "http://localhost:8000/v1"}},
        }))
        engine = make_engine(config=None, config_path=path)

        assert isinstance(engine.tagger, LLMMessageTagger)
        assert isinstance(engine.tagger.llm, GenericOpenAIProvider)
        assert engine.tagger.llm.model == "qwen3:4b"
        assert engine.tagger.llm.base_url == "http://localhost:8000/v1"
        assert isinstance(engine.summarizer, ThreadSummarizer)

    def test_missing_api_key_falls_back_to_keyword(self, make_engine, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        config = MetamemoryConfig(providers={"anthropic": {"type": "anthropic"}})
        config.tagger.type = "llm"
        config.tagger.provider = "anthropic"
        engine = make_engine(config=config)
        assert isinstance(engine.tagger, KeywordMessageTagger)

    def test_context_manager_releases_pool(self, ts):
        state = MetamemoryState()
        with Metamemory(config=MetamemoryConfig(), tagger=ScriptedTagger()) as engine:
            engine.process_in_background(make_conversation(ts, 2), state, MANUAL).result(timeout=5)

        with pytest.raises(RuntimeError):
            engine.process_in_background(make_conversation(ts, 3), state, MANUAL)
        assert state.processing is False
        assert state.last_processed_index == 2


class TestConfigure:
    def test_updates_processing_and_thresholds(self, make_engine):
        engine = make_engine()
        engine.configure(window_size=5, process_interval=None, compaction_thresholds={"active": 70})

        assert engine.config.processing.window_size == 5
        assert engine.config.processing.process_interval == 5
        assert engine.processor.config.window_size == 5
        assert engine.compactor.config.thresholds.active == 70
        assert engine.compactor.config.thresholds.core == 100

    def test_invalid_value_changes_nothing(self, make_engine):
        engine = make_engine()
        with pytest.raises(ConfigValidationError):
            engine.configure(window_size=7, process_interval=0)
        assert engine.config.processing.window_size == 20
        assert engine.processor.config.process_interval == 5

    def test_unknown_option(self, make_engine):
        with pytest.raises(ConfigValidationError, match="Unknown option"):
            make_engine().configure(windowsize=3)

    def test_threshold_out_of_range(self, make_engine):
        with pytest.raises(ConfigValidationError):
            make_engine().configure(compaction_thresholds={"core": 101})

    def test_inactivity_timeout_reaches_summarizer(self, make_engine):
        engine = make_engine(llm_provider=MockLLMProvider())
        engine.configure(thread_inactivity_timeout=42)
        assert engine.summarizer.inactivity_timeout == 42


class TestProcessAndCompact:
    def test_detected_trigger(self, make_engine, ts):
        engine = make_engine(tagger=ScriptedTagger())
        state = MetamemoryState()
        messages = make_conversation(ts, 4)

        assert engine.should_process(messages, state) is None
        assert engine.process(messages, state) is state

        messages = make_conversation(ts, 5)
        assert engine.should_process(messages, state).type == TriggerType.INTERVAL
        updated = engine.process(messages, state)
        assert updated.last_processed_index == 5
        assert updated.threads["general"].messages == [m.id for m in messages]

    def test_disabled_passes_through(self, make_engine, ts):
        engine = make_engine(tagger=ScriptedTagger())
        engine.enable(False)
        messages = make_conversation(ts, 3)
        state = build_state(messages, {"chat": ["msg1", "msg2", "msg3"]}, classes={"chat": ThreadClass.EPHEMERAL})

        assert not engine.is_enabled()
        assert engine.should_process(messages, state, MANUAL) is None
        assert engine.process(messages, state, MANUAL) is state
        result = engine.compact(messages, state)
        assert len(result.messages) == 3
        assert not any(m.is_compacted for m in result.messages)

    def test_compact_uses_options(self, make_engine, ts):
        engine = make_engine()
        messages = make_conversation(ts, 3)
        state = build_state(messages, {"chat": ["msg1", "msg2", "msg3"]}, classes={"chat": ThreadClass.EPHEMERAL})

        assert len(engine.compact(messages, state).messages) == 1
        kept = engine.compact(messages, state, CompactionOptions(preserve_thread_ids={"chat"}))
        assert len(kept.messages) == 3

    def test_completed_threads_summarized(self, make_engine, ts):
        engine = make_engine(tagger=ScriptedTagger(completed=["general"]), llm_provider=MockLLMProvider())
        updated = engine.process(make_conversation(ts, 2), MetamemoryState(), MANUAL)
        thread = updated.threads["general"]
        assert thread.status == ThreadStatus.COMPLETE
        assert thread.summary == "Tracked down a rounding bug in invoice totals."

    def test_summarize_on_complete_disabled(self, make_engine, ts):
        config = MetamemoryConfig(summarizer=SummarizerConfig(summarize_on_complete=False))
        llm = MockLLMProvider()
        engine = make_engine(config=config, tagger=ScriptedTagger(completed=["general"]), llm_provider=llm)
        updated = engine.process(make_conversation(ts, 2), MetamemoryState(), MANUAL)
        assert updated.threads["general"].summary is None
        assert llm.calls == []


class TestBackground:
    def test_future_updates_state_in_place(self, make_engine, ts):
        calls = []
        engine = make_engine(tagger=ScriptedTagger())
        state = MetamemoryState()

        future = engine.process_in_background(make_conversation(ts, 3), state, MANUAL, callback=calls.append)
        assert future is not None
        assert future.result(timeout=5) is state

        assert state.threads["general"].messages == ["msg1", "msg2", "msg3"]
        assert state.last_processed_index == 3
        assert state.processing is False
        assert calls == [state]

    def test_nothing_fires_returns_none(self, make_engine, ts):
        engine = make_engine(tagger=ScriptedTagger())
        assert engine.process_in_background(make_conversation(ts, 1), MetamemoryState()) is None

    def test_round_in_flight_is_skipped(self, make_engine, ts):
        gate = threading.Event()
        tagger = ScriptedTagger(gate=gate)
        engine = make_engine(tagger=tagger)
        state = MetamemoryState()
        messages = make_conversation(ts, 3)

        first = engine.process_in_background(messages, state, MANUAL)
        assert state.processing is True
        assert engine.process_in_background(messages, state, MANUAL) is None

        gate.set()
        first.result(timeout=5)
        assert state.processing is False
        assert len(tagger.calls) == 1

    def test_history_growing_during_round(self, make_engine, ts):
        gate = threading.Event()
        engine = make_engine(tagger=ScriptedTagger(gate=gate))
        state = MetamemoryState()
        messages = make_conversation(ts, 3)

        future = engine.process_in_background(messages, state, MANUAL)
        messages.extend(make_conversation(ts, 2, start=4))
        gate.set()
        future.result(timeout=5)

        assert state.last_processed_index == 3
        assert "msg4" not in state.metamemory

    def test_failed_round_resets_guard(self, make_engine, ts):
        engine = make_engine(tagger=ScriptedTagger(error=TaggingError("model offline")))
        state = MetamemoryState()

        future = engine.process_in_background(make_conversation(ts, 3), state, MANUAL)
        assert future.result(timeout=5) is state
        assert state.processing is False
        assert state.threads == {}
        assert state.last_processed_index == 0

    def test_crash_resets_guard_and_surfaces(self, make_engine, ts):
        engine = make_engine(tagger=ScriptedTagger(completed=["general"]), summarizer=BrokenSummarizer())
        state = MetamemoryState()

        future = engine.process_in_background(make_conversation(ts, 2), state, MANUAL)
        with pytest.raises(RuntimeError, match="exploded"):
            future.result(timeout=5)
        assert state.processing is False
        assert engine.process_in_background(make_conversation(ts, 2), state, MANUAL) is not None

    def test_summarize_in_background(self, make_engine, ts):
        engine = make_engine(llm_provider=MockLLMProvider())
        messages = make_conversation(ts, 2)
        state = build_state(messages, {"billing": ["msg1", "msg2"]}, last_updated=ts)

        future = engine.summarize_in_background(state, messages, thread_ids=["billing"])
        future.result(timeout=5)

        assert state.threads["billing"].summary == "Tracked down a rounding bug in invoice totals."
        assert state.threads["billing"].status == ThreadStatus.COMPLETE

    def test_round_summaries_keep_concurrent_updates(self, make_engine, ts):
        gate = threading.Event()
        general_started = threading.Event()

        def responder(system, user):
            if "- ID: general" in user:
                general_started.set()
                gate.wait(timeout=5)
            return SUMMARY_RESPONSE

        engine = make_engine(
            tagger=ScriptedTagger(completed=["general"]),
            llm_provider=MockLLMProvider(responder=responder),
        )
        messages = make_conversation(ts, 4)
        state = build_state(messages, {"billing": ["msg1", "msg2"]}, last_updated=ts)

        round_future = engine.process_in_background(messages, state, MANUAL)
        assert general_started.wait(timeout=5)

        engine.summarize_in_background(state, messages, thread_ids=["billing"]).result(timeout=5)
        assert state.threads["billing"].summary == "Tracked down a rounding bug in invoice totals."
        assert state.processing is True

        gate.set()
        round_future.result(timeout=5)

        assert state.threads["billing"].summary == "Tracked down a rounding bug in invoice totals."
        assert state.threads["general"].summary == "Tracked down a rounding bug in invoice totals."
        assert state.threads["general"].messages == ["msg1", "msg2", "msg3", "msg4"]
        assert state.processing is False

    def test_round_results_visible_before_summaries(self, make_engine, ts):
        gate = threading.Event()
        general_started = threading.Event()

        def responder(system, user):
            general_started.set()
            gate.wait(timeout=5)
            return SUMMARY_RESPONSE

        engine = make_engine(
            tagger=ScriptedTagger(completed=["general"]),
            llm_provider=MockLLMProvider(responder=responder),
        )
        state = MetamemoryState()

        future = engine.process_in_background(make_conversation(ts, 2), state, MANUAL)
        assert general_started.wait(timeout=5)
        assert state.threads["general"].messages == ["msg1", "msg2"]
        assert state.processing is True

        gate.set()
        future.result(timeout=5)
        assert state.processing is False

    def test_summarize_without_summarizer(self, make_engine, ts):
        engine = make_engine()
        state = MetamemoryState()
        assert engine.summarize(state, []) is state
        assert engine.summarize_in_background(state, []) is None
