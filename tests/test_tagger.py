"""Tests for message taggers: LLM-based and keyword-based."""

import json

import pytest

from metamemory.core.tagger import (
    KeywordMessageTagger,
    LLMMessageTagger,
    build_tagger,
    normalize_tag,
    normalize_tags,
    parse_merges,
    parse_thread_class,
)
from metamemory.types import (
    Message,
    MessageMetadataEntry,
    TaggerConfig,
    TaggingError,
    TaggingRequest,
    ThreadClass,
)

from conftest import MockLLMProvider


def _llm_reply(**overrides) -> str:
    data = {
        "messages": [
            {"id": "msg1", "topics": ["Small Talk"], "summary": "Greeting"},
            {"id": "msg2", "topics": ["billing", "Invoice Totals"], "summary": "Wrong invoice total"},
        ],
        "topics": {
            "small-talk": {"class": "ephemeral", "name": "Small talk"},
            "invoice-totals": {"class": "active", "name": "Invoice totals"},
        },
        "completed": ["Old Topic"],
    }
    data.update(overrides)
    return json.dumps(data)


class TestNormalization:
    def test_normalize_tag(self):
        assert normalize_tag("API Design!") == "api-design"
        assert normalize_tag("  db__schema  ") == "db-schema"
        assert normalize_tag("--Already-ok--") == "already-ok"

    def test_normalize_tags_dedupes_in_order(self):
        assert normalize_tags(["B", "a", "b", "", 3, "A "]) == ["b", "a"]

    def test_parse_thread_class(self):
        assert parse_thread_class("CORE") == ThreadClass.CORE
        assert parse_thread_class(" ephemeral ") == ThreadClass.EPHEMERAL
        assert parse_thread_class("bogus") == ThreadClass.ACTIVE
        assert parse_thread_class(None, default=ThreadClass.COMPLETE) == ThreadClass.COMPLETE

    @pytest.mark.parametrize("raw,expected", [
        ({"a": ["b", "B", "a"]}, {"a": ["b"]}),
        ({"a": "b"}, {"a": ["b"]}),
        ([{"target": "a", "sources": ["b"]}, {"target": "a", "sources": ["c", "b"]}], {"a": ["b", "c"]}),
        ({"a": []}, {}),
        ({"": ["b"]}, {}),
        (["a", "b"], {}),
        (None, {}),
    ])
    def test_parse_merges(self, raw, expected):
        assert parse_merges(raw) == expected


class TestLLMMessageTagger:
    @pytest.fixture
    def request_(self, support_messages):
        return TaggingRequest(
            messages=support_messages[:2],
            vocabulary={"billing": ThreadClass.ACTIVE},
        )

    def test_parses_tags_classes_and_completion(self, request_):
        tagger = LLMMessageTagger(MockLLMProvider(response=_llm_reply()), TaggerConfig(type="llm"))
        result = tagger.tag(request_)

        assert result.source == "llm"
        assert result.message_tags["msg1"].tags == ["small-talk"]
        assert result.message_tags["msg2"].tags == ["billing", "invoice-totals"]
        assert result.message_tags["msg2"].summary == "Wrong invoice total"
        assert result.tag_classes == {
            "small-talk": ThreadClass.EPHEMERAL,
            "invoice-totals": ThreadClass.ACTIVE,
        }
        assert result.tag_names["small-talk"] == "Small talk"
        assert result.completed_tags == ["old-topic"]

    def test_prompt_lists_vocabulary_and_messages(self, request_):
        llm = MockLLMProvider(response=_llm_reply())
        LLMMessageTagger(llm, TaggerConfig(type="llm", max_tokens=777)).tag(request_)

        call = llm.calls[0]
        assert call["max_tokens"] == 777
        assert "billing (active)" in call["user"]
        assert "INV-2041" in call["user"]
        assert '"id": "msg2"' in call["user"]

    def test_prompt_truncates_long_content(self, ts):
        long_message = Message(role="user", content="x" * 900, timestamp=ts, id="big")
        llm = MockLLMProvider(response='{"messages": []}')
        LLMMessageTagger(llm, TaggerConfig(type="llm")).tag(TaggingRequest(messages=[long_message]))

        prompt = llm.calls[0]["user"]
        assert "x" * 500 + "..." in prompt
        assert "x" * 501 not in prompt

    def test_prompt_carries_previous_topics(self, request_):
        request_.existing = {"msg2": MessageMetadataEntry(thread_ids=["billing"])}
        llm = MockLLMProvider(response=_llm_reply())
        LLMMessageTagger(llm, TaggerConfig(type="llm")).tag(request_)
        assert '"previous_topics"' in llm.calls[0]["user"]

    def test_disable_thinking_prefix(self, request_):
        llm = MockLLMProvider(response=_llm_reply())
        LLMMessageTagger(llm, TaggerConfig(type="llm", disable_thinking=True)).tag(request_)
        assert llm.calls[0]["user"].startswith("/no_think\n")

    def test_fenced_and_think_wrapped_reply(self, request_):
        reply = "<think>pondering</think>\n```json\n" + _llm_reply() + "\n```"
        result = LLMMessageTagger(MockLLMProvider(response=reply), TaggerConfig(type="llm")).tag(request_)
        assert result.message_tags["msg1"].tags == ["small-talk"]

    def test_parses_merges(self, request_):
        reply = _llm_reply(merge={"Recursion": ["Recursive Functions", "recursion", "recursive-functions"]})
        result = LLMMessageTagger(MockLLMProvider(response=reply), TaggerConfig(type="llm")).tag(request_)
        assert result.merges == {"recursion": ["recursive-functions"]}

    def test_no_merges_by_default(self, request_):
        result = LLMMessageTagger(MockLLMProvider(response=_llm_reply()), TaggerConfig(type="llm")).tag(request_)
        assert result.merges == {}

    def test_unknown_ids_ignored(self, request_):
        reply = _llm_reply(messages=[
            {"id": "msg2", "tags": ["billing"]},
            {"id": "ghost", "topics": ["nope"]},
        ])
        result = LLMMessageTagger(MockLLMProvider(response=reply), TaggerConfig(type="llm")).tag(request_)
        assert set(result.message_tags) == {"msg2"}
        assert result.message_tags["msg2"].tags == ["billing"]

    def test_no_json_raises(self, request_):
        tagger = LLMMessageTagger(MockLLMProvider(response="I cannot help with that."), TaggerConfig(type="llm"))
        with pytest.raises(TaggingError):
            tagger.tag(request_)

    def test_missing_messages_array_raises(self, request_):
        tagger = LLMMessageTagger(MockLLMProvider(response='{"topics": {}}'), TaggerConfig(type="llm"))
        with pytest.raises(TaggingError):
            tagger.tag(request_)

    def test_provider_error_raises_tagging_error(self, request_):
        llm = MockLLMProvider(error=RuntimeError("connection reset"))
        with pytest.raises(TaggingError, match="connection reset"):
            LLMMessageTagger(llm, TaggerConfig(type="llm")).tag(request_)

    def test_empty_request_skips_model(self):
        llm = MockLLMProvider()
        result = LLMMessageTagger(llm, TaggerConfig(type="llm")).tag(TaggingRequest(messages=[]))
        assert result.message_tags == {}
        assert llm.calls == []


class TestKeywordMessageTagger:
    @pytest.fixture
    def tagger(self, keyword_config):
        return KeywordMessageTagger(config=keyword_config)

    def test_keyword_and_pattern_match(self, tagger, support_messages):
        result = tagger.tag(TaggingRequest(messages=support_messages))
        assert result.source == "keyword"
        assert result.message_tags["msg2"].tags == ["billing"]
        assert result.message_tags["msg4"].tags == ["deploy"]

    def test_fallbacks(self, tagger, support_messages, ts):
        system = Message(role="system", content="You are a support agent.", timestamp=ts, id="sys")
        result = tagger.tag(TaggingRequest(messages=[system] + support_messages))

        assert result.message_tags["sys"].tags == ["instructions"]
        assert result.message_tags["msg1"].tags == ["small-talk"]
        # msg5 has no keyword; it answers msg4
        assert result.message_tags["msg5"].tags == ["deploy"]
        assert result.tag_classes["instructions"] == ThreadClass.CORE
        assert result.tag_classes["small-talk"] == ThreadClass.EPHEMERAL

    def test_general_fallback(self, tagger, ts):
        message = Message(role="user", content="What should we name the new service?", timestamp=ts, id="q")
        result = tagger.tag(TaggingRequest(messages=[message]))
        assert result.message_tags["q"].tags == ["general"]
        assert result.tag_classes["general"] == ThreadClass.ACTIVE

    def test_existing_tags_reused(self, tagger, ts):
        message = Message(role="user", content="What should we name the new service?", timestamp=ts, id="q")
        request = TaggingRequest(
            messages=[message],
            existing={"q": MessageMetadataEntry(thread_ids=["naming"])},
        )
        assert tagger.tag(request).message_tags["q"].tags == ["naming"]

    def test_configured_class(self, tagger, support_messages):
        result = tagger.tag(TaggingRequest(messages=support_messages))
        assert result.tag_classes["deploy"] == ThreadClass.CORE
        assert result.tag_classes["billing"] == ThreadClass.ACTIVE

    def test_known_tags_get_no_proposal(self, tagger, support_messages):
        request = TaggingRequest(messages=support_messages, vocabulary={"billing": ThreadClass.COMPLETE})
        assert "billing" not in tagger.tag(request).tag_classes

    def test_invalid_pattern_skipped(self, ts):
        from metamemory.types import KeywordTagConfig

        tagger = KeywordMessageTagger(KeywordTagConfig(tag_patterns={"broken": ["(unclosed"]}))
        message = Message(role="user", content="(unclosed paren here", timestamp=ts, id="p")
        assert tagger.tag(TaggingRequest(messages=[message])).message_tags["p"].tags == ["general"]

    def test_summary_is_one_line(self, tagger, ts):
        message = Message(role="user", content="line one\n\nline   two " + "z" * 200, timestamp=ts, id="s")
        summary = tagger.tag(TaggingRequest(messages=[message])).message_tags["s"].summary
        assert "\n" not in summary
        assert len(summary) == 120
        assert summary.endswith("...")


class TestBuildTagger:
    def test_llm_with_provider(self):
        tagger = build_tagger(TaggerConfig(type="llm"), MockLLMProvider())
        assert isinstance(tagger, LLMMessageTagger)

    def test_llm_without_provider_falls_back(self):
        assert isinstance(build_tagger(TaggerConfig(type="llm")), KeywordMessageTagger)

    def test_keyword(self):
        assert isinstance(build_tagger(TaggerConfig(type="keyword"), MockLLMProvider()), KeywordMessageTagger)
