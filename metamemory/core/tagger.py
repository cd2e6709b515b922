"""Message taggers: assign topic tags (thread keys) to a window of messages."""

from __future__ import annotations

import json
import logging
import re
from typing import Protocol, runtime_checkable

from ..types import (
    KeywordTagConfig,
    LLMProvider,
    Message,
    MessageTags,
    TaggerConfig,
    TaggingError,
    TaggingRequest,
    TaggingResult,
    ThreadClass,
)
from .response_parsing import extract_json_object, string_list
from .thread_store import is_social_chatter

logger = logging.getLogger(__name__)

TAGGER_SYSTEM_PROMPT = """\
You are a conversation librarian. You receive a window of recent messages and
assign each message one or more topic tags. Messages that share a tag form a
thread, so tags must be stable across calls.

Rules:
- Reuse a known tag whenever the message continues that topic. Only invent a
  new tag for a genuinely new topic.
- Tags are short, lowercase, hyphenated and specific: "database-schema-design",
  not "work" or "chat".
- A question and its answer belong to the same thread: give the answer the
  question's tag.
- A message may carry several tags when it spans topics.
- For every tag you use that is not in the known list, propose a class:
  "core" (standing instructions, goals, constraints that must always be kept),
  "active" (work in progress), "complete" (a finished task),
  "ephemeral" (greetings, thanks, small talk, trivial one-off questions).
- List in "completed" any known tag whose topic was clearly wrapped up in this
  window.
- If two known tags name the same topic, list them in "merge" as
  {"tag-to-keep": ["duplicate-tag"]}.
- Give every message a one-line summary.
- Return JSON only, no markdown fences, no extra text:
{"messages": [{"id": "msg_1", "topics": ["tag-a"], "summary": "..."}],
 "topics": {"tag-a": {"class": "active", "name": "Tag A"}},
 "completed": [],
 "merge": {}}
"""


def normalize_tag(tag: str) -> str:
    """Lowercase, hyphenate, strip anything outside [a-z0-9-]."""
    tag = tag.lower().strip()
    tag = re.sub(r"[^a-z0-9-]", "-", tag)
    return re.sub(r"-+", "-", tag).strip("-")


def normalize_tags(tags: list) -> list[str]:
    """Normalize and deduplicate, keeping first-seen order."""
    seen: set[str] = set()
    result: list[str] = []
    for tag in tags:
        if not isinstance(tag, str):
            continue
        normalized = normalize_tag(tag)
        if normalized and normalized not in seen:
            seen.add(normalized)
            result.append(normalized)
    return result


def parse_merges(raw) -> dict[str, list[str]]:
    """Target tag -> duplicate tags, from {"keep": ["dup"]} or [{"target": ..., "sources": [...]}]."""
    pairs: list[tuple] = []
    if isinstance(raw, dict):
        pairs = list(raw.items())
    elif isinstance(raw, list):
        for item in raw:
            if isinstance(item, dict):
                pairs.append((item.get("target"), item.get("sources", [])))

    merges: dict[str, list[str]] = {}
    for target, sources in pairs:
        target = normalize_tag(target) if isinstance(target, str) else ""
        if not target:
            continue
        known = merges.setdefault(target, [])
        for source in normalize_tags(string_list(sources)):
            if source != target and source not in known:
                known.append(source)
        if not known:
            del merges[target]
    return merges


def parse_thread_class(value, default: ThreadClass = ThreadClass.ACTIVE) -> ThreadClass:
    if isinstance(value, ThreadClass):
        return value
    if isinstance(value, str):
        try:
            return ThreadClass(value.strip().lower())
        except ValueError:
            pass
    return default


@runtime_checkable
class MessageTagger(Protocol):
    def tag(self, request: TaggingRequest) -> TaggingResult: ...


class LLMMessageTagger:
    """Tag a message window with a single model call."""

    def __init__(self, llm_provider: LLMProvider, config: TaggerConfig) -> None:
        self.llm = llm_provider
        self.config = config

    def tag(self, request: TaggingRequest) -> TaggingResult:
        """Tag every message in the request. Raises TaggingError on any failure."""
        if not request.messages:
            return TaggingResult(source="llm")

        prompt = self._build_prompt(request)
        if self.config.disable_thinking:
            prompt = "/no_think\n" + prompt

        try:
            response = self.llm.complete(
                system=TAGGER_SYSTEM_PROMPT,
                user=prompt,
                max_tokens=self.config.max_tokens,
            )
        except Exception as e:
            raise TaggingError(f"Tagger model call failed: {e}") from e

        return self._parse_response(response, request)

    def _build_prompt(self, request: TaggingRequest) -> str:
        parts: list[str] = []

        if request.vocabulary:
            known = ", ".join(f"{tag} ({cls.value})" for tag, cls in request.vocabulary.items())
            parts.append(f"Known tags (reuse when the topic matches): {known}")
        else:
            parts.append("Known tags: none yet")
        parts.append("")

        limit = self.config.max_content_chars
        payload = []
        for m in request.messages:
            content = m.content
            if len(content) > limit:
                content = content[:limit] + "..."
            item = {"id": m.id, "role": m.role, "content": content}
            prior = request.existing.get(m.id)
            if prior and prior.thread_ids:
                item["previous_topics"] = list(prior.thread_ids)
            payload.append(item)

        parts.append("Messages to tag:")
        parts.append(json.dumps(payload, indent=2, ensure_ascii=False))
        return "\n".join(parts)

    def _parse_response(self, response: str, request: TaggingRequest) -> TaggingResult:
        data = extract_json_object(response)
        if data is None:
            raise TaggingError(f"Tagger returned no JSON object: {response[:200]!r}")

        items = data.get("messages")
        if not isinstance(items, list):
            raise TaggingError("Tagger response is missing the 'messages' array")

        known_ids = {m.id for m in request.messages}
        result = TaggingResult(source="llm")

        for item in items:
            if not isinstance(item, dict):
                continue
            message_id = item.get("id", item.get("message_id"))
            if message_id not in known_ids:
                if message_id is not None:
                    logger.debug("Tagger returned unknown message id %r; ignoring", message_id)
                continue
            tags = normalize_tags(string_list(item.get("topics", item.get("tags", []))))
            summary = item.get("summary", "")
            result.message_tags[message_id] = MessageTags(
                tags=tags,
                summary=summary if isinstance(summary, str) else "",
            )

        topics = data.get("topics", {})
        if isinstance(topics, dict):
            for raw_tag, info in topics.items():
                tag = normalize_tag(raw_tag) if isinstance(raw_tag, str) else ""
                if not tag:
                    continue
                if isinstance(info, dict):
                    result.tag_classes[tag] = parse_thread_class(info.get("class"))
                    name = info.get("name")
                    if isinstance(name, str) and name.strip():
                        result.tag_names[tag] = name.strip()
                else:
                    result.tag_classes[tag] = parse_thread_class(info)

        result.completed_tags = normalize_tags(string_list(data.get("completed", [])))
        result.merges = parse_merges(data.get("merge"))
        return result


class KeywordMessageTagger:
    """Deterministic tagging from keywords, regex patterns and chatter heuristics.

    Unmatched messages fall back in order: system/developer messages get the
    core "instructions" tag, greetings and acknowledgements get the ephemeral
    "small-talk" tag, an assistant reply inherits the tags of the message it
    answers, anything else lands in "general".
    """

    INSTRUCTIONS_TAG = "instructions"
    SMALL_TALK_TAG = "small-talk"
    GENERAL_TAG = "general"

    def __init__(self, config: KeywordTagConfig | None = None) -> None:
        self.config = config or KeywordTagConfig()
        self._compiled_patterns: dict[str, list[re.Pattern]] = {}
        for tag, patterns in self.config.tag_patterns.items():
            compiled = []
            for pattern in patterns:
                try:
                    compiled.append(re.compile(pattern, re.IGNORECASE))
                except re.error:
                    logger.warning(f"Invalid regex pattern for tag '{tag}': {pattern}")
            self._compiled_patterns[normalize_tag(tag)] = compiled
        self._keywords = {
            normalize_tag(tag): [kw.lower() for kw in keywords]
            for tag, keywords in self.config.tag_keywords.items()
        }

    def _match(self, text: str) -> list[str]:
        text_lower = text.lower()
        matched: set[str] = set()
        for tag, keywords in self._keywords.items():
            if any(kw in text_lower for kw in keywords):
                matched.add(tag)
        for tag, patterns in self._compiled_patterns.items():
            if any(p.search(text) for p in patterns):
                matched.add(tag)
        return sorted(matched)

    def tag(self, request: TaggingRequest) -> TaggingResult:
        result = TaggingResult(source="keyword")
        previous: list[str] = []

        for message in request.messages:
            tags = self._match(message.content)
            if not tags:
                tags = self._fallback_tags(message, previous, request)
            result.message_tags[message.id] = MessageTags(
                tags=tags,
                summary=_one_line(message.content),
            )
            for tag in tags:
                if tag not in request.vocabulary and tag not in result.tag_classes:
                    result.tag_classes[tag] = self._class_for(tag)
            previous = tags

        return result

    def _fallback_tags(
        self, message: Message, previous: list[str], request: TaggingRequest,
    ) -> list[str]:
        if message.role in ("system", "developer"):
            return [self.INSTRUCTIONS_TAG]
        if is_social_chatter(message.content):
            return [self.SMALL_TALK_TAG]
        if message.role == "assistant" and previous:
            return list(previous)
        prior = request.existing.get(message.id)
        if prior and prior.thread_ids:
            return list(prior.thread_ids)
        return [self.GENERAL_TAG]

    def _class_for(self, tag: str) -> ThreadClass:
        configured = self.config.tag_classes.get(tag)
        if configured:
            return parse_thread_class(configured)
        if tag == self.INSTRUCTIONS_TAG:
            return ThreadClass.CORE
        if tag == self.SMALL_TALK_TAG:
            return ThreadClass.EPHEMERAL
        return ThreadClass.ACTIVE


def _one_line(text: str, limit: int = 120) -> str:
    line = " ".join(text.split())
    return line if len(line) <= limit else line[: limit - 3] + "..."


def build_tagger(
    config: TaggerConfig,
    llm_provider: LLMProvider | None = None,
) -> MessageTagger:
    """Build a tagger from config. Falls back to keyword if no LLM available."""
    if config.type == "llm" and llm_provider is not None:
        return LLMMessageTagger(llm_provider=llm_provider, config=config)

    if config.type == "llm":
        logger.warning("Tagger type 'llm' configured without a provider; using keyword tagger")
    return KeywordMessageTagger(config=config.keyword_fallback)
