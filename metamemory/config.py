"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
from dataclasses import fields, replace
from pathlib import Path
from typing import Any

import yaml

from .types import (
    CompactionConfig,
    CompactionThresholds,
    ConfigValidationError,
    KeywordTagConfig,
    MetamemoryConfig,
    ProcessingConfig,
    StorageConfig,
    SummarizerConfig,
    TaggerConfig,
    ThreadClass,
)

CONFIG_FILENAMES = [
    "metamemory.yaml",
    "metamemory.yml",
    "metamemory.json",
    ".metamemory.yaml",
    ".metamemory.yml",
]

# Options accepted by configure(); all live on ProcessingConfig except thresholds.
PROCESSING_OPTIONS = {
    "window_size",
    "process_interval",
    "thread_inactivity_timeout",
    "max_threads_to_track",
    "time_gap_threshold",
    "large_message_threshold",
}

TAGGER_TYPES = ("llm", "keyword")


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _build_thresholds(raw: dict[str, Any], base: CompactionThresholds | None = None) -> CompactionThresholds:
    base = base or CompactionThresholds()
    return CompactionThresholds(
        core=raw.get("core", base.core),
        active=raw.get("active", base.active),
        complete=raw.get("complete", base.complete),
        ephemeral=raw.get("ephemeral", base.ephemeral),
    )


def _build_keyword_config(raw: dict[str, Any] | None) -> KeywordTagConfig | None:
    if not raw:
        return None
    return KeywordTagConfig(
        tag_keywords=raw.get("tag_keywords", {}),
        tag_patterns=raw.get("tag_patterns", {}),
        tag_classes=raw.get("tag_classes", {}),
    )


def _build_config(raw: dict[str, Any]) -> MetamemoryConfig:
    """Build a MetamemoryConfig from a raw dict."""
    proc_raw = raw.get("processing", {})
    defaults = ProcessingConfig()
    processing = ProcessingConfig(
        window_size=proc_raw.get("window_size", defaults.window_size),
        process_interval=proc_raw.get("process_interval", defaults.process_interval),
        thread_inactivity_timeout=proc_raw.get(
            "thread_inactivity_timeout", defaults.thread_inactivity_timeout,
        ),
        max_threads_to_track=proc_raw.get("max_threads_to_track", defaults.max_threads_to_track),
        time_gap_threshold=proc_raw.get("time_gap_threshold", defaults.time_gap_threshold),
        large_message_threshold=proc_raw.get(
            "large_message_threshold", defaults.large_message_threshold,
        ),
    )

    comp_raw = raw.get("compaction", {})
    comp_defaults = CompactionConfig()
    compaction = CompactionConfig(
        thresholds=_build_thresholds(comp_raw.get("thresholds", {})),
        orphan_ratio_threshold=comp_raw.get(
            "orphan_ratio_threshold", comp_defaults.orphan_ratio_threshold,
        ),
        size_penalty_threshold=comp_raw.get(
            "size_penalty_threshold", comp_defaults.size_penalty_threshold,
        ),
        head_messages=comp_raw.get("head_messages", comp_defaults.head_messages),
        tail_messages=comp_raw.get("tail_messages", comp_defaults.tail_messages),
        middle_collapse_threshold=comp_raw.get(
            "middle_collapse_threshold", comp_defaults.middle_collapse_threshold,
        ),
    )

    tag_raw = raw.get("tagger", {})
    tagger = TaggerConfig(
        type=tag_raw.get("type", "keyword"),
        provider=tag_raw.get("provider", ""),
        model=tag_raw.get("model", ""),
        max_tokens=tag_raw.get("max_tokens", 4096),
        max_content_chars=tag_raw.get("max_content_chars", 500),
        disable_thinking=tag_raw.get("disable_thinking", False),
        keyword_fallback=_build_keyword_config(tag_raw.get("keyword_fallback")),
    )

    summ_raw = raw.get("summarizer", {})
    summarizer = SummarizerConfig(
        provider=summ_raw.get("provider", ""),
        model=summ_raw.get("model", ""),
        max_tokens=summ_raw.get("max_tokens", 1000),
        temperature=summ_raw.get("temperature", 0.3),
        min_messages=summ_raw.get("min_messages", 5),
        max_content_chars=summ_raw.get("max_content_chars", 1000),
        max_concurrent_summaries=summ_raw.get("max_concurrent_summaries", 4),
        summarize_on_complete=summ_raw.get("summarize_on_complete", True),
    )

    storage_raw = raw.get("storage", {})
    storage = StorageConfig(root=storage_raw.get("root", ".metamemory/state"))

    return MetamemoryConfig(
        version=raw.get("version", "0.1"),
        enabled=raw.get("enabled", True),
        token_counter=raw.get("token_counter", "estimate"),
        processing=processing,
        compaction=compaction,
        tagger=tagger,
        summarizer=summarizer,
        storage=storage,
        providers=raw.get("providers", {}),
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_config(config: MetamemoryConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []
    proc = config.processing

    for name in ("window_size", "process_interval", "max_threads_to_track", "large_message_threshold"):
        value = getattr(proc, name)
        if not _is_int(value) or value < 1:
            errors.append(f"{name} must be an integer >= 1 (got {value!r})")

    if not _is_number(proc.thread_inactivity_timeout) or proc.thread_inactivity_timeout <= 0:
        errors.append(
            f"thread_inactivity_timeout must be > 0 seconds (got {proc.thread_inactivity_timeout!r})"
        )
    if not _is_number(proc.time_gap_threshold) or proc.time_gap_threshold < 0:
        errors.append(f"time_gap_threshold must be >= 0 seconds (got {proc.time_gap_threshold!r})")

    thresholds = config.compaction.thresholds
    for thread_class in ThreadClass:
        value = thresholds.for_class(thread_class)
        if not _is_number(value) or not 0 <= value <= 100:
            errors.append(
                f"compaction threshold '{thread_class.value}' must be in [0, 100] (got {value!r})"
            )

    ratio = config.compaction.orphan_ratio_threshold
    if not _is_number(ratio) or not 0.0 <= ratio <= 1.0:
        errors.append(f"orphan_ratio_threshold must be in [0, 1] (got {ratio!r})")

    for name in ("size_penalty_threshold", "head_messages", "tail_messages", "middle_collapse_threshold"):
        value = getattr(config.compaction, name)
        if not _is_int(value) or value < 0:
            errors.append(f"{name} must be an integer >= 0 (got {value!r})")

    if config.tagger.type not in TAGGER_TYPES:
        errors.append(f"tagger.type must be one of {', '.join(TAGGER_TYPES)} (got {config.tagger.type!r})")

    if config.tagger.keyword_fallback:
        for tag, cls in config.tagger.keyword_fallback.tag_classes.items():
            if cls not in {c.value for c in ThreadClass}:
                errors.append(f"keyword tag class for '{tag}' must be a thread class (got {cls!r})")

    if config.summarizer.min_messages < 1:
        errors.append("summarizer.min_messages must be >= 1")
    if config.summarizer.max_concurrent_summaries < 1:
        errors.append("summarizer.max_concurrent_summaries must be >= 1")

    # Check that referenced providers exist in providers
    if config.providers:
        if config.tagger.type == "llm" and config.tagger.provider not in config.providers:
            errors.append(
                f"Tagger provider '{config.tagger.provider}' not found in providers section"
            )
        if config.summarizer.provider and config.summarizer.provider not in config.providers:
            errors.append(
                f"Summarizer provider '{config.summarizer.provider}' not found in providers section"
            )

    return errors


def apply_options(config: MetamemoryConfig, **options: Any) -> MetamemoryConfig:
    """Return a copy of *config* with the given runtime options applied.

    Accepts the processing options plus ``compaction_thresholds`` (a dict or
    CompactionThresholds; missing classes keep their prior value). Raises
    ConfigValidationError if an option is unknown or the result is invalid,
    leaving *config* untouched.
    """
    errors: list[str] = []
    proc_updates: dict[str, Any] = {}
    compaction = config.compaction

    for key, value in options.items():
        if value is None:
            continue
        if key in PROCESSING_OPTIONS:
            proc_updates[key] = value
        elif key == "compaction_thresholds":
            if isinstance(value, CompactionThresholds):
                value = {f.name: getattr(value, f.name) for f in fields(value)}
            if not isinstance(value, dict):
                errors.append("compaction_thresholds must be a mapping")
                continue
            unknown = set(value) - {c.value for c in ThreadClass}
            if unknown:
                errors.append(f"Unknown compaction threshold class(es): {', '.join(sorted(unknown))}")
                continue
            compaction = replace(compaction, thresholds=_build_thresholds(value, compaction.thresholds))
        else:
            errors.append(f"Unknown option: {key}")

    if errors:
        raise ConfigValidationError(errors)

    updated = replace(
        config,
        processing=replace(config.processing, **proc_updates),
        compaction=compaction,
    )
    errors = validate_config(updated)
    if errors:
        raise ConfigValidationError(errors)
    return updated


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> MetamemoryConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return _build_config(raw)
