"""CLI: metamemory process, threads, compact, summarize, config validate."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from ..config import load_config, validate_config
from ..core.thread_store import rank_threads
from ..engine import Metamemory
from ..storage.filesystem import FilesystemStateStore
from ..storage.serialization import (
    compaction_result_to_dict,
    message_from_dict,
    state_from_dict,
    state_to_dict,
)
from ..types import (
    CompactionOptions,
    ConfigValidationError,
    Message,
    MetamemoryConfig,
    MetamemoryState,
    ProcessingTrigger,
    TriggerType,
)


def _read_messages(path: str | None) -> list[Message]:
    """Messages from a JSON list, or alternating user/assistant lines."""
    if path:
        text = Path(path).read_text()
    else:
        print("Reading conversation from stdin (Ctrl+D to end)...", file=sys.stderr)
        text = sys.stdin.read()

    try:
        raw_messages = json.loads(text)
        if not isinstance(raw_messages, list):
            raise ValueError("expected a list of messages")
        messages = [message_from_dict(m) for m in raw_messages]
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        lines = [l.strip() for l in text.strip().split("\n") if l.strip()]
        messages = [
            Message(role="user" if i % 2 == 0 else "assistant", content=line)
            for i, line in enumerate(lines)
        ]

    taken = {m.id for m in messages if m.id}
    for i, m in enumerate(messages, 1):
        if m.id is not None:
            continue
        candidate, n = f"msg{i}", 1
        while candidate in taken:
            n += 1
            candidate = f"msg{i}-{n}"
        m.id = candidate
        taken.add(candidate)
    return messages


def _store(config: MetamemoryConfig) -> FilesystemStateStore:
    return FilesystemStateStore(root=config.storage.root)


def _load_state(args, config: MetamemoryConfig) -> MetamemoryState:
    if getattr(args, "task", None):
        state = _store(config).load_state(args.task)
        return state or MetamemoryState()
    if getattr(args, "state", None):
        path = Path(args.state)
        if path.is_file():
            return state_from_dict(json.loads(path.read_text()))
    return MetamemoryState()


def _save_state(args, config: MetamemoryConfig, state: MetamemoryState) -> None:
    if getattr(args, "task", None):
        path = _store(config).save_state(args.task, state)
    elif getattr(args, "state", None):
        path = Path(args.state)
        path.write_text(json.dumps(state_to_dict(state), indent=2))
    else:
        return
    print(f"State saved to {path}")


def _get_engine(args) -> Metamemory:
    try:
        return Metamemory(config_path=args.config)
    except ConfigValidationError as e:
        print("Config validation errors:", file=sys.stderr)
        for err in e.errors:
            print(f"  - {err}", file=sys.stderr)
        sys.exit(1)


def _print_threads(state: MetamemoryState, config: MetamemoryConfig) -> None:
    ranked = rank_threads(
        state.threads,
        size_penalty_threshold=config.compaction.size_penalty_threshold,
    )
    print(f"{'Thread':<30} {'Class':<10} {'Status':<9} {'Msgs':>5} {'Priority':>8}")
    print("-" * 66)
    for thread, priority in ranked:
        print(
            f"{thread.id:<30} {thread.thread_class.value:<10} {thread.status.value:<9} "
            f"{len(thread.messages):>5} {priority:>8}"
        )


def cmd_process(args):
    """Run a tagging round over a conversation."""
    engine = _get_engine(args)
    messages = _read_messages(args.messages)
    state = _load_state(args, engine.config)

    trigger = ProcessingTrigger(type=TriggerType(args.trigger), threshold=args.threshold)
    updated = engine.process(messages, state, trigger)

    if updated is state:
        print(f"Trigger '{args.trigger}' did not fire; nothing processed.")
        return

    print(f"Processed {len(messages)} messages: {len(updated.threads)} threads, "
          f"{len(updated.metamemory)} messages tagged")
    _save_state(args, engine.config, updated)


def cmd_threads(args):
    """List tracked threads by priority."""
    config = load_config(args.config)
    state = _load_state(args, config)

    if not state.threads:
        print("No threads yet. Process a conversation first.")
        return

    _print_threads(state, config)

    if args.verbose_threads:
        for thread in state.threads.values():
            if not thread.summary:
                continue
            print(f"\n{thread.name} ({thread.id})")
            print(f"  {thread.summary}")
            for point in thread.key_points:
                print(f"  * {point}")
            for question in thread.open_questions:
                print(f"  ? {question}")


def cmd_compact(args):
    """Compact a conversation using the stored thread state."""
    engine = _get_engine(args)
    messages = _read_messages(args.messages)
    state = _load_state(args, engine.config)

    if not messages:
        print("No messages to compact.")
        return

    options = CompactionOptions(
        aggressive_mode=args.aggressive,
        target_token_count=args.target,
        preserve_thread_ids=set(args.preserve or []),
    )
    result = engine.compact(messages, state, options)
    meta = result.metadata

    if args.output:
        Path(args.output).write_text(json.dumps(compaction_result_to_dict(result), indent=2))
        print(f"Compacted history written to {args.output}")

    if meta.fallback:
        print("Too many untagged messages; history returned uncompacted.")
    print(f"Messages: {meta.original_count} -> {meta.compacted_count}")
    print(f"Tokens:   {meta.original_tokens:,} -> {meta.compacted_tokens:,}")
    if meta.threads_preserved:
        print(f"Preserved:  {', '.join(sorted(meta.threads_preserved))}")
    if meta.threads_summarized:
        print(f"Summarized: {', '.join(sorted(meta.threads_summarized))}")


def cmd_summarize(args):
    """Summarize threads with the configured summarizer."""
    engine = _get_engine(args)
    if engine.summarizer is None:
        print("No summarizer provider configured.", file=sys.stderr)
        sys.exit(1)

    messages = _read_messages(args.messages)
    state = _load_state(args, engine.config)
    updated = engine.summarize(state, messages, thread_ids=args.thread or None)

    summarized = [
        t for tid, t in updated.threads.items()
        if t.summary and t.summary != getattr(state.threads.get(tid), "summary", None)
    ]
    if not summarized:
        print("No threads summarized.")
        return
    for thread in summarized:
        print(f"{thread.name} ({thread.id}, {thread.status.value}): {thread.summary}")
    _save_state(args, engine.config, updated)


def cmd_config_validate(args):
    """Validate config file."""
    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        proc = config.processing
        thresholds = config.compaction.thresholds
        print("Config is valid.")
        print(f"  Tagger: {config.tagger.type}")
        if config.tagger.type == "llm":
            print(f"  Provider: {config.tagger.provider} ({config.tagger.model})")
        print(f"  Summarizer: {config.summarizer.provider or 'none'}")
        print(f"  Window: {proc.window_size} messages, every {proc.process_interval}")
        print(
            f"  Thresholds: core {thresholds.core}, active {thresholds.active}, "
            f"complete {thresholds.complete}, ephemeral {thresholds.ephemeral}"
        )
        print(f"  Storage: {config.storage.root}")


def _add_state_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--state", "-s", help="State snapshot file (JSON)")
    group.add_argument("--task", "-t", help="Task id in the configured state store")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="metamemory",
        description="Topic-thread tracking and history compaction for LLM conversations",
    )
    parser.add_argument("--config", "-c", help="Path to config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")

    # process
    process_parser = subparsers.add_parser("process", help="Tag a conversation into threads")
    process_parser.add_argument("--messages", "-m", help="Conversation file (JSON messages)")
    process_parser.add_argument(
        "--trigger",
        choices=[t.value for t in TriggerType],
        default=TriggerType.MANUAL.value,
        help="Trigger to evaluate (default: manual)",
    )
    process_parser.add_argument("--threshold", type=float, help="Trigger threshold override")
    _add_state_args(process_parser)

    # threads
    threads_parser = subparsers.add_parser("threads", help="List tracked threads")
    threads_parser.add_argument(
        "--summaries", dest="verbose_threads", action="store_true", help="Show thread summaries",
    )
    _add_state_args(threads_parser)

    # compact
    compact_parser = subparsers.add_parser("compact", help="Compact a conversation")
    compact_parser.add_argument("--messages", "-m", help="Conversation file (JSON messages)")
    compact_parser.add_argument("--aggressive", action="store_true", help="Aggressive mode")
    compact_parser.add_argument("--target", type=int, help="Target token count")
    compact_parser.add_argument(
        "--preserve", action="append", metavar="THREAD", help="Thread id to keep (repeatable)",
    )
    compact_parser.add_argument("--output", "-o", help="Write compacted history as JSON")
    _add_state_args(compact_parser)

    # summarize
    summarize_parser = subparsers.add_parser("summarize", help="Summarize threads")
    summarize_parser.add_argument("--messages", "-m", help="Conversation file (JSON messages)")
    summarize_parser.add_argument(
        "--thread", action="append", metavar="THREAD", help="Thread id to summarize (repeatable)",
    )
    _add_state_args(summarize_parser)

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "process":
        cmd_process(args)
    elif args.command == "threads":
        cmd_threads(args)
    elif args.command == "compact":
        cmd_compact(args)
    elif args.command == "summarize":
        cmd_summarize(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: metamemory config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
