from __future__ import annotations

import argparse
import json
import os
import sys
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import IO, Iterator

from . import __version__
from .runtime.config import AppConfig, DataPaths, config_path, default_data_dir, load_config
from .runtime.errors import ConfigError, EventLogError, RuleStoreError, SessionNotFoundError
from .runtime.ids import now_ts_ms
from .runtime.log import configure_logging, get_logger
from .runtime.permissions import EvalResult, PermissionKind, PermissionPolicy, PermissionRequest
from .runtime.protocol import RawEvent
from .runtime.replay import DEFAULT_SPEED, ReplayCodec, ReplayPlayer, decode_log
from .runtime.session import Session
from .runtime.stores import FileEventLogStore, FileRuleStore, FileSessionStore, MemoryEventLogStore
from .runtime.transcript import encode_transcript
from .runtime.validate import has_errors, validate_log_file, validate_session_log
from .ui.console_ui import ConsoleUI, print_transcript

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_ASK = 2
EXIT_VALIDATION_FAILED = 3
EXIT_CONFIG_ERROR = 5

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class _Context:
    config: AppConfig
    paths: DataPaths

    def rule_store(self) -> FileRuleStore:
        return FileRuleStore(self.paths.rules_file)

    def event_log(self) -> FileEventLogStore:
        return FileEventLogStore(self.paths.events_dir)

    def session_store(self) -> FileSessionStore:
        return FileSessionStore(self.paths.sessions_dir)

    def codec(self) -> ReplayCodec:
        return ReplayCodec(hidden_tools=self.config.hidden_tools, preview_chars=self.config.preview_chars)


def _configure_text_io() -> None:
    """
    Best-effort I/O normalization for terminals.

    Invalid byte sequences read with errors='surrogateescape' end up as
    surrogate codepoints, which later crash when encoding to UTF-8.
    """

    try:
        if hasattr(sys.stdin, "reconfigure"):
            sys.stdin.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="backslashreplace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="backslashreplace")
    except (AttributeError, OSError, ValueError):
        return


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentreel",
        description="Live transcripts, replay and permission rules for streaming agent sessions.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument("--data-dir", default=None, help="Data directory (default: $AGENTREEL_HOME or ~/.agentreel).")
    parser.add_argument("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ...).")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON lines on stderr.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    watch_parser = subparsers.add_parser("watch", help="Render a live JSONL event stream.")
    watch_parser.add_argument("source", nargs="?", default="-", help="Event file, or '-' for stdin (default).")
    watch_parser.add_argument("--root", default=None, help="Working root of the session (default: cwd).")
    watch_parser.add_argument("--model", default=None, help="Model name shown for the session.")
    watch_parser.add_argument("--session", default=None, help="Continue a recorded session.")
    watch_parser.add_argument("--no-record", action="store_true", help="Do not write the event log.")
    watch_parser.set_defaults(func=_cmd_watch)

    replay_parser = subparsers.add_parser("replay", help="Rebuild a transcript from a recorded log.")
    replay_parser.add_argument("target", help="Session ID or path to a JSONL event log.")
    replay_parser.add_argument("--play", action="store_true", help="Play back with the recorded timing.")
    replay_parser.add_argument("--speed", type=float, default=DEFAULT_SPEED, help="Playback speed (default: 4).")
    replay_parser.add_argument("--json", action="store_true", help="Print the transcript as canonical JSON.")
    replay_parser.set_defaults(func=_cmd_replay)

    session_parser = subparsers.add_parser("session", help="Manage recorded sessions.")
    session_subparsers = session_parser.add_subparsers(dest="session_cmd", required=True)
    session_list_parser = session_subparsers.add_parser("list", help="List sessions.")
    session_list_parser.set_defaults(func=_cmd_session_list)
    session_delete_parser = session_subparsers.add_parser("delete", help="Delete a session and its log.")
    session_delete_parser.add_argument("session_id")
    session_delete_parser.set_defaults(func=_cmd_session_delete)

    rules_parser = subparsers.add_parser("rules", help="Manage stored permission rules.")
    rules_subparsers = rules_parser.add_subparsers(dest="rules_cmd", required=True)
    rules_list_parser = rules_subparsers.add_parser("list", help="List rules in evaluation order.")
    rules_list_parser.set_defaults(func=_cmd_rules_list)
    rules_add_parser = rules_subparsers.add_parser("add", help="Add a rule.")
    rules_add_parser.add_argument("kind", choices=[k.value for k in PermissionKind])
    rules_add_parser.add_argument("path_prefix")
    rules_add_parser.set_defaults(func=_cmd_rules_add)
    rules_remove_parser = rules_subparsers.add_parser("remove", help="Remove the rule at INDEX.")
    rules_remove_parser.add_argument("index", type=int)
    rules_remove_parser.set_defaults(func=_cmd_rules_remove)
    rules_clear_parser = rules_subparsers.add_parser("clear", help="Remove all rules.")
    rules_clear_parser.set_defaults(func=_cmd_rules_clear)

    check_parser = subparsers.add_parser("check", help="Evaluate a permission request.")
    check_parser.add_argument("kind", choices=[k.value for k in PermissionKind])
    check_parser.add_argument("--path", default=None, help="Target path of the request.")
    check_parser.add_argument("--root", default=None, help="Working root (default: cwd).")
    check_parser.add_argument("--auto-approve", action="store_true", help="Evaluate with auto-approve on.")
    check_parser.set_defaults(func=_cmd_check)

    validate_parser = subparsers.add_parser("validate", help="Validate a recorded event log.")
    validate_parser.add_argument("target", help="Session ID or path to a JSONL event log.")
    validate_parser.add_argument("--strict", action="store_true", help="Treat tolerated anomalies as errors.")
    validate_parser.set_defaults(func=_cmd_validate)

    return parser


def _load_context(args: argparse.Namespace) -> _Context:
    data_dir = Path(args.data_dir).expanduser() if getattr(args, "data_dir", None) else default_data_dir()
    config = load_config(config_path(data_dir))
    if getattr(args, "data_dir", None):
        config = replace(config, data_dir=data_dir)
    return _Context(config=config, paths=config.paths)


# --- watch ---


def _iter_source_lines(source: str) -> Iterator[str]:
    if source == "-":
        yield from sys.stdin
        return
    with open(source, "r", encoding="utf-8") as f:
        yield from f


def _event_from_line(line: str) -> RawEvent | None:
    line = line.strip()
    if not line:
        return None
    try:
        raw = json.loads(line)
    except json.JSONDecodeError:
        logger.warning("skipping invalid event line")
        return None
    if not isinstance(raw, dict):
        logger.warning("skipping non-object event line")
        return None
    event = RawEvent.from_dict(raw)
    if raw.get("timestamp") is None:
        event = replace(event, timestamp=now_ts_ms())
    return event


def _cmd_watch(args: argparse.Namespace, ctx: _Context) -> int:
    source = str(args.source)
    if source != "-" and not Path(source).is_file():
        print(f"Event source not found: {source}", file=sys.stderr)
        return EXIT_ERROR

    policy = PermissionPolicy(ctx.rule_store())
    event_log = MemoryEventLogStore() if args.no_record else ctx.event_log()
    session_store = None if args.no_record else ctx.session_store()
    root = str(Path(args.root).expanduser().resolve()) if args.root else os.getcwd()
    model = args.model or ctx.config.default_model

    ui = ConsoleUI(preview_chars=ctx.config.preview_chars)
    common = dict(
        policy=policy,
        event_log=event_log,
        session_store=session_store,
        codec=ctx.codec(),
        max_session_logs=ctx.config.max_session_logs,
    )
    if args.session:
        try:
            session = Session.restore(args.session, working_root=args.root and root, model=args.model, **common)
        except (SessionNotFoundError, EventLogError) as e:
            print(str(e), file=sys.stderr)
            return EXIT_ERROR
        print_transcript(session.transcript)
    else:
        session = Session.start_new(working_root=root, model=model, **common)

    session.sink = lambda signals: ui.on_signals(signals, session.transcript)
    ui.start()
    session.start()
    try:
        for line in _iter_source_lines(source):
            event = _event_from_line(line)
            if event is not None:
                session.publish(event)
    finally:
        session.close()
        ui.stop()

    diag = session.reducer.diagnostics
    logger.info("watch finished", session_id=session.session_id, **diag.to_dict())
    if not args.no_record:
        print(f"Session: {session.session_id}", file=sys.stderr)
    return EXIT_OK


# --- replay ---


def _load_target_events(target: str, ctx: _Context) -> tuple[list[RawEvent], dict]:
    path = Path(target).expanduser()
    if path.is_file():
        return decode_log(path.read_text(encoding="utf-8").splitlines()), {}
    events = list(ctx.event_log().read(target))
    try:
        meta = ctx.session_store().get_session(target)
    except SessionNotFoundError:
        meta = {}
    return events, meta


def _cmd_replay(args: argparse.Namespace, ctx: _Context) -> int:
    try:
        events, meta = _load_target_events(str(args.target), ctx)
    except EventLogError as e:
        print(str(e), file=sys.stderr)
        return EXIT_ERROR

    codec = ctx.codec()
    working_root = meta.get("working_root")
    model = meta.get("model")

    if args.play:
        return _play(events, codec=codec, speed=float(args.speed))

    transcript = codec.replay(events, working_root=working_root, model=model)
    if args.json:
        print(encode_transcript(transcript))
    else:
        print_transcript(transcript)
    return EXIT_OK


def _play(events: list[RawEvent], *, codec: ReplayCodec, speed: float, sleep=time.sleep) -> int:
    player = ReplayPlayer(events, codec)
    ui = ConsoleUI(preview_chars=codec.preview_chars)
    ui.start()
    try:
        while not player.at_end:
            player.step()
            ui.on_signals(player.last_signals, player.transcript())
            if not player.at_end:
                sleep(player.delay_ms(speed) / 1000.0)
    finally:
        ui.stop()
    return EXIT_OK


# --- session ---


def _cmd_session_list(args: argparse.Namespace, ctx: _Context) -> int:
    session_store = ctx.session_store()
    event_log = ctx.event_log()
    seen: set[str] = set()
    for meta in session_store.list_sessions():
        sid = str(meta.get("session_id"))
        seen.add(sid)
        log = "yes" if event_log.exists(sid) else "no"
        print(
            f"{sid}\tupdated_at={meta.get('updated_at')}\tmodel={meta.get('model')}"
            f"\troot={meta.get('working_root')}\tlog={log}"
        )
    for sid in reversed(event_log.list_sessions()):
        if sid not in seen:
            print(f"{sid}\tupdated_at=None\tmodel=None\troot=None\tlog=yes")
    return EXIT_OK


def _cmd_session_delete(args: argparse.Namespace, ctx: _Context) -> int:
    sid = str(args.session_id)
    removed_log = ctx.event_log().delete(sid)
    removed_meta = ctx.session_store().delete_session(sid)
    if not (removed_log or removed_meta):
        print(str(SessionNotFoundError(sid)), file=sys.stderr)
        return EXIT_ERROR
    print(f"Deleted {sid}")
    return EXIT_OK


# --- rules ---


def _cmd_rules_list(args: argparse.Namespace, ctx: _Context) -> int:
    rules = ctx.rule_store().load()
    if not rules:
        print("No rules.")
        return EXIT_OK
    for i, rule in enumerate(rules):
        print(f"{i}\t{rule.kind}\t{rule.path_prefix}")
    return EXIT_OK


def _cmd_rules_add(args: argparse.Namespace, ctx: _Context) -> int:
    policy = PermissionPolicy(ctx.rule_store())
    added = policy.add_rule(args.kind, args.path_prefix)
    rule = policy.get_rules()[-1] if added else None
    if added and rule is not None:
        print(f"Added {rule.kind} {rule.path_prefix}")
    else:
        print("Rule already exists.")
    return EXIT_OK


def _cmd_rules_remove(args: argparse.Namespace, ctx: _Context) -> int:
    policy = PermissionPolicy(ctx.rule_store())
    try:
        removed = policy.remove_rule(int(args.index))
    except IndexError as e:
        print(str(e), file=sys.stderr)
        return EXIT_ERROR
    print(f"Removed {removed.kind} {removed.path_prefix}")
    return EXIT_OK


def _cmd_rules_clear(args: argparse.Namespace, ctx: _Context) -> int:
    PermissionPolicy(ctx.rule_store()).clear_rules()
    print("Cleared.")
    return EXIT_OK


def _cmd_check(args: argparse.Namespace, ctx: _Context) -> int:
    policy = PermissionPolicy(ctx.rule_store(), auto_approve=bool(args.auto_approve))
    root = args.root or os.getcwd()
    fields = {"path": args.path} if args.path else {}
    result = policy.evaluate(PermissionRequest(kind=args.kind, fields=fields, working_root=root))
    print(result.value)
    return EXIT_OK if result is EvalResult.ALLOW else EXIT_ASK


# --- validate ---


def _cmd_validate(args: argparse.Namespace, ctx: _Context) -> int:
    strict = bool(args.strict)
    target = str(args.target)
    target_path = Path(target).expanduser()
    if target_path.is_file():
        issues = validate_log_file(target_path, strict=strict)
    else:
        issues = validate_session_log(ctx.event_log(), target, strict=strict)

    _print_issues(issues, out=sys.stdout, err=sys.stderr)
    if has_errors(issues):
        return EXIT_VALIDATION_FAILED
    return EXIT_OK


def _print_issues(issues, *, out: IO[str], err: IO[str]) -> None:
    errors = [i for i in issues if i.severity == "error"]
    for issue in issues:
        stream = err if issue.severity == "error" else out
        print(issue.render(), file=stream)

    if errors:
        print(f"Validation failed: {len(errors)} error(s), {len(issues) - len(errors)} warning(s).", file=err)
    elif issues:
        print(f"Validation passed with {len(issues)} warning(s).", file=err)
    else:
        print("OK", file=out)


def main(argv: list[str] | None = None) -> int:
    _configure_text_io()
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        ctx = _load_context(args)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG_ERROR
    configure_logging(args.log_level or ctx.config.log_level, json_logs=bool(args.json_logs))

    try:
        func = getattr(args, "func")
        return int(func(args, ctx))
    except RuleStoreError as e:
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
