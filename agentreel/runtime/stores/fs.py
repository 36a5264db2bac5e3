from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable, Iterator

from ..errors import EventLogError, RuleStoreError, SessionNotFoundError
from ..ids import new_id, now_ts_ms
from ..log import get_logger
from ..permissions import PermissionRule
from ..protocol import RawEvent
from .base import EventLogStore, RuleStore, SessionStore

logger = get_logger(__name__)


def _replace_surrogates(text: str) -> str:
    out: list[str] = []
    changed = False
    for ch in text:
        o = ord(ch)
        if 0xD800 <= o <= 0xDFFF:
            out.append("\uFFFD")
            changed = True
        else:
            out.append(ch)
    return "".join(out) if changed else text


def _sanitize_json_value(value: Any) -> Any:
    if isinstance(value, str):
        return _replace_surrogates(value)
    if isinstance(value, list):
        return [_sanitize_json_value(v) for v in value]
    if isinstance(value, dict):
        out: dict[Any, Any] = {}
        for k, v in value.items():
            key = _replace_surrogates(k) if isinstance(k, str) else k
            out[key] = _sanitize_json_value(v)
        return out
    return value


def _safe_write_json(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(
        json.dumps(_sanitize_json_value(obj), ensure_ascii=False, sort_keys=True, indent=2),
        encoding="utf-8",
        errors="backslashreplace",
    )
    tmp.replace(path)


class FileRuleStore(RuleStore):
    """Rules persisted as {"permissionRules": [{"kind", "pathPrefix"}]}."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[PermissionRule]:
        if not self._path.exists():
            return []
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise RuleStoreError(f"Permission file is not valid JSON: {self._path} ({e})", path=str(self._path)) from e
        except OSError as e:
            raise RuleStoreError(f"Failed to read permission file: {self._path} ({e})", path=str(self._path)) from e
        if not isinstance(raw, dict):
            raise RuleStoreError(f"Permission file must contain an object: {self._path}", path=str(self._path))
        rules_raw = raw.get("permissionRules", [])
        if not isinstance(rules_raw, list):
            raise RuleStoreError(f"permissionRules must be a list: {self._path}", path=str(self._path))
        rules: list[PermissionRule] = []
        for item in rules_raw:
            if not isinstance(item, dict):
                logger.warning("skipping invalid permission rule", path=str(self._path), rule=item)
                continue
            try:
                rules.append(PermissionRule.from_dict(item))
            except ValueError:
                logger.warning("skipping invalid permission rule", path=str(self._path), rule=item)
        return rules

    def save(self, rules: Iterable[PermissionRule]) -> None:
        _safe_write_json(self._path, {"permissionRules": [r.to_dict() for r in rules]})


class FileEventLogStore(EventLogStore):
    """One JSONL file per session under `root`."""

    def __init__(self, root: Path) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        return self._root / f"{session_id}.jsonl"

    def append(self, session_id: str, event: RawEvent) -> None:
        path = self._path(session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8", errors="backslashreplace") as f:
            f.write(json.dumps(_sanitize_json_value(event.to_dict()), ensure_ascii=False))
            f.write("\n")

    def read(self, session_id: str) -> Iterator[RawEvent]:
        path = self._path(session_id)
        if not path.exists():
            raise EventLogError(f"Event log not found: {session_id}", session_id=session_id)
        return self._iter_file(path)

    def read_lines(self, session_id: str) -> list[str]:
        path = self._path(session_id)
        if not path.exists():
            raise EventLogError(f"Event log not found: {session_id}", session_id=session_id)
        try:
            return path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise EventLogError(f"Failed to read event log: {path} ({e})", session_id=session_id) from e

    def _iter_file(self, path: Path) -> Iterator[RawEvent]:
        with path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    raw = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("skipping invalid event log line", path=str(path))
                    continue
                if not isinstance(raw, dict):
                    continue
                yield RawEvent.from_dict(raw)

    def list_sessions(self) -> list[str]:
        paths = [p for p in self._root.glob("*.jsonl") if p.is_file()]
        paths.sort(key=lambda p: (p.stat().st_mtime_ns, p.name))
        return [p.stem for p in paths]

    def exists(self, session_id: str) -> bool:
        return self._path(session_id).is_file()

    def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def prune(self, max_sessions: int, *, keep: Iterable[str] = ()) -> list[str]:
        deleted = super().prune(max_sessions, keep=keep)
        if deleted:
            logger.info("pruned session logs", deleted=len(deleted), max_sessions=max_sessions)
        return deleted


class FileSessionStore(SessionStore):
    def __init__(self, root: Path) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        return self._root / f"{session_id}.json"

    def create_session(self, meta: dict[str, Any]) -> str:
        session_id = str(meta.get("session_id") or new_id("sess"))
        now = now_ts_ms()
        meta_out = dict(meta)
        meta_out["session_id"] = session_id
        meta_out.setdefault("created_at", now)
        meta_out["updated_at"] = now
        _safe_write_json(self._path(session_id), meta_out)
        return session_id

    def get_session(self, session_id: str) -> dict[str, Any]:
        path = self._path(session_id)
        if not path.exists():
            raise SessionNotFoundError(session_id)
        return json.loads(path.read_text(encoding="utf-8"))

    def list_sessions(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        filters = dict(filters or {})
        for path in sorted(self._root.glob("*.json")):
            try:
                meta = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                continue
            if isinstance(meta, dict) and _matches_filters(meta, filters):
                out.append(meta)
        out.sort(key=lambda m: (m.get("updated_at") or 0, m.get("created_at") or 0), reverse=True)
        return out

    def update_session(self, session_id: str, patch: dict[str, Any]) -> None:
        meta = self.get_session(session_id)
        meta.update(patch)
        meta["updated_at"] = now_ts_ms()
        _safe_write_json(self._path(session_id), meta)

    def delete_session(self, session_id: str) -> bool:
        try:
            self._path(session_id).unlink()
        except FileNotFoundError:
            return False
        return True


def _matches_filters(meta: dict[str, Any], filters: dict[str, Any]) -> bool:
    for key, expected in filters.items():
        if expected is None:
            continue
        if meta.get(key) != expected:
            return False
    return True
