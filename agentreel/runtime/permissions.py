from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Mapping

from .log import get_logger

if TYPE_CHECKING:
    from .stores.base import RuleStore

logger = get_logger(__name__)

# Request fields that may carry the target path, in priority order.
PATH_FIELDS: tuple[str, ...] = ("path", "file", "filePath", "fileName")


class PermissionKind(StrEnum):
    READ = "read"
    WRITE = "write"
    SHELL = "shell"
    URL = "url"
    MCP = "mcp"


class EvalResult(StrEnum):
    ALLOW = "allow"
    ASK = "ask"


class PermissionDecision(StrEnum):
    ALLOW = "allow"
    DENY = "deny"
    ALWAYS = "always"


@dataclass(frozen=True, slots=True)
class PermissionRequest:
    kind: str
    fields: dict[str, Any] = field(default_factory=dict)
    working_root: str = ""

    @property
    def target_path(self) -> str | None:
        for name in PATH_FIELDS:
            value = self.fields.get(name)
            if isinstance(value, str) and value:
                return value
        return None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, **self.fields, "workingRoot": self.working_root}

    @staticmethod
    def from_dict(raw: Mapping[str, Any], *, working_root: str | None = None) -> "PermissionRequest":
        fields = {k: v for k, v in raw.items() if k not in {"kind", "workingRoot", "cwd"}}
        root = working_root
        if root is None:
            root_raw = raw.get("workingRoot", raw.get("cwd"))
            root = str(root_raw) if root_raw is not None else ""
        return PermissionRequest(kind=str(raw.get("kind") or ""), fields=fields, working_root=root)


@dataclass(frozen=True, slots=True)
class PermissionRule:
    kind: str
    path_prefix: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "pathPrefix": self.path_prefix}

    @staticmethod
    def from_dict(raw: Mapping[str, Any]) -> "PermissionRule":
        kind = raw.get("kind")
        prefix = raw.get("pathPrefix")
        if not isinstance(kind, str) or not kind or not isinstance(prefix, str):
            raise ValueError(f"Invalid permission rule: {dict(raw)!r}")
        return PermissionRule(kind=kind, path_prefix=prefix)


def normalize_path(p: str, base: str | None = None) -> str:
    """
    Absolute, `.`/`..`-collapsed form of `p` without trailing separators.

    Relative paths resolve against `base` when given, else the process cwd.
    The filesystem root normalizes to "" so it contains every absolute path.
    """

    expanded = os.path.expanduser(p)
    if not os.path.isabs(expanded):
        expanded = os.path.join(base if base else os.getcwd(), expanded)
    return os.path.normpath(expanded).rstrip(os.sep)


def is_under(path: str, prefix: str) -> bool:
    """True when normalized `path` equals `prefix` or is a descendant of it."""

    return path == prefix or path.startswith(prefix + os.sep)


class PermissionPolicy:
    """
    Decides whether a side-effecting request may proceed without asking.

    Evaluation order:
    - url / mcp: always allowed
    - read under the working root: allowed
    - auto-approve: reads/writes under the working root, and any shell request
    - stored rules, first match in insertion order; a shell rule matches the
      working root or the target path, other rules the target path
    - otherwise ask

    Evaluation does no I/O; rule mutations write through to the rule store.
    """

    def __init__(self, rule_store: RuleStore, *, auto_approve: bool = False) -> None:
        self._store = rule_store
        self.auto_approve = auto_approve
        self._rules: list[PermissionRule] = self._load()

    def evaluate(self, request: PermissionRequest, working_root: str | None = None) -> EvalResult:
        kind = request.kind
        root_raw = working_root if working_root is not None else request.working_root
        root = normalize_path(root_raw) if root_raw else None
        raw_path = request.target_path
        path = normalize_path(raw_path, root_raw or None) if raw_path else None

        if kind in (PermissionKind.URL, PermissionKind.MCP):
            return EvalResult.ALLOW

        if kind == PermissionKind.READ and path is not None and root is not None and is_under(path, root):
            return EvalResult.ALLOW

        if self.auto_approve:
            if kind == PermissionKind.SHELL:
                return EvalResult.ALLOW
            if kind in (PermissionKind.READ, PermissionKind.WRITE):
                if path is not None and root is not None and is_under(path, root):
                    return EvalResult.ALLOW

        for rule in self._rules:
            if rule.kind != kind:
                continue
            if kind == PermissionKind.SHELL and root is not None and is_under(root, rule.path_prefix):
                return EvalResult.ALLOW
            if path is not None and is_under(path, rule.path_prefix):
                return EvalResult.ALLOW

        return EvalResult.ASK

    def add_rule(self, kind: str, path_prefix: str) -> bool:
        rule = PermissionRule(kind=str(kind), path_prefix=normalize_path(path_prefix))
        rules = self._load()
        if rule in rules:
            self._rules = rules
            return False
        rules.append(rule)
        self._store.save(rules)
        self._rules = rules
        logger.info("permission rule added", kind=rule.kind, path_prefix=rule.path_prefix)
        return True

    def remove_rule(self, index: int) -> PermissionRule:
        rules = self._load()
        if index < 0 or index >= len(rules):
            raise IndexError(f"Rule index out of range: {index}")
        removed = rules.pop(index)
        self._store.save(rules)
        self._rules = rules
        logger.info("permission rule removed", kind=removed.kind, path_prefix=removed.path_prefix)
        return removed

    def clear_rules(self) -> None:
        self._store.save([])
        self._rules = []
        logger.info("permission rules cleared")

    def get_rules(self) -> list[PermissionRule]:
        return list(self._rules)

    def reload(self) -> None:
        self._rules = self._load()

    def _load(self) -> list[PermissionRule]:
        # Stored prefixes may predate normalization; compare and dedup on the normalized form.
        rules: list[PermissionRule] = []
        for stored in self._store.load():
            rule = PermissionRule(kind=stored.kind, path_prefix=normalize_path(stored.path_prefix))
            if rule not in rules:
                rules.append(rule)
        return rules
