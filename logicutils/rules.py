"""Parsing of pattern rule files and evaluation of rule goals."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping


class RuleError(Exception):
    """Base class for rule errors."""


class RuleParseError(RuleError):
    """A rule file contains a line that is not understood."""

    def __init__(self, line: int, msg: str) -> None:
        super().__init__(f"parse error at line {line}: {msg}")
        self.line = line
        self.msg = msg


@dataclass
class Rule:
    """A build rule: a target pattern, dependencies, recipe and optional goal."""

    pattern: str
    deps: list[str] = field(default_factory=list)
    recipe: str = ""
    goal: str | None = None


_KEYS = ("pattern", "deps", "recipe", "goal")


def _build(fields: dict[str, str]) -> Rule | None:
    pattern = fields.get("pattern")
    if pattern is None:
        return None
    return Rule(
        pattern=pattern,
        deps=fields.get("deps", "").split(),
        recipe=fields.get("recipe", ""),
        goal=fields.get("goal"),
    )


def parse_rules(text: str) -> list[Rule]:
    """Parse rules separated by ``---`` lines.

    Each rule has ``pattern:``, ``deps:``, ``recipe:`` and ``goal:`` lines;
    blank lines and ``#`` comments are ignored. A block without a pattern
    yields no rule.
    """
    rules: list[Rule] = []
    current: dict[str, str] = {}

    for line_num, line in enumerate(text.splitlines(), start=1):
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue
        if trimmed == "---":
            rule = _build(current)
            if rule is not None:
                rules.append(rule)
            current = {}
            continue
        for key in _KEYS:
            prefix = f"{key}:"
            if trimmed.startswith(prefix):
                current[key] = trimmed[len(prefix):].strip()
                break
        else:
            raise RuleParseError(line_num, f"unexpected line: {trimmed}")

    rule = _build(current)
    if rule is not None:
        rules.append(rule)
    return rules


def evaluate_goal(goal: str, bindings: Mapping[str, str]) -> bool:
    """Evaluate ``A != B`` or ``A == B``; names resolve through ``bindings``.

    Operands that are not bound stand for themselves. Any other goal holds.
    """
    goal = goal.strip()
    for op in ("!=", "=="):
        left, sep, right = goal.partition(op)
        if sep:
            left, right = left.strip(), right.strip()
            lval = bindings.get(left, left)
            rval = bindings.get(right, right)
            return lval != rval if op == "!=" else lval == rval
    return True


def read_rules(path: str | Path | None = None) -> list[Rule]:
    """Read and parse rules from ``path``, or from standard input if None."""
    if path is None:
        text = "\n".join(sys.stdin.read().splitlines())
    else:
        try:
            text = Path(path).read_text()
        except OSError as exc:
            raise RuleError(f"IO error: {exc}") from exc
    return parse_rules(text)