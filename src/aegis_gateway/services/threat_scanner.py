"""Pattern-based payload threat scanning.

Detection is an ordered list of named rules. Each rule is a predicate over a
string; the scanner reports every rule that matches. Regex heuristics have a
known false-negative rate and are not a substitute for parameterised queries
or output encoding.
"""

from __future__ import annotations

import enum
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any


class ThreatKind(str, enum.Enum):
    SQLI = "sqli"
    XSS = "xss"
    PATH_TRAVERSAL = "path_traversal"


@dataclass(frozen=True)
class ThreatSignal:
    """A single rule match; ``field`` names where it was found, if known."""

    kind: ThreatKind
    matched_pattern: str
    field: str | None = None


@dataclass(frozen=True)
class ThreatRule:
    name: str
    kind: ThreatKind
    predicate: Callable[[str], bool]


def pattern_rule(name: str, kind: ThreatKind, pattern: str) -> ThreatRule:
    """Build a case-insensitive regex rule."""
    compiled = re.compile(pattern, re.IGNORECASE)
    return ThreatRule(
        name=name, kind=kind, predicate=lambda text: compiled.search(text) is not None
    )


_SQL_KEYWORDS = r"(select|insert|update|delete|drop|create|alter|exec|execute|union|truncate)"

DEFAULT_RULES: tuple[ThreatRule, ...] = (
    # SQL injection: keywords combined with quotes, terminators or comments
    pattern_rule("sql-quoted-statement", ThreatKind.SQLI, rf"['\";]\s*\b{_SQL_KEYWORDS}\b"),
    pattern_rule(
        "sql-commented-statement",
        ThreatKind.SQLI,
        rf"\b{_SQL_KEYWORDS}\b.*(--|#|/\*)",
    ),
    pattern_rule("sql-union-select", ThreatKind.SQLI, r"\bunion\s+(all\s+)?select\b"),
    pattern_rule(
        "sql-tautology",
        ThreatKind.SQLI,
        r"['\"]?\s*\b(or|and)\b\s+(\d+|'[^']*'|\"[^\"]*\")\s*=\s*(\d+|'[^']*'|\"[^\"]*\")",
    ),
    # Right operand left open; the host query supplies the closing quote
    pattern_rule(
        "sql-quoted-tautology",
        ThreatKind.SQLI,
        r"['\"]\s*\b(or|and)\b\s*['\"]?[^'\"=\s]*['\"]?\s*=\s*['\"]?",
    ),
    pattern_rule("sql-stored-procedure", ThreatKind.SQLI, r"\b(xp_cmdshell|sp_executesql)\b"),
    pattern_rule("sql-time-delay", ThreatKind.SQLI, r"\bwaitfor\s+delay\b"),
    # Cross-site scripting
    pattern_rule("xss-script-tag", ThreatKind.XSS, r"<\s*script\b"),
    pattern_rule("xss-javascript-uri", ThreatKind.XSS, r"javascript\s*:"),
    pattern_rule("xss-vbscript-uri", ThreatKind.XSS, r"vbscript\s*:"),
    pattern_rule("xss-event-handler", ThreatKind.XSS, r"<[^>]*\bon[a-z]+\s*="),
    # Breaking out of an already open attribute, no tag needed
    pattern_rule(
        "xss-attribute-breakout",
        ThreatKind.XSS,
        r"(^|['\"`\s/])on[a-z]{3,}\s*=",
    ),
    pattern_rule("xss-embedded-frame", ThreatKind.XSS, r"<\s*(iframe|object|embed)\b"),
    pattern_rule("xss-html-data-uri", ThreatKind.XSS, r"data\s*:\s*text/html"),
    # Path traversal
    pattern_rule("path-traversal", ThreatKind.PATH_TRAVERSAL, r"\.\.[/\\]"),
    pattern_rule(
        "path-traversal-encoded",
        ThreatKind.PATH_TRAVERSAL,
        r"(%2e%2e|\.\.)(%2f|%5c)|%2e%2e[/\\]",
    ),
)


class ThreatScanner:
    """Run an ordered list of rules over strings and structured payloads."""

    def __init__(self, rules: Iterable[ThreatRule] | None = None) -> None:
        self._rules: list[ThreatRule] = list(DEFAULT_RULES if rules is None else rules)

    @property
    def rules(self) -> tuple[ThreatRule, ...]:
        return tuple(self._rules)

    def register(self, rule: ThreatRule) -> None:
        """Append ``rule`` to the end of the rule list."""
        if any(existing.name == rule.name for existing in self._rules):
            raise ValueError(f"duplicate threat rule {rule.name!r}")
        self._rules.append(rule)

    def scan(self, text: str, field: str | None = None) -> list[ThreatSignal]:
        """Return a signal for every rule matching ``text``."""
        if not text:
            return []
        return [
            ThreatSignal(kind=rule.kind, matched_pattern=rule.name, field=field)
            for rule in self._rules
            if rule.predicate(text)
        ]

    def scan_value(self, value: Any, field: str | None = None) -> list[ThreatSignal]:
        """Scan every string leaf of a decoded JSON/form value.

        Mapping keys are scanned as well as values. Non-string scalars are
        ignored.
        """
        signals: list[ThreatSignal] = []
        if isinstance(value, str):
            signals.extend(self.scan(value, field))
        elif isinstance(value, Mapping):
            for key, item in value.items():
                path = f"{field}.{key}" if field else str(key)
                if isinstance(key, str):
                    signals.extend(self.scan(key, path))
                signals.extend(self.scan_value(item, path))
        elif isinstance(value, list | tuple):
            for index, item in enumerate(value):
                path = f"{field}[{index}]" if field else f"[{index}]"
                signals.extend(self.scan_value(item, path))
        return signals
