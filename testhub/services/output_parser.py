from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Pattern, Union

from testhub.schemas import MarkerKind, ProgressRule, TestOutcomeKind

LOGGER = logging.getLogger("testhub.parser")

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")

# Log decoration printed in front of result lines: "[GALLERY] [12.3s] ✅ ".
_DECORATION = r"(?:\[[^\]]*\]\s*|[✅❌\U0001f51c✓✗]\s*)*"

OUTCOME_PATTERN = re.compile(
    r"^\s*" + _DECORATION
    + r"(?P<name>[^:\[\]]+?)(?:\s+Test)?:\s*(?:[✅❌\U0001f51c]\s*)?"
    + r"(?P<outcome>PASSED|FAILED|COMING SOON)\b"
)
PASSED_MARKER = re.compile(r"\bALL (?:[A-Z]+ )*TESTS PASSED(?:\s*\((?P<passed>\d+)/(?P<total>\d+)\))?")
FAILED_MARKER = re.compile(r"\bTESTS FAILED:\s*(?P<failed>\d+)/(?P<total>\d+)")
FAILURE_DETAILS = re.compile(r"FAILURE ANALYSIS[\s\S]*?RECOMMENDED ACTIONS")

OUTCOME_KINDS = {
    "PASSED": TestOutcomeKind.passed,
    "FAILED": TestOutcomeKind.failed,
    "COMING SOON": TestOutcomeKind.pending,
}


class ParseError(ValueError):
    """A line matched a rule but no event could be built from it."""


@dataclass(frozen=True)
class ProgressHint:
    percent: int
    message: str


@dataclass(frozen=True)
class TestOutcome:
    __test__ = False

    name: str
    outcome: TestOutcomeKind


@dataclass(frozen=True)
class TerminalMarker:
    kind: MarkerKind
    passed: Optional[int] = None
    failed: Optional[int] = None
    total: Optional[int] = None


OutputEvent = Union[ProgressHint, TestOutcome, TerminalMarker]


@dataclass(frozen=True)
class CompiledRule:
    regex: Pattern[str]
    rule: ProgressRule


def compile_rules(rules: Iterable[ProgressRule]) -> List[CompiledRule]:
    compiled: List[CompiledRule] = []
    for index, rule in enumerate(rules):
        try:
            regex = re.compile(rule.pattern)
        except re.error as exc:
            raise ValueError(f"Progress rule {index} has an invalid pattern {rule.pattern!r}: {exc}") from exc
        if rule.percent is None and "done" not in regex.groupindex:
            raise ValueError(
                f"Progress rule {index} ({rule.pattern!r}) needs a fixed percent or a 'done' group."
            )
        if rule.percent is None and rule.total is None and "total" not in regex.groupindex:
            raise ValueError(
                f"Progress rule {index} ({rule.pattern!r}) needs a fixed total or a 'total' group."
            )
        compiled.append(CompiledRule(regex=regex, rule=rule))
    return compiled


def _hint_for(compiled: CompiledRule, match: "re.Match[str]", line: str) -> ProgressHint:
    rule = compiled.rule
    groups = {key: value for key, value in match.groupdict().items() if value is not None}
    if rule.percent is not None:
        percent = rule.percent
    else:
        total_value = groups.get("total", rule.total)
        try:
            done = int(groups["done"])
            total = int(total_value)  # type: ignore[arg-type]
        except (KeyError, TypeError, ValueError) as exc:
            raise ParseError(f"Cannot derive a ratio from {line!r}") from exc
        if total <= 0:
            raise ParseError(f"Ratio total must be positive in {line!r}")
        percent = max(0, min(100, round(done * 100 / total)))
    if rule.message:
        try:
            message = rule.message.format(**groups).strip()
        except (KeyError, IndexError, ValueError) as exc:
            raise ParseError(f"Cannot render message template {rule.message!r}") from exc
    else:
        message = line.strip()
    return ProgressHint(percent=percent, message=message)


def parse_line(line: str, rules: Iterable[CompiledRule]) -> List[OutputEvent]:
    """Classify one complete output line.

    Named test outcomes and aggregate markers are always reported; the first
    matching progress rule contributes at most one hint.
    """
    cleaned = ANSI_ESCAPE.sub("", line).rstrip("\r\n")
    if not cleaned.strip():
        return []
    events: List[OutputEvent] = []

    outcome = OUTCOME_PATTERN.match(cleaned)
    if outcome:
        name = outcome.group("name").strip()
        if name:
            events.append(TestOutcome(name=name, outcome=OUTCOME_KINDS[outcome.group("outcome")]))

    failed = FAILED_MARKER.search(cleaned)
    if failed:
        events.append(
            TerminalMarker(
                kind=MarkerKind.failed,
                failed=int(failed.group("failed")),
                total=int(failed.group("total")),
            )
        )
    else:
        passed = PASSED_MARKER.search(cleaned)
        if passed:
            events.append(
                TerminalMarker(
                    kind=MarkerKind.passed,
                    passed=int(passed.group("passed")) if passed.group("passed") else None,
                    total=int(passed.group("total")) if passed.group("total") else None,
                )
            )

    for compiled in rules:
        match = compiled.regex.search(cleaned)
        if not match:
            continue
        try:
            events.append(_hint_for(compiled, match, cleaned))
        except ParseError as exc:
            LOGGER.debug("Skipping progress hint for line %r: %s", cleaned, exc)
        break
    return events


def extract_failure_details(text: str) -> Optional[str]:
    match = FAILURE_DETAILS.search(text)
    return match.group(0) if match else None


class OutputParser:
    """Turn an arbitrarily chunked text stream into output events.

    Text is buffered until a line terminator arrives, so a phrase split across
    chunks is classified exactly once. A partial line longer than
    ``max_line_length`` is emitted as-is to keep the buffer bounded.
    """

    def __init__(self, rules: Iterable[CompiledRule], *, max_line_length: int = 65536) -> None:
        self._rules = list(rules)
        self._max_line_length = max_line_length
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, text: str) -> Iterator[OutputEvent]:
        lines = (self._buffer + text).splitlines(keepends=True)
        if lines and not lines[-1].endswith(("\n", "\r")):
            self._buffer = lines.pop()
        else:
            self._buffer = ""
        if len(self._buffer) > self._max_line_length:
            LOGGER.debug("Flushing oversized partial line (%d characters)", len(self._buffer))
            lines.append(self._buffer)
            self._buffer = ""
        return self._events(lines)

    def flush(self) -> Iterator[OutputEvent]:
        remainder, self._buffer = self._buffer, ""
        return self._events([remainder] if remainder else [])

    def _events(self, lines: List[str]) -> Iterator[OutputEvent]:
        for line in lines:
            yield from parse_line(line, self._rules)
