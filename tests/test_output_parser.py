from __future__ import annotations

import codecs
from typing import List

import pytest

from testhub.schemas import MarkerKind, ProgressRule, TestOutcomeKind
from testhub.services.output_parser import (
    OutputEvent,
    OutputParser,
    ProgressHint,
    TerminalMarker,
    TestOutcome,
    compile_rules,
    extract_failure_details,
    parse_line,
)
from testhub.services.settings import OrchestratorSettings, load_progress_rules

SAMPLE_OUTPUT = (
    "🚀 STARTING ADMANAGE TEST SUITE\n"
    "Navigating to sign in page...\n"
    "✅ Successfully logged in\n"
    "=== GALLERY MODE TESTS ===\n"
    "Test 1: Media Loader (Gallery View) ---\n"
    "[GALLERY] Media Loader Test: ✅ PASSED\n"
    "Test 2: Filters\n"
    "Filters Test: ❌ FAILED\n"
    "Bulk Edit Test: 🔜 COMING SOON\n"
    "📊 FINAL TEST SUMMARY\n"
    "❌ TESTS FAILED: 1/2 tests failed\n"
)


def _default_rules():
    return load_progress_rules(OrchestratorSettings())


def _collect(chunks: List[str]) -> List[OutputEvent]:
    parser = OutputParser(_default_rules())
    events: List[OutputEvent] = []
    for chunk in chunks:
        events.extend(parser.feed(chunk))
    events.extend(parser.flush())
    return events


@pytest.mark.unit
def test_named_outcomes_are_normalised() -> None:
    events = _collect([SAMPLE_OUTPUT])
    outcomes = [event for event in events if isinstance(event, TestOutcome)]
    assert outcomes == [
        TestOutcome("Media Loader", TestOutcomeKind.passed),
        TestOutcome("Filters", TestOutcomeKind.failed),
        TestOutcome("Bulk Edit", TestOutcomeKind.pending),
    ]


@pytest.mark.unit
def test_chunk_boundaries_do_not_change_events() -> None:
    whole = _collect([SAMPLE_OUTPUT])
    for size in (1, 2, 3, 7, 64):
        chunks = [SAMPLE_OUTPUT[i:i + size] for i in range(0, len(SAMPLE_OUTPUT), size)]
        assert _collect(chunks) == whole


@pytest.mark.unit
def test_split_multibyte_characters_decode_once() -> None:
    raw = SAMPLE_OUTPUT.encode("utf-8")
    decoder = codecs.getincrementaldecoder("utf-8")()
    chunks = [decoder.decode(raw[i:i + 1]) for i in range(len(raw))]
    chunks.append(decoder.decode(b"", final=True))
    assert _collect(chunks) == _collect([SAMPLE_OUTPUT])


@pytest.mark.unit
def test_progress_rules_follow_the_suite() -> None:
    hints = [event for event in _collect([SAMPLE_OUTPUT]) if isinstance(event, ProgressHint)]
    assert hints[0] == ProgressHint(1, "Starting test suite")
    assert ProgressHint(12, "Running test 1: Media Loader") in hints
    assert ProgressHint(25, "Running test 2: Filters") in hints
    assert hints[-1] == ProgressHint(100, "1 of 2 tests failed")


@pytest.mark.unit
def test_terminal_markers() -> None:
    rules = _default_rules()
    assert parse_line("🎉 ALL IMPLEMENTED TESTS PASSED (8/8)", rules)[0] == TerminalMarker(
        kind=MarkerKind.passed, passed=8, total=8
    )
    assert parse_line("ALL TESTS PASSED", rules)[0] == TerminalMarker(kind=MarkerKind.passed)
    assert parse_line("TESTS FAILED: 3/8 tests failed", rules)[0] == TerminalMarker(
        kind=MarkerKind.failed, failed=3, total=8
    )


@pytest.mark.unit
def test_unmatched_lines_produce_nothing() -> None:
    rules = _default_rules()
    assert parse_line("just some chatter from the browser", rules) == []
    assert parse_line("   \n", rules) == []
    assert parse_line("\x1b[32m\x1b[0m", rules) == []


@pytest.mark.unit
def test_ansi_colours_are_ignored() -> None:
    events = parse_line("\x1b[32mMedia Loader Test: PASSED\x1b[0m\n", _default_rules())
    assert events == [TestOutcome("Media Loader", TestOutcomeKind.passed)]


@pytest.mark.unit
def test_ratio_rule_uses_captured_total() -> None:
    events = parse_line("  3/12 passed so far", _default_rules())
    assert events == [ProgressHint(25, "Running tests: 3 / 12")]


@pytest.mark.unit
def test_first_matching_rule_wins() -> None:
    rules = compile_rules(
        [
            ProgressRule(pattern="phase", percent=10, message="first"),
            ProgressRule(pattern="phase two", percent=50, message="second"),
        ]
    )
    assert parse_line("phase two begins", rules) == [ProgressHint(10, "first")]


@pytest.mark.unit
def test_hint_that_cannot_render_is_skipped() -> None:
    rules = compile_rules(
        [
            ProgressRule(pattern="(?P<done>\\d+) of (?P<total>\\d+)", message="{missing}"),
            ProgressRule(pattern="of", percent=40),
        ]
    )
    assert parse_line("2 of 4", rules) == []
    zero_total = compile_rules([ProgressRule(pattern="(?P<done>\\d+) of (?P<total>\\d+)")])
    assert parse_line("2 of 0", zero_total) == []


@pytest.mark.unit
def test_ratio_percent_is_clamped() -> None:
    rules = compile_rules([ProgressRule(pattern="(?P<done>\\d+) of (?P<total>\\d+)", message="ratio")])
    assert parse_line("9 of 4", rules) == [ProgressHint(100, "ratio")]


@pytest.mark.unit
def test_compile_rules_rejects_incomplete_rules() -> None:
    with pytest.raises(ValueError):
        compile_rules([ProgressRule(pattern="(unclosed")])
    with pytest.raises(ValueError):
        compile_rules([ProgressRule(pattern="no numbers here")])
    with pytest.raises(ValueError):
        compile_rules([ProgressRule(pattern="(?P<done>\\d+) done")])


@pytest.mark.unit
def test_partial_line_waits_for_terminator() -> None:
    parser = OutputParser(_default_rules())
    assert list(parser.feed("Media Loader Test: PAS")) == []
    assert parser.pending == "Media Loader Test: PAS"
    assert list(parser.feed("SED\r\n")) == [TestOutcome("Media Loader", TestOutcomeKind.passed)]
    assert parser.pending == ""


@pytest.mark.unit
def test_oversized_partial_line_is_flushed() -> None:
    parser = OutputParser(_default_rules(), max_line_length=16)
    assert list(parser.feed("x" * 40)) == []
    assert parser.pending == ""


@pytest.mark.unit
def test_failure_details_block() -> None:
    text = (
        "noise\n"
        "🔍 FAILURE ANALYSIS:\n"
        "- Filters: timed out waiting for selector\n"
        "💡 RECOMMENDED ACTIONS:\n"
        "- retry\n"
    )
    details = extract_failure_details(text)
    assert details is not None
    assert details.startswith("FAILURE ANALYSIS")
    assert "timed out waiting for selector" in details
    assert details.endswith("RECOMMENDED ACTIONS")
    assert extract_failure_details("all good") is None
