from __future__ import annotations

import threading

import pytest

from testhub.schemas import JobStatus, MarkerKind, TestOutcomeKind
from testhub.services.output_parser import ProgressHint, TerminalMarker, TestOutcome
from testhub.services.storage import JobStore


def _running_job(store: JobStore) -> str:
    job_id = store.create(["npm", "test"])
    store.mark_running(job_id, "4242")
    return job_id


@pytest.mark.unit
def test_create_returns_queued_snapshot() -> None:
    store = JobStore()
    job_id = store.create(["npm", "test"])
    snapshot = store.get(job_id)
    assert snapshot is not None
    assert snapshot.status is JobStatus.queued
    assert snapshot.progress == 0
    assert snapshot.command == ["npm", "test"]
    assert snapshot.ended_at is None
    assert job_id in store
    assert store.get("missing") is None


@pytest.mark.unit
def test_progress_never_moves_backwards() -> None:
    store = JobStore()
    job_id = _running_job(store)
    store.apply(job_id, ProgressHint(40, "halfway-ish"))
    snapshot = store.apply(job_id, ProgressHint(10, "late noise"))
    assert snapshot is not None
    assert snapshot.progress == 40
    assert snapshot.message == "late noise"
    assert store.apply(job_id, ProgressHint(40, "same")).progress == 40
    assert store.apply(job_id, ProgressHint(75, "ahead")).progress == 75


@pytest.mark.unit
def test_outcomes_upsert_by_name() -> None:
    store = JobStore()
    job_id = _running_job(store)
    store.apply(job_id, TestOutcome("Media Loader", TestOutcomeKind.pending))
    snapshot = store.apply(job_id, TestOutcome("Media Loader", TestOutcomeKind.passed))
    assert snapshot.test_results == {"Media Loader": TestOutcomeKind.passed}


@pytest.mark.unit
def test_passed_marker_records_summary() -> None:
    store = JobStore()
    job_id = _running_job(store)
    snapshot = store.apply(job_id, TerminalMarker(kind=MarkerKind.passed, passed=8, total=8))
    assert snapshot.marker is MarkerKind.passed
    assert snapshot.summary.passed == 8
    assert snapshot.summary.failed == 0
    assert snapshot.summary.total == 8


@pytest.mark.unit
def test_events_before_running_or_after_finalize_are_ignored() -> None:
    store = JobStore()
    job_id = store.create()
    assert store.apply(job_id, ProgressHint(50, "early")).progress == 0
    store.mark_running(job_id)
    store.finalize(job_id, JobStatus.failed, exit_code=1)
    snapshot = store.apply(job_id, TestOutcome("Filters", TestOutcomeKind.passed))
    assert snapshot.test_results == {}
    assert store.append_output(job_id, b"late output") is False


@pytest.mark.unit
def test_finalize_is_single_shot() -> None:
    store = JobStore()
    job_id = _running_job(store)
    store.apply(job_id, ProgressHint(30, "going"))
    first = store.finalize(job_id, JobStatus.completed, exit_code=0, message="All tests passed")
    assert first is not None
    assert first.status is JobStatus.completed
    assert first.progress == 100
    assert first.exit_code == 0
    assert first.ended_at is not None
    assert first.duration_seconds is not None
    assert store.finalize(job_id, JobStatus.errored, failure_reason="again") is None
    assert store.get(job_id).status is JobStatus.completed
    assert store.finalize("missing", JobStatus.failed) is None


@pytest.mark.unit
def test_errored_job_keeps_its_progress() -> None:
    store = JobStore()
    job_id = store.create()
    snapshot = store.finalize(job_id, JobStatus.errored, failure_reason="spawn failed")
    assert snapshot.progress == 0
    assert snapshot.failure_reason == "spawn failed"
    assert snapshot.started_at == store.get(job_id).started_at


@pytest.mark.unit
def test_finalize_rejects_non_terminal_status() -> None:
    store = JobStore()
    job_id = _running_job(store)
    with pytest.raises(ValueError):
        store.finalize(job_id, JobStatus.running)


@pytest.mark.unit
def test_unknown_event_type_is_rejected() -> None:
    store = JobStore()
    job_id = _running_job(store)
    with pytest.raises(TypeError):
        store.apply(job_id, "not an event")  # type: ignore[arg-type]


@pytest.mark.unit
def test_output_tail_is_reported_in_snapshot() -> None:
    store = JobStore(tail_max_bytes=10)
    job_id = _running_job(store)
    store.append_output(job_id, b"0123456789abcdef")
    snapshot = store.get(job_id)
    assert snapshot.output_truncated
    assert snapshot.output_bytes == 16
    assert snapshot.raw_output_tail.endswith("6789abcdef")


@pytest.mark.unit
def test_only_finished_jobs_are_evicted() -> None:
    store = JobStore(max_retained_jobs=2)
    running = _running_job(store)
    finished = _running_job(store)
    store.finalize(finished, JobStatus.completed, exit_code=0)
    newest = store.create()
    assert finished not in store
    assert running in store
    assert newest in store
    assert len(store) == 2


@pytest.mark.unit
def test_snapshots_are_independent_copies() -> None:
    store = JobStore()
    job_id = _running_job(store)
    store.apply(job_id, TestOutcome("Filters", TestOutcomeKind.failed))
    snapshot = store.get(job_id)
    snapshot.test_results["Filters"] = TestOutcomeKind.passed
    snapshot.command.append("--watch")
    assert store.get(job_id).test_results["Filters"] is TestOutcomeKind.failed
    assert store.get(job_id).command == ["npm", "test"]


@pytest.mark.unit
def test_jobs_do_not_share_progress_under_concurrency() -> None:
    store = JobStore()
    first = _running_job(store)
    second = _running_job(store)

    def drive(job_id: str, top: int) -> None:
        for percent in range(top + 1):
            store.apply(job_id, ProgressHint(percent, f"{job_id}:{percent}"))

    threads = [
        threading.Thread(target=drive, args=(first, 30)),
        threading.Thread(target=drive, args=(second, 90)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert store.get(first).progress == 30
    assert store.get(second).progress == 90
    assert store.get(first).message == f"{first}:30"


@pytest.mark.unit
def test_failed_marker_survives_a_later_pass() -> None:
    store = JobStore()
    job_id = _running_job(store)
    store.apply(job_id, TerminalMarker(kind=MarkerKind.failed, failed=1, total=4))
    snapshot = store.apply(job_id, TerminalMarker(kind=MarkerKind.passed))
    assert snapshot.marker is MarkerKind.failed
    assert snapshot.summary.passed == 3
    assert snapshot.summary.failed == 1
    assert snapshot.summary.total == 4

    snapshot = store.apply(job_id, TerminalMarker(kind=MarkerKind.passed, passed=6, total=6))
    assert snapshot.marker is MarkerKind.failed
    assert snapshot.summary.total == 4


@pytest.mark.unit
def test_summary_comes_from_a_single_marker() -> None:
    store = JobStore()
    job_id = _running_job(store)
    store.apply(job_id, TerminalMarker(kind=MarkerKind.passed, passed=5, total=5))
    snapshot = store.apply(job_id, TerminalMarker(kind=MarkerKind.failed, failed=2, total=7))
    assert snapshot.marker is MarkerKind.failed
    assert (snapshot.summary.passed, snapshot.summary.failed, snapshot.summary.total) == (5, 2, 7)


@pytest.mark.unit
def test_only_get_and_finalize_carry_the_output_tail() -> None:
    store = JobStore()
    job_id = store.create()
    store.append_output(job_id, b"early\n")
    running = store.mark_running(job_id, "1")
    store.append_output(job_id, b"x" * 1024)
    update = store.apply(job_id, ProgressHint(10, "going"))
    assert running.raw_output_tail is None
    assert update.raw_output_tail is None
    assert update.output_bytes == 6 + 1024
    assert [job.raw_output_tail for job in store.list()] == [None]
    assert store.get(job_id).raw_output_tail.startswith("early")

    final = store.finalize(job_id, JobStatus.completed, exit_code=0)
    assert final.raw_output_tail.endswith("x" * 1024)
