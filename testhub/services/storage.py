from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from testhub.schemas import TERMINAL_STATUSES, JobSnapshot, JobStatus, MarkerKind
from testhub.services.output_parser import OutputEvent, ProgressHint, TerminalMarker, TestOutcome
from testhub.services.output_tail import OutputTail

LOGGER = logging.getLogger("testhub.storage")


def _utcnow() -> str:
    """Return timezone-aware ISO timestamp."""
    return datetime.now(tz=timezone.utc).isoformat()


def _summary_for(marker: TerminalMarker) -> Dict[str, int]:
    """Counts of one aggregate marker; the missing side is derived from the total."""
    total = marker.total or 0
    if marker.kind is MarkerKind.failed:
        failed = marker.failed or 0
        return {"passed": max(total - failed, 0), "failed": failed, "total": total}
    passed = marker.passed if marker.passed is not None else total
    return {"passed": passed, "failed": 0, "total": total}


class JobStore:
    """In-memory registry of job records.

    The store is the only writer of job state. Callers get deep-copied
    ``JobSnapshot`` objects back, never the live record. All writes are
    synchronised via an internal lock.

    Only ``get`` and ``finalize`` snapshots carry the decoded output tail;
    the per-event snapshots handed to subscribers leave it out.
    """

    def __init__(self, *, tail_max_bytes: int = 64 * 1024, max_retained_jobs: int = 200) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, Dict[str, Any]] = {}
        self._tails: Dict[str, OutputTail] = {}
        self._clock: Dict[str, float] = {}
        self._tail_max_bytes = tail_max_bytes
        self._max_retained = max_retained_jobs

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._records

    def _snapshot(self, record: Dict[str, Any], *, include_tail: bool = False) -> JobSnapshot:
        # model_validate rebuilds nested containers
        payload = dict(record)
        tail = self._tails.get(record["id"])
        if tail is not None:
            if include_tail:
                payload["raw_output_tail"] = tail.text()
            payload["output_truncated"] = tail.truncated
            payload["output_bytes"] = tail.total_bytes
        return JobSnapshot.model_validate(payload)

    def _evict(self) -> None:
        overflow = len(self._records) - self._max_retained
        if overflow <= 0:
            return
        finished = [
            record for record in self._records.values()
            if JobStatus(record["status"]) in TERMINAL_STATUSES
        ]
        finished.sort(key=lambda it: it["ended_at"] or it["started_at"])
        for record in finished[:overflow]:
            job_id = record["id"]
            del self._records[job_id]
            self._tails.pop(job_id, None)
            self._clock.pop(job_id, None)
            LOGGER.debug("Evicted job %s from store", job_id)

    # -- Lifecycle ---------------------------------------------------------------
    def create(self, command: Optional[Sequence[str]] = None) -> str:
        now = _utcnow()
        job_id = str(uuid.uuid4())
        record = {
            "id": job_id,
            "status": JobStatus.queued.value,
            "progress": 0,
            "message": "Queued",
            "test_results": {},
            "command": list(command or []),
            "pid": None,
            "marker": None,
            "summary": {},
            "exit_code": None,
            "failure_reason": None,
            "started_at": now,
            "updated_at": now,
            "ended_at": None,
            "duration_seconds": None,
        }
        with self._lock:
            self._records[job_id] = record
            self._tails[job_id] = OutputTail(self._tail_max_bytes)
            self._clock[job_id] = time.monotonic()
            self._evict()
        LOGGER.info("Created job %s", job_id)
        return job_id

    def mark_running(self, job_id: str, pid: Optional[str] = None) -> Optional[JobSnapshot]:
        with self._lock:
            record = self._records.get(job_id)
            if not record:
                return None
            if record["status"] == JobStatus.queued.value:
                record["status"] = JobStatus.running.value
                record["pid"] = pid
                record["message"] = "Starting tests..."
                record["updated_at"] = _utcnow()
            return self._snapshot(record)

    def apply(self, job_id: str, event: OutputEvent) -> Optional[JobSnapshot]:
        """Merge one parsed output event into a running job."""
        with self._lock:
            record = self._records.get(job_id)
            if not record:
                return None
            if record["status"] != JobStatus.running.value:
                LOGGER.debug("Ignoring %s for job %s in state %s", type(event).__name__, job_id, record["status"])
                return self._snapshot(record)
            if isinstance(event, ProgressHint):
                record["message"] = event.message
                if event.percent >= record["progress"]:
                    record["progress"] = event.percent
            elif isinstance(event, TestOutcome):
                record["test_results"][event.name] = event.outcome.value
            elif isinstance(event, TerminalMarker):
                if record["marker"] == MarkerKind.failed.value and event.kind is MarkerKind.passed:
                    # a failure reported by any sub-suite stands for the whole run
                    LOGGER.debug("Keeping failed marker of job %s over a later pass", job_id)
                else:
                    record["marker"] = event.kind.value
                    if event.total is not None:
                        record["summary"] = _summary_for(event)
            else:
                raise TypeError(f"Unsupported output event {event!r}")
            record["updated_at"] = _utcnow()
            return self._snapshot(record)

    def append_output(self, job_id: str, data: bytes) -> bool:
        with self._lock:
            tail = self._tails.get(job_id)
            record = self._records.get(job_id)
            if tail is None or record is None:
                return False
            if JobStatus(record["status"]) in TERMINAL_STATUSES:
                return False
            tail.append(data)
            return True

    def note(self, job_id: str, message: str) -> None:
        """Append an orchestrator line to the job's output tail."""
        self.append_output(job_id, f"[testhub {_utcnow()}] {message}\n".encode("utf-8"))

    def finalize(
        self,
        job_id: str,
        status: JobStatus,
        *,
        exit_code: Optional[int] = None,
        failure_reason: Optional[str] = None,
        message: Optional[str] = None,
    ) -> Optional[JobSnapshot]:
        """Move a job into a terminal state.

        Returns ``None`` when the job is unknown or already terminal, so the
        caller can tell the one real transition apart from repeats.
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status.value} is not a terminal status")
        with self._lock:
            record = self._records.get(job_id)
            if not record:
                return None
            if JobStatus(record["status"]) in TERMINAL_STATUSES:
                LOGGER.debug("Job %s already finalized as %s", job_id, record["status"])
                return None
            ran = record["status"] == JobStatus.running.value
            record["status"] = status.value
            record["exit_code"] = exit_code
            record["failure_reason"] = failure_reason
            if ran and status in (JobStatus.completed, JobStatus.failed):
                record["progress"] = 100
            if message:
                record["message"] = message
            now = _utcnow()
            record["ended_at"] = now
            record["updated_at"] = now
            started = self._clock.get(job_id)
            if started is not None:
                record["duration_seconds"] = round(time.monotonic() - started, 3)
            snapshot = self._snapshot(record, include_tail=True)
        LOGGER.info("Job %s finished: %s (exit_code=%s)", job_id, status.value, exit_code)
        return snapshot

    # -- Reads -------------------------------------------------------------------
    def get(self, job_id: str) -> Optional[JobSnapshot]:
        with self._lock:
            record = self._records.get(job_id)
            if not record:
                return None
            return self._snapshot(record, include_tail=True)

    def list(self) -> List[JobSnapshot]:
        with self._lock:
            records = sorted(self._records.values(), key=lambda it: it["started_at"])
            return [self._snapshot(record) for record in records]
