from __future__ import annotations

from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"
    errored = "errored"


TERMINAL_STATUSES = frozenset({JobStatus.completed, JobStatus.failed, JobStatus.errored})


class TestOutcomeKind(str, Enum):
    __test__ = False

    passed = "passed"
    failed = "failed"
    pending = "pending"


class MarkerKind(str, Enum):
    passed = "passed"
    failed = "failed"


class RunSummary(BaseModel):
    passed: Optional[int] = None
    failed: Optional[int] = None
    total: Optional[int] = None


class JobSnapshot(BaseModel):
    """Read-only view of one test run handed to pollers and subscribers."""

    id: str
    status: JobStatus = JobStatus.queued
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""
    test_results: Dict[str, TestOutcomeKind] = Field(default_factory=dict)
    command: List[str] = Field(default_factory=list)
    pid: Optional[str] = None
    marker: Optional[MarkerKind] = None
    summary: RunSummary = Field(default_factory=RunSummary)
    raw_output_tail: Optional[str] = Field(default=None, description="Decoded output tail; omitted from live update events.")
    output_truncated: bool = False
    output_bytes: int = 0
    exit_code: Optional[int] = None
    failure_reason: Optional[str] = None
    started_at: str
    updated_at: str
    ended_at: Optional[str] = None
    duration_seconds: Optional[float] = None

    model_config = {"from_attributes": True}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobEvent(BaseModel):
    """Message pushed to live subscribers of a job."""

    event: Literal["update", "output", "complete"]
    job_id: str
    snapshot: Optional[JobSnapshot] = None
    stream: Optional[str] = None
    output: Optional[str] = None


class ProgressRule(BaseModel):
    pattern: str = Field(..., description="Regular expression searched in each output line.")
    percent: Optional[int] = Field(default=None, ge=0, le=100)
    total: Optional[int] = Field(default=None, ge=1, description="Denominator when the pattern has no 'total' group.")
    message: Optional[str] = Field(default=None, description="Template formatted with the pattern's named groups.")


class ReportSummary(BaseModel):
    total_implemented_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    pending_tests: int = 0


class RunReport(BaseModel):
    success: bool
    timestamp: str
    job_id: str
    status: JobStatus
    summary: ReportSummary
    test_results: Dict[str, TestOutcomeKind] = Field(default_factory=dict)
    duration_seconds: Optional[float] = None
    message: str
    failure_details: Optional[str] = None
    job: JobSnapshot
