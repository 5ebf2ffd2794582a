from __future__ import annotations

import asyncio
import codecs
import logging
from typing import Dict, Iterable, List, Optional

from fastapi import Depends

from testhub.schemas import (
    JobSnapshot,
    JobStatus,
    MarkerKind,
    ReportSummary,
    RunReport,
    TestOutcomeKind,
)
from testhub.services.broadcaster import Broadcaster, Sink
from testhub.services.output_parser import (
    CompiledRule,
    OutputEvent,
    OutputParser,
    extract_failure_details,
)
from testhub.services.process_runner import (
    STREAMS,
    CommandSpec,
    DockerRunner,
    ProcessListener,
    ProcessRunner,
    SpawnError,
    SubprocessRunner,
)
from testhub.services.settings import (
    OrchestratorSettings,
    build_environment,
    get_settings,
    load_progress_rules,
)
from testhub.services.storage import JobStore, _utcnow

LOGGER = logging.getLogger("testhub.orchestrator")

_REPORT_MESSAGES = {
    JobStatus.queued: "Tests are queued",
    JobStatus.running: "Tests are still running",
    JobStatus.completed: "All tests passed successfully!",
    JobStatus.failed: "Some tests failed",
    JobStatus.errored: "Failed to execute tests",
}


def build_runner(settings: OrchestratorSettings) -> ProcessRunner:
    if settings.runner == "docker":
        return DockerRunner(settings.docker_image, chunk_size=settings.chunk_size)
    return SubprocessRunner(chunk_size=settings.chunk_size)


class JobPipeline(ProcessListener):
    """Feed one job's process output through the parser into the store."""

    def __init__(
        self,
        orchestrator: "RunOrchestrator",
        job_id: str,
        rules: Iterable[CompiledRule],
        *,
        max_line_length: int,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = orchestrator.store
        self._broadcaster = orchestrator.broadcaster
        self.job_id = job_id
        rule_list = list(rules)
        self._parsers = {name: OutputParser(rule_list, max_line_length=max_line_length) for name in STREAMS}
        self._decoders = {name: codecs.getincrementaldecoder("utf-8")(errors="replace") for name in STREAMS}
        self.fault: Optional[str] = None

    def on_spawned(self, pid: str) -> None:
        self._store.note(self.job_id, f"Test process started (pid={pid})")
        snapshot = self._store.mark_running(self.job_id, pid)
        if snapshot is not None:
            self._broadcaster.publish(self.job_id, snapshot)

    def on_chunk(self, stream: str, data: bytes) -> None:
        self._store.append_output(self.job_id, data)
        text = self._decoders[stream].decode(data)
        if not text:
            return
        self._broadcaster.publish_output(self.job_id, stream, text)
        if self.fault:
            return
        try:
            self._consume(self._parsers[stream].feed(text))
        except Exception as exc:
            self._record_fault(exc)

    def on_exit(self, code: int) -> None:
        if not self.fault:
            try:
                for name in STREAMS:
                    rest = self._decoders[name].decode(b"", final=True)
                    if rest:
                        self._consume(self._parsers[name].feed(rest))
                    self._consume(self._parsers[name].flush())
            except Exception as exc:
                self._record_fault(exc)
        self._orchestrator.finish_exit(self.job_id, code, fault=self.fault)

    def on_spawn_error(self, error: SpawnError) -> None:
        self._orchestrator.finish_spawn_error(self.job_id, error)

    def _consume(self, events: Iterable[OutputEvent]) -> None:
        for event in events:
            snapshot = self._store.apply(self.job_id, event)
            if snapshot is not None:
                self._broadcaster.publish(self.job_id, snapshot)

    def _record_fault(self, exc: Exception) -> None:
        LOGGER.exception("Output processing failed for job %s", self.job_id)
        self.fault = f"Output processing failed: {exc}"
        self._store.note(self.job_id, self.fault)


class RunOrchestrator:
    """Launch test runs, track their progress and fan updates out."""

    def __init__(
        self,
        store: Optional[JobStore] = None,
        broadcaster: Optional[Broadcaster] = None,
        runner: Optional[ProcessRunner] = None,
        *,
        settings: Optional[OrchestratorSettings] = None,
        rules: Optional[List[CompiledRule]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store or JobStore(
            tail_max_bytes=self._settings.tail_max_bytes,
            max_retained_jobs=self._settings.max_retained_jobs,
        )
        self._broadcaster = broadcaster or Broadcaster(self._store)
        self._runner = runner or build_runner(self._settings)
        self._rules = rules if rules is not None else load_progress_rules(self._settings)
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def broadcaster(self) -> Broadcaster:
        return self._broadcaster

    @property
    def settings(self) -> OrchestratorSettings:
        return self._settings

    def _command(self) -> CommandSpec:
        if isinstance(self._runner, DockerRunner):
            env = dict(self._settings.env)
        else:
            env = build_environment(self._settings)
        return CommandSpec(argv=list(self._settings.command), env=env, cwd=self._settings.cwd)

    # ------------------------------------------------------------------ public API
    async def start_job(self) -> JobSnapshot:
        """Create a job and launch its process without waiting for the run.

        The returned snapshot is ``running`` when the process started and
        ``errored`` when it could not be spawned.
        """
        command = self._command()
        job_id = self._store.create(command.argv)
        pipeline = JobPipeline(self, job_id, self._rules, max_line_length=self._settings.max_line_length)
        try:
            handle = await self._runner.spawn(command)
        except SpawnError as exc:
            pipeline.on_spawn_error(exc)
        else:
            pipeline.on_spawned(handle.id)
            task = asyncio.create_task(self._supervise(job_id, handle, pipeline), name=f"testhub-job-{job_id[:8]}")
            self._tasks[job_id] = task
            task.add_done_callback(lambda _task, job_id=job_id: self._tasks.pop(job_id, None))
        snapshot = self._store.get(job_id)
        if snapshot is None:
            raise RuntimeError(f"Job {job_id} was evicted before it could be reported")
        return snapshot

    def get_job_status(self, job_id: str) -> Optional[JobSnapshot]:
        return self._store.get(job_id)

    def list_jobs(self) -> List[JobSnapshot]:
        return self._store.list()

    def subscribe(self, job_id: str, sink: Sink) -> bool:
        return self._broadcaster.subscribe(job_id, sink)

    def unsubscribe(self, job_id: str, sink: Sink) -> None:
        self._broadcaster.unsubscribe(job_id, sink)

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Optional[JobSnapshot]:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return self._store.get(job_id)

    async def run_job_synchronously(self, timeout: Optional[float] = None) -> JobSnapshot:
        """Start a job and wait for its terminal snapshot.

        Raises ``asyncio.TimeoutError`` if ``timeout`` elapses first; the job
        itself keeps running.
        """
        snapshot = await self.start_job()
        if snapshot.is_terminal:
            return snapshot
        final = await self.wait_for(snapshot.id, timeout)
        if final is None:
            raise RuntimeError(f"Job {snapshot.id} was evicted before it finished")
        return final

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        LOGGER.info("Orchestrator stopped (%d running jobs cancelled)", len(tasks))

    # ------------------------------------------------------------------ lifecycle
    async def _supervise(self, job_id: str, handle, pipeline: JobPipeline) -> None:
        try:
            await self._runner.stream(handle, pipeline)
        except asyncio.CancelledError:
            self._finish(
                job_id,
                JobStatus.errored,
                failure_reason="Orchestrator stopped before the test process exited",
            )
            raise
        except Exception as exc:
            LOGGER.exception("Unhandled error while supervising job %s", job_id)
            self._finish(job_id, JobStatus.errored, failure_reason=f"Supervisor error: {exc}")

    def finish_spawn_error(self, job_id: str, error: SpawnError) -> None:
        LOGGER.error("Failed to launch test process for job %s: %s", job_id, error)
        self._finish(
            job_id,
            JobStatus.errored,
            failure_reason=str(error),
            message="Test process could not be started",
        )

    def finish_exit(self, job_id: str, code: int, *, fault: Optional[str] = None) -> None:
        snapshot = self._store.get(job_id)
        if snapshot is None:
            LOGGER.warning("Job %s vanished before its exit was recorded", job_id)
            return
        if fault:
            self._finish(job_id, JobStatus.errored, exit_code=code, failure_reason=fault)
            return
        failed_tests = sorted(
            name for name, outcome in snapshot.test_results.items() if outcome is TestOutcomeKind.failed
        )
        if code != 0:
            reason: Optional[str] = f"Test process exited with code {code}"
        elif snapshot.marker is MarkerKind.failed:
            reason = "Test output reported failures despite exit code 0"
        elif failed_tests:
            reason = "Failed tests reported despite exit code 0: " + ", ".join(failed_tests)
        else:
            reason = None
        if reason:
            self._finish(job_id, JobStatus.failed, exit_code=code, failure_reason=reason, message="Some tests failed")
        else:
            self._finish(job_id, JobStatus.completed, exit_code=code, message="All tests passed")

    def _finish(
        self,
        job_id: str,
        status: JobStatus,
        *,
        exit_code: Optional[int] = None,
        failure_reason: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        if failure_reason:
            self._store.note(job_id, failure_reason)
        snapshot = self._store.finalize(
            job_id,
            status,
            exit_code=exit_code,
            failure_reason=failure_reason,
            message=message,
        )
        if snapshot is not None:
            self._broadcaster.complete(job_id, snapshot)

    # ------------------------------------------------------------------ reporting
    def build_report(self, snapshot: JobSnapshot) -> RunReport:
        outcomes = list(snapshot.test_results.values())
        passed = outcomes.count(TestOutcomeKind.passed)
        failed = outcomes.count(TestOutcomeKind.failed)
        pending = outcomes.count(TestOutcomeKind.pending)
        summary = ReportSummary(
            total_implemented_tests=snapshot.summary.total if snapshot.summary.total is not None else passed + failed,
            passed_tests=snapshot.summary.passed if snapshot.summary.passed is not None else passed,
            failed_tests=snapshot.summary.failed if snapshot.summary.failed is not None else failed,
            pending_tests=pending,
        )
        success = snapshot.status is JobStatus.completed
        failure_details = None
        if not success:
            failure_details = (
                extract_failure_details(snapshot.raw_output_tail or "")
                or snapshot.failure_reason
                or "No failure details available"
            )
        return RunReport(
            success=success,
            timestamp=_utcnow(),
            job_id=snapshot.id,
            status=snapshot.status,
            summary=summary,
            test_results=dict(snapshot.test_results),
            duration_seconds=snapshot.duration_seconds,
            message=_REPORT_MESSAGES[snapshot.status],
            failure_details=failure_details,
            job=snapshot,
        )


_orchestrator: Optional[RunOrchestrator] = None


def get_orchestrator() -> RunOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = RunOrchestrator()
    return _orchestrator


OrchestratorDep = Depends(get_orchestrator)


async def shutdown_orchestrator() -> None:
    """Stop the process-wide orchestrator if one was ever created."""
    if _orchestrator is not None:
        await _orchestrator.shutdown()
