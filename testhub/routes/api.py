from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from testhub.schemas import JobSnapshot
from testhub.services.broadcaster import QueueSink
from testhub.services.orchestrator import OrchestratorDep, RunOrchestrator

LOGGER = logging.getLogger("testhub.api")

router = APIRouter(prefix="/api", tags=["api"])


@router.get("/jobs", response_model=List[JobSnapshot])
async def list_jobs(orchestrator: RunOrchestrator = OrchestratorDep) -> List[JobSnapshot]:
    return orchestrator.list_jobs()


@router.post("/jobs", response_model=JobSnapshot, status_code=201)
async def start_job(orchestrator: RunOrchestrator = OrchestratorDep) -> JobSnapshot:
    return await orchestrator.start_job()


@router.get("/jobs/{job_id}", response_model=JobSnapshot)
async def get_job(job_id: str, orchestrator: RunOrchestrator = OrchestratorDep) -> JobSnapshot:
    snapshot = orchestrator.get_job_status(job_id)
    if not snapshot:
        raise HTTPException(status_code=404, detail="Job not found")
    return snapshot


@router.post("/jobs/run")
async def run_job(orchestrator: RunOrchestrator = OrchestratorDep) -> JSONResponse:
    """Run the suite to completion and answer with the final report.

    200 when every test passed, 500 otherwise. 504 when the run outlives
    ``sync_timeout_seconds``; the job keeps running and stays pollable.
    """
    snapshot = await orchestrator.start_job()
    if not snapshot.is_terminal:
        try:
            final = await orchestrator.wait_for(snapshot.id, orchestrator.settings.sync_timeout_seconds)
        except asyncio.TimeoutError:
            LOGGER.warning("Synchronous run of job %s timed out", snapshot.id)
            current = orchestrator.get_job_status(snapshot.id) or snapshot
            return JSONResponse(
                status_code=504,
                content={
                    "success": False,
                    "message": "Test run did not finish in time",
                    "job": current.model_dump(mode="json"),
                },
            )
        if final is None:
            raise HTTPException(status_code=404, detail="Job not found")
        snapshot = final
    report = orchestrator.build_report(snapshot)
    return JSONResponse(status_code=200 if report.success else 500, content=report.model_dump(mode="json"))


@router.get("/config")
async def get_config(orchestrator: RunOrchestrator = OrchestratorDep) -> Dict[str, Any]:
    return orchestrator.settings.redacted()


@router.websocket("/jobs/{job_id}/ws")
async def job_updates(websocket: WebSocket, job_id: str, orchestrator: RunOrchestrator = OrchestratorDep) -> None:
    await websocket.accept()
    sink = QueueSink(maxsize=orchestrator.settings.subscriber_queue_size)
    if not orchestrator.subscribe(job_id, sink):
        await websocket.close(code=4404, reason="Job not found")
        return
    try:
        while True:
            event = await sink.get()
            await websocket.send_json(event.model_dump(mode="json"))
            if event.event == "complete":
                break
        await websocket.close()
    except WebSocketDisconnect:
        LOGGER.debug("Subscriber for job %s disconnected", job_id)
    finally:
        orchestrator.unsubscribe(job_id, sink)
