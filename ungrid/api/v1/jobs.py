"""
Jobs Endpoints - Composed Target + Reference Queue

POST   /api/v1/jobs               - Compose a job (bounded queue)
DELETE /api/v1/jobs/{id}          - Remove a job
POST   /api/v1/jobs/run?force=    - Run the queue (background run)
POST   /api/v1/jobs/{id}/rerun    - Rerun a single job
POST   /api/v1/jobs/cancel        - Cooperative cancellation
GET    /api/v1/jobs               - Snapshot of the queue
GET    /api/v1/jobs/{id}/result   - Result image
DELETE /api/v1/jobs               - Clear the queue
"""

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile

from ungrid.api.dependencies import get_session
from ungrid.api.v1.schemas import (
    CancelResponse,
    ResolutionRequest,
    RunAcceptedResponse,
    SnapshotResponse,
    read_image_upload,
    snapshot,
)
from ungrid.core.exceptions import ValidationError
from ungrid.engines.extraction.imaging import image_mime_type
from ungrid.modules.imagery.models import FixKind
from ungrid.pipeline.session import Session

router = APIRouter()


@router.post("", status_code=201)
async def add_job(
    target: UploadFile = File(...),
    reference: UploadFile = File(...),
    fix_kind: FixKind = Form(FixKind.RESTORE_DETAIL),
    context_text: str = Form(""),
    session: Session = Depends(get_session)
):
    """Compose a job from a target image, a reference image and a fix kind."""
    target_bytes = await read_image_upload(target)
    reference_bytes = await read_image_upload(reference)

    job = session.jobs.add_job(target_bytes, reference_bytes, fix_kind, context_text)
    return job.to_response_dict()


@router.delete("/{job_id}", status_code=204)
async def remove_job(job_id: str, session: Session = Depends(get_session)):
    session.jobs.remove_job(job_id)
    return Response(status_code=204)


@router.post("/run", response_model=RunAcceptedResponse, status_code=202)
async def run_queue(
    force: bool = Query(False, description="Rerun every job, including successful ones"),
    request: Optional[ResolutionRequest] = None,
    session: Session = Depends(get_session)
):
    """
    Run the queue in insertion order.

    Only jobs not in success are processed. When every job already
    succeeded the call is refused with 409 until repeated with `force=true`.
    """
    resolution = (request or ResolutionRequest()).resolution
    selected = session.jobs.select(force)
    if not selected:
        return RunAcceptedResponse(status="noop", orchestrator="jobs", message="Queue is empty")
    session.ensure_can_start()

    await session.launch(session.jobs.run(force=force, resolution=resolution), name="jobs:run")
    return RunAcceptedResponse(
        status="started",
        orchestrator="jobs",
        message="Processing job queue",
        item_count=len(selected)
    )


@router.post("/cancel", response_model=CancelResponse)
async def cancel(session: Session = Depends(get_session)):
    cancelled = session.jobs.cancel()
    return CancelResponse(cancelled=cancelled, run_state=session.jobs.run_state.value)


@router.post("/{job_id}/rerun", response_model=RunAcceptedResponse, status_code=202)
async def rerun_one(
    job_id: str,
    request: Optional[ResolutionRequest] = None,
    session: Session = Depends(get_session)
):
    resolution = (request or ResolutionRequest()).resolution
    session.jobs.find(job_id)
    session.ensure_can_start()

    await session.launch(session.jobs.rerun_one(job_id, resolution=resolution), name="jobs:rerun_one")
    return RunAcceptedResponse(
        status="started",
        orchestrator="jobs",
        message=f"Rerunning job {job_id}",
        item_count=1
    )


@router.get("", response_model=SnapshotResponse)
async def list_jobs(session: Session = Depends(get_session)):
    orchestrator = session.jobs
    return snapshot(orchestrator, [j.to_response_dict() for j in orchestrator.jobs])


@router.get("/{job_id}/result")
async def get_job_result(job_id: str, session: Session = Depends(get_session)):
    job = session.jobs.find(job_id)
    if job.result is None:
        raise ValidationError(f"Job {job_id} has no result yet", item_id=job_id)
    return Response(content=job.result, media_type=image_mime_type(job.result))


@router.delete("", status_code=204)
async def clear_jobs(session: Session = Depends(get_session)):
    session.jobs.clear()
    return Response(status_code=204)
