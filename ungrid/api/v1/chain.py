"""
Chain Endpoints - Sequential Edit Chain

PUT    /api/v1/chain/source           - Set the source image
PUT    /api/v1/chain/reference        - Set the shared reference image
DELETE /api/v1/chain/reference        - Drop the reference image
POST   /api/v1/chain/steps            - Append a step
DELETE /api/v1/chain/steps/{id}       - Remove a step
POST   /api/v1/chain/execute          - Run the chain (background run)
POST   /api/v1/chain/cancel           - Cooperative cancellation
GET    /api/v1/chain                  - Snapshot of the chain
GET    /api/v1/chain/steps/{id}/image - Step result image
DELETE /api/v1/chain                  - Clear source, reference and steps
"""

from typing import Optional

from fastapi import APIRouter, Depends, File, Response, UploadFile
from pydantic import BaseModel, Field

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
from ungrid.pipeline.session import Session

router = APIRouter()


# =============================================================================
# Request/Response Schemas
# =============================================================================

class AddStepRequest(BaseModel):
    instruction: str = Field(..., min_length=1, max_length=2000, description="Edit to apply at this step")


class ChainSnapshotResponse(SnapshotResponse):
    has_source: bool
    has_reference: bool


# =============================================================================
# Endpoints
# =============================================================================

@router.put("/source", status_code=204)
async def set_source(file: UploadFile = File(...), session: Session = Depends(get_session)):
    session.chain.set_source(await read_image_upload(file))
    return Response(status_code=204)


@router.put("/reference", status_code=204)
async def set_reference(file: UploadFile = File(...), session: Session = Depends(get_session)):
    session.chain.set_reference(await read_image_upload(file))
    return Response(status_code=204)


@router.delete("/reference", status_code=204)
async def clear_reference(session: Session = Depends(get_session)):
    session.chain.set_reference(None)
    return Response(status_code=204)


@router.post("/steps", status_code=201)
async def add_step(request: AddStepRequest, session: Session = Depends(get_session)):
    step = session.chain.add_step(request.instruction)
    return step.to_response_dict()


@router.delete("/steps/{step_id}", status_code=204)
async def remove_step(step_id: str, session: Session = Depends(get_session)):
    session.chain.remove_step(step_id)
    return Response(status_code=204)


@router.post("/execute", response_model=RunAcceptedResponse, status_code=202)
async def execute(
    request: Optional[ResolutionRequest] = None,
    session: Session = Depends(get_session)
):
    """
    Run every step in order; each step edits the previous step's result.

    The first failing step halts the chain and later steps stay pending.
    """
    resolution = (request or ResolutionRequest()).resolution
    chain = session.chain
    if chain.source_image is None:
        raise ValidationError("A source image is required to execute the chain")
    if not chain.steps:
        return RunAcceptedResponse(status="noop", orchestrator="chain", message="Chain has no steps")
    session.ensure_can_start()

    await session.launch(chain.execute(resolution), name="chain:execute")
    return RunAcceptedResponse(
        status="started",
        orchestrator="chain",
        message="Executing chain",
        item_count=len(chain.steps)
    )


@router.post("/cancel", response_model=CancelResponse)
async def cancel(session: Session = Depends(get_session)):
    cancelled = session.chain.cancel()
    return CancelResponse(cancelled=cancelled, run_state=session.chain.run_state.value)


@router.get("", response_model=ChainSnapshotResponse)
async def get_chain(session: Session = Depends(get_session)):
    chain = session.chain
    base = snapshot(chain, [s.to_response_dict() for s in chain.steps])
    return ChainSnapshotResponse(
        **base.model_dump(),
        has_source=chain.source_image is not None,
        has_reference=chain.reference_image is not None,
    )


@router.get("/steps/{step_id}/image")
async def get_step_image(step_id: str, session: Session = Depends(get_session)):
    step = session.chain.find(step_id)
    if step.result_image is None:
        raise ValidationError(f"Step {step_id} has no result yet", item_id=step_id)
    return Response(content=step.result_image, media_type=image_mime_type(step.result_image))


@router.delete("", status_code=204)
async def clear_chain(session: Session = Depends(get_session)):
    session.chain.clear()
    return Response(status_code=204)
