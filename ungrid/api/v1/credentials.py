"""
Credentials Endpoint

GET /api/v1/credentials - Whether a usable API key is configured (never the key)
PUT /api/v1/credentials - Set the API key for this session
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ungrid.api.dependencies import get_session
from ungrid.pipeline.session import Session

router = APIRouter()


class CredentialRequest(BaseModel):
    api_key: str = Field(..., min_length=1)


class CredentialStatusResponse(BaseModel):
    configured: bool
    source: Optional[str] = None
    locked: bool


def _status(session: Session) -> CredentialStatusResponse:
    store = session.credentials
    return CredentialStatusResponse(
        configured=store.has_usable(),
        source=store.source,
        locked=store.locked
    )


@router.get("", response_model=CredentialStatusResponse)
async def get_credentials(session: Session = Depends(get_session)):
    return _status(session)


@router.put("", response_model=CredentialStatusResponse)
async def set_credentials(request: CredentialRequest, session: Session = Depends(get_session)):
    """Set the key; refused with 409 while a run is active."""
    session.credentials.set(request.api_key)
    return _status(session)
