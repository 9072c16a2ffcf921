"""
Sync control API: start, status and cancel.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from commhub.communication.models import ProviderType
from commhub.shared.logging import get_logger
from commhub.sync.orchestrator import SyncOrchestrator, get_sync_orchestrator
from commhub.sync.schemas import SyncCancelResponse, SyncRequest, SyncStatusResponse

logger = get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])

Orchestrator = Annotated[SyncOrchestrator, Depends(get_sync_orchestrator)]


@router.post(
    "/{workspace_id}",
    response_model=SyncStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={409: {"description": "A sync is already running"}},
)
async def start_sync(
    workspace_id: str,
    request: SyncRequest,
    orchestrator: Orchestrator,
) -> SyncStatusResponse:
    """Start a sync run; it executes in the background.

    A second start while a run is active is rejected with 409, not queued.
    """
    snapshot = await orchestrator.start(workspace_id, request.to_options())
    return SyncStatusResponse(**snapshot)


@router.get("/{workspace_id}", response_model=SyncStatusResponse)
async def get_sync_status(
    workspace_id: str,
    orchestrator: Orchestrator,
    provider: ProviderType = Query(...),
) -> SyncStatusResponse:
    return SyncStatusResponse(**orchestrator.status(workspace_id, provider))


@router.post("/{workspace_id}/cancel", response_model=SyncCancelResponse)
async def cancel_sync(
    workspace_id: str,
    orchestrator: Orchestrator,
    provider: ProviderType = Query(...),
) -> SyncCancelResponse:
    cancelled = await orchestrator.cancel(workspace_id, provider)
    return SyncCancelResponse(cancelled=cancelled)
