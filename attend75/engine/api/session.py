from fastapi import APIRouter, Depends, Request

from ..models.sync_models import MigrationResult, SignInResult, SyncResult
from ..services.sync_coordinator import SyncCoordinator
from .dependencies import get_coordinator
from .schemas.session import SessionStateResponse, SignInRequest
from .utilities.limiter import limiter

router = APIRouter(prefix="/session", tags=["Session"])


def _state(coordinator: SyncCoordinator) -> SessionStateResponse:
    return SessionStateResponse(
        state=coordinator.state,
        user_id=coordinator.user_id,
        pending_writes=len(coordinator.pending),
        realtime_connected=coordinator.realtime_connected,
    )


@router.get("/state", response_model=SessionStateResponse, summary="Current session state")
@limiter.limit("60/minute")
async def get_state(request: Request, coordinator: SyncCoordinator = Depends(get_coordinator)):
    return _state(coordinator)


@router.post("/sign-in", response_model=SignInResult, summary="Switch to an authenticated user")
@limiter.limit("10/minute")
async def sign_in(
    request: Request,
    body: SignInRequest,
    coordinator: SyncCoordinator = Depends(get_coordinator)
):
    """
    Migrates the guest ledger into the account (unless disabled), pulls the
    account's data and subscribes to remote changes. A failed migration does
    not block the sign-in; it is reported in the response and can be retried.
    """
    return await coordinator.sign_in(body.user_id, migrate_guest_data=body.migrate_guest_data)


@router.post("/sign-out", response_model=SessionStateResponse, summary="Leave the authenticated session")
@limiter.limit("10/minute")
async def sign_out(request: Request, coordinator: SyncCoordinator = Depends(get_coordinator)):
    await coordinator.sign_out()
    return _state(coordinator)


@router.post("/retry-migration", response_model=MigrationResult, summary="Retry a failed guest migration")
@limiter.limit("5/minute")
async def retry_migration(request: Request, coordinator: SyncCoordinator = Depends(get_coordinator)):
    return await coordinator.retry_migration()


@router.post("/retry-pending", response_model=SyncResult, summary="Re-send writes that are still pending")
@limiter.limit("20/minute")
async def retry_pending(request: Request, coordinator: SyncCoordinator = Depends(get_coordinator)):
    return await coordinator.retry_pending()
