# attend75/engine/api/dependencies.py
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from ..models.sync_models import WriteResult
from ..services.errors import NotAuthenticated, ServiceError
from ..services.sync_coordinator import SyncCoordinator


def get_coordinator(request: Request) -> SyncCoordinator:
    """
    Returns the coordinator built by the application lifespan.
    All requests share it: it owns the single in-memory ledger.
    """
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="The attendance engine is not ready."
        )
    return coordinator


def service_error_to_http(error: ServiceError) -> HTTPException:
    if isinstance(error, NotAuthenticated):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(error))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))


def write_response(result: WriteResult):
    """
    Committed and locally saved writes are plain 200s. Anything the remote
    store has not confirmed yet is answered with 202 so clients can offer a retry.
    """
    if result.ok:
        return result
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=result.model_dump(mode="json"))
