"""Manual per-user sync endpoint."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Body, Depends, Path, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from application.services.sync_service import CostSyncService, SyncResult
from domain.models.sync import SyncErrorCode
from infrastructure.container import get_sync_service

from .dependencies import require_scheduler_secret
from .schemas import ErrorResponse, SyncRequest, SyncResponse

router = APIRouter(
    prefix="/users/{user_id}",
    tags=["Sync"],
    dependencies=[Depends(require_scheduler_secret)],
)

UserID = Annotated[str, Path(min_length=1, max_length=128, description="Product user id.")]

SYNC_HTTP_STATUS: dict[SyncErrorCode, int] = {
    SyncErrorCode.NOT_CONNECTED: status.HTTP_409_CONFLICT,
    SyncErrorCode.COOLDOWN: status.HTTP_429_TOO_MANY_REQUESTS,
    SyncErrorCode.INVALID_CREDENTIALS: status.HTTP_401_UNAUTHORIZED,
    SyncErrorCode.ACCESS_DENIED: status.HTTP_403_FORBIDDEN,
    SyncErrorCode.THROTTLED: status.HTTP_429_TOO_MANY_REQUESTS,
    SyncErrorCode.PROVIDER_ERROR: status.HTTP_502_BAD_GATEWAY,
    SyncErrorCode.STORAGE_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
    SyncErrorCode.PARTIAL_FAILURE: status.HTTP_200_OK,
}


def sync_response(result: SyncResult) -> JSONResponse:
    """Render *result* with the status code its failure code maps to."""
    status_code = status.HTTP_200_OK
    if result.code is not None:
        status_code = SYNC_HTTP_STATUS.get(result.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    headers = {}
    if result.retry_after_seconds is not None:
        headers["Retry-After"] = str(result.retry_after_seconds)
    body = SyncResponse.model_validate(result.to_dict())
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body), headers=headers)


@router.post(
    "/sync",
    response_model=SyncResponse,
    summary="Sync one user's spend and score it",
    responses={
        401: {"description": "Invalid credentials or scheduler secret."},
        403: {"description": "Cost Explorer access denied."},
        409: {"description": "No connected billing account."},
        422: {"description": "Window outside 7..90 days.", "model": ErrorResponse},
        429: {"description": "Cooldown or provider throttling; see Retry-After."},
        502: {"description": "Provider failure."},
        503: {"description": "Cost data could not be stored."},
    },
)
def sync_user(
    user_id: UserID,
    body: SyncRequest | None = Body(default=None),
    service: CostSyncService = Depends(get_sync_service),
) -> JSONResponse:
    result = service.sync(user_id, body.days if body else None)
    return sync_response(result)
