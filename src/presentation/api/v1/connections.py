"""Billing connection onboarding and status endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Path, status

from application.services.connection_service import ConnectionService
from domain.models.connection import Connection
from infrastructure.container import get_connection_service

from .dependencies import require_scheduler_secret
from .schemas import ConnectionCreate, ConnectionResponse, ErrorResponse

router = APIRouter(
    prefix="/users/{user_id}",
    tags=["Connections"],
    dependencies=[Depends(require_scheduler_secret)],
)

UserID = Annotated[str, Path(min_length=1, max_length=128, description="Product user id.")]


@router.post(
    "/connection",
    response_model=ConnectionResponse,
    status_code=status.HTTP_200_OK,
    summary="Validate and store billing credentials",
    responses={
        400: {"description": "Malformed keys.", "model": ErrorResponse},
        401: {"description": "Rejected credentials or scheduler secret.", "model": ErrorResponse},
        403: {"description": "Cost Explorer access denied.", "model": ErrorResponse},
        429: {"description": "Provider throttling.", "model": ErrorResponse},
        502: {"description": "Provider failure.", "model": ErrorResponse},
    },
)
def connect_account(
    user_id: UserID,
    body: ConnectionCreate,
    service: ConnectionService = Depends(get_connection_service),
) -> ConnectionResponse:
    connection = service.connect(
        user_id,
        body.access_key_id,
        body.secret_access_key.get_secret_value(),
        body.region,
    )
    return _to_response(connection)


@router.get(
    "/connection",
    response_model=ConnectionResponse,
    summary="Current connection status",
    responses={
        401: {"description": "Missing or invalid scheduler secret.", "model": ErrorResponse},
        404: {"description": "User has no connection.", "model": ErrorResponse},
    },
)
def get_connection(
    user_id: UserID,
    service: ConnectionService = Depends(get_connection_service),
) -> ConnectionResponse:
    return _to_response(service.get(user_id))


def _to_response(connection: Connection) -> ConnectionResponse:
    return ConnectionResponse(
        user_id=connection.user_id,
        status=connection.status.value,
        region=connection.region,
        access_key_suffix=connection.access_key_id[-4:],
        last_validated_at=connection.last_validated_at,
        last_sync_at=connection.last_sync_at,
        last_error=connection.last_error,
    )
