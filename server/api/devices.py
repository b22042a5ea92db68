"""Device management API endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session

from server.api.deps import WebUser, get_device_context, get_web_user, require_admin
from server.database import get_session
from server.models.token import DeviceToken
from server.schemas.devices import (
    CleanupResponse,
    DeviceListResponse,
    DeviceRenameRequest,
    DeviceResponse,
    PingResponse,
)
from server.services import token_service
from server.services.errors import NotFound
from server.services.token_service import TokenContext
from server.utils.clock import as_utc, utcnow

router = APIRouter(tags=["devices"])


def _device_response(d: DeviceToken, now) -> DeviceResponse:
    return DeviceResponse(
        device_id=d.device_id,
        device_name=d.device_name,
        user_email=d.user_email,
        issued_at=as_utc(d.issued_at).isoformat(),
        rotated_at=as_utc(d.rotated_at).isoformat() if d.rotated_at else None,
        last_used_at=as_utc(d.last_used_at).isoformat() if d.last_used_at else None,
        expires_at=as_utc(d.expires_at).isoformat(),
        is_active=as_utc(d.expires_at) > now,
    )


@router.get("/devices", response_model=DeviceListResponse)
def list_devices(
    user: WebUser = Depends(get_web_user),
    session: Session = Depends(get_session),
):
    """List the devices paired to the signed-in user."""
    now = utcnow()
    devices = [_device_response(d, now) for d in token_service.list_devices(user.id, session)]
    return DeviceListResponse(
        devices=devices,
        total_devices=len(devices),
        active_devices=sum(1 for d in devices if d.is_active),
    )


@router.patch("/devices/{device_id}", response_model=DeviceResponse)
def rename_device(
    device_id: str,
    request: DeviceRenameRequest,
    user: WebUser = Depends(get_web_user),
    session: Session = Depends(get_session),
):
    """Rename one of the user's devices."""
    try:
        device = token_service.rename_device(device_id, user.id, request.device_name, session)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except NotFound:
        raise HTTPException(status_code=404, detail="Device not found")
    return _device_response(device, utcnow())


@router.delete("/devices/{device_id}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_device(
    device_id: str,
    user: WebUser = Depends(get_web_user),
    session: Session = Depends(get_session),
):
    """Revoke (unpair) a device. Its token stops validating at once."""
    try:
        token_service.revoke_device(device_id, user.id, session)
    except NotFound:
        raise HTTPException(status_code=404, detail="Device not found")


@router.get("/ping", response_model=PingResponse)
def ping(ctx: TokenContext = Depends(get_device_context)):
    """Cheapest authorized call: proves the device token works."""
    return PingResponse(
        ok=True,
        device_id=ctx.device_id,
        user_id=ctx.user_id,
        user_email=ctx.user_email,
    )


@router.post("/admin/cleanup", response_model=CleanupResponse, dependencies=[Depends(require_admin)])
def cleanup(session: Session = Depends(get_session)):
    """Delete expired registrations and tokens now instead of waiting for the sweeper."""
    registrations, tokens = token_service.cleanup_expired(session)
    return CleanupResponse(registrations=registrations, tokens=tokens)
