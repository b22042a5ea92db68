"""Device pairing and token API endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session

from server.api.deps import WebUser, get_bearer_token, get_web_user
from server.database import get_session
from server.schemas.devices import (
    ExchangeRequest,
    LinkRequest,
    LinkResponse,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
)
from server.services import pairing_service, token_service
from server.services.errors import (
    AlreadyLinked,
    Expired,
    Invalid,
    NotFound,
    PairingError,
    Pending,
    RateLimited,
)
from server.services.token_service import IssuedToken

router = APIRouter(prefix="/devices", tags=["pairing"])

# HTTP 425 Too Early: registration exists, keep polling
HTTP_425_TOO_EARLY = 425


def _error(status_code: int, exc: PairingError, headers: dict | None = None) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": exc.code, "message": str(exc)},
        headers=headers,
    )


def _token_response(issued: IssuedToken) -> TokenResponse:
    return TokenResponse(
        token=issued.token,
        expires_at=issued.expires_at.isoformat(),
        device_id=issued.device_id,
    )


@router.post("/register", response_model=RegisterResponse)
def register(request: RegisterRequest, session: Session = Depends(get_session)):
    """Start pairing: returns a device id and a short code for the human to enter."""
    issued = pairing_service.register(request.device_fingerprint, session)
    return RegisterResponse(
        device_id=issued.device_id,
        code=issued.code,
        expires_at=issued.expires_at.isoformat(),
    )


@router.post("/link", response_model=LinkResponse)
def link(
    request: LinkRequest,
    user: WebUser = Depends(get_web_user),
    session: Session = Depends(get_session),
):
    """Bind a pairing code to the signed-in web user."""
    try:
        device_id = pairing_service.link(request.code, user.id, user.email, session)
    except NotFound as e:
        raise _error(status.HTTP_404_NOT_FOUND, e)
    except AlreadyLinked as e:
        raise _error(status.HTTP_409_CONFLICT, e)
    except RateLimited as e:
        raise _error(
            status.HTTP_429_TOO_MANY_REQUESTS,
            e,
            headers={"Retry-After": str(e.retry_after)},
        )
    return LinkResponse(device_id=device_id)


@router.post("/exchange", response_model=TokenResponse)
def exchange(request: ExchangeRequest, session: Session = Depends(get_session)):
    """Poll target for the device: returns the token once the code is linked."""
    try:
        issued = pairing_service.exchange(
            request.device_id,
            request.code,
            session,
            fingerprint=request.device_fingerprint,
            device_name=request.device_name,
        )
    except Pending as e:
        raise _error(HTTP_425_TOO_EARLY, e)
    except NotFound as e:
        raise _error(status.HTTP_404_NOT_FOUND, e)
    except Expired as e:
        raise _error(status.HTTP_410_GONE, e)
    return _token_response(issued)


@router.post("/refresh", response_model=TokenResponse)
def refresh(token: str = Depends(get_bearer_token), session: Session = Depends(get_session)):
    """Rotate the presented token. The old token stops working immediately."""
    try:
        issued = token_service.refresh(token, session)
    except Invalid as e:
        raise _error(status.HTTP_401_UNAUTHORIZED, e, headers={"WWW-Authenticate": "Bearer"})
    return _token_response(issued)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(token: str = Depends(get_bearer_token), session: Session = Depends(get_session)):
    """Forget the presented token's device credential."""
    if not token_service.logout(token, session):
        raise _error(status.HTTP_401_UNAUTHORIZED, Invalid(), headers={"WWW-Authenticate": "Bearer"})
