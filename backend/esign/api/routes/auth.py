from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlmodel import Session

from esign.api.deps import get_db
from esign.core.logging_setup import logger
from esign.schemas.auth import LoginRequest, TokenResponse
from esign.services.auth import AuthService
from esign.utils.network import extract_ip_address

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=TokenResponse)
def login(
    payload: LoginRequest,
    request: Request,
    session: Session = Depends(get_db),
) -> TokenResponse:
    try:
        return AuthService(session).authenticate(payload)
    except ValueError as exc:
        logger.warning("Failed login for %s from %s", payload.email, extract_ip_address(request))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
