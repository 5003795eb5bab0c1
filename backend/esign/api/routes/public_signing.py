from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from fastapi.responses import RedirectResponse
from sqlmodel import Session

from esign.api.deps import build_signing_service, get_db, service_errors
from esign.schemas.public import (
    DeclineRequest,
    DeclineResponse,
    DelegateRequest,
    DelegateResponse,
    PreviewRead,
    ScrollCompleteResponse,
    SendOtpResponse,
    SigningPageRead,
    SubmitSignatureRequest,
    SubmitSignatureResponse,
    VerifyOtpRequest,
    VerifyOtpResponse,
)
from esign.services.short_link import ShortLinkService
from esign.utils.network import extract_ip_address, extract_user_agent

router = APIRouter(tags=["public-signing"])


@router.get("/sign/{token}", response_model=SigningPageRead)
def signing_page(
    token: str,
    request: Request,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
) -> SigningPageRead:
    service = build_signing_service(session, background_tasks)
    with service_errors():
        return service.access_signing_page(token, extract_ip_address(request), extract_user_agent(request))


@router.post("/sign/{token}/send-otp", response_model=SendOtpResponse)
def send_otp(
    token: str,
    request: Request,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
) -> SendOtpResponse:
    service = build_signing_service(session, background_tasks)
    with service_errors():
        return service.send_otp(token, extract_ip_address(request), extract_user_agent(request))


@router.post("/sign/{token}/verify-otp", response_model=VerifyOtpResponse)
def verify_otp(
    token: str,
    payload: VerifyOtpRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
) -> VerifyOtpResponse:
    service = build_signing_service(session, background_tasks)
    with service_errors():
        return service.verify_otp(token, payload.otp, extract_ip_address(request), extract_user_agent(request))


@router.post("/sign/{token}/submit", response_model=SubmitSignatureResponse)
def submit_signature(
    token: str,
    payload: SubmitSignatureRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
) -> SubmitSignatureResponse:
    service = build_signing_service(session, background_tasks)
    with service_errors():
        return service.submit_signature(
            token,
            signature_image=payload.signature_image,
            signature_type=payload.signature_type,
            intent_confirmation=payload.intent_confirmation,
            field_data=payload.field_data,
            ip_address=extract_ip_address(request),
            user_agent=extract_user_agent(request),
        )


@router.post("/sign/{token}/decline", response_model=DeclineResponse)
def decline_signature(
    token: str,
    request: Request,
    background_tasks: BackgroundTasks,
    payload: DeclineRequest | None = None,
    session: Session = Depends(get_db),
) -> DeclineResponse:
    service = build_signing_service(session, background_tasks)
    with service_errors():
        return service.decline_signature(
            token,
            payload.reason if payload else None,
            extract_ip_address(request),
            extract_user_agent(request),
        )


@router.post("/sign/{token}/delegate", response_model=DelegateResponse)
def delegate_signing(
    token: str,
    payload: DelegateRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
) -> DelegateResponse:
    service = build_signing_service(session, background_tasks)
    with service_errors():
        return service.delegate_signing(
            token,
            delegate_email=str(payload.delegate_email),
            delegate_name=payload.delegate_name,
            delegate_phone=payload.delegate_phone,
            reason=payload.reason,
            ip_address=extract_ip_address(request),
            user_agent=extract_user_agent(request),
        )


@router.get("/sign/{token}/scroll-complete", response_model=ScrollCompleteResponse)
def scroll_complete(
    token: str,
    request: Request,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
) -> ScrollCompleteResponse:
    service = build_signing_service(session, background_tasks)
    with service_errors():
        return service.mark_scroll_complete(token, extract_ip_address(request), extract_user_agent(request))


@router.get("/preview/{token}", response_model=PreviewRead)
def preview_document(
    token: str,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_db),
) -> PreviewRead:
    service = build_signing_service(session, background_tasks)
    with service_errors():
        return service.render_preview(token)


@router.get("/s/{short_code}", include_in_schema=False)
def resolve_short_link(short_code: str, session: Session = Depends(get_db)) -> RedirectResponse:
    with service_errors():
        target = ShortLinkService(session).resolve(short_code)
    return RedirectResponse(url=target, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
