from contextlib import contextmanager
from typing import Annotated, Callable, Iterator
from uuid import UUID

from fastapi import BackgroundTasks, Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlmodel import Session, select

from esign.core.config import settings
from esign.core.errors import EsignError, as_http_exception
from esign.db.session import get_session
from esign.models.api_key import ApiScope, EsignAPIKey
from esign.models.audit import ActorType
from esign.models.company import User, UserRole
from esign.schemas.audit import AuditActor
from esign.services.api_key import ApiKeyService
from esign.services.audit import AuditService
from esign.services.document import DocumentService
from esign.services.hooks import run_callback, run_completion
from esign.services.notification import NotificationService, build_notification_service
from esign.services.signing import SigningService
from esign.utils.security import decode_access_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.api_v1_str}/auth/login")


def get_db() -> Session:
    yield from get_session()


@contextmanager
def service_errors() -> Iterator[None]:
    """Translate service exceptions into HTTP responses."""
    try:
        yield
    except EsignError as exc:
        raise as_http_exception(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)],
    session: Annotated[Session, Depends(get_db)],
) -> User:
    try:
        payload = decode_access_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    try:
        user_id = UUID(str(payload["sub"]))
    except (KeyError, ValueError, TypeError) as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject") from exc

    user = session.exec(select(User).where(User.id == user_id)).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def get_current_active_user(current_user: Annotated[User, Depends(get_current_user)]) -> User:
    if not current_user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User inactive")
    return current_user


def require_roles(*roles: UserRole) -> Callable[[User], User]:
    allowed = {role.value for role in roles}

    def dependency(current_user: Annotated[User, Depends(get_current_active_user)]) -> User:
        if current_user.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return current_user

    return dependency


def user_actor(user: User) -> AuditActor:
    return AuditActor(type=ActorType.USER, id=str(user.id), email=user.email)


def get_api_key(
    session: Annotated[Session, Depends(get_db)],
    x_api_key: Annotated[str | None, Header(alias="x-api-key")] = None,
) -> EsignAPIKey:
    with service_errors():
        return ApiKeyService(session).authenticate(x_api_key)


def require_scope(*scopes: ApiScope) -> Callable[[EsignAPIKey], EsignAPIKey]:
    def dependency(api_key: Annotated[EsignAPIKey, Depends(get_api_key)]) -> EsignAPIKey:
        with service_errors():
            ApiKeyService.require_scopes(api_key, scopes)
        return api_key

    return dependency


def _notification_service(audit_service: AuditService) -> NotificationService:
    return build_notification_service(audit_service, settings)


def _deferred(background_tasks: BackgroundTasks, target: Callable[..., None]) -> Callable[..., None]:
    def schedule(*args) -> None:  # type: ignore[no-untyped-def]
        background_tasks.add_task(target, *args)

    return schedule


def build_document_service(session: Session, background_tasks: BackgroundTasks) -> DocumentService:
    audit_service = AuditService(session)
    return DocumentService(
        session,
        notification_service=_notification_service(audit_service),
        audit_service=audit_service,
        callback_dispatcher=_deferred(background_tasks, run_callback),
    )


def build_signing_service(session: Session, background_tasks: BackgroundTasks) -> SigningService:
    audit_service = AuditService(session)
    return SigningService(
        session,
        notification_service=_notification_service(audit_service),
        audit_service=audit_service,
        completion_handler=_deferred(background_tasks, run_completion),
        callback_dispatcher=_deferred(background_tasks, run_callback),
    )
