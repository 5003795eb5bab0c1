from __future__ import annotations

from functools import wraps
from typing import Any, Callable, TypeVar

from fastapi import HTTPException, status
from sqlalchemy.orm.exc import StaleDataError

F = TypeVar("F", bound=Callable[..., Any])


class EsignError(ValueError):
    """Domain rule violation with a stable machine-readable code."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        **extra: Any,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.extra = {key: value for key, value in extra.items() if value is not None}

    def to_detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {"code": self.code, "message": self.message}
        for key, value in self.extra.items():
            detail[key] = value.isoformat() if hasattr(value, "isoformat") else value
        return detail


def invalid_token() -> EsignError:
    return EsignError("INVALID_TOKEN", "Invalid or expired link", status.HTTP_401_UNAUTHORIZED)


def token_expired() -> EsignError:
    return EsignError("TOKEN_EXPIRED", "This link has expired", status.HTTP_401_UNAUTHORIZED)


def document_not_found() -> EsignError:
    return EsignError("DOCUMENT_NOT_FOUND", "Document not found", status.HTTP_404_NOT_FOUND)


def recipient_not_found() -> EsignError:
    return EsignError("RECIPIENT_NOT_FOUND", "Recipient not found", status.HTTP_404_NOT_FOUND)


def template_not_found() -> EsignError:
    return EsignError("TEMPLATE_NOT_FOUND", "Template not found", status.HTTP_404_NOT_FOUND)


def invalid_transition(message: str) -> EsignError:
    return EsignError("INVALID_STATUS_TRANSITION", message, status.HTTP_400_BAD_REQUEST, reason=message)


def validation_error(message: str, **extra: Any) -> EsignError:
    return EsignError("VALIDATION_ERROR", message, status.HTTP_400_BAD_REQUEST, **extra)


def concurrent_modification() -> EsignError:
    return EsignError(
        "CONCURRENT_MODIFICATION",
        "Document was modified by another request, please retry",
        status.HTTP_409_CONFLICT,
    )


def translate_stale_data(method: F) -> F:
    """Report a lost optimistic-lock race of a service method as CONCURRENT_MODIFICATION.

    The wrapped method belongs to a service holding ``self.session``; the
    session is rolled back before the error is raised.
    """

    @wraps(method)
    def wrapper(self, *args, **kwargs):  # type: ignore[no-untyped-def]
        try:
            return method(self, *args, **kwargs)
        except StaleDataError as exc:
            self.session.rollback()
            raise concurrent_modification() from exc

    return wrapper  # type: ignore[return-value]


def as_http_exception(exc: EsignError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())
