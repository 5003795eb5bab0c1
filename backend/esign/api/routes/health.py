from fastapi import APIRouter, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from esign.core.logging_setup import logger
from esign.db import session as db_session_module

router = APIRouter(tags=["health"])


@router.get("")
def health() -> dict[str, str]:
    try:
        with db_session_module.engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Health check failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable") from exc
    return {"status": "ok", "database": "ok"}


@router.get("/live")
def live() -> dict[str, str]:
    return {"status": "ok"}
