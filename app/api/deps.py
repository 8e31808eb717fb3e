import logging

import jwt
from fastapi import Header, HTTPException, Request
from jwt.exceptions import PyJWTError as JWTError

from app.config import settings
from app.db import SessionLocal

logger = logging.getLogger(__name__)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def require_user_auth(request: Request, authorization: str | None = Header(default=None)):
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not settings.jwt_secret:
        logger.error("JWT_SECRET is not configured; rejecting API request")
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    actor_id = payload.get("sub")
    if not actor_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    request.state.actor_id = str(actor_id)
    return {"actor_type": "user", "actor_id": str(actor_id)}


def get_build_queue(request: Request):
    """The in-process build queue, or None when builds run in a separate worker."""
    return getattr(request.app.state, "build_queue", None)


__all__ = ["get_build_queue", "get_db", "require_user_auth"]
