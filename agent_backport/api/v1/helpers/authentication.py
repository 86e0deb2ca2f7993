"""
Caller identity for the job query API.

Sessions are issued elsewhere; this module only verifies the bearer token
(HS256, signed with SECRET_KEY) and exposes who is calling.
"""

import logging
from datetime import datetime, timedelta, timezone

from fastapi import Request
from jose import JWTError, jwt
from pydantic import BaseModel

from agent_backport.api.v1.helpers.responses import unauthorized_response
from agent_backport.config import settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


class Caller(BaseModel):
    subject: str
    access_token: str


def create_access_token(subject: str, expires_delta: timedelta | None = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=15))
    return jwt.encode(
        {"sub": subject, "exp": expire}, settings.secret_key, algorithm=ALGORITHM
    )


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip() or None
    return None


async def get_current_caller(request: Request) -> Caller:
    token = _bearer_token(request)
    if token is None:
        raise unauthorized_response("Unauthorized")

    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError as exc:
        logger.info(f"Rejected caller token: {exc}")
        raise unauthorized_response("Invalid or expired token")

    subject = payload.get("sub")
    if not subject:
        raise unauthorized_response("No subject found in token")

    return Caller(subject=subject, access_token=token)
