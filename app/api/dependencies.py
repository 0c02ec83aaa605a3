"""
Shared API dependencies.
"""
import logging
import uuid
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from sqlmodel import Session

from app.core.config import settings
from app.core.database import get_session
from app.integrations.service import IntegrationsService, build_integrations_service

logger = logging.getLogger(__name__)

# Tokens are issued by the identity service; this app only verifies them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token", auto_error=False)

# Alias for database session dependency
get_db = get_session


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_access_token(token: str) -> dict:
    """Verify signature and expiry of a user access token."""
    return jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])


async def get_current_user_id(
    token: Annotated[Optional[str], Depends(oauth2_scheme)],
) -> uuid.UUID:
    """
    Dependency returning the authenticated user's id from the bearer token.
    Raises HTTPException with status 401 if the token is missing or invalid.
    """
    if token is None:
        raise _unauthorized()

    try:
        payload = decode_access_token(token)
    except ExpiredSignatureError:
        logger.info("Expired token presented")
        raise _unauthorized()
    except JWTError as e:
        logger.warning("JWT error during token validation", extra={"error": str(e)})
        raise _unauthorized()

    subject = payload.get("sub") or payload.get("user_id")
    if not isinstance(subject, str) or not subject:
        raise _unauthorized()
    try:
        return uuid.UUID(subject)
    except ValueError:
        raise _unauthorized()


def get_integrations_service(
    session: Annotated[Session, Depends(get_session)],
) -> IntegrationsService:
    return build_integrations_service(session)
