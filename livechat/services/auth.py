import logging
from typing import Any

from jose import JWTError, jwt

from livechat.core.config import settings
from livechat.schemas.auth import AdminPrincipal

logger = logging.getLogger("livechat")


def decode_access_token(token: str) -> dict[str, Any] | None:
    try:
        return jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except JWTError:
        return None


def admin_from_token(token: str | None) -> AdminPrincipal | None:
    """
    Admin identity carried by a bearer token issued by the admin login
    service, or ``None`` if the token is missing or invalid.
    """
    if not token:
        return None
    payload = decode_access_token(token)
    if not payload or "sub" not in payload:
        logger.info("Rejected admin token")
        return None
    admin_id = str(payload["sub"])
    email = payload.get("email")
    return AdminPrincipal(
        id=admin_id,
        name=payload.get("name") or email or admin_id,
        email=email,
    )
