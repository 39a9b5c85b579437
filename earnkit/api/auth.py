"""
Developer authentication for the EarnKit dashboard API.
Verifies Privy access tokens (ES256 JWTs) and maps them to a Developer.
"""

from typing import Optional

import jwt
from fastapi import HTTPException, Request
from pydantic import BaseModel

from ..config import settings
from ..db.database import get_developer_by_privy_id
from ..db.models import Developer
from ..utils.logging import get_logger

logger = get_logger(__name__)

PRIVY_ISSUER = "privy.io"
PRIVY_COOKIE = "privy-token"


class PrivyClaims(BaseModel):
    """Verified claims of a Privy access token."""
    user_id: str
    app_id: str
    session_id: Optional[str] = None
    issued_at: int
    expiration: int


def verify_privy_token(
    access_token: str,
    app_id: str,
    verification_key: str,
) -> Optional[PrivyClaims]:
    """
    Verify a Privy access token.

    Args:
        access_token: The JWT from the privy-token cookie or bearer header
        app_id: Privy app ID, checked against the audience claim
        verification_key: PEM-encoded ES256 public key

    Returns:
        PrivyClaims if valid, None otherwise
    """
    try:
        payload = jwt.decode(
            access_token,
            verification_key,
            algorithms=["ES256"],
            audience=app_id,
            issuer=PRIVY_ISSUER,
            options={"require": ["sub", "exp", "iat"]},
        )
    except jwt.PyJWTError as e:
        logger.info("Access token verification failed", error=str(e))
        return None

    return PrivyClaims(
        user_id=payload["sub"],
        app_id=app_id,
        session_id=payload.get("sid"),
        issued_at=payload["iat"],
        expiration=payload["exp"],
    )


def extract_access_token(request: Request) -> Optional[str]:
    """Read the access token from the privy-token cookie or a Bearer header."""
    token = request.cookies.get(PRIVY_COOKIE)
    if token:
        return token

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


async def get_verified_privy_id(request: Request) -> str:
    """FastAPI dependency: the caller's verified identity, or 401."""
    if not settings.privy_app_id or not settings.privy_verification_key:
        raise RuntimeError("Missing Privy configuration (PRIVY_APP_ID, PRIVY_VERIFICATION_KEY)")

    token = extract_access_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")

    claims = verify_privy_token(token, settings.privy_app_id, settings.privy_verification_key)
    if claims is None:
        raise HTTPException(status_code=401, detail="Unauthorized")

    return claims.user_id


async def get_current_developer(request: Request) -> Developer:
    """FastAPI dependency: the Developer behind the verified identity."""
    privy_id = await get_verified_privy_id(request)

    developer = await get_developer_by_privy_id(privy_id)
    if developer is None:
        raise HTTPException(status_code=404, detail="Developer not found")

    return developer
