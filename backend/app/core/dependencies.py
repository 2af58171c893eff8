"""
Authentication dependencies for FastAPI.

Trip ownership is checked by the lifecycle engine; these dependencies
only establish who is calling.
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from backend.app.core.jwt import decode_access_token, traveler_id_from_claims

security = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """Verified token claims. 401 if the token is invalid or expired."""
    claims = decode_access_token(credentials.credentials)
    if claims is None:
        raise _unauthorized("Could not validate credentials")
    return claims


async def get_current_traveler_id(current_user: dict = Depends(get_current_user)) -> int:
    traveler_id = traveler_id_from_claims(current_user)
    if traveler_id is None:
        raise _unauthorized("Invalid token payload")
    return traveler_id
