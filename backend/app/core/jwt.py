"""
Bearer token handling.

The identity service signs tokens with the shared secret; this service
only verifies them and reads the traveler id out of the claims.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from jose import JWTError, jwt
from backend.app.core.config import settings


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Sign a token carrying `data` (expects `sub` and `user_id`). Used by tests and the dev endpoint."""
    lifetime = expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    claims = {**data, "exp": datetime.now(timezone.utc) + lifetime}
    return jwt.encode(claims, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Verified claims, or None if the signature or expiry check fails."""
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None


def traveler_id_from_claims(claims: Dict[str, Any]) -> Optional[int]:
    """
    The `user_id` claim as an int. Some issuers put it in as a string,
    anything that is not a positive integer is rejected.
    """
    value = claims.get("user_id")
    if isinstance(value, bool):
        return None
    try:
        traveler_id = int(value)
    except (TypeError, ValueError):
        return None
    return traveler_id if traveler_id > 0 else None
