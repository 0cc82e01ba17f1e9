"""Read JWT claims on the client side.

Learn: the client never holds the signing secret, so it cannot verify a
token. It can still read the payload, which is useful for display
(`sessiongate status` shows when the access token expires) and for building
an Identity when a login response carries no user object. Nothing here is
used to make trust decisions; the server's 401 stays the only signal that
drives a refresh.
"""

from datetime import datetime, timezone
from typing import Optional

import jwt

from sessiongate.state import Identity


def read_claims(token: Optional[str]) -> dict:
    """Decode a JWT payload without verifying it. Opaque tokens give {}."""
    if not token:
        return {}
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return {}


def expires_at(token: Optional[str]) -> Optional[datetime]:
    exp = read_claims(token).get("exp")
    if exp is None:
        return None
    try:
        return datetime.fromtimestamp(int(exp), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def identity_from_claims(claims: dict) -> Optional[Identity]:
    user_id = claims.get("sub") or claims.get("id")
    if not user_id:
        return None
    return Identity(
        id=str(user_id),
        role=claims.get("role"),
        display_name=claims.get("name"),
        email=claims.get("email"),
    )
