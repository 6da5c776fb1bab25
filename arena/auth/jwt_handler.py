"""JWT token handling."""
import jwt
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass

from arena.config import config
from arena.models import Role


@dataclass
class TokenPayload:
    """Decoded token payload."""
    user_id: str
    role: Role
    exp: datetime
    iat: datetime


class TokenError(Exception):
    """Token validation error."""
    pass


def create_access_token(user_id: str, role: Role) -> str:
    """Create a signed access token.

    Args:
        user_id: Unique user identifier.
        role: User's role at issue time (player/admin).

    Returns:
        Encoded JWT access token.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "role": role.value,
        "type": "access",
        "iat": now,
        "exp": now + timedelta(minutes=config.jwt_access_expiry_minutes),
    }
    return jwt.encode(payload, config.jwt_secret, algorithm=config.jwt_algorithm)


def verify_token(token: str) -> TokenPayload:
    """Verify and decode an access token.

    Args:
        token: The JWT token to verify.

    Returns:
        Decoded token payload.

    Raises:
        TokenError: If token is invalid, expired, or not an access token.
    """
    try:
        payload = jwt.decode(
            token,
            config.jwt_secret,
            algorithms=[config.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise TokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")

    if payload.get("type") != "access" or "sub" not in payload:
        raise TokenError("Not an access token")

    try:
        role = Role(payload.get("role"))
    except ValueError:
        raise TokenError("Invalid role claim")

    return TokenPayload(
        user_id=payload["sub"],
        role=role,
        exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
    )
