"""Bearer token authentication."""
from typing import Optional
from dataclasses import dataclass

from arena.auth.jwt_handler import verify_token, TokenError
from arena.errors import Forbidden, Unauthorized
from arena.models import Role
from arena.storage.base import Storage
from arena.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class AuthenticatedUser:
    """Authenticated user context handed to the workflows."""
    user_id: str
    username: str
    role: Role
    is_banned: bool


def bearer_token(authorization: Optional[str]) -> str:
    """Extract the token from an ``Authorization: Bearer <token>`` header.

    Raises:
        Unauthorized: If the header is missing or malformed.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized()
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise Unauthorized()
    return token


class AuthMiddleware:
    """Turns a bearer token into the caller's current identity.

    Role and ban status are read from storage on every request, so a ban or
    role change takes effect without waiting for tokens to expire.
    """

    def __init__(self, storage: Storage):
        self.storage = storage

    async def authenticate(self, authorization: Optional[str]) -> AuthenticatedUser:
        """Authenticate a request.

        Args:
            authorization: Raw Authorization header value.

        Returns:
            Authenticated user context.

        Raises:
            Unauthorized: Missing, invalid or expired token, or unknown user.
            Forbidden: If the user is banned.
        """
        token = bearer_token(authorization)
        try:
            payload = verify_token(token)
        except TokenError as e:
            logger.info(f"Rejected token: {e}")
            raise Unauthorized()

        async with self.storage.unit_of_work() as uow:
            user = await uow.find_user(payload.user_id)
        if user is None:
            raise Unauthorized("User not found")
        if user.is_banned:
            raise Forbidden("Your account has been banned")

        return AuthenticatedUser(
            user_id=user.id,
            username=user.username,
            role=user.role,
            is_banned=user.is_banned,
        )
