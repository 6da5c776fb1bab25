"""Role definitions and authorization."""
from typing import Iterable

from arena.errors import Forbidden
from arena.models import Role

__all__ = ["Role", "check_role"]


def check_role(role: Role, allowed: Iterable[Role]) -> None:
    """Role gate for a route.

    Args:
        role: Caller's role.
        allowed: Roles permitted on the route.

    Raises:
        Forbidden: If the caller's role is not allowed.
    """
    allowed = set(allowed)
    if role not in allowed:
        raise Forbidden(f"User role {Role(role).value} is not authorized to access this route")
