from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from credportal.domain.errors import NotAuthorizedError

ROLE_CANDIDATE = "candidate"
ROLE_ANALYST = "analyst"
ROLE_MANAGER = "manager"
ROLE_ADMIN = "admin"
ROLE_SYSTEM = "system"

REVIEW_ROLES = {ROLE_ANALYST, ROLE_MANAGER, ROLE_ADMIN}
MANAGEMENT_ROLES = {ROLE_MANAGER, ROLE_ADMIN}
CONTRACT_ROLES = REVIEW_ROLES | {ROLE_SYSTEM}


@dataclass(frozen=True)
class SessionContext:
    """Caller identity passed explicitly into every operation."""

    user_id: str
    roles: frozenset[str] = field(default_factory=frozenset)
    request_id: str | None = None

    @classmethod
    def of(cls, user_id: str, roles: Iterable[str], request_id: str | None = None) -> "SessionContext":
        return cls(user_id=user_id, roles=frozenset(roles), request_id=request_id)

    def has_any(self, roles: Iterable[str]) -> bool:
        return bool(self.roles.intersection(roles))


SYSTEM_SESSION = SessionContext(user_id="system", roles=frozenset({ROLE_SYSTEM}))


def require_roles(session: SessionContext, allowed: Iterable[str], action: str) -> None:
    allowed = set(allowed)
    if not session.has_any(allowed):
        raise NotAuthorizedError(
            f"Not allowed to {action}",
            user_id=session.user_id,
            required=sorted(allowed),
        )
