"""
access.py - Role checks for privileged vault operations

Classes:
- AccessControl: Protocol the vault consults before privileged operations
- RoleRegistry: In-memory implementation with three cumulative tiers

Tiers, lowest first: KEEPER (day-to-day operation), MANAGER (elevated),
ADMIN (highest). An account holding a tier passes every check for the
tiers below it.
"""

from typing import Dict, Iterable, Protocol, Set, runtime_checkable

from .core import Unauthorized


KEEPER = "KEEPER"
MANAGER = "MANAGER"
ADMIN = "ADMIN"

ROLE_RANK: Dict[str, int] = {KEEPER: 1, MANAGER: 2, ADMIN: 3}


@runtime_checkable
class AccessControl(Protocol):
    """Protocol for role checks."""

    def has_role(self, role: str, account: str) -> bool:
        """True if account holds role or a higher one."""
        ...

    def check_role(self, role: str, account: str) -> None:
        """Raise Unauthorized unless has_role(role, account)."""
        ...


class RoleRegistry:
    """
    Roles granted per account.

    Example:
        roles = RoleRegistry({"ops": KEEPER, "treasury": ADMIN})
        roles.has_role(MANAGER, "treasury")   # True
        roles.check_role(MANAGER, "ops")      # raises Unauthorized
    """

    def __init__(self, grants: Dict[str, str] = None):
        self._roles: Dict[str, Set[str]] = {}
        for account, role in (grants or {}).items():
            self.grant(role, account)

    def grant(self, role: str, account: str) -> None:
        if role not in ROLE_RANK:
            raise ValueError(f"Unknown role {role!r}")
        self._roles.setdefault(account, set()).add(role)

    def revoke(self, role: str, account: str) -> None:
        self._roles.get(account, set()).discard(role)

    def roles_of(self, account: str) -> Set[str]:
        return set(self._roles.get(account, ()))

    def has_role(self, role: str, account: str) -> bool:
        if role not in ROLE_RANK:
            raise ValueError(f"Unknown role {role!r}")
        needed = ROLE_RANK[role]
        return any(ROLE_RANK[held] >= needed for held in self._roles.get(account, ()))

    def check_role(self, role: str, account: str) -> None:
        if not self.has_role(role, account):
            raise Unauthorized(f"{account} lacks role {role}")

    def accounts(self, role: str) -> Iterable[str]:
        """Accounts passing a check for role, sorted."""
        return sorted(a for a in self._roles if self.has_role(role, a))

    def __repr__(self):
        return f"RoleRegistry({len(self._roles)} accounts)"
