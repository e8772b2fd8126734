"""Business logic for profiles, roles and capability checks."""
from dataclasses import dataclass
from typing import FrozenSet, Optional

from ..errors import PermissionDenied, UnknownUser

ROLES = ('student', 'contributor', 'admin')

# Roles implied by each stored role.
_GRANTS = {
    'student': frozenset({'student'}),
    'contributor': frozenset({'student', 'contributor'}),
    'admin': frozenset({'student', 'contributor', 'admin'}),
}


@dataclass(frozen=True)
class Capability:
    """Proof, issued once per request, of what a user may do."""
    user_id: str
    roles: FrozenSet[str]

    def allows(self, *roles: str) -> bool:
        return any(role in self.roles for role in roles)


class UserService:
    """Registers users and turns their stored role into a
    :class:`Capability`.

    Roles live in the ``users.role`` column and nowhere else; there is no
    hard-coded admin account.

    All methods accept a *db* SQLAlchemy session as the first argument so
    that callers control the session lifecycle.
    """

    def __init__(self, db_module) -> None:
        """
        Args:
            db_module: The imported ``database`` module (or any object that
                exposes ``get_user``, ``create_user`` and
                ``update_user_role``).
        """
        self._db = db_module

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def register(self, db, user_id: Optional[str] = None,
                 full_name: Optional[str] = None, role: str = 'student'):
        """Create a profile and its zeroed score row.

        Raises:
            ValueError: if *role* is not one of :data:`ROLES`.
        """
        if role not in ROLES:
            raise ValueError(f"role must be one of {ROLES}")
        return self._db.create_user(db, user_id=user_id, full_name=full_name,
                                    role=role)

    def set_role(self, db, user_id: str, role: str) -> bool:
        """Change the stored role of *user_id*.  Returns ``False`` if absent."""
        if role not in ROLES:
            raise ValueError(f"role must be one of {ROLES}")
        return self._db.update_user_role(db, user_id, role)

    def user_exists(self, db, user_id: str) -> bool:
        return self._db.get_user(db, user_id) is not None

    def issue_capability(self, db, user_id: str) -> Capability:
        """Return the capability of *user_id* based on its stored role.

        Raises:
            UnknownUser: no such user.
        """
        user = self._db.get_user(db, user_id)
        if user is None:
            raise UnknownUser(f"Unknown user: {user_id}")
        return Capability(user_id=user.id,
                          roles=_GRANTS.get(user.role or 'student', _GRANTS['student']))

    @staticmethod
    def require(capability: Optional[Capability], *roles: str) -> Capability:
        """Return *capability* if it holds any of *roles*.

        Raises:
            PermissionDenied: missing capability or none of the roles.
        """
        if capability is None or not capability.allows(*roles):
            raise PermissionDenied(f"Requires one of: {', '.join(roles)}")
        return capability
