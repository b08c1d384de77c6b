from __future__ import annotations

from enum import Enum
from typing import Iterable


class Role(str, Enum):
    PDG = "PDG"
    MANAGER = "MANAGER"
    GESTIONNAIRE = "GESTIONNAIRE"
    VENDEUR = "VENDEUR"
    LIVREUR = "LIVREUR"


# Roles each role may act as
ROLE_HIERARCHY: dict[Role, frozenset[Role]] = {
    Role.PDG: frozenset(Role),
    Role.MANAGER: frozenset(
        {Role.MANAGER, Role.GESTIONNAIRE, Role.VENDEUR, Role.LIVREUR}
    ),
    Role.GESTIONNAIRE: frozenset({Role.GESTIONNAIRE, Role.VENDEUR}),
    Role.VENDEUR: frozenset({Role.VENDEUR}),
    Role.LIVREUR: frozenset({Role.LIVREUR}),
}

SELF_REGISTER_ROLES = frozenset({Role.VENDEUR, Role.LIVREUR})
DEFAULT_ROLE = Role.VENDEUR
BOOTSTRAP_ADMIN_ROLE = Role.PDG


def _coerce(role: str | Role) -> Role | None:
    try:
        return Role(role)
    except ValueError:
        return None


def role_satisfies(user_role: str | Role, required: Iterable[str | Role]) -> bool:
    """True when ``user_role`` covers at least one of ``required``."""
    granted = _coerce(user_role)
    if granted is None:
        return False
    allowed = ROLE_HIERARCHY[granted]
    return any(_coerce(r) in allowed for r in required)


def self_register_role(requested: str | None) -> Role:
    """Clamp a requested role into the self-registration subset."""
    role = _coerce(requested) if requested else None
    if role in SELF_REGISTER_ROLES:
        return role
    return DEFAULT_ROLE
