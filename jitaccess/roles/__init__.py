"""Role Registry & Resolver.

Exports:
    `RoleRegistry` holds the versioned role graph; `RoleResolver` turns a
    (role, identity) pair into an immutable `EffectivePolicy`.
"""

from .domain import EffectivePolicy, Group, Role, User
from .registry import RoleRegistry
from .resolver import RoleResolver

__all__ = ["EffectivePolicy", "Group", "Role", "RoleRegistry", "RoleResolver", "User"]
