from dataclasses import dataclass, field
from typing import FrozenSet, Optional

RANK_VIEW = 'rank.view'
RANK_REQUEST = 'rank.request'
RANK_CHANGE = 'rank.change'
RANK_APPROVE = 'rank.approve'
ADMIN_FULL = 'admin.full'


@dataclass(frozen=True)
class ActingUser:
    """Caller identity handed to the engine by the permission gate.

    The engine trusts that the gate already checked the capability needed
    for the operation; it only looks at ``id`` for audit fields and at
    ``is_admin`` for request deletion.
    """

    id: str
    display_name: Optional[str] = None
    capabilities: FrozenSet[str] = field(default_factory=frozenset)

    def has(self, capability: str) -> bool:
        return ADMIN_FULL in self.capabilities or capability in self.capabilities

    @property
    def is_admin(self) -> bool:
        return ADMIN_FULL in self.capabilities

    @property
    def label(self) -> str:
        return self.display_name or self.id
