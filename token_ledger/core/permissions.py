"""
Static permission grants.

Permission storage is owned by the host application; this implementation
answers checks from a fixed actor -> grants mapping (usually loaded from
the config file).
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet


@dataclass(frozen=True)
class StaticPermissionService:
    """PermissionService answering from a fixed grant table."""
    grants: Dict[str, FrozenSet[str]] = field(default_factory=dict)

    def has_permission(self, actor_id: str, resource: str, action: str) -> bool:
        return f"{resource}:{action}" in self.grants.get(actor_id, frozenset())
