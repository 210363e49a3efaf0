"""
Policy Resolver

Single authorization decision point over the two policy sources. Precedence is fixed:
a dynamic role with grants decides, an inactive dynamic role denies, otherwise the
static table decides, otherwise deny. Nothing is cached between calls.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Set, Tuple

from . import static_policy
from .dynamic_policy import DynamicPolicyStore


class PolicySource(Enum):
    """Which source produced a decision"""
    STATIC = "static"
    DYNAMIC = "dynamic"
    NONE = "none"
    LIFECYCLE = "lifecycle"


@dataclass
class PolicyDecision:
    allowed: bool
    source: PolicySource
    role: str
    permission: Optional[str]
    reason: Optional[str] = None


class PolicyResolver:
    """Reconciles the static table and the dynamic store into one decision"""

    def __init__(self, dynamic_store: DynamicPolicyStore):
        self.dynamic_store = dynamic_store

    def _dynamic_view(self, role: str) -> Optional[Tuple[bool, bool, Set[str]]]:
        """(is_active, has_grants, active granted codes), or None without a dynamic record"""
        record = self.dynamic_store.get_role_by_code(role)
        if record is None:
            return None
        granted = self.dynamic_store.granted_permissions(record.id)
        return record.is_active, bool(granted), {p.code for p in granted if p.is_active}

    def decide(self, role: Optional[str], permission: str) -> PolicyDecision:
        if not role:
            return PolicyDecision(False, PolicySource.NONE, "", permission, "unknown_role")

        view = self._dynamic_view(role)
        if view is not None:
            is_active, has_grants, codes = view
            if not is_active:
                return PolicyDecision(False, PolicySource.DYNAMIC, role, permission,
                                      "role_inactive")
            if has_grants:
                allowed = permission in codes
                return PolicyDecision(allowed, PolicySource.DYNAMIC, role, permission,
                                      None if allowed else "permission_not_granted")

        if static_policy.is_static_role(role):
            allowed = static_policy.has_permission(role, permission)
            return PolicyDecision(allowed, PolicySource.STATIC, role, permission,
                                  None if allowed else "permission_not_granted")

        return PolicyDecision(False, PolicySource.NONE, role, permission, "unknown_role")

    def decide_any(self, role: Optional[str], permissions: Iterable[str]) -> PolicyDecision:
        """Allow if any one of ``permissions`` is allowed; otherwise the last denial"""
        decision = None
        for permission in permissions:
            decision = self.decide(role, permission)
            if decision.allowed:
                return decision
        if decision is None:
            return PolicyDecision(False, PolicySource.NONE, role or "", None,
                                  "no_permission_requested")
        return decision

    def effective_permissions(self, role: Optional[str]) -> Tuple[Set[str], PolicySource]:
        if not role:
            return set(), PolicySource.NONE
        view = self._dynamic_view(role)
        if view is not None:
            is_active, has_grants, codes = view
            if not is_active:
                return set(), PolicySource.DYNAMIC
            if has_grants:
                return codes, PolicySource.DYNAMIC
        if static_policy.is_static_role(role):
            return {p.value for p in static_policy.permissions_of(role)}, PolicySource.STATIC
        return set(), PolicySource.NONE

    def role_resolves(self, role: Optional[str]) -> bool:
        """True if some policy source knows the role"""
        if not role:
            return False
        return (static_policy.is_static_role(role)
                or self.dynamic_store.get_role_by_code(role) is not None)
