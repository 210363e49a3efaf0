"""
Dynamic Policy Store

Admin-editable roles, permissions and role-permission grants, stored alongside the
identities they govern. Enforcement reads the same records the admin operations
write, so every mutation is visible to the next authorization decision.
"""

import re
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from . import static_policy
from .audit import AuditEventType, AuditTrail
from .clock import Clock, SystemClock, parse_timestamp
from .errors import NotFoundError, PolicyAdminError
from .identity import IDENTITIES_TABLE
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


ROLES_TABLE = "roles"
PERMISSIONS_TABLE = "permissions"
GRANTS_TABLE = "role_permissions"

CODE_PATTERN = re.compile(r"^[a-z_]+$")
COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")
DEFAULT_COLOR = "#6B7280"

logger = get_logger("access_gate.dynamic_policy")


@dataclass
class Role(StorageRecord):
    """Admin-defined role"""
    name: str
    code: str
    description: str = ""
    color: str = DEFAULT_COLOR
    is_active: bool = True
    is_system_role: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Role':
        data = dict(data)
        data['created_at'] = parse_timestamp(data['created_at'])
        data['updated_at'] = parse_timestamp(data['updated_at'])
        return cls(**data)


@dataclass
class Permission(StorageRecord):
    """Admin-defined permission"""
    name: str
    code: str
    description: str = ""
    category: Optional[str] = None
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Permission':
        data = dict(data)
        data['created_at'] = parse_timestamp(data['created_at'])
        data['updated_at'] = parse_timestamp(data['updated_at'])
        return cls(**data)


def _grant_id(role_id: str, permission_id: str) -> str:
    return f"{role_id}:{permission_id}"


def _matches_search(search: Optional[str], *values: Optional[str]) -> bool:
    if not search:
        return True
    needle = search.lower()
    return any(needle in (value or "").lower() for value in values)


class DynamicPolicyStore:
    """CRUD surface for roles, permissions and grants"""

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None,
                 audit: Optional[AuditTrail] = None):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.audit = audit
        # Serializes uniqueness checks with the writes they guard
        self._lock = threading.RLock()

    def _log(self, event_type: AuditEventType, entity_type: str, entity_id: str,
             metadata: Dict[str, Any], actor_id: Optional[str]) -> None:
        log_action(logger, "info", event_type.value, identity_id=actor_id,
                   action=event_type.value, resource=f"{entity_type}:{entity_id}",
                   extra=metadata)
        if self.audit:
            self.audit.log_event(event_type, entity_type, entity_id, metadata, actor_id)

    @staticmethod
    def _validate_code(code: str) -> None:
        if not code or not CODE_PATTERN.match(code):
            raise PolicyAdminError("invalid_code",
                                   "Code may only contain lowercase letters and underscores",
                                   {"code": code})

    @staticmethod
    def _validate_color(color: str) -> None:
        if not COLOR_PATTERN.match(color):
            raise PolicyAdminError("invalid_color", "Color must be a #RRGGBB hex value",
                                   {"color": color})

    # Roles

    def get_role(self, role_id: str) -> Optional[Role]:
        data = self.storage.load(ROLES_TABLE, role_id)
        return Role.from_dict(data) if data else None

    def require_role(self, role_id: str) -> Role:
        role = self.get_role(role_id)
        if role is None:
            raise NotFoundError("not_found", "Role not found", {"role_id": role_id})
        return role

    def get_role_by_code(self, code: str) -> Optional[Role]:
        matches = self.storage.find(ROLES_TABLE, {"code": code})
        return Role.from_dict(matches[0]) if matches else None

    def list_roles(self, include_inactive: bool = False,
                   search: Optional[str] = None) -> List[Role]:
        roles = [Role.from_dict(data) for data in self.storage.load_all(ROLES_TABLE)]
        roles = [r for r in roles
                 if (include_inactive or r.is_active)
                 and _matches_search(search, r.name, r.code, r.description)]
        roles.sort(key=lambda r: r.name)
        return roles

    def create_role(self, name: str, code: str, description: str = "",
                    color: Optional[str] = None,
                    permission_ids: Optional[List[str]] = None,
                    is_active: bool = True, is_system_role: bool = False,
                    actor_id: Optional[str] = None) -> Role:
        """
        Create a role, optionally with an initial grant set.

        Every permission id must exist; otherwise nothing is created.
        """
        self._validate_code(code)
        color = color or DEFAULT_COLOR
        self._validate_color(color)
        permission_ids = list(dict.fromkeys(permission_ids or []))

        with self._lock:
            if self.storage.find(ROLES_TABLE, {"code": code}):
                raise PolicyAdminError("duplicate_code", f"Role code '{code}' already exists",
                                       {"code": code})
            if self.storage.find(ROLES_TABLE, {"name": name}):
                raise PolicyAdminError("duplicate_name", f"Role name '{name}' already exists",
                                       {"name": name})
            self._require_permissions_exist(permission_ids)

            now = self.clock.now()
            role = Role(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                name=name,
                code=code,
                description=description or "",
                color=color,
                is_active=is_active,
                is_system_role=is_system_role,
            )
            with self.storage.atomic():
                self.storage.save(ROLES_TABLE, role.id, role.to_dict())
                for permission_id in permission_ids:
                    self._save_grant(role.id, permission_id, now)

        self._log(AuditEventType.ROLE_CREATED, 'role', role.id,
                  {'code': code, 'permissions': len(permission_ids)}, actor_id)
        return role

    def update_role(self, role_id: str, name: Optional[str] = None,
                    code: Optional[str] = None, description: Optional[str] = None,
                    color: Optional[str] = None, is_active: Optional[bool] = None,
                    actor_id: Optional[str] = None) -> Role:
        with self._lock:
            role = self.require_role(role_id)
            changes = {}

            if code is not None and code != role.code:
                if role.is_system_role:
                    raise PolicyAdminError("system_role_protected",
                                           "The code of a system role cannot change",
                                           {"role_id": role_id})
                self._validate_code(code)
                if self.storage.find(ROLES_TABLE, {"code": code}):
                    raise PolicyAdminError("duplicate_code",
                                           f"Role code '{code}' already exists", {"code": code})
                in_use = self.count_identities_with_role(role.code)
                if in_use:
                    raise PolicyAdminError("code_in_use",
                                           "Identities still reference this role code",
                                           {"code": role.code, "identities": in_use})
                changes["code"] = code

            if is_active is not None and is_active != role.is_active:
                if role.is_system_role and not is_active:
                    raise PolicyAdminError("system_role_protected",
                                           "A system role cannot be deactivated",
                                           {"role_id": role_id})
                changes["is_active"] = is_active

            if name is not None and name != role.name:
                clash = [r for r in self.storage.find(ROLES_TABLE, {"name": name})
                         if r["id"] != role_id]
                if clash:
                    raise PolicyAdminError("duplicate_name",
                                           f"Role name '{name}' already exists", {"name": name})
                changes["name"] = name
            if description is not None:
                changes["description"] = description
            if color is not None:
                self._validate_color(color)
                changes["color"] = color

            for key, value in changes.items():
                setattr(role, key, value)
            role.updated_at = self.clock.now()
            self.storage.save(ROLES_TABLE, role.id, role.to_dict())

        self._log(AuditEventType.ROLE_UPDATED, 'role', role_id,
                  {'changes': sorted(changes)}, actor_id)
        return role

    def delete_role(self, role_id: str, actor_id: Optional[str] = None) -> None:
        """Delete a non-system role that no identity references, with its grants"""
        with self._lock:
            role = self.require_role(role_id)
            if role.is_system_role:
                raise PolicyAdminError("system_role_protected",
                                       "System roles cannot be deleted", {"role_id": role_id})
            in_use = self.count_identities_with_role(role.code)
            if in_use:
                raise PolicyAdminError("code_in_use",
                                       f"{in_use} identities still have role '{role.code}'",
                                       {"code": role.code, "identities": in_use})
            with self.storage.atomic():
                for grant in self.storage.find(GRANTS_TABLE, {"role_id": role_id}):
                    self.storage.delete(GRANTS_TABLE, grant["id"])
                self.storage.delete(ROLES_TABLE, role_id)

        self._log(AuditEventType.ROLE_DELETED, 'role', role_id, {'code': role.code}, actor_id)

    def count_identities_with_role(self, code: str) -> int:
        """Live count of identities whose role string equals ``code``"""
        return len(self.storage.find(IDENTITIES_TABLE, {"role": code}))

    def unused_roles(self) -> List[Role]:
        """Active custom roles that no identity references"""
        return [role for role in self.list_roles()
                if not role.is_system_role and self.count_identities_with_role(role.code) == 0]

    def role_stats(self) -> Dict[str, Any]:
        roles = self.list_roles(include_inactive=True)
        system = sum(1 for r in roles if r.is_system_role)
        ranked = [{"id": r.id, "name": r.name, "code": r.code,
                   "user_count": self.count_identities_with_role(r.code)}
                  for r in roles if r.is_active]
        ranked.sort(key=lambda item: item["user_count"], reverse=True)
        return {
            "total_roles": len(roles),
            "active_roles": sum(1 for r in roles if r.is_active),
            "system_roles": system,
            "custom_roles": len(roles) - system,
            "top_roles": ranked[:5],
        }

    # Permissions

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        data = self.storage.load(PERMISSIONS_TABLE, permission_id)
        return Permission.from_dict(data) if data else None

    def require_permission(self, permission_id: str) -> Permission:
        permission = self.get_permission(permission_id)
        if permission is None:
            raise NotFoundError("not_found", "Permission not found",
                                {"permission_id": permission_id})
        return permission

    def get_permission_by_code(self, code: str) -> Optional[Permission]:
        matches = self.storage.find(PERMISSIONS_TABLE, {"code": code})
        return Permission.from_dict(matches[0]) if matches else None

    def list_permissions(self, category: Optional[str] = None,
                         search: Optional[str] = None,
                         include_inactive: bool = False) -> List[Permission]:
        permissions = [Permission.from_dict(data)
                       for data in self.storage.load_all(PERMISSIONS_TABLE)]
        permissions = [p for p in permissions
                       if (include_inactive or p.is_active)
                       and (category is None or p.category == category)
                       and _matches_search(search, p.name, p.code, p.description)]
        permissions.sort(key=lambda p: (p.category or "", p.name))
        return permissions

    def list_categories(self) -> List[str]:
        return sorted({data["category"] for data in self.storage.load_all(PERMISSIONS_TABLE)
                       if data.get("category")})

    def create_permission(self, name: str, code: str, description: str = "",
                          category: Optional[str] = None, is_active: bool = True,
                          actor_id: Optional[str] = None) -> Permission:
        self._validate_code(code)
        with self._lock:
            if self.storage.find(PERMISSIONS_TABLE, {"code": code}):
                raise PolicyAdminError("duplicate_code",
                                       f"Permission code '{code}' already exists", {"code": code})
            if self.storage.find(PERMISSIONS_TABLE, {"name": name}):
                raise PolicyAdminError("duplicate_name",
                                       f"Permission name '{name}' already exists", {"name": name})
            now = self.clock.now()
            permission = Permission(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                name=name,
                code=code,
                description=description or "",
                category=category,
                is_active=is_active,
            )
            self.storage.save(PERMISSIONS_TABLE, permission.id, permission.to_dict())

        self._log(AuditEventType.PERMISSION_CREATED, 'permission', permission.id,
                  {'code': code, 'category': category}, actor_id)
        return permission

    def update_permission(self, permission_id: str, name: Optional[str] = None,
                          description: Optional[str] = None,
                          category: Optional[str] = None,
                          is_active: Optional[bool] = None,
                          actor_id: Optional[str] = None) -> Permission:
        with self._lock:
            permission = self.require_permission(permission_id)
            changes = {}
            if name is not None and name != permission.name:
                clash = [p for p in self.storage.find(PERMISSIONS_TABLE, {"name": name})
                         if p["id"] != permission_id]
                if clash:
                    raise PolicyAdminError("duplicate_name",
                                           f"Permission name '{name}' already exists",
                                           {"name": name})
                changes["name"] = name
            if description is not None:
                changes["description"] = description
            if category is not None:
                changes["category"] = category
            if is_active is not None:
                changes["is_active"] = is_active

            for key, value in changes.items():
                setattr(permission, key, value)
            permission.updated_at = self.clock.now()
            self.storage.save(PERMISSIONS_TABLE, permission.id, permission.to_dict())

        self._log(AuditEventType.PERMISSION_UPDATED, 'permission', permission_id,
                  {'changes': sorted(changes)}, actor_id)
        return permission

    def count_grants(self, permission_id: str) -> int:
        """Number of roles holding the permission"""
        return len(self.storage.find(GRANTS_TABLE, {"permission_id": permission_id}))

    def delete_permission(self, permission_id: str, actor_id: Optional[str] = None) -> None:
        with self._lock:
            permission = self.require_permission(permission_id)
            grants = self.count_grants(permission_id)
            if grants:
                raise PolicyAdminError("permission_in_use",
                                       f"Permission is granted to {grants} roles",
                                       {"code": permission.code, "roles": grants})
            self.storage.delete(PERMISSIONS_TABLE, permission_id)

        self._log(AuditEventType.PERMISSION_DELETED, 'permission', permission_id,
                  {'code': permission.code}, actor_id)

    # Grants

    def _require_permissions_exist(self, permission_ids: List[str]) -> None:
        missing = [pid for pid in permission_ids
                   if not self.storage.exists(PERMISSIONS_TABLE, pid)]
        if missing:
            raise PolicyAdminError("unknown_permission", "One or more permissions do not exist",
                                   {"permission_ids": missing})

    def _save_grant(self, role_id: str, permission_id: str, now: datetime) -> None:
        grant_id = _grant_id(role_id, permission_id)
        self.storage.save(GRANTS_TABLE, grant_id, {
            "id": grant_id,
            "role_id": role_id,
            "permission_id": permission_id,
            "created_at": now.isoformat(),
        })

    def get_role_permissions(self, role_id: str) -> List[Permission]:
        """Permissions granted to a role, active or not"""
        self.require_role(role_id)
        return self.granted_permissions(role_id)

    def granted_permissions(self, role_id: str) -> List[Permission]:
        permissions = []
        for grant in self.storage.find(GRANTS_TABLE, {"role_id": role_id}):
            permission = self.get_permission(grant["permission_id"])
            if permission is not None:
                permissions.append(permission)
        permissions.sort(key=lambda p: (p.category or "", p.name))
        return permissions

    def assign_permissions(self, role_id: str, permission_ids: List[str],
                           actor_id: Optional[str] = None) -> List[Permission]:
        """
        Replace the role's grant set.

        If any id is unknown the call fails and the prior grants are left intact.
        """
        permission_ids = list(dict.fromkeys(permission_ids))
        with self._lock:
            self.require_role(role_id)
            self._require_permissions_exist(permission_ids)
            now = self.clock.now()
            with self.storage.atomic():
                for grant in self.storage.find(GRANTS_TABLE, {"role_id": role_id}):
                    self.storage.delete(GRANTS_TABLE, grant["id"])
                for permission_id in permission_ids:
                    self._save_grant(role_id, permission_id, now)

        self._log(AuditEventType.GRANTS_REPLACED, 'role', role_id,
                  {'permission_ids': permission_ids}, actor_id)
        return self.granted_permissions(role_id)

    def add_permission(self, role_id: str, permission_id: str,
                       actor_id: Optional[str] = None) -> None:
        with self._lock:
            self.require_role(role_id)
            self.require_permission(permission_id)
            if self.storage.exists(GRANTS_TABLE, _grant_id(role_id, permission_id)):
                raise PolicyAdminError("duplicate_grant", "Role already has this permission",
                                       {"role_id": role_id, "permission_id": permission_id})
            self._save_grant(role_id, permission_id, self.clock.now())

        self._log(AuditEventType.GRANT_ADDED, 'role', role_id,
                  {'permission_id': permission_id}, actor_id)

    def remove_permission(self, role_id: str, permission_id: str,
                          actor_id: Optional[str] = None) -> bool:
        """Revoke a grant. Revoking a permission the role doesn't hold is a no-op."""
        with self._lock:
            self.require_role(role_id)
            self.require_permission(permission_id)
            removed = self.storage.delete(GRANTS_TABLE, _grant_id(role_id, permission_id))

        if removed:
            self._log(AuditEventType.GRANT_REMOVED, 'role', role_id,
                      {'permission_id': permission_id}, actor_id)
        return removed

    # Seeding

    def seed_from_static(self) -> Dict[str, int]:
        """
        Mirror the static table into the store.

        Creates missing permissions and system roles with grants copied from the static
        table. Existing records are left untouched, so running it again changes nothing.
        """
        created = {"permissions": 0, "roles": 0}
        with self._lock:
            by_code = {}
            for static_permission in static_policy.Permission:
                code = static_permission.value
                permission = self.get_permission_by_code(code)
                if permission is None:
                    permission = self.create_permission(
                        name=code.replace("_", " ").title(),
                        code=code,
                        category=static_policy.permission_category(static_permission),
                        actor_id="system")
                    created["permissions"] += 1
                by_code[code] = permission.id

            for static_role in static_policy.StaticRole:
                if self.get_role_by_code(static_role.value) is not None:
                    continue
                display = static_policy.ROLE_DISPLAY[static_role]
                self.create_role(
                    name=display["name"],
                    code=static_role.value,
                    description=display["description"],
                    color=display["color"],
                    permission_ids=sorted(by_code[p.value]
                                          for p in static_policy.permissions_of(static_role)),
                    is_system_role=True,
                    actor_id="system")
                created["roles"] += 1

        if any(created.values()):
            self._log(AuditEventType.POLICY_SEEDED, 'policy', 'static', created, "system")
        return created
