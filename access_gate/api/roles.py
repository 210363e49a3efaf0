"""
Role administration endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .deps import get_access_system, require_permission
from .schemas import CreateRoleRequest, UpdateRoleRequest, AssignPermissionsRequest
from .permissions import permission_to_dict
from ..dynamic_policy import Role
from ..gate import AuthenticatedIdentity
from ..system import AccessControlSystem


router = APIRouter()

admin = require_permission("update_user")


def role_to_dict(system: AccessControlSystem, role: Role, with_permissions: bool = True):
    data = {
        "id": role.id,
        "name": role.name,
        "code": role.code,
        "description": role.description,
        "color": role.color,
        "is_active": role.is_active,
        "is_system_role": role.is_system_role,
        "user_count": system.policy.count_identities_with_role(role.code),
        "created_at": role.created_at.isoformat(),
        "updated_at": role.updated_at.isoformat(),
    }
    if with_permissions:
        data["permissions"] = [permission_to_dict(p)
                               for p in system.policy.granted_permissions(role.id)]
    return data


@router.get("")
async def list_roles(
    include_inactive: bool = False,
    search: Optional[str] = None,
    subject: AuthenticatedIdentity = Depends(admin),
    system: AccessControlSystem = Depends(get_access_system)
):
    roles = system.policy.list_roles(include_inactive=include_inactive, search=search)
    data = [role_to_dict(system, role) for role in roles]
    return {"success": True, "count": len(data), "data": data}


@router.get("/unused")
async def list_unused_roles(
    subject: AuthenticatedIdentity = Depends(admin),
    system: AccessControlSystem = Depends(get_access_system)
):
    """Active custom roles that no identity holds"""
    data = [role_to_dict(system, role) for role in system.policy.unused_roles()]
    return {"success": True, "count": len(data), "data": data}


@router.get("/stats")
async def get_role_stats(
    subject: AuthenticatedIdentity = Depends(admin),
    system: AccessControlSystem = Depends(get_access_system)
):
    return {"success": True, "data": system.policy.role_stats()}


@router.get("/{role_id}")
async def get_role(
    role_id: str,
    subject: AuthenticatedIdentity = Depends(admin),
    system: AccessControlSystem = Depends(get_access_system)
):
    return {"success": True, "data": role_to_dict(system, system.policy.require_role(role_id))}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_role(
    request: CreateRoleRequest,
    subject: AuthenticatedIdentity = Depends(admin),
    system: AccessControlSystem = Depends(get_access_system)
):
    role = system.policy.create_role(
        name=request.name,
        code=request.code,
        description=request.description,
        color=request.color,
        permission_ids=request.permission_ids,
        actor_id=subject.id
    )
    return {"success": True, "data": role_to_dict(system, role)}


@router.put("/{role_id}")
async def update_role(
    role_id: str,
    request: UpdateRoleRequest,
    subject: AuthenticatedIdentity = Depends(admin),
    system: AccessControlSystem = Depends(get_access_system)
):
    role = system.policy.update_role(
        role_id,
        name=request.name,
        code=request.code,
        description=request.description,
        color=request.color,
        is_active=request.is_active,
        actor_id=subject.id
    )
    return {"success": True, "data": role_to_dict(system, role)}


@router.delete("/{role_id}")
async def delete_role(
    role_id: str,
    subject: AuthenticatedIdentity = Depends(admin),
    system: AccessControlSystem = Depends(get_access_system)
):
    system.policy.delete_role(role_id, actor_id=subject.id)
    return {"success": True, "message": "Role deleted"}


@router.get("/{role_id}/permissions")
async def get_role_permissions(
    role_id: str,
    subject: AuthenticatedIdentity = Depends(admin),
    system: AccessControlSystem = Depends(get_access_system)
):
    permissions = system.policy.get_role_permissions(role_id)
    return {"success": True, "data": [permission_to_dict(p) for p in permissions]}


@router.put("/{role_id}/permissions")
async def assign_permissions(
    role_id: str,
    request: AssignPermissionsRequest,
    subject: AuthenticatedIdentity = Depends(admin),
    system: AccessControlSystem = Depends(get_access_system)
):
    """Replace the role's whole permission set"""
    permissions = system.policy.assign_permissions(role_id, request.permission_ids,
                                                   actor_id=subject.id)
    return {"success": True, "message": "Permissions assigned",
            "data": [permission_to_dict(p) for p in permissions]}


@router.post("/{role_id}/permissions/{permission_id}")
async def add_permission(
    role_id: str,
    permission_id: str,
    subject: AuthenticatedIdentity = Depends(admin),
    system: AccessControlSystem = Depends(get_access_system)
):
    system.policy.add_permission(role_id, permission_id, actor_id=subject.id)
    return {"success": True, "message": "Permission added"}


@router.delete("/{role_id}/permissions/{permission_id}")
async def remove_permission(
    role_id: str,
    permission_id: str,
    subject: AuthenticatedIdentity = Depends(admin),
    system: AccessControlSystem = Depends(get_access_system)
):
    system.policy.remove_permission(role_id, permission_id, actor_id=subject.id)
    return {"success": True, "message": "Permission removed"}
