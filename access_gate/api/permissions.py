"""
Permission catalogue endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .deps import get_access_system, require_permission
from .schemas import CreatePermissionRequest, UpdatePermissionRequest
from ..dynamic_policy import Permission
from ..gate import AuthenticatedIdentity
from ..system import AccessControlSystem


router = APIRouter()

admin = require_permission("update_user")


def permission_to_dict(permission: Permission):
    return {
        "id": permission.id,
        "name": permission.name,
        "code": permission.code,
        "description": permission.description,
        "category": permission.category,
        "is_active": permission.is_active,
    }


@router.get("")
async def list_permissions(
    category: Optional[str] = None,
    search: Optional[str] = None,
    subject: AuthenticatedIdentity = Depends(admin),
    system: AccessControlSystem = Depends(get_access_system)
):
    """List active permissions, also grouped by category"""
    permissions = system.policy.list_permissions(category=category, search=search)
    grouped = {}
    for permission in permissions:
        grouped.setdefault(permission.category or "uncategorized", []).append(
            permission_to_dict(permission))
    return {
        "success": True,
        "count": len(permissions),
        "data": [permission_to_dict(p) for p in permissions],
        "grouped": grouped,
    }


@router.get("/categories")
async def list_categories(
    subject: AuthenticatedIdentity = Depends(admin),
    system: AccessControlSystem = Depends(get_access_system)
):
    return {"success": True, "data": system.policy.list_categories()}


@router.get("/{permission_id}")
async def get_permission(
    permission_id: str,
    subject: AuthenticatedIdentity = Depends(admin),
    system: AccessControlSystem = Depends(get_access_system)
):
    permission = system.policy.require_permission(permission_id)
    data = permission_to_dict(permission)
    data["role_count"] = system.policy.count_grants(permission_id)
    return {"success": True, "data": data}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_permission(
    request: CreatePermissionRequest,
    subject: AuthenticatedIdentity = Depends(admin),
    system: AccessControlSystem = Depends(get_access_system)
):
    permission = system.policy.create_permission(
        name=request.name,
        code=request.code,
        description=request.description,
        category=request.category,
        actor_id=subject.id
    )
    return {"success": True, "data": permission_to_dict(permission)}


@router.put("/{permission_id}")
async def update_permission(
    permission_id: str,
    request: UpdatePermissionRequest,
    subject: AuthenticatedIdentity = Depends(admin),
    system: AccessControlSystem = Depends(get_access_system)
):
    permission = system.policy.update_permission(
        permission_id,
        name=request.name,
        description=request.description,
        category=request.category,
        is_active=request.is_active,
        actor_id=subject.id
    )
    return {"success": True, "data": permission_to_dict(permission)}


@router.delete("/{permission_id}")
async def delete_permission(
    permission_id: str,
    subject: AuthenticatedIdentity = Depends(admin),
    system: AccessControlSystem = Depends(get_access_system)
):
    system.policy.delete_permission(permission_id, actor_id=subject.id)
    return {"success": True, "message": "Permission deleted"}
