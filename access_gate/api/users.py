"""
Identity administration endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .deps import get_access_system, require_permission
from .schemas import CreateUserRequest, ChangeRoleRequest
from ..gate import AuthenticatedIdentity
from ..system import AccessControlSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_user(
    request: CreateUserRequest,
    subject: AuthenticatedIdentity = Depends(require_permission("create_user")),
    system: AccessControlSystem = Depends(get_access_system)
):
    view = system.create_identity(
        name=request.name,
        email=request.email,
        password=request.password,
        role=request.role,
        phone=request.phone,
        mfa_enabled=request.mfa_enabled,
        actor_id=subject.id
    )
    return {"success": True, "data": view.to_dict()}


@router.get("")
async def list_users(
    role: Optional[str] = None,
    is_active: Optional[bool] = None,
    subject: AuthenticatedIdentity = Depends(require_permission("read_user")),
    system: AccessControlSystem = Depends(get_access_system)
):
    identities = system.identities.list_identities(role=role, is_active=is_active)
    data = [identity.view().to_dict() for identity in identities]
    return {"success": True, "count": len(data), "data": data}


@router.get("/{identity_id}")
async def get_user(
    identity_id: str,
    subject: AuthenticatedIdentity = Depends(require_permission("read_user")),
    system: AccessControlSystem = Depends(get_access_system)
):
    return {"success": True, "data": system.identities.require(identity_id).view().to_dict()}


@router.put("/{identity_id}/role")
async def change_role(
    identity_id: str,
    request: ChangeRoleRequest,
    subject: AuthenticatedIdentity = Depends(require_permission("update_user")),
    system: AccessControlSystem = Depends(get_access_system)
):
    identity = system.identities.change_role(identity_id, request.role, actor_id=subject.id)
    return {"success": True, "data": identity.view().to_dict()}


@router.put("/{identity_id}/activate")
async def activate_user(
    identity_id: str,
    subject: AuthenticatedIdentity = Depends(require_permission("activate_user")),
    system: AccessControlSystem = Depends(get_access_system)
):
    identity = system.identities.set_active(identity_id, True, actor_id=subject.id)
    return {"success": True, "data": identity.view().to_dict()}


@router.put("/{identity_id}/deactivate")
async def deactivate_user(
    identity_id: str,
    subject: AuthenticatedIdentity = Depends(require_permission("activate_user")),
    system: AccessControlSystem = Depends(get_access_system)
):
    identity = system.identities.set_active(identity_id, False, actor_id=subject.id)
    return {"success": True, "data": identity.view().to_dict()}


@router.post("/{identity_id}/unlock")
async def unlock_user(
    identity_id: str,
    subject: AuthenticatedIdentity = Depends(require_permission("update_user")),
    system: AccessControlSystem = Depends(get_access_system)
):
    view = system.lifecycle.unlock(identity_id, actor_id=subject.id)
    return {"success": True, "data": view.to_dict()}
