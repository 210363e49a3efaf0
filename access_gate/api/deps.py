"""
Authentication and authorization dependencies
"""

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..gate import AuthenticatedIdentity
from ..system import AccessControlSystem


security = HTTPBearer(auto_error=False)


def get_access_system(request: Request) -> AccessControlSystem:
    return request.app.state.system


def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: AccessControlSystem = Depends(get_access_system)
) -> AuthenticatedIdentity:
    """Dependency that validates the bearer token and returns the identity"""
    token = credentials.credentials if credentials else None
    return system.authenticate(token)


def require_authenticated(operation: Optional[str] = None):
    """Dependency factory: lifecycle checks only, no permission required"""
    def check(subject: AuthenticatedIdentity = Depends(get_current_identity),
              system: AccessControlSystem = Depends(get_access_system)) -> AuthenticatedIdentity:
        system.enforce(subject, operation=operation)
        return subject
    return check


def require_permission(*permissions: str, operation: Optional[str] = None):
    """Dependency factory: allowed if the identity's role carries any of ``permissions``"""
    def check(subject: AuthenticatedIdentity = Depends(get_current_identity),
              system: AccessControlSystem = Depends(get_access_system)) -> AuthenticatedIdentity:
        system.enforce(subject, required_permissions=permissions,
                       operation=operation or permissions[0])
        return subject
    return check


def require_role(*roles: str, operation: Optional[str] = None):
    """Dependency factory: allowed if the identity holds one of ``roles``"""
    def check(subject: AuthenticatedIdentity = Depends(get_current_identity),
              system: AccessControlSystem = Depends(get_access_system)) -> AuthenticatedIdentity:
        system.enforce(subject, required_roles=roles, operation=operation)
        return subject
    return check
