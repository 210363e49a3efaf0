"""
Authentication endpoints: registration, login, MFA and self-service password changes
"""

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from .deps import get_access_system, require_authenticated
from .schemas import (
    RegisterRequest,
    LoginRequest,
    VerifyMFARequest,
    ResendMFARequest,
    ChangePasswordRequest,
    ResetExpiredPasswordRequest,
    UpdateProfileRequest,
    MFASettingsRequest
)
from ..gate import RESET_EXPIRED_PASSWORD, AuthenticatedIdentity
from ..lifecycle import LoginOutcome, LoginStatus
from ..logging_config import get_logger, log_action
from ..system import AccessControlSystem


router = APIRouter()
logger = get_logger("access_gate.api.auth")


def _outcome_response(outcome: LoginOutcome):
    if outcome.status == LoginStatus.PASSWORD_EXPIRED:
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={
            "success": False,
            "error": "password_expired",
            "message": "Your password has expired. Set a new one to continue.",
            "password_expired": True,
            "identity_id": outcome.identity.id,
            "reset_token": outcome.token,
        })
    if outcome.status == LoginStatus.MFA_REQUIRED:
        return {
            "success": True,
            "mfa_required": True,
            "identity_id": outcome.identity.id,
            "message": "A verification code was sent to your email",
        }
    body = {
        "success": True,
        "token": outcome.token,
        "token_type": "bearer",
        "user": outcome.identity.to_dict(),
    }
    if outcome.password_warning_days is not None:
        body["password_expires_in_days"] = outcome.password_warning_days
    return body


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    system: AccessControlSystem = Depends(get_access_system)
):
    """Self-registration with the default role"""
    view = system.register(request.name, request.email, request.password, request.phone)
    token = system.tokens.issue_token(system.identities.require(view.id))
    log_action(logger, "info", "Identity registered", identity_id=view.id, action="register")
    return {"success": True, "token": token, "token_type": "bearer", "user": view.to_dict()}


@router.post("/login")
async def login(
    request: LoginRequest,
    system: AccessControlSystem = Depends(get_access_system)
):
    """Authenticate with email and password"""
    return _outcome_response(system.lifecycle.login(request.email, request.password))


@router.post("/verify-mfa")
async def verify_mfa(
    request: VerifyMFARequest,
    system: AccessControlSystem = Depends(get_access_system)
):
    """Complete a login with the emailed code"""
    return _outcome_response(system.lifecycle.verify_mfa_login(request.identity_id,
                                                               request.code))


@router.post("/resend-mfa")
async def resend_mfa(
    request: ResendMFARequest,
    system: AccessControlSystem = Depends(get_access_system)
):
    """Issue a fresh code, invalidating the previous one"""
    system.lifecycle.resend_mfa(request.identity_id)
    return {"success": True, "message": "Verification code resent"}


@router.get("/me")
async def get_me(
    subject: AuthenticatedIdentity = Depends(require_authenticated("read_self")),
    system: AccessControlSystem = Depends(get_access_system)
):
    """Current identity with its effective permissions"""
    permissions, source = system.resolver.effective_permissions(subject.identity.role)
    data = subject.identity.to_dict()
    data["permissions"] = sorted(permissions)
    data["policy_source"] = source.value
    return {"success": True, "data": data}


@router.put("/change-password")
async def change_password(
    request: ChangePasswordRequest,
    subject: AuthenticatedIdentity = Depends(require_authenticated("change_password")),
    system: AccessControlSystem = Depends(get_access_system)
):
    system.lifecycle.change_password(subject.id, request.current_password,
                                     request.new_password)
    return {"success": True, "message": "Password updated"}


@router.put("/profile")
async def update_profile(
    request: UpdateProfileRequest,
    subject: AuthenticatedIdentity = Depends(require_authenticated("update_profile")),
    system: AccessControlSystem = Depends(get_access_system)
):
    identity = system.identities.update_profile(subject.id, name=request.name,
                                                email=request.email, phone=request.phone)
    return {"success": True, "user": identity.view().to_dict()}


@router.put("/mfa-settings")
async def update_mfa_settings(
    request: MFASettingsRequest,
    subject: AuthenticatedIdentity = Depends(require_authenticated("mfa_settings")),
    system: AccessControlSystem = Depends(get_access_system)
):
    view = system.lifecycle.set_mfa_enabled(subject.id, request.enabled)
    state = "enabled" if request.enabled else "disabled"
    return {"success": True, "message": f"MFA {state}", "user": view.to_dict()}


@router.post("/reset-expired-password")
async def reset_expired_password(
    request: ResetExpiredPasswordRequest,
    subject: AuthenticatedIdentity = Depends(require_authenticated(RESET_EXPIRED_PASSWORD)),
    system: AccessControlSystem = Depends(get_access_system)
):
    """Set a new password after expiry, using the reset token issued at login"""
    return _outcome_response(system.lifecycle.reset_expired_password(subject.id,
                                                                     request.new_password))
