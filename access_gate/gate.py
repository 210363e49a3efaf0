"""
Authentication and Authorization Gates

The authentication gate turns a bearer token into an identity. The authorization gate
decides whether that identity may perform an operation: credential lifecycle checks
run first, in a fixed order, and only then is the Policy Resolver consulted.
"""

import math
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Iterable, Optional

import jwt

from .audit import AuditEventType, AuditTrail
from .clock import Clock, SystemClock, format_timestamp
from .errors import (AuthenticationError, AuthorizationError, CorruptRecordError,
                     CredentialLifecycleError)
from .identity import Identity, IdentityStore, IdentityView
from .logging_config import get_logger, log_action
from .resolver import PolicyResolver, PolicySource


RESET_EXPIRED_PASSWORD = "reset_expired_password"

logger = get_logger("access_gate.gate")


class TokenScope(Enum):
    FULL = "full"
    PASSWORD_RESET = "password_reset"


class TokenService:
    """Mints and verifies HS256 bearer tokens"""

    def __init__(self, secret: str, algorithm: str = "HS256",
                 expiry: timedelta = timedelta(days=7),
                 reset_expiry: timedelta = timedelta(minutes=15),
                 clock: Optional[Clock] = None):
        self.secret = secret
        self.algorithm = algorithm
        self.expiry = expiry
        self.reset_expiry = reset_expiry
        self.clock = clock or SystemClock()

    def issue_token(self, identity: Identity, mfa_verified: bool = False,
                    scope: TokenScope = TokenScope.FULL) -> str:
        now = self.clock.now()
        lifetime = self.reset_expiry if scope == TokenScope.PASSWORD_RESET else self.expiry
        payload = {
            "sub": identity.id,
            "mfa_verified": mfa_verified,
            "scope": scope.value,
            "iat": int(now.timestamp()),
            "exp": int((now + lifetime).timestamp()),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode(self, token: Optional[str]) -> Dict[str, Any]:
        """
        Verify signature and expiry. Expiry is judged against the injected clock,
        so PyJWT's own wall-clock check is turned off.
        """
        if not token:
            raise AuthenticationError("missing_token", "Authentication token required")
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm],
                                 options={"verify_exp": False, "require": ["sub", "exp"]})
        except jwt.InvalidTokenError:
            raise AuthenticationError("invalid_token", "Invalid token")

        try:
            expires_at = float(payload["exp"])
        except (TypeError, ValueError):
            raise AuthenticationError("invalid_token", "Invalid token")
        if self.clock.now().timestamp() >= expires_at:
            raise AuthenticationError("expired_token", "Token expired")
        if not payload.get("sub"):
            raise AuthenticationError("invalid_token", "Invalid token")
        return payload


@dataclass
class AuthenticatedIdentity:
    """An identity plus the claims of the token that proved it"""
    identity: IdentityView
    mfa_verified: bool = False
    scope: TokenScope = TokenScope.FULL

    @property
    def id(self) -> str:
        return self.identity.id


class AuthenticationGate:
    """Bearer token to identity. Fails as a whole or not at all."""

    def __init__(self, tokens: TokenService, identities: IdentityStore):
        self.tokens = tokens
        self.identities = identities

    def authenticate(self, token: Optional[str]) -> AuthenticatedIdentity:
        payload = self.tokens.decode(token)
        identity_id = payload["sub"]
        try:
            identity = self.identities.get(identity_id)
        except CorruptRecordError as e:
            log_action(logger, "error", f"Unreadable identity record: {e.cause}",
                       identity_id=identity_id, action="authenticate", reason="invalid_token")
            raise AuthenticationError("invalid_token", "Invalid token")
        if identity is None:
            raise AuthenticationError("invalid_token", "Invalid token")

        try:
            scope = TokenScope(payload.get("scope", TokenScope.FULL.value))
        except ValueError:
            raise AuthenticationError("invalid_token", "Invalid token")
        return AuthenticatedIdentity(identity=identity.view(),
                                     mfa_verified=bool(payload.get("mfa_verified")),
                                     scope=scope)


@dataclass
class AccessDecision:
    allowed: bool
    reason: Optional[str]
    source: PolicySource
    detail: Dict[str, Any] = field(default_factory=dict)


_LIFECYCLE_ERRORS = {
    "inactive_account": AuthorizationError,
    "account_locked": CredentialLifecycleError,
    "password_expired": CredentialLifecycleError,
    "mfa_required": CredentialLifecycleError,
}


class AuthorizationGate:
    """Lifecycle checks, then role and permission checks"""

    def __init__(self, resolver: PolicyResolver, clock: Optional[Clock] = None,
                 audit: Optional[AuditTrail] = None, audit_decisions: bool = True):
        self.resolver = resolver
        self.clock = clock or SystemClock()
        self.audit = audit
        self.audit_decisions = audit_decisions

    def _lifecycle_denial(self, subject: AuthenticatedIdentity,
                          operation: Optional[str]) -> Optional[AccessDecision]:
        identity = subject.identity
        now = self.clock.now()

        if not identity.is_active:
            return AccessDecision(False, "inactive_account", PolicySource.LIFECYCLE)

        if identity.is_locked(now):
            remaining = math.ceil((identity.locked_until - now).total_seconds())
            return AccessDecision(False, "account_locked", PolicySource.LIFECYCLE, {
                "remaining_seconds": remaining,
                "locked_until": format_timestamp(identity.locked_until),
            })

        expired = identity.password_expired or subject.scope == TokenScope.PASSWORD_RESET
        if expired and operation != RESET_EXPIRED_PASSWORD:
            return AccessDecision(False, "password_expired", PolicySource.LIFECYCLE)

        # A reset token is minted before the MFA step; MFA follows the reset itself
        resetting = (operation == RESET_EXPIRED_PASSWORD
                     and subject.scope == TokenScope.PASSWORD_RESET)
        if identity.mfa_enabled and not subject.mfa_verified and not resetting:
            return AccessDecision(False, "mfa_required", PolicySource.LIFECYCLE)

        return None

    def authorize(self, subject: AuthenticatedIdentity,
                  required_permissions: Optional[Iterable[str]] = None,
                  required_roles: Optional[Iterable[str]] = None,
                  operation: Optional[str] = None) -> AccessDecision:
        decision = self._lifecycle_denial(subject, operation)
        role = subject.identity.role

        if decision is None and required_roles is not None:
            roles = list(required_roles)
            if role not in roles:
                decision = AccessDecision(False, "insufficient_role", PolicySource.NONE,
                                          {"required_roles": roles})

        if decision is None and required_permissions is not None:
            permissions = list(required_permissions)
            policy = self.resolver.decide_any(role, permissions)
            if policy.allowed:
                decision = AccessDecision(True, None, policy.source,
                                          {"permission": policy.permission})
            else:
                decision = AccessDecision(False, "insufficient_permission", policy.source,
                                          {"required_permissions": permissions})

        if decision is None:
            decision = AccessDecision(True, None, PolicySource.LIFECYCLE)

        self._record(subject, decision, operation)
        return decision

    def enforce(self, subject: AuthenticatedIdentity,
                required_permissions: Optional[Iterable[str]] = None,
                required_roles: Optional[Iterable[str]] = None,
                operation: Optional[str] = None) -> AccessDecision:
        """Authorize, raising the matching error on deny"""
        decision = self.authorize(subject, required_permissions, required_roles, operation)
        if decision.allowed:
            return decision
        error_class = _LIFECYCLE_ERRORS.get(decision.reason, AuthorizationError)
        raise error_class(decision.reason, None, dict(decision.detail,
                                                      source=decision.source.value))

    def _record(self, subject: AuthenticatedIdentity, decision: AccessDecision,
                operation: Optional[str]) -> None:
        log_action(logger, "info" if decision.allowed else "warning",
                   "Access granted" if decision.allowed else "Access denied",
                   identity_id=subject.id, action=operation, reason=decision.reason,
                   source=decision.source.value)
        if self.audit and self.audit_decisions:
            event = (AuditEventType.ACCESS_GRANTED if decision.allowed
                     else AuditEventType.ACCESS_DENIED)
            self.audit.log_event(event, 'identity', subject.id, {
                'operation': operation,
                'reason': decision.reason,
                'source': decision.source.value,
                'role': subject.identity.role,
            }, subject.id)
