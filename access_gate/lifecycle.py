"""
Credential Lifecycle Manager

Lockout state machine, password age and history rules, the login flow and the
password change paths.

Lockout per identity has two states. Failed password matches increment the counter
atomically in storage; reaching the threshold locks the identity for a fixed window.
Attempts during the window are refused without being counted. The first attempt after
the window unlocks the identity (counter back to zero) before evaluating the password.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from .audit import AuditEventType, AuditTrail
from .clock import Clock, SystemClock, format_timestamp
from .errors import (AuthenticationError, AuthorizationError, CredentialLifecycleError,
                     PasswordPolicyError)
from .gate import TokenScope, TokenService
from .identity import IDENTITIES_TABLE, Identity, IdentityStore, IdentityView
from .logging_config import get_logger, log_action
from .mfa import MFAManager, MFAVerification
from .notifier import NotificationDispatcher, NotificationKind
from .passwords import PasswordPolicy, validate_password, verify_password


logger = get_logger("access_gate.lifecycle")


@dataclass
class LockoutState:
    locked: bool
    failed_attempts: int
    locked_until: Optional[datetime] = None
    remaining_seconds: int = 0


@dataclass
class PasswordLifecycleStatus:
    expired: bool
    days_remaining: int
    warn_days_remaining: Optional[int] = None


class LoginStatus(Enum):
    AUTHENTICATED = "authenticated"
    MFA_REQUIRED = "mfa_required"
    PASSWORD_EXPIRED = "password_expired"


@dataclass
class LoginOutcome:
    status: LoginStatus
    identity: IdentityView
    token: Optional[str] = None
    password_warning_days: Optional[int] = None


def password_age_days(identity, now: datetime) -> Optional[int]:
    """Whole days since the last password change, or None if never recorded"""
    if identity.last_password_change is None:
        return None
    return (now - identity.last_password_change).days


def check_password_lifecycle(identity, now: datetime, expiry_days: int = 90,
                             warning_days: Optional[List[int]] = None) -> PasswordLifecycleStatus:
    """
    Password age status.

    Expired when the flag is set, the age reaches ``expiry_days``, or no change was
    ever recorded. A warning is due only when the days remaining exactly equal one of
    ``warning_days``.
    """
    warning_days = [7, 3, 1] if warning_days is None else warning_days
    age = password_age_days(identity, now)
    if age is None:
        return PasswordLifecycleStatus(expired=True, days_remaining=0)
    days_remaining = expiry_days - age
    expired = identity.password_expired or days_remaining <= 0
    warn = days_remaining if not expired and days_remaining in warning_days else None
    return PasswordLifecycleStatus(expired=expired, days_remaining=max(days_remaining, 0),
                                   warn_days_remaining=warn)


class CredentialLifecycleManager:
    """Lockout, login, password change and MFA completion"""

    def __init__(self, identities: IdentityStore, tokens: TokenService, mfa: MFAManager,
                 dispatcher: NotificationDispatcher, clock: Optional[Clock] = None,
                 audit: Optional[AuditTrail] = None,
                 policy: Optional[PasswordPolicy] = None,
                 max_failed_attempts: int = 5, lockout_minutes: int = 15,
                 warning_days: Optional[List[int]] = None):
        self.identities = identities
        self.storage = identities.storage
        self.tokens = tokens
        self.mfa = mfa
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.audit = audit
        self.policy = policy or PasswordPolicy()
        self.max_failed_attempts = max_failed_attempts
        self.lockout_duration = timedelta(minutes=lockout_minutes)
        self.warning_days = [7, 3, 1] if warning_days is None else list(warning_days)

    def _audit(self, event_type: AuditEventType, identity_id: str,
               metadata: Optional[Dict] = None, actor_id: Optional[str] = None) -> None:
        if self.audit:
            self.audit.log_event(event_type, 'identity', identity_id, metadata or {},
                                 actor_id or identity_id)

    # Lockout

    def lockout_state(self, identity: Identity) -> LockoutState:
        now = self.clock.now()
        if identity.is_locked(now):
            remaining = math.ceil((identity.locked_until - now).total_seconds())
            return LockoutState(True, identity.failed_login_attempts,
                                identity.locked_until, remaining)
        return LockoutState(False, identity.failed_login_attempts)

    def _locked_error(self, state: LockoutState) -> CredentialLifecycleError:
        minutes = math.ceil(state.remaining_seconds / 60)
        return CredentialLifecycleError(
            "account_locked",
            f"Account temporarily locked. Try again in {minutes} minutes",
            {"remaining_seconds": state.remaining_seconds,
             "locked_until": format_timestamp(state.locked_until)})

    def _release_expired_lock(self, identity: Identity) -> Identity:
        """
        Unlock an identity whose lockout window has passed.

        Only the expired window read by the caller is released; a lock set since then
        is kept and returned.
        """
        if identity.locked_until is None or identity.is_locked(self.clock.now()):
            return identity
        released = self.storage.compare_and_set(
            IDENTITIES_TABLE, identity.id,
            {"locked_until": format_timestamp(identity.locked_until)},
            {"locked_until": None, "failed_login_attempts": 0})
        if released:
            log_action(logger, "info", "Lockout window elapsed, identity unlocked",
                       identity_id=identity.id, action="auto_unlock")
            self._audit(AuditEventType.ACCOUNT_UNLOCKED, identity.id, {'automatic': True})
        return self.identities.require(identity.id)

    def record_login_attempt(self, identity_id: str, success: bool) -> LockoutState:
        """
        Apply one password check result to the lockout state machine.

        While locked the attempt is ignored and the current lock is reported.
        """
        identity = self.identities.require(identity_id)
        state = self.lockout_state(identity)
        if state.locked:
            return state
        identity = self._release_expired_lock(identity)
        state = self.lockout_state(identity)
        if state.locked:
            return state
        now = self.clock.now()

        if success:
            self.storage.compare_and_set(IDENTITIES_TABLE, identity_id, {}, {
                "failed_login_attempts": 0,
                "last_login": format_timestamp(now),
            })
            return LockoutState(False, 0)

        attempts = self.storage.increment(IDENTITIES_TABLE, identity_id,
                                          "failed_login_attempts", 1)
        if attempts is None:
            return LockoutState(False, 0)

        if attempts >= self.max_failed_attempts:
            locked_until = now + self.lockout_duration
            if self.storage.compare_and_set(IDENTITIES_TABLE, identity_id,
                                            {"locked_until": None},
                                            {"locked_until": format_timestamp(locked_until)}):
                log_action(logger, "warning", "Identity locked after failed attempts",
                           identity_id=identity_id, action="lockout",
                           reason="account_locked", extra={"failed_attempts": attempts})
                self._audit(AuditEventType.ACCOUNT_LOCKED, identity_id,
                            {'failed_attempts': attempts,
                             'locked_until': format_timestamp(locked_until)})
                self.dispatcher.dispatch(NotificationKind.ACCOUNT_LOCKED, identity.email, {
                    "name": identity.name,
                    "failed_attempts": attempts,
                    "locked_until": format_timestamp(locked_until),
                })
            return self.lockout_state(self.identities.require(identity_id))

        return LockoutState(False, attempts)

    def unlock(self, identity_id: str, actor_id: Optional[str] = None) -> IdentityView:
        """Administrative unlock: clears the window and the counter"""
        self.identities.require(identity_id)
        self.storage.compare_and_set(IDENTITIES_TABLE, identity_id, {}, {
            "locked_until": None,
            "failed_login_attempts": 0,
            "updated_at": format_timestamp(self.clock.now()),
        })
        self._audit(AuditEventType.ACCOUNT_UNLOCKED, identity_id,
                    {'automatic': False}, actor_id)
        return self.identities.require(identity_id).view()

    # Password lifecycle

    def check_password_lifecycle(self, identity) -> PasswordLifecycleStatus:
        return check_password_lifecycle(identity, self.clock.now(),
                                        self.policy.max_age_days, self.warning_days)

    def _mark_expired(self, identity: Identity) -> None:
        if identity.password_expired or not self.identities.mark_password_expired(identity.id):
            return
        self._audit(AuditEventType.PASSWORD_EXPIRED, identity.id, {'trigger': 'login'})
        self.dispatcher.dispatch(NotificationKind.PASSWORD_EXPIRED, identity.email,
                                 {"name": identity.name})

    def _validate_new_password(self, identity: Identity, new_password: str) -> None:
        valid, violations = validate_password(new_password, self.policy)
        if not valid:
            raise PasswordPolicyError("weak_password", "Password does not meet the policy",
                                      {"violations": violations})
        recent = self.identities.recent_password_hashes(identity.id, self.policy.history_depth)
        if any(verify_password(new_password, old_hash) for old_hash in recent):
            raise PasswordPolicyError(
                "password_reused",
                f"Cannot reuse any of the last {self.policy.history_depth} passwords")

    def change_password(self, identity_id: str, current_password: str,
                        new_password: str) -> IdentityView:
        identity = self.identities.require(identity_id)
        if not verify_password(current_password, identity.password_hash):
            raise PasswordPolicyError("invalid_current_password",
                                      "Current password is incorrect")
        self._validate_new_password(identity, new_password)
        updated = self.identities.set_password(identity_id, new_password)
        log_action(logger, "info", "Password changed", identity_id=identity_id,
                   action="change_password")
        self._audit(AuditEventType.PASSWORD_CHANGED, identity_id)
        return updated.view()

    def reset_expired_password(self, identity_id: str, new_password: str) -> LoginOutcome:
        """
        Forced reset for an expired password. No current password is needed; the
        caller is expected to hold a password-reset token.
        """
        identity = self.identities.require(identity_id)
        if not identity.password_expired:
            raise PasswordPolicyError("password_not_expired", "Password has not expired")
        self._validate_new_password(identity, new_password)
        updated = self.identities.set_password(identity_id, new_password)
        log_action(logger, "info", "Expired password reset", identity_id=identity_id,
                   action="reset_expired_password")
        self._audit(AuditEventType.PASSWORD_RESET, identity_id)
        return self._finish_login(updated, self.check_password_lifecycle(updated))

    # Login

    def login(self, email: str, password: str) -> LoginOutcome:
        identity = self.identities.get_by_email(email)
        if identity is None:
            log_action(logger, "warning", "Login for unknown email", action="login",
                       reason="invalid_credentials")
            raise AuthenticationError("invalid_credentials", "Invalid credentials")

        state = self.lockout_state(identity)
        if state.locked:
            log_action(logger, "warning", "Login refused while locked",
                       identity_id=identity.id, action="login", reason="account_locked")
            raise self._locked_error(state)
        identity = self._release_expired_lock(identity)
        state = self.lockout_state(identity)
        if state.locked:
            raise self._locked_error(state)

        if not identity.is_active:
            self._audit(AuditEventType.LOGIN_FAILED, identity.id,
                        {'reason': 'inactive_account'})
            raise AuthorizationError("inactive_account",
                                     "Account deactivated. Contact an administrator")

        if not verify_password(password, identity.password_hash):
            state = self.record_login_attempt(identity.id, success=False)
            self._audit(AuditEventType.LOGIN_FAILED, identity.id,
                        {'reason': 'invalid_credentials',
                         'failed_attempts': state.failed_attempts})
            if state.locked:
                raise self._locked_error(state)
            raise AuthenticationError(
                "invalid_credentials", "Invalid credentials",
                {"remaining_attempts": max(self.max_failed_attempts - state.failed_attempts, 0)})

        state = self.record_login_attempt(identity.id, success=True)
        if state.locked:
            raise self._locked_error(state)
        identity = self.identities.require(identity.id)

        status = self.check_password_lifecycle(identity)
        if status.expired:
            self._mark_expired(identity)
            identity = self.identities.require(identity.id)
            log_action(logger, "info", "Login with expired password",
                       identity_id=identity.id, action="login", reason="password_expired")
            return LoginOutcome(
                LoginStatus.PASSWORD_EXPIRED, identity.view(),
                self.tokens.issue_token(identity, scope=TokenScope.PASSWORD_RESET))

        return self._finish_login(identity, status)

    def _finish_login(self, identity: Identity,
                      status: PasswordLifecycleStatus) -> LoginOutcome:
        if identity.mfa_enabled:
            self.mfa.issue_challenge(identity.id)
            return LoginOutcome(LoginStatus.MFA_REQUIRED, identity.view(),
                                password_warning_days=status.warn_days_remaining)

        log_action(logger, "info", "Login successful", identity_id=identity.id,
                   action="login")
        self._audit(AuditEventType.LOGIN_SUCCESS, identity.id)
        return LoginOutcome(LoginStatus.AUTHENTICATED, identity.view(),
                            self.tokens.issue_token(identity),
                            password_warning_days=status.warn_days_remaining)

    # MFA completion

    def verify_mfa_login(self, identity_id: str, code: str) -> LoginOutcome:
        """Exchange a correct MFA code for a fully verified token"""
        identity = self.identities.require(identity_id)
        if not identity.mfa_enabled or not identity.is_active:
            raise CredentialLifecycleError("mfa_mismatch", "Invalid verification code")
        result = self.mfa.verify_challenge(identity_id, code)
        if result == MFAVerification.EXPIRED:
            raise CredentialLifecycleError("mfa_expired", "Verification code expired")
        if result == MFAVerification.MISMATCH:
            raise CredentialLifecycleError("mfa_mismatch", "Invalid verification code")

        self._audit(AuditEventType.LOGIN_SUCCESS, identity_id, {'mfa': True})
        return LoginOutcome(LoginStatus.AUTHENTICATED, identity.view(),
                            self.tokens.issue_token(identity, mfa_verified=True))

    def resend_mfa(self, identity_id: str) -> None:
        """Send a fresh code for a login that passed the password check"""
        identity = self.identities.require(identity_id)
        if (not identity.mfa_enabled or not identity.is_active
                or self.mfa.reissue_challenge(identity_id) is None):
            log_action(logger, "warning", "MFA resend without a pending login",
                       identity_id=identity_id, action="resend_mfa",
                       reason="no_pending_challenge")
            raise AuthenticationError("invalid_credentials",
                                      "No verification pending. Log in again")

    def set_mfa_enabled(self, identity_id: str, enabled: bool) -> IdentityView:
        return self.identities.set_mfa_enabled(identity_id, enabled).view()
