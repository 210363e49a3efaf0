"""
Access Control System

Wires storage, policy sources, the credential lifecycle and the gates into one object,
and exposes the operations the HTTP layer and embedding applications call.
"""

from datetime import timedelta
from typing import Iterable, List, Optional

from .audit import AuditEventType, AuditTrail
from .clock import Clock, SystemClock
from .config import GateConfig, get_config
from .dynamic_policy import DynamicPolicyStore
from .errors import PasswordPolicyError
from .expiry import PasswordExpirySweep, SweepScheduler
from .gate import (AccessDecision, AuthenticatedIdentity, AuthenticationGate,
                   AuthorizationGate, TokenService)
from .identity import IdentityStore, IdentityView
from .lifecycle import CredentialLifecycleManager, LockoutState, PasswordLifecycleStatus
from .logging_config import get_logger, log_action
from .mfa import MFAManager, MFAVerification
from .notifier import (LogNotifier, NotificationDispatcher, Notifier, StorageNotifier,
                       WebhookNotifier)
from .passwords import PasswordPolicy, validate_password
from .resolver import PolicyDecision, PolicyResolver
from .storage import StorageInterface, create_storage


logger = get_logger("access_gate.system")


class AccessControlSystem:
    """Access gate with all components initialized"""

    def __init__(self, config: Optional[GateConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 clock: Optional[Clock] = None,
                 notifiers: Optional[List[Notifier]] = None):
        self.config = config or get_config()
        self.clock = clock or SystemClock()
        self.storage = storage or create_storage(self.config.database_url)

        self.audit_trail = AuditTrail(self.storage, self.clock,
                                      enabled=self.config.enable_audit_logging)

        # Policy sources
        self.policy = DynamicPolicyStore(self.storage, self.clock, self.audit_trail)
        self.resolver = PolicyResolver(self.policy)

        # Credentials
        self.identities = IdentityStore(self.storage, self.clock, self.audit_trail,
                                        role_resolves=self.resolver.role_resolves,
                                        scrypt_n=self.config.scrypt_n)
        self.password_policy = PasswordPolicy.from_config(self.config)

        # Notifications
        if notifiers is None:
            notifiers = [StorageNotifier(self.storage, self.clock)]
            if self.config.notification_webhook_url:
                notifiers.append(WebhookNotifier(self.config.notification_webhook_url))
            else:
                notifiers.append(LogNotifier())
        self.dispatcher = NotificationDispatcher(notifiers,
                                                 max_workers=self.config.notification_workers)

        # Tokens and gates
        self.tokens = TokenService(
            self.config.jwt_secret, self.config.jwt_algorithm,
            expiry=timedelta(hours=self.config.jwt_expiry_hours),
            reset_expiry=timedelta(minutes=self.config.reset_token_expiry_minutes),
            clock=self.clock)
        self.authentication_gate = AuthenticationGate(self.tokens, self.identities)
        self.authorization_gate = AuthorizationGate(
            self.resolver, self.clock, self.audit_trail,
            audit_decisions=self.config.audit_authorization_decisions)

        # Lifecycle
        self.mfa = MFAManager(self.identities, self.dispatcher, self.config.jwt_secret,
                              self.clock, self.audit_trail,
                              code_length=self.config.mfa_code_length,
                              ttl_seconds=self.config.mfa_code_ttl_seconds,
                              max_attempts=self.config.mfa_max_attempts)
        self.lifecycle = CredentialLifecycleManager(
            self.identities, self.tokens, self.mfa, self.dispatcher, self.clock,
            self.audit_trail, self.password_policy,
            max_failed_attempts=self.config.max_failed_attempts,
            lockout_minutes=self.config.lockout_minutes,
            warning_days=self.config.password_warning_days)
        self.expiry_sweep = PasswordExpirySweep(
            self.identities, self.dispatcher, self.clock, self.audit_trail,
            expiry_days=self.config.password_expiry_days,
            warning_days=self.config.password_warning_days)
        self.scheduler = SweepScheduler(self.expiry_sweep.run, self.clock,
                                        hour=self.config.sweep_hour,
                                        minute=self.config.sweep_minute,
                                        audit=self.audit_trail)

        if self.config.seed_dynamic_policy:
            self.policy.seed_from_static()

    # Lifecycle of the system itself

    def start(self) -> None:
        if self.config.sweep_enabled:
            self.scheduler.start()
        self.audit_trail.log_event(AuditEventType.SYSTEM_START, 'system', 'access_gate',
                                   {'sweep_enabled': self.config.sweep_enabled}, 'system')
        log_action(logger, "info", "Access gate started", action="system_start")

    def shutdown(self) -> None:
        self.scheduler.stop()
        self.dispatcher.shutdown()
        self.audit_trail.log_event(AuditEventType.SYSTEM_STOP, 'system', 'access_gate',
                                   {}, 'system')
        log_action(logger, "info", "Access gate stopped", action="system_stop")

    # Identity creation

    def create_identity(self, name: str, email: str, password: str, role: str,
                        phone: Optional[str] = None, mfa_enabled: bool = False,
                        actor_id: Optional[str] = None) -> IdentityView:
        """Admin creation. The password must satisfy the policy."""
        valid, violations = validate_password(password, self.password_policy)
        if not valid:
            raise PasswordPolicyError("weak_password", "Password does not meet the policy",
                                      {"violations": violations})
        return self.identities.create_identity(name, email, password, role, phone=phone,
                                               mfa_enabled=mfa_enabled,
                                               actor_id=actor_id).view()

    def register(self, name: str, email: str, password: str,
                 phone: Optional[str] = None) -> IdentityView:
        """Self-registration with the configured default role"""
        return self.create_identity(name, email, password, self.config.default_role,
                                    phone=phone)

    # Gate operations

    def authenticate(self, token: Optional[str]) -> AuthenticatedIdentity:
        return self.authentication_gate.authenticate(token)

    def authorize(self, subject: AuthenticatedIdentity,
                  required_permissions: Optional[Iterable[str]] = None,
                  required_roles: Optional[Iterable[str]] = None,
                  operation: Optional[str] = None) -> AccessDecision:
        return self.authorization_gate.authorize(subject, required_permissions,
                                                 required_roles, operation)

    def enforce(self, subject: AuthenticatedIdentity,
                required_permissions: Optional[Iterable[str]] = None,
                required_roles: Optional[Iterable[str]] = None,
                operation: Optional[str] = None) -> AccessDecision:
        return self.authorization_gate.enforce(subject, required_permissions,
                                               required_roles, operation)

    def decide(self, role: str, permission: str) -> PolicyDecision:
        return self.resolver.decide(role, permission)

    # Credential lifecycle operations

    def record_login_attempt(self, identity_id: str, success: bool) -> LockoutState:
        return self.lifecycle.record_login_attempt(identity_id, success)

    def check_password_lifecycle(self, identity_id: str) -> PasswordLifecycleStatus:
        return self.lifecycle.check_password_lifecycle(self.identities.require(identity_id))

    def issue_mfa_challenge(self, identity_id: str) -> str:
        return self.mfa.issue_challenge(identity_id)

    def verify_mfa_challenge(self, identity_id: str, code: str) -> MFAVerification:
        return self.mfa.verify_challenge(identity_id, code)
