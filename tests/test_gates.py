"""
Tests for the authentication and authorization gates

Token verification, the fixed order of lifecycle checks and the role and permission
checks that follow them.
"""

from datetime import timedelta

import jwt
import pytest

from access_gate.audit import AuditEventType
from access_gate.clock import ManualClock
from access_gate.config import GateConfig
from access_gate.errors import (
    AuthenticationError, AuthorizationError, CredentialLifecycleError
)
from access_gate.gate import RESET_EXPIRED_PASSWORD, TokenScope
from access_gate.identity import IDENTITIES_TABLE
from access_gate.notifier import LogNotifier
from access_gate.resolver import PolicySource
from access_gate.storage import InMemoryStorage
from access_gate.system import AccessControlSystem


PASSWORD = "Prof3sor!Secure"


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def system(clock):
    config = GateConfig(database_url="memory://", sweep_enabled=False,
                        jwt_secret="test-secret", scrypt_n=1024,
                        seed_dynamic_policy=False)
    access_system = AccessControlSystem(config, storage=InMemoryStorage(), clock=clock,
                                        notifiers=[LogNotifier()])
    yield access_system
    access_system.shutdown()


@pytest.fixture
def prof1(system):
    return system.create_identity("Prof Uno", "prof1@school.edu", PASSWORD, "profesor")


def subject_for(system, identity_id, **claims):
    token = system.tokens.issue_token(system.identities.require(identity_id), **claims)
    return system.authenticate(token)


class TestAuthenticationGate:
    """Bearer token to identity"""

    def test_valid_token(self, system, prof1):
        subject = subject_for(system, prof1.id)
        assert subject.id == prof1.id
        assert subject.identity.role == "profesor"
        assert subject.scope == TokenScope.FULL

    def test_missing_token(self, system):
        with pytest.raises(AuthenticationError) as exc_info:
            system.authenticate(None)
        assert exc_info.value.code == "missing_token"
        assert exc_info.value.status_code == 401

    def test_malformed_token(self, system):
        with pytest.raises(AuthenticationError) as exc_info:
            system.authenticate("not-a-jwt")
        assert exc_info.value.code == "invalid_token"

    def test_wrong_signature(self, system, prof1, clock):
        forged = jwt.encode({"sub": prof1.id, "exp": int((clock.now()
                                                          + timedelta(hours=1)).timestamp())},
                            "another-secret", algorithm="HS256")
        with pytest.raises(AuthenticationError) as exc_info:
            system.authenticate(forged)
        assert exc_info.value.code == "invalid_token"

    def test_expired_token(self, system, prof1, clock):
        token = system.tokens.issue_token(system.identities.require(prof1.id))
        clock.advance(days=7)

        with pytest.raises(AuthenticationError) as exc_info:
            system.authenticate(token)
        assert exc_info.value.code == "expired_token"

    def test_reset_token_lifetime(self, system, prof1, clock):
        token = system.tokens.issue_token(system.identities.require(prof1.id),
                                          scope=TokenScope.PASSWORD_RESET)
        clock.advance(minutes=15)

        with pytest.raises(AuthenticationError) as exc_info:
            system.authenticate(token)
        assert exc_info.value.code == "expired_token"

    def test_unknown_subject(self, system, clock):
        token = jwt.encode({"sub": "ghost", "exp": int((clock.now()
                                                       + timedelta(hours=1)).timestamp())},
                           "test-secret", algorithm="HS256")
        with pytest.raises(AuthenticationError) as exc_info:
            system.authenticate(token)
        assert exc_info.value.code == "invalid_token"

    def test_unknown_scope(self, system, prof1, clock):
        token = jwt.encode({"sub": prof1.id, "scope": "superuser",
                            "exp": int((clock.now() + timedelta(hours=1)).timestamp())},
                           "test-secret", algorithm="HS256")
        with pytest.raises(AuthenticationError) as exc_info:
            system.authenticate(token)
        assert exc_info.value.code == "invalid_token"

    def test_corrupt_identity_record(self, system, prof1):
        token = system.tokens.issue_token(system.identities.require(prof1.id))
        record = system.storage.load(IDENTITIES_TABLE, prof1.id)
        record["created_at"] = "not a timestamp"
        system.storage.save(IDENTITIES_TABLE, prof1.id, record)

        with pytest.raises(AuthenticationError) as exc_info:
            system.authenticate(token)
        assert exc_info.value.code == "invalid_token"


class TestLifecycleOrder:
    """Lifecycle checks run before any permission check, in a fixed order"""

    def lock(self, system, identity_id):
        for _ in range(5):
            system.record_login_attempt(identity_id, success=False)

    def test_inactive_first(self, system, prof1):
        system.identities.set_mfa_enabled(prof1.id, True)
        system.identities.mark_password_expired(prof1.id)
        self.lock(system, prof1.id)
        system.identities.set_active(prof1.id, False)

        decision = system.authorize(subject_for(system, prof1.id),
                                    required_permissions=["delete_user"])

        assert not decision.allowed
        assert decision.reason == "inactive_account"
        assert decision.source == PolicySource.LIFECYCLE

    def test_locked_before_expired(self, system, prof1, clock):
        system.identities.mark_password_expired(prof1.id)
        self.lock(system, prof1.id)
        clock.advance(minutes=1)

        decision = system.authorize(subject_for(system, prof1.id),
                                    required_permissions=["create_incident"])

        assert decision.reason == "account_locked"
        assert decision.detail["remaining_seconds"] == 840

    def test_expired_before_mfa(self, system, prof1):
        system.identities.set_mfa_enabled(prof1.id, True)
        system.identities.mark_password_expired(prof1.id)

        decision = system.authorize(subject_for(system, prof1.id),
                                    required_permissions=["create_incident"])

        assert decision.reason == "password_expired"

    def test_mfa_before_permission(self, system, prof1):
        system.identities.set_mfa_enabled(prof1.id, True)

        decision = system.authorize(subject_for(system, prof1.id),
                                    required_permissions=["delete_user"])

        assert decision.reason == "mfa_required"

    def test_mfa_verified_token_passes(self, system, prof1):
        system.identities.set_mfa_enabled(prof1.id, True)

        decision = system.authorize(subject_for(system, prof1.id, mfa_verified=True),
                                    required_permissions=["create_incident"])

        assert decision.allowed

    def test_reset_token_only_reaches_reset(self, system, prof1):
        system.identities.mark_password_expired(prof1.id)
        subject = subject_for(system, prof1.id, scope=TokenScope.PASSWORD_RESET)

        assert system.authorize(subject, operation="read_self").reason == "password_expired"
        decision = system.authorize(subject, operation=RESET_EXPIRED_PASSWORD)
        assert decision.allowed
        assert decision.source == PolicySource.LIFECYCLE

    def test_reset_token_skips_mfa_for_reset(self, system, prof1):
        system.identities.set_mfa_enabled(prof1.id, True)
        system.identities.mark_password_expired(prof1.id)
        subject = subject_for(system, prof1.id, scope=TokenScope.PASSWORD_RESET)

        assert system.authorize(subject, operation=RESET_EXPIRED_PASSWORD).allowed

    def test_reset_scope_denied_even_after_flag_cleared(self, system, prof1):
        subject = subject_for(system, prof1.id, scope=TokenScope.PASSWORD_RESET)
        decision = system.authorize(subject, required_permissions=["create_incident"])
        assert decision.reason == "password_expired"


class TestPolicyChecks:
    """Role and permission checks after the lifecycle passes"""

    def test_static_permission_allowed(self, system, prof1):
        decision = system.authorize(subject_for(system, prof1.id),
                                    required_permissions=["create_incident"],
                                    operation="create_incident")
        assert decision.allowed
        assert decision.source == PolicySource.STATIC

    def test_any_of_permissions(self, system, prof1):
        decision = system.authorize(subject_for(system, prof1.id),
                                    required_permissions=["delete_user", "read_student"])
        assert decision.allowed
        assert decision.detail["permission"] == "read_student"

    def test_permission_denied(self, system, prof1):
        decision = system.authorize(subject_for(system, prof1.id),
                                    required_permissions=["delete_user"])
        assert not decision.allowed
        assert decision.reason == "insufficient_permission"
        assert decision.source == PolicySource.STATIC

    def test_role_denied(self, system, prof1):
        decision = system.authorize(subject_for(system, prof1.id),
                                    required_roles=["adminusuarios"])
        assert decision.reason == "insufficient_role"

    def test_role_allowed(self, system, prof1):
        decision = system.authorize(subject_for(system, prof1.id),
                                    required_roles=["adminusuarios", "profesor"])
        assert decision.allowed

    def test_dynamic_role_decides(self, system):
        read_books = system.policy.create_permission(name="Read Books", code="read_books")
        system.policy.create_role(name="Bibliotecario", code="bibliotecario",
                                  permission_ids=[read_books.id])
        librarian = system.create_identity("Ana", "ana@school.edu", PASSWORD, "bibliotecario")
        subject = subject_for(system, librarian.id)

        allowed = system.authorize(subject, required_permissions=["read_books"])
        denied = system.authorize(subject, required_permissions=["create_user"])

        assert allowed.allowed and allowed.source == PolicySource.DYNAMIC
        assert not denied.allowed and denied.source == PolicySource.DYNAMIC

    def test_decisions_are_audited(self, system, prof1):
        system.authorize(subject_for(system, prof1.id),
                         required_permissions=["delete_user"], operation="delete_user")

        event = system.audit_trail.get_events_by_type(AuditEventType.ACCESS_DENIED)[-1]
        assert event.metadata["operation"] == "delete_user"
        assert event.metadata["source"] == "static"


class TestEnforce:
    """Denials raised as errors"""

    def test_enforce_returns_decision(self, system, prof1):
        decision = system.enforce(subject_for(system, prof1.id),
                                  required_permissions=["read_incident"])
        assert decision.allowed

    def test_permission_error(self, system, prof1):
        with pytest.raises(AuthorizationError) as exc_info:
            system.enforce(subject_for(system, prof1.id), required_permissions=["delete_user"])

        error = exc_info.value
        assert error.code == "insufficient_permission"
        assert error.status_code == 403
        assert error.detail["source"] == "static"
        assert error.to_dict()["required_permissions"] == ["delete_user"]

    def test_lifecycle_error(self, system, prof1):
        for _ in range(5):
            system.record_login_attempt(prof1.id, success=False)

        with pytest.raises(CredentialLifecycleError) as exc_info:
            system.enforce(subject_for(system, prof1.id))

        assert exc_info.value.code == "account_locked"
        assert exc_info.value.detail["remaining_seconds"] == 900
