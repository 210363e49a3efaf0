"""
Tests for the credential lifecycle: lockout, login outcomes, password age and
password changes
"""

import threading
from datetime import timedelta

import pytest

from access_gate.audit import AuditEventType
from access_gate.clock import ManualClock, format_timestamp
from access_gate.config import GateConfig
from access_gate.errors import (
    AuthenticationError, AuthorizationError, CredentialLifecycleError, PasswordPolicyError
)
from access_gate.gate import TokenScope
from access_gate.identity import IDENTITIES_TABLE
from access_gate.lifecycle import LoginStatus, check_password_lifecycle
from access_gate.notifier import Notifier, NotificationKind
from access_gate.storage import InMemoryStorage
from access_gate.system import AccessControlSystem


PASSWORD = "Prof3sor!Secure"
NEW_PASSWORD = "Fr3sh!Password99"


class RecordingNotifier(Notifier):
    """Keeps every notice it is handed"""

    def __init__(self):
        self.sent = []
        self._lock = threading.Lock()

    def send(self, kind, recipient, data):
        with self._lock:
            self.sent.append((kind, recipient, data))
        return True

    def of_kind(self, kind):
        return [entry for entry in self.sent if entry[0] == kind]


class RelockingStorage(InMemoryStorage):
    """Locks the identity again right before an elapsed lock is released"""

    def __init__(self, clock):
        super().__init__()
        self.clock = clock
        self.armed = False

    def compare_and_set(self, table, record_id, expected, updates):
        releasing = "locked_until" in updates and updates["locked_until"] is None
        if self.armed and releasing and expected:
            self.armed = False
            relock_until = self.clock.now() + timedelta(minutes=15)
            super().compare_and_set(table, record_id, {}, {
                "locked_until": format_timestamp(relock_until),
                "failed_login_attempts": 5,
            })
        return super().compare_and_set(table, record_id, expected, updates)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def system(clock, notifier):
    config = GateConfig(database_url="memory://", sweep_enabled=False,
                        jwt_secret="test-secret", scrypt_n=1024)
    access_system = AccessControlSystem(config, storage=InMemoryStorage(), clock=clock,
                                        notifiers=[notifier])
    yield access_system
    access_system.shutdown()


@pytest.fixture
def prof1(system):
    return system.create_identity("Prof Uno", "prof1@school.edu", PASSWORD, "profesor")


class TestLockout:
    """Five failures lock the identity for fifteen minutes"""

    def test_prof1_lockout_scenario(self, system, prof1, clock, notifier):
        for remaining in (4, 3, 2, 1):
            with pytest.raises(AuthenticationError) as exc_info:
                system.lifecycle.login("prof1@school.edu", "wrong-password")
            assert exc_info.value.code == "invalid_credentials"
            assert exc_info.value.detail["remaining_attempts"] == remaining

        with pytest.raises(CredentialLifecycleError) as exc_info:
            system.lifecycle.login("prof1@school.edu", "wrong-password")
        assert exc_info.value.code == "account_locked"
        assert exc_info.value.detail["remaining_seconds"] == 900

        # Correct password while locked: refused and not counted
        clock.advance(minutes=5)
        with pytest.raises(CredentialLifecycleError) as exc_info:
            system.lifecycle.login("prof1@school.edu", PASSWORD)
        assert exc_info.value.detail["remaining_seconds"] == 600
        assert system.identities.require(prof1.id).failed_login_attempts == 5

        clock.advance(minutes=10)
        outcome = system.lifecycle.login("prof1@school.edu", PASSWORD)

        assert outcome.status == LoginStatus.AUTHENTICATED
        stored = system.identities.require(prof1.id)
        assert stored.failed_login_attempts == 0
        assert stored.locked_until is None
        assert stored.last_login == clock.now()

        system.dispatcher.flush()
        locked_notices = notifier.of_kind(NotificationKind.ACCOUNT_LOCKED)
        assert len(locked_notices) == 1
        assert locked_notices[0][1] == "prof1@school.edu"

    def test_record_login_attempt(self, system, prof1):
        for expected in range(1, 5):
            state = system.record_login_attempt(prof1.id, success=False)
            assert not state.locked
            assert state.failed_attempts == expected

        state = system.record_login_attempt(prof1.id, success=False)
        assert state.locked
        assert state.remaining_seconds == 900

        ignored = system.record_login_attempt(prof1.id, success=False)
        assert ignored.locked
        assert ignored.failed_attempts == 5

    def test_success_resets_counter(self, system, prof1):
        system.record_login_attempt(prof1.id, success=False)
        system.record_login_attempt(prof1.id, success=False)

        state = system.record_login_attempt(prof1.id, success=True)

        assert state.failed_attempts == 0
        assert system.identities.require(prof1.id).failed_login_attempts == 0

    def test_lock_expires_after_window(self, system, prof1, clock):
        for _ in range(5):
            system.record_login_attempt(prof1.id, success=False)

        clock.advance(minutes=15)
        state = system.record_login_attempt(prof1.id, success=False)

        assert not state.locked
        assert state.failed_attempts == 1

    def test_concurrent_failures_are_all_counted(self, system, prof1):
        barrier = threading.Barrier(4)

        def attempt():
            barrier.wait()
            system.record_login_attempt(prof1.id, success=False)

        threads = [threading.Thread(target=attempt) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stored = system.identities.require(prof1.id)
        assert stored.failed_login_attempts == 4
        assert stored.locked_until is None

    def test_concurrent_burst_locks_once(self, system, prof1):
        barrier = threading.Barrier(12)

        def attempt():
            barrier.wait()
            system.record_login_attempt(prof1.id, success=False)

        threads = [threading.Thread(target=attempt) for _ in range(12)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stored = system.identities.require(prof1.id)
        assert stored.locked_until is not None
        assert stored.failed_login_attempts >= 5
        locks = system.audit_trail.get_events_for_entity("identity", prof1.id)
        assert sum(1 for e in locks if e.event_type == AuditEventType.ACCOUNT_LOCKED) == 1

    def test_admin_unlock(self, system, prof1):
        for _ in range(5):
            system.record_login_attempt(prof1.id, success=False)

        view = system.lifecycle.unlock(prof1.id, actor_id="ADMIN")

        assert view.locked_until is None
        assert view.failed_login_attempts == 0
        assert system.lifecycle.login("prof1@school.edu", PASSWORD).status == \
            LoginStatus.AUTHENTICATED

    def test_elapsed_lock_release_keeps_newer_lock(self, clock, notifier):
        storage = RelockingStorage(clock)
        config = GateConfig(database_url="memory://", sweep_enabled=False,
                            jwt_secret="test-secret", scrypt_n=1024)
        system = AccessControlSystem(config, storage=storage, clock=clock,
                                     notifiers=[notifier])
        try:
            prof = system.create_identity("Prof Uno", "prof1@school.edu", PASSWORD,
                                          "profesor")
            for _ in range(5):
                system.record_login_attempt(prof.id, success=False)
            clock.advance(minutes=16)
            storage.armed = True

            with pytest.raises(CredentialLifecycleError) as exc_info:
                system.lifecycle.login("prof1@school.edu", PASSWORD)

            assert exc_info.value.code == "account_locked"
            assert not storage.armed
            stored = system.identities.require(prof.id)
            assert stored.locked_until == clock.now() + timedelta(minutes=15)
            assert stored.failed_login_attempts == 5
        finally:
            system.shutdown()


class TestLogin:
    """Login outcomes"""

    def test_unknown_email(self, system):
        with pytest.raises(AuthenticationError) as exc_info:
            system.lifecycle.login("nobody@school.edu", PASSWORD)
        assert exc_info.value.code == "invalid_credentials"
        assert exc_info.value.status_code == 401

    def test_inactive_account(self, system, prof1):
        system.identities.set_active(prof1.id, False)

        with pytest.raises(AuthorizationError) as exc_info:
            system.lifecycle.login("prof1@school.edu", PASSWORD)

        assert exc_info.value.code == "inactive_account"

    def test_authenticated_outcome(self, system, prof1):
        outcome = system.lifecycle.login("PROF1@school.edu", PASSWORD)

        assert outcome.status == LoginStatus.AUTHENTICATED
        assert outcome.password_warning_days is None
        subject = system.authenticate(outcome.token)
        assert subject.id == prof1.id
        assert subject.scope == TokenScope.FULL
        assert not subject.mfa_verified

    def test_warning_days_reported_on_exact_day(self, system, prof1, clock):
        clock.advance(days=83)
        assert system.lifecycle.login("prof1@school.edu", PASSWORD).password_warning_days == 7

        clock.advance(days=1)
        assert system.lifecycle.login("prof1@school.edu", PASSWORD).password_warning_days is None

    def test_mfa_required_then_verified(self, system, prof1, notifier):
        system.lifecycle.set_mfa_enabled(prof1.id, True)

        outcome = system.lifecycle.login("prof1@school.edu", PASSWORD)
        assert outcome.status == LoginStatus.MFA_REQUIRED
        assert outcome.token is None

        system.dispatcher.flush()
        code = notifier.of_kind(NotificationKind.MFA_CODE)[-1][2]["code"]
        verified = system.lifecycle.verify_mfa_login(prof1.id, code)

        assert verified.status == LoginStatus.AUTHENTICATED
        assert system.authenticate(verified.token).mfa_verified

    def test_mfa_wrong_code(self, system, prof1):
        system.lifecycle.set_mfa_enabled(prof1.id, True)
        system.lifecycle.login("prof1@school.edu", PASSWORD)

        with pytest.raises(CredentialLifecycleError) as exc_info:
            system.lifecycle.verify_mfa_login(prof1.id, "not-a-code")
        assert exc_info.value.code == "mfa_mismatch"

    def test_resend_requires_pending_login(self, system, prof1, notifier):
        with pytest.raises(AuthenticationError) as exc_info:
            system.lifecycle.resend_mfa(prof1.id)
        assert exc_info.value.code == "invalid_credentials"

        system.lifecycle.set_mfa_enabled(prof1.id, True)
        with pytest.raises(AuthenticationError):
            system.lifecycle.resend_mfa(prof1.id)

        system.dispatcher.flush()
        assert notifier.of_kind(NotificationKind.MFA_CODE) == []

    def test_code_alone_never_logs_in_without_mfa(self, system, prof1):
        code = system.issue_mfa_challenge(prof1.id)

        with pytest.raises(CredentialLifecycleError) as exc_info:
            system.lifecycle.verify_mfa_login(prof1.id, code)
        assert exc_info.value.code == "mfa_mismatch"

    def test_resend_after_password_login(self, system, prof1, notifier):
        system.lifecycle.set_mfa_enabled(prof1.id, True)
        system.lifecycle.login("prof1@school.edu", PASSWORD)

        system.lifecycle.resend_mfa(prof1.id)
        system.dispatcher.flush()
        codes = [entry[2]["code"] for entry in notifier.of_kind(NotificationKind.MFA_CODE)]

        assert len(codes) == 2
        verified = system.lifecycle.verify_mfa_login(prof1.id, codes[-1])
        assert verified.status == LoginStatus.AUTHENTICATED

    def test_guessing_burns_the_challenge(self, system, prof1, notifier):
        system.lifecycle.set_mfa_enabled(prof1.id, True)
        system.lifecycle.login("prof1@school.edu", PASSWORD)
        system.dispatcher.flush()
        code = notifier.of_kind(NotificationKind.MFA_CODE)[-1][2]["code"]
        wrong = str((int(code) + 1) % 1000000).zfill(6)

        for _ in range(3):
            with pytest.raises(CredentialLifecycleError):
                system.lifecycle.verify_mfa_login(prof1.id, wrong)
        system.lifecycle.resend_mfa(prof1.id)
        system.dispatcher.flush()
        code = notifier.of_kind(NotificationKind.MFA_CODE)[-1][2]["code"]
        wrong = str((int(code) + 1) % 1000000).zfill(6)
        for _ in range(2):
            with pytest.raises(CredentialLifecycleError):
                system.lifecycle.verify_mfa_login(prof1.id, wrong)

        with pytest.raises(CredentialLifecycleError) as exc_info:
            system.lifecycle.verify_mfa_login(prof1.id, code)
        assert exc_info.value.code == "mfa_mismatch"
        with pytest.raises(AuthenticationError):
            system.lifecycle.resend_mfa(prof1.id)

    def test_expired_password_issues_reset_token(self, system, prof1, clock, notifier):
        clock.advance(days=91)

        outcome = system.lifecycle.login("prof1@school.edu", PASSWORD)

        assert outcome.status == LoginStatus.PASSWORD_EXPIRED
        assert outcome.identity.password_expired
        assert system.authenticate(outcome.token).scope == TokenScope.PASSWORD_RESET

        system.lifecycle.login("prof1@school.edu", PASSWORD)
        system.dispatcher.flush()
        assert len(notifier.of_kind(NotificationKind.PASSWORD_EXPIRED)) == 1

    def test_reset_expired_password(self, system, prof1, clock):
        clock.advance(days=91)
        system.lifecycle.login("prof1@school.edu", PASSWORD)

        outcome = system.lifecycle.reset_expired_password(prof1.id, NEW_PASSWORD)

        assert outcome.status == LoginStatus.AUTHENTICATED
        stored = system.identities.require(prof1.id)
        assert not stored.password_expired
        assert stored.last_password_change == clock.now()
        assert system.lifecycle.login("prof1@school.edu", NEW_PASSWORD).status == \
            LoginStatus.AUTHENTICATED

    def test_reset_expired_with_mfa_requires_code(self, system, prof1, clock):
        system.lifecycle.set_mfa_enabled(prof1.id, True)
        clock.advance(days=91)
        system.lifecycle.login("prof1@school.edu", PASSWORD)

        outcome = system.lifecycle.reset_expired_password(prof1.id, NEW_PASSWORD)

        assert outcome.status == LoginStatus.MFA_REQUIRED

    def test_reset_requires_expired_password(self, system, prof1):
        with pytest.raises(PasswordPolicyError) as exc_info:
            system.lifecycle.reset_expired_password(prof1.id, NEW_PASSWORD)
        assert exc_info.value.code == "password_not_expired"


class TestPasswordChanges:
    """Self-service change rules"""

    def test_change_password(self, system, prof1):
        view = system.lifecycle.change_password(prof1.id, PASSWORD, NEW_PASSWORD)
        assert not view.password_expired
        assert system.lifecycle.login("prof1@school.edu", NEW_PASSWORD).status == \
            LoginStatus.AUTHENTICATED

    def test_wrong_current_password(self, system, prof1):
        with pytest.raises(PasswordPolicyError) as exc_info:
            system.lifecycle.change_password(prof1.id, "wrong-password", NEW_PASSWORD)
        assert exc_info.value.code == "invalid_current_password"

    def test_reusing_current_password_rejected(self, system, prof1):
        with pytest.raises(PasswordPolicyError) as exc_info:
            system.lifecycle.change_password(prof1.id, PASSWORD, PASSWORD)
        assert exc_info.value.code == "password_reused"

    def test_reusing_older_password_rejected(self, system, prof1):
        system.lifecycle.change_password(prof1.id, PASSWORD, NEW_PASSWORD)

        with pytest.raises(PasswordPolicyError) as exc_info:
            system.lifecycle.change_password(prof1.id, NEW_PASSWORD, PASSWORD)
        assert exc_info.value.code == "password_reused"

    def test_weak_password_rejected(self, system, prof1):
        with pytest.raises(PasswordPolicyError) as exc_info:
            system.lifecycle.change_password(prof1.id, PASSWORD, "weak")
        assert exc_info.value.code == "weak_password"
        assert exc_info.value.status_code == 400
        assert exc_info.value.detail["violations"]

    def test_create_identity_validates_password(self, system):
        with pytest.raises(PasswordPolicyError):
            system.create_identity("Weak", "weak@school.edu", "weak", "profesor")

    def test_lowercase_not_required(self, system):
        identity = system.create_identity("Caps", "caps@school.edu", "PROF3SOR!SECURE",
                                          "profesor")
        assert identity.email == "caps@school.edu"


class TestPasswordLifecycleStatus:
    """Age computation"""

    def test_fresh_password(self, system, prof1):
        status = system.check_password_lifecycle(prof1.id)
        assert not status.expired
        assert status.days_remaining == 90
        assert status.warn_days_remaining is None

    @pytest.mark.parametrize("age_days,warn", [(83, 7), (87, 3), (89, 1), (84, None),
                                               (88, None)])
    def test_warning_only_on_exact_days(self, prof1, clock, age_days, warn):
        status = check_password_lifecycle(prof1, clock.now() + timedelta(days=age_days))
        assert not status.expired
        assert status.warn_days_remaining == warn

    def test_expired_at_ninety_days(self, prof1, clock):
        status = check_password_lifecycle(prof1, clock.now() + timedelta(days=90))
        assert status.expired
        assert status.days_remaining == 0

    def test_missing_change_time_counts_as_expired(self, system, prof1):
        system.storage.compare_and_set(IDENTITIES_TABLE, prof1.id, {},
                                       {"last_password_change": None})
        assert system.check_password_lifecycle(prof1.id).expired

    def test_expired_flag_wins(self, system, prof1):
        system.identities.mark_password_expired(prof1.id)
        assert system.check_password_lifecycle(prof1.id).expired
