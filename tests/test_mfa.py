"""
Tests for email MFA challenges
"""

import threading

import pytest

from access_gate.audit import AuditTrail, AuditEventType
from access_gate.clock import ManualClock
from access_gate.identity import IdentityStore
from access_gate.mfa import MFA_TABLE, MFAManager, MFAVerification
from access_gate.notifier import NotificationDispatcher, NotificationKind, Notifier
from access_gate.storage import InMemoryStorage


class RecordingNotifier(Notifier):
    """Keeps every notice it is handed"""

    def __init__(self):
        self.sent = []
        self._lock = threading.Lock()

    def send(self, kind, recipient, data):
        with self._lock:
            self.sent.append((kind, recipient, data))
        return True


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def audit(storage, clock):
    return AuditTrail(storage, clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier):
    pool = NotificationDispatcher([notifier], max_workers=1)
    yield pool
    pool.shutdown()


@pytest.fixture
def identities(storage, clock, audit):
    return IdentityStore(storage, clock, audit, scrypt_n=1024)


@pytest.fixture
def mfa(identities, dispatcher, clock, audit):
    return MFAManager(identities, dispatcher, "test-secret", clock, audit)


@pytest.fixture
def identity(identities):
    return identities.create_identity("Prof Uno", "prof1@school.edu", "Prof3sor!Secure",
                                      "profesor", mfa_enabled=True)


class TestIssueChallenge:
    """Code generation and delivery"""

    def test_code_format(self, mfa, identity):
        code = mfa.issue_challenge(identity.id)
        assert len(code) == 6
        assert code.isdigit()

    def test_code_is_emailed(self, mfa, identity, dispatcher, notifier):
        code = mfa.issue_challenge(identity.id)
        dispatcher.flush()

        kind, recipient, data = notifier.sent[-1]
        assert kind == NotificationKind.MFA_CODE
        assert recipient == "prof1@school.edu"
        assert data["code"] == code
        assert data["ttl_minutes"] == 5

    def test_only_digest_is_stored(self, mfa, identity, storage):
        code = mfa.issue_challenge(identity.id)

        stored = storage.load(MFA_TABLE, identity.id)
        assert code not in stored.values()
        assert stored["consumed"] is False
        assert len(stored["code_digest"]) == 64

    def test_custom_length(self, identities, dispatcher, clock, identity):
        manager = MFAManager(identities, dispatcher, "test-secret", clock, code_length=8)
        assert len(manager.issue_challenge(identity.id)) == 8


class TestVerifyChallenge:
    """Verification outcomes"""

    def test_correct_code(self, mfa, identity, audit):
        code = mfa.issue_challenge(identity.id)
        assert mfa.verify_challenge(identity.id, code) == MFAVerification.OK
        assert audit.get_events_by_type(AuditEventType.MFA_VERIFIED)

    def test_code_is_single_use(self, mfa, identity):
        code = mfa.issue_challenge(identity.id)
        mfa.verify_challenge(identity.id, code)
        assert mfa.verify_challenge(identity.id, code) == MFAVerification.MISMATCH

    def test_wrong_code(self, mfa, identity):
        code = mfa.issue_challenge(identity.id)
        wrong = str((int(code) + 1) % 1000000).zfill(6)

        assert mfa.verify_challenge(identity.id, wrong) == MFAVerification.MISMATCH
        # A wrong guess does not burn the challenge
        assert mfa.verify_challenge(identity.id, code) == MFAVerification.OK

    def test_wrong_codes_up_to_the_cap(self, mfa, identity):
        code = mfa.issue_challenge(identity.id)
        wrong = str((int(code) + 1) % 1000000).zfill(6)

        for _ in range(4):
            assert mfa.verify_challenge(identity.id, wrong) == MFAVerification.MISMATCH
        assert mfa.verify_challenge(identity.id, code) == MFAVerification.OK

    def test_challenge_burned_at_the_cap(self, mfa, identity, storage):
        code = mfa.issue_challenge(identity.id)
        wrong = str((int(code) + 1) % 1000000).zfill(6)

        for _ in range(5):
            assert mfa.verify_challenge(identity.id, wrong) == MFAVerification.MISMATCH

        assert mfa.verify_challenge(identity.id, code) == MFAVerification.MISMATCH
        stored = storage.load(MFA_TABLE, identity.id)
        assert stored["consumed"]
        assert stored["attempts"] == 5
        assert mfa.pending_challenge(identity.id) is None

    def test_expired_after_five_minutes(self, mfa, identity, clock):
        code = mfa.issue_challenge(identity.id)
        clock.advance(minutes=5, seconds=1)
        assert mfa.verify_challenge(identity.id, code) == MFAVerification.EXPIRED

    def test_valid_at_exactly_five_minutes(self, mfa, identity, clock):
        code = mfa.issue_challenge(identity.id)
        clock.advance(minutes=5)
        assert mfa.verify_challenge(identity.id, code) == MFAVerification.OK

    def test_expiry_checked_before_digits(self, mfa, identity, clock):
        mfa.issue_challenge(identity.id)
        clock.advance(minutes=6)
        assert mfa.verify_challenge(identity.id, "000000x") == MFAVerification.EXPIRED

    def test_new_challenge_replaces_old(self, mfa, identity):
        first = mfa.issue_challenge(identity.id)
        second = mfa.issue_challenge(identity.id)

        if first != second:
            assert mfa.verify_challenge(identity.id, first) == MFAVerification.MISMATCH
        assert mfa.verify_challenge(identity.id, second) == MFAVerification.OK

    def test_no_challenge(self, mfa, identity):
        assert mfa.verify_challenge(identity.id, "123456") == MFAVerification.MISMATCH

    def test_concurrent_verification_has_one_winner(self, mfa, identity):
        code = mfa.issue_challenge(identity.id)
        barrier = threading.Barrier(5)
        results = []

        def verify():
            barrier.wait()
            results.append(mfa.verify_challenge(identity.id, code))

        threads = [threading.Thread(target=verify) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(MFAVerification.OK) == 1


class TestReissueChallenge:
    """Resending a code for a pending login"""

    def test_nothing_pending(self, mfa, identity):
        assert mfa.reissue_challenge(identity.id) is None

    def test_nothing_pending_after_success(self, mfa, identity):
        code = mfa.issue_challenge(identity.id)
        mfa.verify_challenge(identity.id, code)
        assert mfa.reissue_challenge(identity.id) is None

    def test_new_code_replaces_pending(self, mfa, identity, dispatcher, notifier):
        mfa.issue_challenge(identity.id)
        code = mfa.reissue_challenge(identity.id)
        dispatcher.flush()

        assert len(notifier.sent) == 2
        assert notifier.sent[-1][2]["code"] == code
        assert mfa.verify_challenge(identity.id, code) == MFAVerification.OK

    def test_wrong_guesses_carry_over(self, mfa, identity):
        code = mfa.issue_challenge(identity.id)
        wrong = str((int(code) + 1) % 1000000).zfill(6)
        for _ in range(3):
            mfa.verify_challenge(identity.id, wrong)

        code = mfa.reissue_challenge(identity.id)
        wrong = str((int(code) + 1) % 1000000).zfill(6)
        for _ in range(2):
            mfa.verify_challenge(identity.id, wrong)

        assert mfa.verify_challenge(identity.id, code) == MFAVerification.MISMATCH
        assert mfa.reissue_challenge(identity.id) is None
