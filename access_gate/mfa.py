"""
MFA Challenge Module

One-time numeric codes sent by email. At most one challenge is outstanding per
identity; issuing a new one overwrites the previous. Only a keyed digest of the code
is stored.
"""

import hashlib
import hmac
import secrets
import uuid
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Optional

from .audit import AuditEventType, AuditTrail
from .clock import Clock, SystemClock, parse_timestamp
from .identity import IdentityStore
from .logging_config import get_logger, log_action
from .notifier import NotificationDispatcher, NotificationKind


MFA_TABLE = "mfa_challenges"

logger = get_logger("access_gate.mfa")


class MFAVerification(Enum):
    OK = "ok"
    EXPIRED = "expired"
    MISMATCH = "mismatch"


class MFAManager:
    """Issues and verifies email one-time codes"""

    def __init__(self, identities: IdentityStore, dispatcher: NotificationDispatcher,
                 secret_key: str, clock: Optional[Clock] = None,
                 audit: Optional[AuditTrail] = None,
                 code_length: int = 6, ttl_seconds: int = 300, max_attempts: int = 5):
        self.identities = identities
        self.storage = identities.storage
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.audit = audit
        self.code_length = code_length
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_attempts = max_attempts
        self._key = secret_key.encode()

    def _digest(self, challenge_id: str, code: str) -> str:
        message = f"{challenge_id}:{code}".encode()
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def _generate_code(self) -> str:
        return str(secrets.randbelow(10 ** self.code_length)).zfill(self.code_length)

    def issue_challenge(self, identity_id: str, attempts: int = 0) -> str:
        """
        Create the identity's single outstanding code and send it by email.

        Returns the plaintext code. Delivery happens in the background. ``attempts``
        seeds the wrong-guess counter so a resend does not reset it.
        """
        identity = self.identities.require(identity_id)
        code = self._generate_code()
        challenge_id = str(uuid.uuid4())
        now = self.clock.now()

        self.storage.save(MFA_TABLE, identity_id, {
            "id": identity_id,
            "challenge_id": challenge_id,
            "code_digest": self._digest(challenge_id, code),
            "issued_at": now.isoformat(),
            "consumed": False,
            "attempts": attempts,
        })

        self.dispatcher.dispatch(NotificationKind.MFA_CODE, identity.email, {
            "name": identity.name,
            "code": code,
            "ttl_minutes": int(self.ttl.total_seconds() // 60),
        })
        log_action(logger, "info", "MFA challenge issued", identity_id=identity_id,
                   action="mfa_challenge_issued")
        if self.audit:
            self.audit.log_event(AuditEventType.MFA_CHALLENGE_ISSUED, 'identity',
                                 identity_id, {'challenge_id': challenge_id}, identity_id)
        return code

    def pending_challenge(self, identity_id: str) -> Optional[Dict[str, Any]]:
        """The outstanding, unconsumed challenge record, if any"""
        challenge = self.storage.load(MFA_TABLE, identity_id)
        if challenge is None or challenge.get("consumed"):
            return None
        return challenge

    def reissue_challenge(self, identity_id: str) -> Optional[str]:
        """
        Replace a pending challenge with a fresh code, keeping its wrong-guess count.

        Returns None when nothing is pending.
        """
        challenge = self.pending_challenge(identity_id)
        if challenge is None:
            return None
        return self.issue_challenge(identity_id, attempts=challenge.get("attempts", 0))

    def _record_miss(self, identity_id: str, challenge_id: str) -> None:
        """Count a wrong code; the challenge is burned once the cap is reached"""
        attempts = self.storage.increment(MFA_TABLE, identity_id, "attempts", 1)
        if attempts is None or attempts < self.max_attempts:
            return
        if self.storage.compare_and_set(MFA_TABLE, identity_id,
                                        {"challenge_id": challenge_id, "consumed": False},
                                        {"consumed": True}):
            log_action(logger, "warning", "MFA challenge burned after failed attempts",
                       identity_id=identity_id, action="mfa_verify",
                       reason="mfa_attempts_exceeded", extra={"attempts": attempts})

    def verify_challenge(self, identity_id: str, code: str) -> MFAVerification:
        """
        Check a code against the outstanding challenge.

        Expiry is checked before the digits, so a correct but late code is EXPIRED.
        A successful check consumes the challenge. Wrong codes are counted, and the
        challenge is burned after ``max_attempts`` of them.
        """
        challenge = self.storage.load(MFA_TABLE, identity_id)
        if challenge is None or challenge.get("consumed"):
            result = MFAVerification.MISMATCH
        elif self.clock.now() > parse_timestamp(challenge["issued_at"]) + self.ttl:
            result = MFAVerification.EXPIRED
        elif not hmac.compare_digest(self._digest(challenge["challenge_id"], code or ""),
                                     challenge["code_digest"]):
            result = MFAVerification.MISMATCH
            self._record_miss(identity_id, challenge["challenge_id"])
        elif self.storage.compare_and_set(
                MFA_TABLE, identity_id,
                {"challenge_id": challenge["challenge_id"], "consumed": False},
                {"consumed": True}):
            result = MFAVerification.OK
        else:
            # Consumed or replaced by a concurrent request
            result = MFAVerification.MISMATCH

        log_action(logger, "info" if result == MFAVerification.OK else "warning",
                   f"MFA verification {result.value}", identity_id=identity_id,
                   action="mfa_verify", reason=None if result == MFAVerification.OK
                   else f"mfa_{result.value}")
        if self.audit:
            event = (AuditEventType.MFA_VERIFIED if result == MFAVerification.OK
                     else AuditEventType.MFA_FAILED)
            self.audit.log_event(event, 'identity', identity_id,
                                 {'result': result.value}, identity_id)
        return result
