"""
Credential Store Module

Identities (login credentials, role, lifecycle state) and their password history.
Password hashes are only ever written through ``set_password``/``create_identity``,
which hash explicitly before persistence.
"""

import threading
import uuid
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .audit import AuditEventType, AuditTrail
from .clock import Clock, SystemClock, format_timestamp, parse_timestamp
from .errors import CorruptRecordError, NotFoundError, PolicyAdminError
from .logging_config import get_logger, log_action
from .passwords import hash_password
from .storage import StorageInterface, StorageRecord


IDENTITIES_TABLE = "identities"
PASSWORD_HISTORY_TABLE = "password_history"

logger = get_logger("access_gate.identity")

_TIMESTAMP_FIELDS = ("created_at", "updated_at", "last_login", "locked_until",
                     "last_password_change")


@dataclass
class Identity(StorageRecord):
    """Stored login identity, including the password hash"""
    name: str
    email: str
    password_hash: str
    role: str
    is_active: bool = True
    last_login: Optional[datetime] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_password_change: Optional[datetime] = None
    password_expired: bool = False
    mfa_enabled: bool = False
    phone: Optional[str] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def view(self) -> 'IdentityView':
        return IdentityView(**{f.name: getattr(self, f.name)
                               for f in fields(IdentityView)})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Identity':
        data = dict(data)
        for name in _TIMESTAMP_FIELDS:
            data[name] = parse_timestamp(data.get(name))
        known = {f.name for f in fields(cls)}
        identity = cls(**{k: v for k, v in data.items() if k in known})
        if not identity.password_hash:
            raise ValueError("identity has no password hash")
        return identity


@dataclass
class IdentityView:
    """Public projection of an Identity. Never carries the password hash."""
    id: str
    name: str
    email: str
    role: str
    is_active: bool
    last_login: Optional[datetime]
    failed_login_attempts: int
    locked_until: Optional[datetime]
    last_password_change: Optional[datetime]
    password_expired: bool
    mfa_enabled: bool
    phone: Optional[str]
    created_at: datetime
    updated_at: datetime

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def to_dict(self) -> Dict[str, Any]:
        result = {f.name: getattr(self, f.name) for f in fields(self)}
        for name in _TIMESTAMP_FIELDS:
            if name in result:
                result[name] = format_timestamp(result[name])
        return result


def normalize_email(email: str) -> str:
    return email.strip().lower()


class IdentityStore:
    """Persistence and mutation of identities and password history"""

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None,
                 audit: Optional[AuditTrail] = None,
                 role_resolves: Optional[Callable[[str], bool]] = None,
                 scrypt_n: int = 16384):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.audit = audit
        self.role_resolves = role_resolves
        self.scrypt_n = scrypt_n
        self._lock = threading.Lock()

    # Reads

    def _decode(self, data: Dict[str, Any]) -> Identity:
        try:
            return Identity.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptRecordError(IDENTITIES_TABLE, str(data.get("id")), e)

    def get(self, identity_id: str) -> Optional[Identity]:
        """Load an identity. Raises CorruptRecordError if the record can't be decoded."""
        data = self.storage.load(IDENTITIES_TABLE, identity_id)
        if data is None:
            return None
        return self._decode(data)

    def require(self, identity_id: str) -> Identity:
        identity = self.get(identity_id)
        if identity is None:
            raise NotFoundError("not_found", "Identity not found",
                                {"identity_id": identity_id})
        return identity

    def get_by_email(self, email: str) -> Optional[Identity]:
        matches = self.storage.find(IDENTITIES_TABLE, {"email": normalize_email(email)})
        if not matches:
            return None
        return self.get(matches[0]["id"])

    def list_identities(self, role: Optional[str] = None,
                        is_active: Optional[bool] = None) -> List[Identity]:
        """Matching identities, oldest first. Undecodable records are logged and skipped."""
        filters = {}
        if role is not None:
            filters["role"] = role
        if is_active is not None:
            filters["is_active"] = is_active
        identities = []
        for data in self.storage.find(IDENTITIES_TABLE, filters):
            try:
                identities.append(self._decode(data))
            except CorruptRecordError as e:
                log_action(logger, "error", str(e), identity_id=str(data.get("id")),
                           action="list_identities", reason="corrupt_record")
        identities.sort(key=lambda i: i.created_at)
        return identities

    # Writes

    def _check_role(self, role: str) -> None:
        if self.role_resolves is not None and not self.role_resolves(role):
            raise PolicyAdminError("unknown_role",
                                   f"Role '{role}' does not resolve to any policy",
                                   {"role": role})

    def create_identity(self, name: str, email: str, password: str, role: str,
                        phone: Optional[str] = None, mfa_enabled: bool = False,
                        is_active: bool = True,
                        actor_id: Optional[str] = None) -> Identity:
        """Create an identity, hashing the password and starting its history"""
        self._check_role(role)
        email = normalize_email(email)

        with self._lock:
            if self.storage.find(IDENTITIES_TABLE, {"email": email}):
                raise PolicyAdminError("duplicate_email", "Email already registered",
                                       {"email": email})

            now = self.clock.now()
            identity = Identity(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                name=name,
                email=email,
                password_hash=hash_password(password, self.scrypt_n),
                role=role,
                is_active=is_active,
                last_password_change=now,
                mfa_enabled=mfa_enabled,
                phone=phone,
            )
            self.storage.save(IDENTITIES_TABLE, identity.id, identity.to_dict())
            self._append_history(identity.id, identity.password_hash, now)

        if self.audit:
            self.audit.log_event(AuditEventType.IDENTITY_CREATED, 'identity', identity.id,
                                 {'email': email, 'role': role}, actor_id)
        return identity

    def _update(self, identity_id: str, updates: Dict[str, Any]) -> Identity:
        """Apply a partial update in one storage operation, leaving other fields as stored"""
        changes = {key: format_timestamp(value) if isinstance(value, datetime) else value
                   for key, value in updates.items()}
        changes["updated_at"] = format_timestamp(self.clock.now())
        if not self.storage.compare_and_set(IDENTITIES_TABLE, identity_id, {}, changes):
            raise NotFoundError("not_found", "Identity not found",
                                {"identity_id": identity_id})
        return self.require(identity_id)

    def set_password(self, identity_id: str, password: str) -> Identity:
        """Hash and store a new password, clear the expired flag and record history"""
        now = self.clock.now()
        password_hash = hash_password(password, self.scrypt_n)
        identity = self._update(identity_id, {
            "password_hash": password_hash,
            "last_password_change": now,
            "password_expired": False,
        })
        self._append_history(identity_id, password_hash, now)
        return identity

    def update_profile(self, identity_id: str, name: Optional[str] = None,
                       email: Optional[str] = None,
                       phone: Optional[str] = None) -> Identity:
        updates = {}
        if name is not None:
            updates["name"] = name
        if phone is not None:
            updates["phone"] = phone
        with self._lock:
            if email is not None:
                email = normalize_email(email)
                clash = [d for d in self.storage.find(IDENTITIES_TABLE, {"email": email})
                         if d["id"] != identity_id]
                if clash:
                    raise PolicyAdminError("duplicate_email", "Email already registered",
                                           {"email": email})
                updates["email"] = email
            identity = self._update(identity_id, updates)
        if self.audit:
            self.audit.log_event(AuditEventType.IDENTITY_UPDATED, 'identity', identity_id,
                                 {'fields': sorted(updates)}, identity_id)
        return identity

    def change_role(self, identity_id: str, role: str,
                    actor_id: Optional[str] = None) -> Identity:
        self._check_role(role)
        previous = self.require(identity_id).role
        identity = self._update(identity_id, {"role": role})
        if self.audit:
            self.audit.log_event(AuditEventType.IDENTITY_ROLE_CHANGED, 'identity',
                                 identity_id, {'from': previous, 'to': role}, actor_id)
        return identity

    def set_active(self, identity_id: str, active: bool,
                   actor_id: Optional[str] = None) -> Identity:
        identity = self._update(identity_id, {"is_active": active})
        if self.audit:
            event = (AuditEventType.IDENTITY_ACTIVATED if active
                     else AuditEventType.IDENTITY_DEACTIVATED)
            self.audit.log_event(event, 'identity', identity_id, {}, actor_id)
        return identity

    def set_mfa_enabled(self, identity_id: str, enabled: bool) -> Identity:
        identity = self._update(identity_id, {"mfa_enabled": enabled})
        if self.audit:
            self.audit.log_event(AuditEventType.MFA_SETTINGS_CHANGED, 'identity',
                                 identity_id, {'mfa_enabled': enabled}, identity_id)
        return identity

    def mark_password_expired(self, identity_id: str) -> bool:
        """Set the expired flag. Returns False if it was already set."""
        return self.storage.compare_and_set(
            IDENTITIES_TABLE, identity_id, {"password_expired": False},
            {"password_expired": True, "updated_at": format_timestamp(self.clock.now())})

    def record_password_change_time(self, identity_id: str) -> Identity:
        """Stamp last_password_change with now (for identities that never had one)"""
        return self._update(identity_id, {"last_password_change": self.clock.now()})

    # Password history

    def _append_history(self, identity_id: str, password_hash: str,
                        changed_at: datetime) -> None:
        entry_id = str(uuid.uuid4())
        self.storage.save(PASSWORD_HISTORY_TABLE, entry_id, {
            "id": entry_id,
            "identity_id": identity_id,
            "password_hash": password_hash,
            "changed_at": format_timestamp(changed_at),
        })

    def recent_password_hashes(self, identity_id: str, depth: int) -> List[str]:
        """The newest ``depth`` password hashes, newest last"""
        entries = self.storage.find(PASSWORD_HISTORY_TABLE, {"identity_id": identity_id})
        entries.sort(key=lambda e: e["changed_at"])
        return [e["password_hash"] for e in entries[-depth:]] if depth > 0 else []
