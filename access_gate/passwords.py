"""
Password Hashing and Policy Module

scrypt password hashing with per-password salts, and validation of new passwords
against the complexity rules.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import List, Tuple


HASH_SCHEME = "scrypt"


@dataclass
class PasswordPolicy:
    """Password policy configuration"""
    min_length: int = 12
    require_uppercase: bool = True
    require_digit: bool = True
    require_special: bool = True
    special_chars: str = '!@#$%^&*(),.?":{}|<>'
    history_depth: int = 5
    max_age_days: int = 90

    @classmethod
    def from_config(cls, config) -> 'PasswordPolicy':
        return cls(
            min_length=config.password_min_length,
            special_chars=config.password_symbols,
            history_depth=config.password_history_depth,
            max_age_days=config.password_expiry_days,
        )


def _generate_salt() -> str:
    return secrets.token_hex(16)


def _scrypt(password: str, salt: str, n: int) -> str:
    return hashlib.scrypt(password.encode(), salt=salt.encode(), n=n, r=8, p=1).hex()


def hash_password(password: str, n: int = 16384) -> str:
    """
    Hash a password for storage.

    Returns a self-describing string ``scrypt$<n>$<salt>$<digest>`` so the cost
    parameter can change without invalidating stored hashes.
    """
    if not password:
        raise ValueError("Password must not be empty")
    salt = _generate_salt()
    return f"{HASH_SCHEME}${n}${salt}${_scrypt(password, salt, n)}"


def verify_password(password: str, password_hash: str) -> bool:
    """Check a plaintext password against a stored hash in constant time"""
    if not password or not password_hash:
        return False
    try:
        scheme, n, salt, digest = password_hash.split("$")
        cost = int(n)
    except ValueError:
        return False
    if scheme != HASH_SCHEME:
        return False
    return hmac.compare_digest(_scrypt(password, salt, cost), digest)


def validate_password(password: str, policy: PasswordPolicy) -> Tuple[bool, List[str]]:
    """Validate password against policy"""
    violations = []

    if len(password) < policy.min_length:
        violations.append(f"Minimum length {policy.min_length}")

    if policy.require_uppercase and not any(c.isupper() for c in password):
        violations.append("Must contain uppercase letter")

    if policy.require_digit and not any(c.isdigit() for c in password):
        violations.append("Must contain digit")

    if policy.require_special and not any(c in policy.special_chars for c in password):
        violations.append("Must contain special character")

    return len(violations) == 0, violations
