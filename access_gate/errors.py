"""
Error Taxonomy

Every denial carries a stable machine-readable code and the HTTP status it maps to at
the API boundary. Denials are definitive for the request that raised them.
"""

from typing import Any, Dict, Optional


class AccessGateError(Exception):
    """Base class for all access-control errors"""

    status_code: int = 400
    default_code: str = "error"

    def __init__(self, code: Optional[str] = None, message: Optional[str] = None,
                 detail: Optional[Dict[str, Any]] = None,
                 status_code: Optional[int] = None):
        self.code = code or self.default_code
        self.message = message or self.code.replace("_", " ")
        self.detail = detail or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": False, "error": self.code, "message": self.message}
        body.update(self.detail)
        return body


class AuthenticationError(AccessGateError):
    """Credential could not be verified (401). Callers must re-authenticate."""
    status_code = 401
    default_code = "invalid_token"


class AuthorizationError(AccessGateError):
    """Authenticated identity may not perform the operation (403)"""
    status_code = 403
    default_code = "insufficient_permission"


class CredentialLifecycleError(AccessGateError):
    """Credential state blocks the request: locked, expired, MFA (403)"""
    status_code = 403
    default_code = "account_locked"


class PasswordPolicyError(CredentialLifecycleError):
    """New password rejected by policy or history (400)"""
    status_code = 400
    default_code = "weak_password"


class PolicyAdminError(AccessGateError):
    """Dynamic policy mutation rejected (400)"""
    status_code = 400
    default_code = "duplicate_code"

    def __init__(self, code: Optional[str] = None, message: Optional[str] = None,
                 detail: Optional[Dict[str, Any]] = None,
                 status_code: Optional[int] = None):
        if status_code is None and code == "system_role_protected":
            status_code = 403
        super().__init__(code, message, detail, status_code)


class NotFoundError(AccessGateError):
    """Referenced entity does not exist (404)"""
    status_code = 404
    default_code = "not_found"


class CorruptRecordError(Exception):
    """A stored record could not be decoded"""

    def __init__(self, table: str, record_id: str, cause: Exception):
        super().__init__(f"Corrupt record {table}/{record_id}: {cause}")
        self.table = table
        self.record_id = record_id
        self.cause = cause
