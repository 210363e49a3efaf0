"""
Pydantic schemas for API requests
"""

from typing import List, Optional
from pydantic import BaseModel, Field


EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: str = Field(..., pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=1)
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    email: str = Field(..., pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=1)


class VerifyMFARequest(BaseModel):
    identity_id: str
    code: str = Field(..., pattern=r"^\d{4,10}$")


class ResendMFARequest(BaseModel):
    identity_id: str


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class ResetExpiredPasswordRequest(BaseModel):
    new_password: str


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    email: Optional[str] = Field(None, pattern=EMAIL_PATTERN)
    phone: Optional[str] = None


class MFASettingsRequest(BaseModel):
    enabled: bool


class CreateRoleRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    code: str = Field(..., min_length=2, max_length=50)
    description: str = ""
    color: Optional[str] = None
    permission_ids: List[str] = Field(default_factory=list)


class UpdateRoleRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    code: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    is_active: Optional[bool] = None


class AssignPermissionsRequest(BaseModel):
    permission_ids: List[str]


class CreatePermissionRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    code: str = Field(..., min_length=2, max_length=100)
    description: str = ""
    category: Optional[str] = None


class UpdatePermissionRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = None
    category: Optional[str] = None
    is_active: Optional[bool] = None


class CreateUserRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: str = Field(..., pattern=EMAIL_PATTERN)
    password: str
    role: str
    phone: Optional[str] = None
    mfa_enabled: bool = False


class ChangeRoleRequest(BaseModel):
    role: str
