"""
Access Gate

Admission control for privileged operations: bearer authentication, credential
lifecycle (lockout, password expiry, MFA) and role-based authorization backed by a
static policy table and an admin-editable dynamic policy store.
"""

__version__ = "1.0.0"
