"""Core utilities for the Parley backend."""

from .security import Principal, create_access_token, verify_credential

__all__ = ["Principal", "create_access_token", "verify_credential"]
