"""Configuration helpers for mailsync."""

from .credentials import AuthMechanism, CredentialResolver, Credentials
from .settings import Settings, load_settings

__all__ = [
    "AuthMechanism",
    "CredentialResolver",
    "Credentials",
    "Settings",
    "load_settings",
]
