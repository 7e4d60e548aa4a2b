"""Resolve connection credential references to secrets.

Connections never store secrets directly. Their ``auth_ref`` names where the
secret lives:

* ``env:NAME`` - the ``NAME`` environment variable
* ``keyring:NAME`` - the OS keychain entry ``NAME`` under the configured service

Sync only ever reads credentials; rotating them is the job of the
account-settings flows.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

import keyring
from keyring.errors import KeyringError

from mailsync.errors import AuthenticationError

from .settings import DEFAULT_SECRETS_SERVICE


class AuthMechanism(str, Enum):
    """How a session authenticates with the secret."""

    PASSWORD = "password"
    OAUTH2 = "oauth2"


@dataclass(frozen=True)
class Credentials:
    """Resolved credentials, kept in memory only for the session's lifetime."""

    username: str
    secret: str
    mechanism: AuthMechanism = AuthMechanism.PASSWORD

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, mechanism={self.mechanism.value!r})"


@dataclass
class CredentialResolver:
    """Look up secrets referenced by ``auth_ref`` strings."""

    service_name: str = DEFAULT_SECRETS_SERVICE
    keyring_module: Any = field(default=keyring)
    environ: Optional[Mapping[str, str]] = None

    def resolve(
        self,
        auth_ref: str,
        *,
        username: str,
        mechanism: AuthMechanism = AuthMechanism.PASSWORD,
    ) -> Credentials:
        """Return credentials for ``auth_ref``.

        Raises:
            AuthenticationError: If the reference is malformed or the secret is absent
        """
        scheme, _, name = auth_ref.partition(":")
        if not name:
            raise AuthenticationError(
                f"Malformed credential reference {auth_ref!r}",
                details={"auth_ref": auth_ref},
            )

        if scheme == "env":
            environ = os.environ if self.environ is None else self.environ
            secret = environ.get(name)
        elif scheme == "keyring":
            try:
                secret = self.keyring_module.get_password(self.service_name, name)
            except KeyringError as exc:
                raise AuthenticationError(
                    f"Keyring lookup failed for {name!r}: {exc}",
                    details={"auth_ref": auth_ref},
                ) from exc
        else:
            raise AuthenticationError(
                f"Unsupported credential scheme {scheme!r}",
                details={"auth_ref": auth_ref},
            )

        if not secret:
            raise AuthenticationError(
                f"No secret stored for {auth_ref!r}",
                details={"auth_ref": auth_ref},
            )
        return Credentials(username=username, secret=secret, mechanism=AuthMechanism(mechanism))


__all__ = ["AuthMechanism", "CredentialResolver", "Credentials"]
