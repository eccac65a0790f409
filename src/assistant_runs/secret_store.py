from __future__ import annotations

import os
from typing import Protocol, runtime_checkable


@runtime_checkable
class SecretStore(Protocol):
    async def resolve(self, reference: str) -> str | None: ...


class EnvSecretStore:
    """Resolves a secret reference to an environment variable.

    ``env:NAME`` and a bare ``NAME`` both read ``os.environ[NAME]``; blank
    values count as absent.
    """

    async def resolve(self, reference: str) -> str | None:
        name = reference.split(":", 1)[1] if reference.startswith("env:") else reference
        value = os.environ.get(name.strip(), "")
        return value.strip() or None


class InMemorySecretStore:
    def __init__(self, secrets: dict[str, str] | None = None):
        self._secrets = dict(secrets or {})

    def set(self, reference: str, secret: str) -> None:
        self._secrets[reference] = secret

    def remove(self, reference: str) -> bool:
        return self._secrets.pop(reference, None) is not None

    async def resolve(self, reference: str) -> str | None:
        return self._secrets.get(reference)
