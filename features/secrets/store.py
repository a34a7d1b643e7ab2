"""
Secret Store Adapter — resolves named secrets at stage-execution time.

Values are resolved fresh for every stage attempt and never cached, so a
rotated secret is picked up on the next attempt. Only secret *names* are
ever logged or persisted.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Iterable, Mapping, Protocol

from models.errors import SecretNotFoundError, SecretStoreUnavailableError
from models.schemas import SecretReference

log = logging.getLogger(__name__)

REDACTED = "***"


class SecretBackend(Protocol):
    def get(self, name: str, scope: str | None) -> str | None:
        """Return the value, None if missing. Raise SecretStoreUnavailableError on outage."""
        ...


class EnvSecretBackend:
    """Reads secrets from the process environment (populated from .env).

    A scoped secret ``registry_password`` in scope ``web`` is looked up as
    ``WEB__REGISTRY_PASSWORD`` first, then ``REGISTRY_PASSWORD``.
    """

    def __init__(self, environ: Mapping[str, str] | None = None):
        self._environ = environ if environ is not None else os.environ

    def get(self, name: str, scope: str | None) -> str | None:
        keys = [name.upper()]
        if scope:
            keys.insert(0, f"{scope}__{name}".upper().replace("-", "_"))
        for key in keys:
            value = self._environ.get(key)
            if value is not None:
                return value
        return None


class MappingSecretBackend:
    """In-memory backend keyed by (scope, name) or bare name."""

    def __init__(self, values: Mapping[Any, str] | None = None):
        self.values: dict[Any, str] = dict(values or {})
        self.lookups = 0

    def get(self, name: str, scope: str | None) -> str | None:
        self.lookups += 1
        if (scope, name) in self.values:
            return self.values[(scope, name)]
        return self.values.get(name)


class SecretStoreAdapter:
    """Resolves a stage's secret references through a backend."""

    def __init__(self, backend: SecretBackend, default_scope: str | None = None):
        self._backend = backend
        self._default_scope = default_scope

    def resolve(
        self,
        refs: Iterable[SecretReference | str],
        scope: str | None = None,
    ) -> dict[str, str]:
        """Resolve every reference; fail on the first missing name."""
        resolved: dict[str, str] = {}
        for ref in sorted(_as_refs(refs), key=lambda r: r.name):
            ref_scope = ref.scope or scope or self._default_scope
            try:
                value = self._backend.get(ref.name, ref_scope)
            except SecretStoreUnavailableError:
                raise
            except Exception as e:
                raise SecretStoreUnavailableError(
                    f"Secret backend failed while resolving {ref.name}: {type(e).__name__}"
                ) from e
            if value is None:
                raise SecretNotFoundError(ref.name, ref_scope)
            resolved[ref.name] = value
        log.info("Resolved %d secret(s): %s", len(resolved), ", ".join(resolved) or "-")
        return resolved


def _as_refs(refs: Iterable[SecretReference | str]) -> list[SecretReference]:
    return [r if isinstance(r, SecretReference) else SecretReference(r) for r in refs]


def redact(value: Any, secrets: Mapping[str, str]) -> Any:
    """Replace every resolved secret value found in a payload with ***."""
    if not secrets:
        return value
    if isinstance(value, str):
        for secret in sorted(secrets.values(), key=len, reverse=True):
            if secret:
                value = value.replace(secret, REDACTED)
        return value
    if isinstance(value, dict):
        return {k: redact(v, secrets) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(v, secrets) for v in value]
    return value
