"""
Secrets feature — narrow adapter over an external key/value secret store.

Public API:
    from features.secrets import SecretStoreAdapter, EnvSecretBackend, MappingSecretBackend, redact
"""

from features.secrets.store import (
    EnvSecretBackend,
    MappingSecretBackend,
    SecretStoreAdapter,
    redact,
)

__all__ = ["EnvSecretBackend", "MappingSecretBackend", "SecretStoreAdapter", "redact"]
