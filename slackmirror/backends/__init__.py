"""
Platform backends package.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass

from loguru import logger

from slackmirror.backends.base import (
    CommandResult,
    CredentialProbe,
    NullProbe,
    NullSecretStore,
    SecretStore,
    run_command,
)
from slackmirror.backends.macos import ChromeProbe, KeychainStore


@dataclass
class Backends:
    secret_store: SecretStore
    probe: CredentialProbe


def select_backends(
    platform: str | None = None,
    *,
    keychain_service: str = "slack-mcp-server",
    probe_timeout: float = 5.0,
) -> Backends:
    """Pick the capability backends for the current (or given) platform."""
    platform = platform or sys.platform
    if platform == "darwin":
        backends = Backends(
            secret_store=KeychainStore(service=keychain_service, timeout=probe_timeout),
            probe=ChromeProbe(timeout=probe_timeout),
        )
    else:
        backends = Backends(secret_store=NullSecretStore(), probe=NullProbe())
    logger.debug(
        f"[backends] platform={platform} secret_store={backends.secret_store.name} "
        f"probe={backends.probe.name}"
    )
    return backends


__all__ = [
    "Backends",
    "select_backends",
    "SecretStore",
    "CredentialProbe",
    "NullSecretStore",
    "NullProbe",
    "KeychainStore",
    "ChromeProbe",
    "CommandResult",
    "run_command",
]
