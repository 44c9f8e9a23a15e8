"""
Abstract base classes for platform capability backends.

Two capabilities depend on the host platform:

- SecretStore  — an OS-provided secret store (macOS Keychain)
- CredentialProbe — extracts a live token/cookie pair from a logged-in browser

Unsupported platforms get the Null* implementations, which always report
"unavailable" instead of raising. The selection happens once, at startup
(see slackmirror.backends.select_backends).
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(*args: str, timeout: float = 5.0) -> CommandResult:
    """Run a subprocess without blocking the event loop.

    The process is killed when ``timeout`` expires and asyncio.TimeoutError
    propagates to the caller.
    """
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise

    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace").strip(),
        stderr=stderr.decode("utf-8", errors="replace").strip(),
    )


class SecretStore(ABC):
    """Key/value secret storage provided by the OS."""

    name: str = "base"

    @property
    def available(self) -> bool:
        return True

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the stored value, or None if absent/unreadable."""
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> bool:
        """Store a value. Returns False on failure (never raises)."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a value. Returns False if nothing was deleted."""
        ...


class CredentialProbe(ABC):
    """Extracts a (token, cookie) pair from a live browser session."""

    name: str = "base"

    @property
    def available(self) -> bool:
        return True

    @abstractmethod
    async def extract(self) -> tuple[str, str] | None:
        """Return (token, cookie) or None. Must enforce its own timeout."""
        ...


class NullSecretStore(SecretStore):
    """Secret store for platforms without one."""

    name = "null"

    @property
    def available(self) -> bool:
        return False

    async def get(self, key: str) -> str | None:
        return None

    async def set(self, key: str, value: str) -> bool:
        return False

    async def delete(self, key: str) -> bool:
        return False


class NullProbe(CredentialProbe):
    """Probe for platforms where extraction is unsupported."""

    name = "null"

    @property
    def available(self) -> bool:
        return False

    async def extract(self) -> tuple[str, str] | None:
        return None
