"""
Credential store — where the token/cookie pair comes from.

Resolution order (first usable source wins):
1. Environment variables (SLACK_TOKEN / SLACK_COOKIE)
2. Token file (~/.slack-mcp-tokens.json)
3. OS secret store (macOS Keychain)
4. Extraction from a live browser session (single-flight)

Renewal skips 1-3 and goes straight to the probe. Only one extraction runs at
a time per store; a caller arriving while one is in flight gets None back
instead of waiting, and picks up the persisted result on its next resolve().
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import aiofiles
import aiofiles.os
from loguru import logger

from slackmirror.backends import Backends, select_backends
from slackmirror.backends.base import CredentialProbe, NullProbe, NullSecretStore, SecretStore
from slackmirror.config import MirrorConfig
from slackmirror.errors import InvalidCredentialError
from slackmirror.files import atomic_write

TOKEN_PREFIX = "xoxc-"
COOKIE_PREFIX = "xoxd-"

# Secret-store account names
_STORE_TOKEN_KEY = "token"
_STORE_COOKIE_KEY = "cookie"


class CredentialSource(str, Enum):
    ENVIRONMENT = "environment"
    FILE = "file"
    SECURE_STORE = "secure-store"
    EXTRACTED = "extracted"
    MANUAL = "manual"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class CredentialPair:
    """A session token plus its companion cookie. Never mutated."""

    token: str
    secret: str
    source: CredentialSource
    updated_at: datetime | None = field(default=None, compare=False)

    @property
    def usable(self) -> bool:
        return bool(self.token) and bool(self.secret)

    def age(self, now: datetime | None = None) -> timedelta | None:
        """Time since the pair was stored, or None if unknown."""
        if self.updated_at is None:
            return None
        return (now or _utcnow()) - self.updated_at

    def to_file_dict(self) -> dict[str, str]:
        updated = self.updated_at or _utcnow()
        return {
            "SLACK_TOKEN": self.token,
            "SLACK_COOKIE": self.secret,
            "updated_at": updated.isoformat(),
        }

    def __repr__(self) -> str:
        return (
            f"CredentialPair(token={self.token[:8]!r}..., source={self.source.value!r}, "
            f"updated_at={self.updated_at.isoformat() if self.updated_at else None!r})"
        )


def validate_pair(token: str, secret: str) -> None:
    """Raise InvalidCredentialError unless both halves have the expected shape."""
    if not token or not token.startswith(TOKEN_PREFIX):
        raise InvalidCredentialError(f"token does not start with {TOKEN_PREFIX!r}")
    if not secret or not secret.startswith(COOKIE_PREFIX):
        raise InvalidCredentialError(f"cookie does not start with {COOKIE_PREFIX!r}")


class RenewalLock:
    """Non-blocking single-flight guard.

    try_acquire() either takes the lock or reports that someone else holds
    it; it never waits. Safe under asyncio because there is no await between
    the check and the set.
    """

    def __init__(self) -> None:
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        if self._held:
            return False
        self._held = True
        return True

    def release(self) -> None:
        self._held = False


class TokenStore:
    """Resolves, persists and renews Slack session credentials."""

    def __init__(
        self,
        token_file: str | Path = "~/.slack-mcp-tokens.json",
        secret_store: SecretStore | None = None,
        probe: CredentialProbe | None = None,
        *,
        token_env: str = "SLACK_TOKEN",
        cookie_env: str = "SLACK_COOKIE",
        environ: dict[str, str] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.token_file = Path(token_file).expanduser()
        self.secret_store = secret_store or NullSecretStore()
        self.probe = probe or NullProbe()
        self.token_env = token_env
        self.cookie_env = cookie_env
        self._environ = environ
        self._clock = clock
        self._renewal = RenewalLock()

        self.last_renewal_attempt: datetime | None = None
        self.last_renewal_success: datetime | None = None

    @classmethod
    def from_config(cls, config: MirrorConfig, backends: Backends | None = None) -> "TokenStore":
        """Build a store from a MirrorConfig, selecting platform backends."""
        if backends is None:
            backends = select_backends(
                keychain_service=config.keychain_service,
                probe_timeout=config.probe_timeout,
            )
        return cls(
            token_file=config.token_file,
            secret_store=backends.secret_store,
            probe=backends.probe,
            token_env=config.token_env,
            cookie_env=config.cookie_env,
        )

    @property
    def renewal_in_progress(self) -> bool:
        return self._renewal.held

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self, force_renewal: bool = False) -> CredentialPair | None:
        """Return the highest-priority usable pair, or None."""
        if not force_renewal:
            pair = (
                self.from_environment()
                or await self.from_file()
                or await self.from_secure_store()
            )
            if pair is not None:
                return pair

        if not self.is_renewal_available():
            return None
        return await self.renew()

    def from_environment(self) -> CredentialPair | None:
        env = self._environ if self._environ is not None else os.environ
        token = env.get(self.token_env, "").strip()
        cookie = env.get(self.cookie_env, "").strip()
        if not token or not cookie:
            return None
        return CredentialPair(token, cookie, CredentialSource.ENVIRONMENT)

    async def from_file(self) -> CredentialPair | None:
        data = await self.read_file()
        if data is None:
            return None
        token = data.get("SLACK_TOKEN") or data.get("token") or ""
        cookie = data.get("SLACK_COOKIE") or data.get("cookie") or data.get("secret") or ""
        if not isinstance(token, str) or not isinstance(cookie, str) or not token or not cookie:
            return None
        return CredentialPair(
            token,
            cookie,
            CredentialSource.FILE,
            _parse_timestamp(data.get("updated_at")),
        )

    async def read_file(self) -> dict[str, Any] | None:
        """Parse the token file. Missing or malformed files read as None."""
        if not self.token_file.exists():
            return None
        try:
            async with aiofiles.open(self.token_file, "r", encoding="utf-8") as f:
                data = json.loads(await f.read())
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning(f"[tokens] Ignoring unreadable token file {self.token_file}: {exc}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"[tokens] Ignoring token file {self.token_file}: not a JSON object")
            return None
        return data

    async def from_secure_store(self) -> CredentialPair | None:
        if not self.secret_store.available:
            return None
        token = await self.secret_store.get(_STORE_TOKEN_KEY)
        cookie = await self.secret_store.get(_STORE_COOKIE_KEY)
        if not token or not cookie:
            return None
        return CredentialPair(token, cookie, CredentialSource.SECURE_STORE)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def persist(self, pair: CredentialPair) -> None:
        """Write the pair to the token file, then (best effort) the secret store."""
        content = json.dumps(pair.to_file_dict(), indent=2)
        await atomic_write(self.token_file, content)
        logger.info(f"[tokens] Saved credentials to {self.token_file} (source={pair.source.value})")

        if not self.secret_store.available:
            return
        for key, value in ((_STORE_TOKEN_KEY, pair.token), (_STORE_COOKIE_KEY, pair.secret)):
            try:
                await self.secret_store.delete(key)
                if not await self.secret_store.set(key, value):
                    logger.warning(f"[tokens] {self.secret_store.name}: could not store {key!r}")
            except Exception as exc:
                logger.warning(f"[tokens] {self.secret_store.name}: error storing {key!r}: {exc}")

    async def save_manual(self, token: str, secret: str) -> CredentialPair:
        """Validate and persist a manually entered pair."""
        token, secret = token.strip(), secret.strip()
        validate_pair(token, secret)
        pair = CredentialPair(token, secret, CredentialSource.MANUAL, self._clock())
        await self.persist(pair)
        self.last_renewal_success = pair.updated_at
        return pair

    async def clear(self) -> bool:
        """Remove the token file and secret-store entries. Returns True if anything was removed."""
        removed = False
        try:
            await aiofiles.os.remove(self.token_file)
            removed = True
            logger.info(f"[tokens] Deleted {self.token_file}")
        except FileNotFoundError:
            pass

        if self.secret_store.available:
            for key in (_STORE_TOKEN_KEY, _STORE_COOKIE_KEY):
                if await self.secret_store.delete(key):
                    removed = True
        return removed

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    def is_renewal_available(self) -> bool:
        return self.probe.available

    async def renew(self) -> CredentialPair | None:
        """Extract, validate and persist a fresh pair.

        Returns None without waiting if another renewal is in flight, if the
        probe finds nothing, or if what it finds is malformed.
        """
        if not self.is_renewal_available():
            return None
        if not self._renewal.try_acquire():
            logger.debug("[tokens] Renewal already in progress, not waiting")
            return None

        self.last_renewal_attempt = self._clock()
        try:
            logger.info(f"[tokens] Attempting credential extraction via {self.probe.name}...")
            try:
                extracted = await self.probe.extract()
            except Exception as exc:
                logger.error(f"[tokens] Probe {self.probe.name} failed: {exc}")
                return None
            if extracted is None:
                logger.warning("[tokens] Extraction returned no credentials")
                return None

            token, cookie = extracted
            try:
                validate_pair(token, cookie)
            except InvalidCredentialError as exc:
                logger.warning(f"[tokens] Rejected extracted credentials: {exc.message}")
                return None

            pair = CredentialPair(token, cookie, CredentialSource.EXTRACTED, self._clock())
            try:
                await self.persist(pair)
            except OSError as exc:
                logger.error(f"[tokens] Extracted credentials but could not save them: {exc}")
            self.last_renewal_success = pair.updated_at
            logger.info(f"[tokens] Renewed credentials: {pair!r}")
            return pair
        finally:
            self._renewal.release()
