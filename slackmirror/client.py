"""
Slack API client with transparent recovery.

SlackClient.call() absorbs three failure classes:
- Transport errors (timeouts, connection resets, 502/503/504): exponential
  backoff, min(1s * 2^attempt, 10s) plus up to 1s of jitter
- Rate limiting (`ratelimited` / HTTP 429): min(Retry-After, 30s) * (attempt + 1)
  plus jitter
- Expired credentials (`invalid_auth`, `token_expired`, ...): one renewal via
  the TokenStore, then exactly one more try with renewal disabled

Anything that cannot be recovered comes back as a failed CallResult carrying a
SlackError (kind + hint); call() itself does not raise.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx
from loguru import logger

from slackmirror.cache import DMCache, TTLCache
from slackmirror.config import MirrorConfig
from slackmirror.errors import (
    AuthExpiredError,
    NoCredentialsError,
    RateLimitedError,
    RemoteError,
    SlackError,
    TransientNetworkError,
)
from slackmirror.tokens import CredentialPair, TokenStore

AUTH_ERROR_CODES = frozenset({"invalid_auth", "token_expired", "not_authed", "account_inactive"})
TRANSIENT_STATUS_CODES = frozenset({502, 503, 504})

DEFAULT_RETRY_AFTER = 5.0       # Seconds, when Slack omits Retry-After
MAX_RATE_LIMIT_DELAY = 30.0
MAX_NETWORK_DELAY = 10.0
MAX_JITTER = 1.0


class ServerUnavailable(Exception):
    """Slack answered with a gateway/unavailable status."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    ServerUnavailable,
)


# ---------------------------------------------------------------------------
# Retry bookkeeping
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryContext:
    attempt: int = 0
    max_attempts: int = 3

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def next(self) -> "RetryContext":
        return RetryContext(self.attempt + 1, self.max_attempts)


def network_backoff(attempt: int) -> float:
    return min(1.0 * 2 ** attempt, MAX_NETWORK_DELAY)


def rate_limit_backoff(retry_after: float, attempt: int) -> float:
    return min(retry_after, MAX_RATE_LIMIT_DELAY) * (attempt + 1)


def default_jitter() -> float:
    return random.uniform(0, MAX_JITTER)


# ---------------------------------------------------------------------------
# Tagged API responses
# ---------------------------------------------------------------------------

@dataclass
class Ok:
    data: dict[str, Any]


@dataclass
class RateLimited:
    retry_after: float


@dataclass
class AuthFailed:
    code: str


@dataclass
class RemoteFailure:
    code: str
    data: dict[str, Any] = field(default_factory=dict)


ApiResponse = Ok | RateLimited | AuthFailed | RemoteFailure


def classify_response(status_code: int, headers: httpx.Headers, body: Any) -> ApiResponse:
    """Map one HTTP exchange to a tagged ApiResponse."""
    data = body if isinstance(body, dict) else {}
    error = data.get("error") or ""

    if status_code == 429 or error == "ratelimited":
        try:
            retry_after = float(headers.get("Retry-After", DEFAULT_RETRY_AFTER))
        except ValueError:
            retry_after = DEFAULT_RETRY_AFTER
        return RateLimited(retry_after)

    if data.get("ok") is True:
        return Ok(data)
    if error in AUTH_ERROR_CODES or status_code == 401:
        return AuthFailed(error or "invalid_auth")
    return RemoteFailure(error or f"http_{status_code}", data)


@dataclass
class CallResult:
    """Outcome of SlackClient.call()."""

    ok: bool
    data: dict[str, Any] | None = None
    error: SlackError | None = None

    @classmethod
    def success(cls, data: dict[str, Any]) -> "CallResult":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: SlackError) -> "CallResult":
        return cls(ok=False, error=error)

    def unwrap(self) -> dict[str, Any]:
        """Return the payload or raise the stored error."""
        if not self.ok:
            assert self.error is not None
            raise self.error
        return self.data or {}

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True, "data": self.data}
        assert self.error is not None
        return {"ok": False, "error": self.error.to_dict()}


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class SlackClient:
    """Resilient client for Slack's web API using session credentials.

    Usage::

        store = TokenStore.from_config(config)
        async with SlackClient(store) as slack:
            result = await slack.call("conversations.history", {"channel": "D123"})
            if result.ok:
                ...
    """

    def __init__(
        self,
        store: TokenStore,
        *,
        api_base: str = "https://slack.com/api",
        timeout: float = 30.0,
        max_attempts: int = 3,
        user_cache: TTLCache[str, str] | None = None,
        http: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Callable[[], float] = default_jitter,
    ) -> None:
        self.store = store
        self.api_base = api_base.rstrip("/")
        self.max_attempts = max_attempts
        self.user_cache: TTLCache[str, str] = user_cache if user_cache is not None else TTLCache()
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._sleep = sleep
        self._jitter = jitter

    @classmethod
    def from_config(cls, config: MirrorConfig, store: TokenStore) -> "SlackClient":
        return cls(
            store,
            api_base=config.api_base,
            timeout=config.request_timeout,
            max_attempts=config.max_attempts,
            user_cache=TTLCache(config.user_cache_size, config.user_cache_ttl),
        )

    async def __aenter__(self) -> "SlackClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        retry_on_auth_failure: bool = True,
        retry: RetryContext | None = None,
    ) -> CallResult:
        """Call a Slack API method, recovering from transient failures."""
        retry = retry or RetryContext(0, self.max_attempts)
        try:
            data = await self._call(method, params or {}, retry_on_auth_failure, retry)
        except SlackError as exc:
            logger.warning(f"[client] {method} failed ({exc.kind.value}): {exc.message}")
            return CallResult.failure(exc)
        except (TypeError, ValueError, httpx.InvalidURL) as exc:
            # Request could not be built: unserializable params, bad URL
            logger.error(f"[client] {method}: invalid request: {exc}")
            return CallResult.failure(
                RemoteError("invalid_request", hint=f"{type(exc).__name__}: {exc}")
            )
        return CallResult.success(data)

    async def _call(
        self,
        method: str,
        params: dict[str, Any],
        retry_on_auth_failure: bool,
        retry: RetryContext,
    ) -> dict[str, Any]:
        renewed: CredentialPair | None = None
        while True:
            # After a renewal, use the fresh pair even if a stale one still
            # outranks it in the environment
            creds = renewed or await self.store.resolve(force_renewal=False)
            if creds is None:
                raise NoCredentialsError("No Slack credentials available")

            try:
                response = await self._post(method, params, creds)
            except TRANSIENT_EXCEPTIONS as exc:
                if retry.exhausted:
                    raise TransientNetworkError(
                        f"{method}: {type(exc).__name__}: {exc} (gave up after {retry.attempt} retries)"
                    ) from exc
                delay = network_backoff(retry.attempt) + self._jitter()
                logger.warning(
                    f"[client] {method}: {type(exc).__name__}, retrying in {delay:.1f}s "
                    f"({retry.attempt + 1}/{retry.max_attempts})"
                )
                await self._sleep(delay)
                retry = retry.next()
                continue
            except httpx.HTTPError as exc:
                raise RemoteError("request_failed", hint=f"{type(exc).__name__}: {exc}") from exc

            if isinstance(response, Ok):
                if retry.attempt or renewed:
                    logger.info(
                        f"[client] {method} recovered (retries={retry.attempt}, renewed={renewed is not None})"
                    )
                return response.data

            if isinstance(response, RateLimited):
                if retry.exhausted:
                    raise RateLimitedError(f"{method}: rate limited after {retry.attempt} retries")
                delay = rate_limit_backoff(response.retry_after, retry.attempt) + self._jitter()
                logger.warning(
                    f"[client] Rate limited on {method}, waiting {delay:.1f}s before retry "
                    f"{retry.attempt + 1}/{retry.max_attempts}"
                )
                await self._sleep(delay)
                retry = retry.next()
                continue

            if isinstance(response, AuthFailed):
                if renewed is not None:
                    raise AuthExpiredError(
                        f"{response.code} - renewed credentials were also rejected",
                        hint="The extracted session may belong to another workspace or be "
                        "logged out. Log in to Slack in Chrome again, then refresh tokens.",
                    )
                if not retry_on_auth_failure:
                    raise AuthExpiredError(f"{response.code} - credentials expired")
                logger.warning(f"[client] {method}: {response.code}, attempting credential renewal...")
                renewed = await self.store.renew()
                if renewed is None:
                    raise AuthExpiredError(
                        f"{response.code} - credentials expired and could not be renewed"
                    )
                if self.store.from_environment() is not None:
                    logger.warning(
                        f"[client] {self.store.token_env}/{self.store.cookie_env} are set; "
                        "using renewed credentials for this call only"
                    )
                retry_on_auth_failure = False
                continue

            raise RemoteError(response.code)

    async def _post(
        self,
        method: str,
        params: dict[str, Any],
        creds: CredentialPair,
    ) -> ApiResponse:
        payload = {k: v for k, v in params.items() if v is not None}
        resp = await self._http.post(
            f"{self.api_base}/{method}",
            json=payload,
            headers={
                "Authorization": f"Bearer {creds.token}",
                "Cookie": f"d={creds.secret}",
                "Content-Type": "application/json; charset=utf-8",
            },
        )
        if resp.status_code in TRANSIENT_STATUS_CODES:
            raise ServerUnavailable(resp.status_code)
        try:
            body = resp.json()
        except ValueError:
            body = None
        return classify_response(resp.status_code, resp.headers, body)

    # ------------------------------------------------------------------
    # User names
    # ------------------------------------------------------------------

    async def resolve_user(self, user_id: str | None, *, cache_failures: bool = True) -> str:
        """Return a user's display name, falling back to the id itself."""
        if not user_id:
            return "unknown"
        cached = self.user_cache.get(user_id)
        if cached is not None:
            return cached

        result = await self.call("users.info", {"user": user_id})
        if result.ok and result.data:
            user = result.data.get("user") or {}
            name = user.get("real_name") or user.get("name") or user_id
        else:
            if not cache_failures:
                return user_id
            name = user_id
        self.user_cache.set(user_id, name)
        return name

    async def discover_dms(self, dm_cache: DMCache, *, refresh: bool = False) -> dict[str, Any]:
        """Map DM channel id -> {"name", "user_id"} for every human in the workspace.

        Session tokens often omit IMs from conversations.list, so DMs are
        found by opening one with each user. That is slow and rate-limit
        heavy, hence the persisted cache; ``refresh`` bypasses it. Raises the
        SlackError from users.list if the user listing itself fails.
        """
        if not refresh:
            cached = await dm_cache.load()
            if cached is not None:
                return cached

        users = (await self.call("users.list", {"limit": 200})).unwrap().get("members") or []
        dms: dict[str, Any] = {}
        for user in users:
            if user.get("is_bot") or user.get("deleted") or user.get("id") == "USLACKBOT":
                continue
            opened = await self.call("conversations.open", {"users": user["id"]})
            channel = (opened.data or {}).get("channel") or {}
            if not opened.ok or not channel.get("id"):
                continue
            name = user.get("real_name") or user.get("name") or user["id"]
            self.user_cache.set(user["id"], name)
            dms[channel["id"]] = {"name": name, "user_id": user["id"]}

        await dm_cache.save(dms)
        logger.info(f"[client] Discovered {len(dms)} DMs")
        return dms

    def clear_user_cache(self) -> None:
        self.user_cache.clear()

    def cache_stats(self) -> dict[str, Any]:
        return self.user_cache.stats()

    async def auth_test(self) -> CallResult:
        """Validate the current credentials (no renewal on failure)."""
        return await self.call("auth.test", retry_on_auth_failure=False)


def format_timestamp(ts: str | float) -> str:
    """Slack message ts ("1700000000.123456") -> ISO-8601 UTC."""
    dt = datetime.fromtimestamp(float(ts), tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_slack_timestamp(iso_date: str) -> str:
    """ISO-8601 date -> Slack ts string."""
    dt = datetime.fromisoformat(iso_date.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return str(dt.timestamp())
