"""Tests for the resilient Slack API client."""

from __future__ import annotations

import json
import time
from pathlib import Path

import httpx
import pytest

from slackmirror.cache import DMCache, TTLCache
from slackmirror.client import (
    AuthFailed,
    Ok,
    RateLimited,
    RemoteFailure,
    RetryContext,
    SlackClient,
    classify_response,
    format_timestamp,
    network_backoff,
    rate_limit_backoff,
    to_slack_timestamp,
)
from slackmirror.errors import ErrorKind, RemoteError

from tests.conftest import GOOD_COOKIE, GOOD_TOKEN, NOW, FakeProbe, write_token_file

API = "https://slack.com/api"
OK = {"ok": True, "user": "ada", "team": "analytical-engines"}


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def rate_limited(retry_after: str = "5") -> httpx.Response:
    return httpx.Response(429, headers={"Retry-After": retry_after}, json={"ok": False, "error": "ratelimited"})


def slack_error(code: str) -> httpx.Response:
    return httpx.Response(200, json={"ok": False, "error": code})


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def store(make_store, token_file):
    write_token_file(token_file, "xoxc-old", "xoxd-old", NOW)
    return make_store()


def make_client(store, sleeps, **kwargs) -> SlackClient:
    return SlackClient(store, sleep=sleeps, jitter=lambda: 0.0, **kwargs)


# =============================================================================
# Happy path
# =============================================================================


class TestCall:
    @pytest.mark.asyncio
    async def test_success_sends_session_credentials(self, respx_mock, store, sleeps):
        route = respx_mock.post(f"{API}/auth.test").mock(return_value=httpx.Response(200, json=OK))

        async with make_client(store, sleeps) as slack:
            result = await slack.call("auth.test")

        assert result.ok
        assert result.data["user"] == "ada"
        request = route.calls[0].request
        assert request.headers["Authorization"] == "Bearer xoxc-old"
        assert request.headers["Cookie"] == "d=xoxd-old"
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_none_params_are_dropped(self, respx_mock, store, sleeps):
        route = respx_mock.post(f"{API}/conversations.history").mock(
            return_value=httpx.Response(200, json={"ok": True, "messages": []})
        )

        async with make_client(store, sleeps) as slack:
            await slack.call("conversations.history", {"channel": "D1", "oldest": None, "limit": 50})

        assert json.loads(route.calls[0].request.content) == {"channel": "D1", "limit": 50}

    @pytest.mark.asyncio
    async def test_no_credentials_fails_without_request(self, make_store, sleeps):
        async with make_client(make_store(), sleeps) as slack:
            result = await slack.call("auth.test")

        assert not result.ok
        assert result.error.kind == ErrorKind.NO_CREDENTIALS
        assert result.error.hint

    @pytest.mark.asyncio
    async def test_remote_error_is_not_retried(self, respx_mock, store, sleeps):
        route = respx_mock.post(f"{API}/conversations.history").mock(
            return_value=slack_error("channel_not_found")
        )

        async with make_client(store, sleeps) as slack:
            result = await slack.call("conversations.history", {"channel": "C404"})

        assert not result.ok
        assert isinstance(result.error, RemoteError)
        assert result.error.code == "channel_not_found"
        assert route.call_count == 1
        with pytest.raises(RemoteError):
            result.unwrap()

    @pytest.mark.asyncio
    async def test_unserializable_params_become_a_failure(self, respx_mock, store, sleeps):
        async with make_client(store, sleeps) as slack:
            result = await slack.call("chat.postMessage", {"channel": "C1", "blocks": {"a", "b"}})

        assert not result.ok
        assert isinstance(result.error, RemoteError)
        assert result.error.code == "invalid_request"
        assert "TypeError" in result.error.hint
        assert result.to_dict()["error"]["kind"] == "remote_error"


# =============================================================================
# Rate limiting
# =============================================================================


class TestRateLimit:
    @pytest.mark.asyncio
    async def test_three_rate_limits_then_success(self, respx_mock, store, sleeps):
        route = respx_mock.post(f"{API}/search.messages").mock(
            side_effect=[rate_limited(), rate_limited(), rate_limited(), httpx.Response(200, json=OK)]
        )

        async with make_client(store, sleeps) as slack:
            result = await slack.call("search.messages", {"query": "hello"})

        assert result.ok
        assert route.call_count == 4
        assert sleeps.delays == [5.0, 10.0, 15.0]

    @pytest.mark.asyncio
    async def test_backoff_actually_waits(self, respx_mock, store):
        respx_mock.post(f"{API}/search.messages").mock(
            side_effect=[rate_limited("0.02"), rate_limited("0.02"), rate_limited("0.02"), httpx.Response(200, json=OK)]
        )

        start = time.monotonic()
        async with SlackClient(store, jitter=lambda: 0.0) as slack:
            result = await slack.call("search.messages")
        elapsed = time.monotonic() - start

        assert result.ok
        # 0.02 * (1 + 2 + 3)
        assert elapsed >= 0.12 - 0.01

    @pytest.mark.asyncio
    async def test_rate_limit_exhausts_bound(self, respx_mock, store, sleeps):
        route = respx_mock.post(f"{API}/users.list").mock(side_effect=[rate_limited() for _ in range(4)])

        async with make_client(store, sleeps) as slack:
            result = await slack.call("users.list")

        assert not result.ok
        assert result.error.kind == ErrorKind.RATE_LIMITED
        assert route.call_count == 4
        assert len(sleeps.delays) == 3

    @pytest.mark.asyncio
    async def test_server_delay_is_capped(self, respx_mock, store, sleeps):
        respx_mock.post(f"{API}/users.list").mock(
            side_effect=[rate_limited("120"), httpx.Response(200, json=OK)]
        )

        async with make_client(store, sleeps) as slack:
            await slack.call("users.list")

        assert sleeps.delays == [30.0]

    @pytest.mark.asyncio
    async def test_missing_retry_after_defaults_to_five_seconds(self, respx_mock, store, sleeps):
        respx_mock.post(f"{API}/users.list").mock(
            side_effect=[slack_error("ratelimited"), httpx.Response(200, json=OK)]
        )

        async with make_client(store, sleeps) as slack:
            result = await slack.call("users.list")

        assert result.ok
        assert sleeps.delays == [5.0]


# =============================================================================
# Network errors
# =============================================================================


class TestNetworkErrors:
    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, respx_mock, store, sleeps):
        respx_mock.post(f"{API}/auth.test").mock(
            side_effect=[httpx.ConnectError("connection reset"), httpx.Response(200, json=OK)]
        )

        async with make_client(store, sleeps) as slack:
            result = await slack.call("auth.test")

        assert result.ok
        assert sleeps.delays == [1.0]

    @pytest.mark.asyncio
    async def test_gateway_errors_are_transient(self, respx_mock, store, sleeps):
        respx_mock.post(f"{API}/auth.test").mock(
            side_effect=[httpx.Response(503), httpx.Response(502), httpx.Response(200, json=OK)]
        )

        async with make_client(store, sleeps) as slack:
            result = await slack.call("auth.test")

        assert result.ok
        assert sleeps.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_network_retries_are_bounded(self, respx_mock, store, sleeps):
        route = respx_mock.post(f"{API}/auth.test").mock(side_effect=httpx.ReadTimeout("slow"))

        async with make_client(store, sleeps) as slack:
            result = await slack.call("auth.test")

        assert not result.ok
        assert result.error.kind == ErrorKind.NETWORK
        assert route.call_count == 4
        assert sleeps.delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_custom_retry_context(self, respx_mock, store, sleeps):
        route = respx_mock.post(f"{API}/auth.test").mock(side_effect=httpx.ConnectError("down"))

        async with make_client(store, sleeps) as slack:
            result = await slack.call("auth.test", retry=RetryContext(attempt=0, max_attempts=1))

        assert result.error.kind == ErrorKind.NETWORK
        assert route.call_count == 2


# =============================================================================
# Auth failure + renewal
# =============================================================================


class TestAuthRenewal:
    @pytest.mark.asyncio
    async def test_renewal_is_transparent(self, respx_mock, make_store, token_file, sleeps):
        write_token_file(token_file, "xoxc-old", "xoxd-old", NOW)
        probe = FakeProbe()
        store = make_store(probe=probe)
        route = respx_mock.post(f"{API}/conversations.list").mock(
            side_effect=[slack_error("invalid_auth"), httpx.Response(200, json={"ok": True, "channels": []})]
        )

        async with make_client(store, sleeps) as slack:
            result = await slack.call("conversations.list")

        assert result.ok
        assert result.data == {"ok": True, "channels": []}
        assert probe.calls == 1
        retried = route.calls[1].request
        assert retried.headers["Authorization"] == f"Bearer {GOOD_TOKEN}"
        assert retried.headers["Cookie"] == f"d={GOOD_COOKIE}"
        assert json.loads(token_file.read_text(encoding="utf-8"))["SLACK_TOKEN"] == GOOD_TOKEN

    @pytest.mark.asyncio
    async def test_failed_renewal_surfaces_auth_expired(self, respx_mock, make_store, token_file, sleeps):
        write_token_file(token_file, "xoxc-old", "xoxd-old", NOW)
        store = make_store(probe=FakeProbe(None))
        route = respx_mock.post(f"{API}/auth.test").mock(return_value=slack_error("token_expired"))

        async with make_client(store, sleeps) as slack:
            result = await slack.call("auth.test")

        assert result.error.kind == ErrorKind.AUTH_EXPIRED
        assert "Chrome" in result.error.hint
        assert route.call_count == 1

    @pytest.mark.asyncio
    async def test_renewed_but_rejected_does_not_loop(self, respx_mock, make_store, token_file, sleeps):
        write_token_file(token_file, "xoxc-old", "xoxd-old", NOW)
        probe = FakeProbe()
        store = make_store(probe=probe)
        route = respx_mock.post(f"{API}/auth.test").mock(return_value=slack_error("invalid_auth"))

        async with make_client(store, sleeps) as slack:
            result = await slack.call("auth.test")

        assert result.error.kind == ErrorKind.AUTH_EXPIRED
        assert "renewed" in result.error.message
        assert probe.calls == 1
        assert route.call_count == 2

    @pytest.mark.asyncio
    async def test_renewed_pair_is_used_over_stale_environment(self, respx_mock, make_store, sleeps):
        probe = FakeProbe()
        store = make_store(environ={"SLACK_TOKEN": "xoxc-stale", "SLACK_COOKIE": "xoxd-stale"}, probe=probe)
        route = respx_mock.post(f"{API}/auth.test").mock(
            side_effect=[slack_error("invalid_auth"), httpx.Response(200, json=OK)]
        )

        async with make_client(store, sleeps) as slack:
            result = await slack.call("auth.test")

        assert result.ok
        assert probe.calls == 1
        assert route.calls[0].request.headers["Authorization"] == "Bearer xoxc-stale"
        assert route.calls[1].request.headers["Authorization"] == f"Bearer {GOOD_TOKEN}"
        assert route.calls[1].request.headers["Cookie"] == f"d={GOOD_COOKIE}"

    @pytest.mark.asyncio
    async def test_renewal_disabled(self, respx_mock, make_store, token_file, sleeps):
        write_token_file(token_file, "xoxc-old", "xoxd-old", NOW)
        probe = FakeProbe()
        store = make_store(probe=probe)
        respx_mock.post(f"{API}/auth.test").mock(return_value=slack_error("invalid_auth"))

        async with make_client(store, sleeps) as slack:
            result = await slack.auth_test()

        assert result.error.kind == ErrorKind.AUTH_EXPIRED
        assert probe.calls == 0


# =============================================================================
# User names and DM discovery
# =============================================================================


class TestResolveUser:
    @pytest.mark.asyncio
    async def test_name_is_cached(self, respx_mock, store, sleeps):
        route = respx_mock.post(f"{API}/users.info").mock(
            return_value=httpx.Response(200, json={"ok": True, "user": {"name": "ada", "real_name": "Ada Lovelace"}})
        )

        async with make_client(store, sleeps) as slack:
            assert await slack.resolve_user("U1") == "Ada Lovelace"
            assert await slack.resolve_user("U1") == "Ada Lovelace"
            assert slack.cache_stats()["size"] == 1

        assert route.call_count == 1

    @pytest.mark.asyncio
    async def test_failed_lookup_caches_the_id(self, respx_mock, store, sleeps):
        route = respx_mock.post(f"{API}/users.info").mock(return_value=slack_error("user_not_found"))

        async with make_client(store, sleeps) as slack:
            assert await slack.resolve_user("U404") == "U404"
            assert await slack.resolve_user("U404") == "U404"

        assert route.call_count == 1

    @pytest.mark.asyncio
    async def test_failure_caching_can_be_disabled(self, respx_mock, store, sleeps):
        route = respx_mock.post(f"{API}/users.info").mock(return_value=slack_error("user_not_found"))

        async with make_client(store, sleeps) as slack:
            await slack.resolve_user("U404", cache_failures=False)
            await slack.resolve_user("U404", cache_failures=False)

        assert route.call_count == 2

    @pytest.mark.asyncio
    async def test_empty_id(self, store, sleeps):
        async with make_client(store, sleeps) as slack:
            assert await slack.resolve_user(None) == "unknown"
            assert await slack.resolve_user("") == "unknown"

    @pytest.mark.asyncio
    async def test_cache_capacity_is_respected(self, respx_mock, store, sleeps):
        respx_mock.post(f"{API}/users.info").mock(
            return_value=httpx.Response(200, json={"ok": True, "user": {"name": "someone"}})
        )

        async with make_client(store, sleeps, user_cache=TTLCache(max_size=2, ttl=60)) as slack:
            for user_id in ("U1", "U2", "U3"):
                await slack.resolve_user(user_id)
            assert slack.cache_stats()["size"] == 2
            slack.clear_user_cache()
            assert slack.cache_stats()["size"] == 0


class TestDiscoverDMs:
    @pytest.mark.asyncio
    async def test_discovers_and_caches(self, respx_mock, store, sleeps, tmp_path: Path):
        users_route = respx_mock.post(f"{API}/users.list").mock(
            return_value=httpx.Response(200, json={"ok": True, "members": [
                {"id": "U1", "name": "ada", "real_name": "Ada Lovelace"},
                {"id": "B1", "name": "bot", "is_bot": True},
                {"id": "U2", "name": "gone", "deleted": True},
                {"id": "USLACKBOT", "name": "slackbot"},
            ]})
        )
        open_route = respx_mock.post(f"{API}/conversations.open").mock(
            return_value=httpx.Response(200, json={"ok": True, "channel": {"id": "D1"}})
        )
        dm_cache = DMCache(tmp_path / "dm.json")

        async with make_client(store, sleeps) as slack:
            dms = await slack.discover_dms(dm_cache)
            again = await slack.discover_dms(dm_cache)
            assert await slack.resolve_user("U1") == "Ada Lovelace"

        assert dms == {"D1": {"name": "Ada Lovelace", "user_id": "U1"}}
        assert again == dms
        assert users_route.call_count == 1
        assert open_route.call_count == 1


# =============================================================================
# Pure helpers
# =============================================================================


def test_backoff_formulas():
    assert [network_backoff(a) for a in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]
    assert rate_limit_backoff(5, 0) == 5
    assert rate_limit_backoff(45, 1) == 60


def test_classify_response():
    headers = httpx.Headers({"Retry-After": "7"})
    assert classify_response(200, headers, {"ok": True}) == Ok({"ok": True})
    assert classify_response(429, headers, None) == RateLimited(7.0)
    assert classify_response(200, headers, {"ok": False, "error": "not_authed"}) == AuthFailed("not_authed")
    assert classify_response(200, headers, {"ok": False, "error": "channel_not_found"}) == RemoteFailure(
        "channel_not_found", {"ok": False, "error": "channel_not_found"}
    )
    assert classify_response(500, httpx.Headers(), None) == RemoteFailure("http_500", {})


def test_retry_context_progression():
    ctx = RetryContext(0, 2)
    assert not ctx.exhausted
    assert ctx.next().next().exhausted


def test_timestamp_helpers():
    assert format_timestamp("1700000000.123456") == "2023-11-14T22:13:20.123Z"
    assert to_slack_timestamp("2023-11-14T22:13:20Z") == "1700000000.0"
