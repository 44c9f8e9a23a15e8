"""Shared fixtures: fake platform backends and a store wired to tmp_path."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from slackmirror.backends.base import CredentialProbe, SecretStore
from slackmirror.tokens import TokenStore

NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)

GOOD_TOKEN = "xoxc-fresh-token"
GOOD_COOKIE = "xoxd-fresh-cookie"


class FakeSecretStore(SecretStore):
    """In-memory secret store that records every operation."""

    name = "fake"

    def __init__(self, values: dict[str, str] | None = None, fail_set: bool = False) -> None:
        self.values = dict(values or {})
        self.fail_set = fail_set
        self.ops: list[tuple[str, str]] = []

    async def get(self, key: str) -> str | None:
        self.ops.append(("get", key))
        return self.values.get(key)

    async def set(self, key: str, value: str) -> bool:
        self.ops.append(("set", key))
        if self.fail_set:
            raise RuntimeError("keychain locked")
        self.values[key] = value
        return True

    async def delete(self, key: str) -> bool:
        self.ops.append(("delete", key))
        return self.values.pop(key, None) is not None


class FakeProbe(CredentialProbe):
    """Probe returning a scripted sequence of results."""

    name = "fake"

    def __init__(self, *results: tuple[str, str] | None | Exception) -> None:
        self.results = list(results) or [(GOOD_TOKEN, GOOD_COOKIE)]
        self.calls = 0

    async def extract(self) -> tuple[str, str] | None:
        self.calls += 1
        result = self.results[min(self.calls - 1, len(self.results) - 1)]
        if isinstance(result, Exception):
            raise result
        return result


class GatedProbe(CredentialProbe):
    """Probe that blocks until the test opens the gate."""

    name = "gated"

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.calls = 0

    async def extract(self) -> tuple[str, str] | None:
        self.calls += 1
        await self.gate.wait()
        return GOOD_TOKEN, GOOD_COOKIE


def write_token_file(path: Path, token: str, cookie: str, updated_at: datetime | None = None) -> None:
    data = {"SLACK_TOKEN": token, "SLACK_COOKIE": cookie}
    if updated_at is not None:
        data["updated_at"] = updated_at.isoformat()
    path.write_text(json.dumps(data), encoding="utf-8")


@pytest.fixture
def token_file(tmp_path: Path) -> Path:
    return tmp_path / "tokens.json"


@pytest.fixture
def make_store(token_file: Path):
    def factory(
        *,
        environ: dict[str, str] | None = None,
        secret_store: SecretStore | None = None,
        probe: CredentialProbe | None = None,
        clock=lambda: NOW,
    ) -> TokenStore:
        return TokenStore(
            token_file,
            secret_store=secret_store,
            probe=probe,
            environ=environ if environ is not None else {},
            clock=clock,
        )

    return factory
