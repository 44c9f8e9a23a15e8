"""
macOS backends — Keychain via `keyring`, Chrome extraction via `osascript`.

The probe asks every open Chrome tab for slack.com and runs two small
JavaScript snippets in it:
- the `d` cookie (xoxd-...) from document.cookie
- the session token (xoxc-...) from localStorage, trying several known paths

Requirements:
1. Google Chrome running with a logged-in app.slack.com tab
2. Chrome > View > Developer > "Allow JavaScript from Apple Events" enabled
"""

from __future__ import annotations

import asyncio
from typing import Callable, TypeVar

import keyring
from keyring.errors import KeyringError, PasswordDeleteError
from loguru import logger

from slackmirror.backends.base import CredentialProbe, SecretStore, run_command

T = TypeVar("T")

# localStorage locations Slack has used for the session token
_TOKEN_PATHS = [
    "JSON.parse(localStorage.localConfig_v2).teams[Object.keys(JSON.parse(localStorage.localConfig_v2).teams)[0]].token",
    "JSON.parse(localStorage.localConfig_v3).teams[Object.keys(JSON.parse(localStorage.localConfig_v3).teams)[0]].token",
    "JSON.parse(localStorage.getItem('reduxPersist:localConfig'))?.teams?.[Object.keys(JSON.parse(localStorage.getItem('reduxPersist:localConfig'))?.teams || {})[0]]?.token",
    "window.boot_data?.api_token",
]

_COOKIE_JS = "document.cookie.split('; ').find(c => c.startsWith('d='))?.split('=')[1] || ''"


def _token_js() -> str:
    attempts = " ".join(
        f"try {{ var t{i} = {path}; if (t{i}?.startsWith('xoxc-')) return t{i}; }} catch(e) {{}}"
        for i, path in enumerate(_TOKEN_PATHS)
    )
    return f"(function() {{ {attempts} return ''; }})()"


def _chrome_script(javascript: str) -> str:
    """AppleScript that runs ``javascript`` in the first slack.com tab."""
    js = javascript.replace("\\", "\\\\").replace('"', '\\"')
    return (
        'tell application "Google Chrome"\n'
        "  repeat with w in windows\n"
        "    repeat with t in tabs of w\n"
        '      if URL of t contains "slack.com" then\n'
        f'        return execute t javascript "{js}"\n'
        "      end if\n"
        "    end repeat\n"
        "  end repeat\n"
        '  return ""\n'
        "end tell"
    )


class KeychainStore(SecretStore):
    """macOS login keychain via `keyring`, one generic password per key.

    keyring is synchronous, so each call runs in a worker thread and is
    abandoned after ``timeout`` seconds (a locked keychain can prompt forever).
    """

    name = "keychain"

    def __init__(self, service: str = "slack-mcp-server", timeout: float = 5.0) -> None:
        self.service = service
        self.timeout = timeout

    async def _run(self, fn: Callable[..., T], *args: str) -> T:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout)

    async def get(self, key: str) -> str | None:
        try:
            value = await self._run(keyring.get_password, self.service, key)
        except (KeyringError, asyncio.TimeoutError) as exc:
            logger.debug(f"[keychain] get({key}) failed: {exc!r}")
            return None
        return value or None

    async def set(self, key: str, value: str) -> bool:
        try:
            await self._run(keyring.set_password, self.service, key, value)
        except (KeyringError, asyncio.TimeoutError) as exc:
            logger.warning(f"[keychain] set({key}) failed: {exc!r}")
            return False
        return True

    async def delete(self, key: str) -> bool:
        try:
            await self._run(keyring.delete_password, self.service, key)
        except PasswordDeleteError:
            return False
        except (KeyringError, asyncio.TimeoutError) as exc:
            logger.debug(f"[keychain] delete({key}) failed: {exc!r}")
            return False
        return True


class ChromeProbe(CredentialProbe):
    """Extract session credentials from an open Slack tab in Google Chrome."""

    name = "chrome"

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout

    async def _run_js(self, javascript: str) -> str:
        res = await run_command("osascript", "-e", _chrome_script(javascript), timeout=self.timeout)
        if not res.ok:
            logger.debug(f"[chrome] osascript exited {res.returncode}: {res.stderr}")
            return ""
        return res.stdout

    async def extract(self) -> tuple[str, str] | None:
        try:
            cookie = await self._run_js(_COOKIE_JS)
            if not cookie:
                logger.info("[chrome] No Slack cookie found (is a slack.com tab open?)")
                return None
            token = await self._run_js(_token_js())
            if not token:
                logger.info("[chrome] No Slack token found in localStorage")
                return None
        except asyncio.TimeoutError:
            logger.warning(f"[chrome] Extraction timed out after {self.timeout}s")
            return None
        except OSError as exc:
            logger.warning(f"[chrome] Extraction failed: {exc}")
            return None

        return token, cookie
