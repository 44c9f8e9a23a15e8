"""
Error taxonomy.

Each error carries a machine-readable ``kind`` and a human-readable ``hint``
telling the caller what to do next. SlackClient.call() never lets these
escape: permanent failures come back inside a CallResult.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NO_CREDENTIALS = "no_credentials"
    AUTH_EXPIRED = "auth_expired"
    RATE_LIMITED = "rate_limited"
    NETWORK = "transient_network_error"
    REMOTE = "remote_error"
    INVALID_CREDENTIAL = "invalid_credential"


RENEWAL_HINT = (
    "Open Slack (app.slack.com) in Google Chrome on macOS and make sure you are "
    "logged in, then refresh tokens. Otherwise set SLACK_TOKEN and SLACK_COOKIE."
)


class SlackError(Exception):
    """Base class for every failure surfaced by slackmirror."""

    kind: ErrorKind = ErrorKind.REMOTE
    default_hint: str = ""

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = self.default_hint if hint is None else hint

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "message": self.message, "hint": self.hint}

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} - {self.hint}"
        return self.message


class NoCredentialsError(SlackError):
    kind = ErrorKind.NO_CREDENTIALS
    default_hint = RENEWAL_HINT


class AuthExpiredError(SlackError):
    kind = ErrorKind.AUTH_EXPIRED
    default_hint = RENEWAL_HINT


class RateLimitedError(SlackError):
    kind = ErrorKind.RATE_LIMITED
    default_hint = "Slack is rate limiting this workspace; wait a minute and retry."


class TransientNetworkError(SlackError):
    kind = ErrorKind.NETWORK
    default_hint = "Check network connectivity to slack.com and retry."


class RemoteError(SlackError):
    """Application-level rejection from Slack. ``code`` is Slack's error string."""

    kind = ErrorKind.REMOTE

    def __init__(self, code: str, hint: str | None = None) -> None:
        super().__init__(code, hint)
        self.code = code


class InvalidCredentialError(SlackError):
    """A token/cookie pair that does not have the expected shape."""

    kind = ErrorKind.INVALID_CREDENTIAL
    default_hint = "The token must start with 'xoxc-' and the cookie with 'xoxd-'."
