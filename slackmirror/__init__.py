"""slackmirror — resilient Slack web API access with session credentials."""

from slackmirror.cache import DMCache, TTLCache
from slackmirror.client import CallResult, RetryContext, SlackClient
from slackmirror.config import MirrorConfig
from slackmirror.errors import (
    AuthExpiredError,
    ErrorKind,
    InvalidCredentialError,
    NoCredentialsError,
    RateLimitedError,
    RemoteError,
    SlackError,
    TransientNetworkError,
)
from slackmirror.files import atomic_write
from slackmirror.health import HealthMonitor, HealthReport, HealthStatus
from slackmirror.tokens import CredentialPair, CredentialSource, TokenStore

__version__ = "0.1.0"
__all__ = [
    # Config
    "MirrorConfig",
    # Credentials
    "TokenStore", "CredentialPair", "CredentialSource",
    # Client
    "SlackClient", "CallResult", "RetryContext",
    # Caches
    "TTLCache", "DMCache",
    # Health
    "HealthMonitor", "HealthReport", "HealthStatus",
    # Persistence
    "atomic_write",
    # Errors
    "SlackError", "ErrorKind", "NoCredentialsError", "AuthExpiredError",
    "RateLimitedError", "TransientNetworkError", "RemoteError", "InvalidCredentialError",
]
