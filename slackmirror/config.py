"""
Configuration.

All knobs live on MirrorConfig with sensible defaults. from_env() loads a
.env file (if present) and applies SLACKMIRROR_* overrides on top.

Environment variables:
    SLACK_TOKEN / SLACK_COOKIE          - credentials (read by TokenStore)
    SLACKMIRROR_TOKEN_FILE              - credential file path
    SLACKMIRROR_DM_CACHE_FILE           - DM discovery cache path
    SLACKMIRROR_MAX_ATTEMPTS            - retry bound per call
    SLACKMIRROR_HEALTH_INTERVAL         - seconds between health ticks
    SLACKMIRROR_WARNING_HOURS           - token age that triggers renewal
    SLACKMIRROR_CRITICAL_HOURS          - token age reported as critical
    SLACKMIRROR_RENEWAL_COOLDOWN        - seconds between renewal attempts
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import find_dotenv, load_dotenv


@dataclass
class MirrorConfig:
    """Runtime configuration."""

    # Credentials
    token_env: str = "SLACK_TOKEN"
    cookie_env: str = "SLACK_COOKIE"
    token_file: str = "~/.slack-mcp-tokens.json"
    keychain_service: str = "slack-mcp-server"
    probe_timeout: float = 5.0          # Seconds per probe script

    # API client
    api_base: str = "https://slack.com/api"
    request_timeout: float = 30.0
    max_attempts: int = 3

    # User-name cache
    user_cache_size: int = 500
    user_cache_ttl: float = 3600.0      # Seconds

    # DM discovery cache
    dm_cache_file: str = "~/.slack-mcp-dm-cache.json"
    dm_cache_ttl: float = 24 * 3600.0

    # Health monitor
    health_interval: float = 30 * 60.0
    warning_hours: float = 6.0
    critical_hours: float = 10.0
    renewal_cooldown: float = 3600.0

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "MirrorConfig":
        """Build a config from the process environment (and .env)."""
        if dotenv:
            load_dotenv(find_dotenv(usecwd=True), override=False)

        cfg = cls()
        cfg.token_file = os.getenv("SLACKMIRROR_TOKEN_FILE", cfg.token_file)
        cfg.dm_cache_file = os.getenv("SLACKMIRROR_DM_CACHE_FILE", cfg.dm_cache_file)
        cfg.api_base = os.getenv("SLACKMIRROR_API_BASE", cfg.api_base).rstrip("/")
        cfg.max_attempts = int(os.getenv("SLACKMIRROR_MAX_ATTEMPTS", cfg.max_attempts))
        cfg.health_interval = float(os.getenv("SLACKMIRROR_HEALTH_INTERVAL", cfg.health_interval))
        cfg.warning_hours = float(os.getenv("SLACKMIRROR_WARNING_HOURS", cfg.warning_hours))
        cfg.critical_hours = float(os.getenv("SLACKMIRROR_CRITICAL_HOURS", cfg.critical_hours))
        cfg.renewal_cooldown = float(os.getenv("SLACKMIRROR_RENEWAL_COOLDOWN", cfg.renewal_cooldown))
        return cfg
