"""
slackmirror — credential keeper entry point.

Loads config (.env or system env), reports where credentials come from,
validates them against auth.test and then keeps them fresh with the health
monitor until interrupted.
"""

import asyncio
import json
import os
import sys
from pathlib import Path

from loguru import logger

from slackmirror import HealthMonitor, MirrorConfig, SlackClient, TokenStore


async def main() -> None:
    # ----------------------------------------------------------------
    # Config from env
    # ----------------------------------------------------------------
    config = MirrorConfig.from_env()

    # ----------------------------------------------------------------
    # Credentials
    # ----------------------------------------------------------------
    store = TokenStore.from_config(config)
    creds = await store.resolve()
    if creds is None:
        logger.warning("No Slack credentials found at startup")
        if store.is_renewal_available():
            logger.warning("Will retry Chrome extraction on the next health check")
        else:
            logger.warning(f"Set SLACK_TOKEN and SLACK_COOKIE, or write them to {config.token_file}")
    else:
        logger.info(f"Credentials loaded from: {creds.source.value}")

    # ----------------------------------------------------------------
    # Client + monitor
    # ----------------------------------------------------------------
    monitor = HealthMonitor.from_config(config, store)
    async with SlackClient.from_config(config, store) as slack:
        if creds is not None:
            result = await slack.auth_test()
            if result.ok and result.data:
                logger.info(f"Authenticated as {result.data.get('user')} @ {result.data.get('team')}")
            elif result.error:
                logger.error(f"auth.test failed: {result.error}")

        report = await monitor.check()
        print(json.dumps(report.to_dict() | {"user_cache": slack.cache_stats()}, indent=2))

        monitor.start()
        logger.info("slackmirror running, Ctrl+C to stop")
        try:
            await asyncio.Event().wait()
        finally:
            await monitor.stop()


if __name__ == "__main__":
    # Configure loguru
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
        level=os.getenv("LOG_LEVEL", "INFO"),
    )
    logger.add(
        Path("~/.slackmirror/slackmirror.log").expanduser(),
        rotation="10 MB",
        retention="7 days",
        level="DEBUG",
    )

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
