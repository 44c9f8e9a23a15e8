"""
Credential health monitor.

A background asyncio task that periodically looks at the current
credentials and renews them before they expire:

    missing -> healthy -> warning -> critical
                  ^__________|__________|   (any successful renewal)

Ticks never raise into the caller; failures are logged and the loop keeps
going. The task is owned by whoever calls start() and is cancelled by stop().
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

from loguru import logger

from slackmirror.config import MirrorConfig
from slackmirror.tokens import CredentialPair, TokenStore


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    MISSING = "missing"


@dataclass
class HealthReport:
    status: HealthStatus
    checked_at: str
    source: str | None = None
    updated_at: str | None = None
    age_hours: float | None = None
    renewal_available: bool = False
    renewal_attempted: bool = False
    last_renewal_attempt: str | None = None
    last_renewal_success: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts else None


class HealthMonitor:
    """Periodic, non-blocking credential freshness check."""

    def __init__(
        self,
        store: TokenStore,
        *,
        interval: float = 30 * 60.0,
        warning_hours: float = 6.0,
        critical_hours: float = 10.0,
        renewal_cooldown: float = 3600.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if critical_hours < warning_hours:
            raise ValueError("critical_hours must be >= warning_hours")
        self.store = store
        self.interval = interval
        self.warning_after = timedelta(hours=warning_hours)
        self.critical_after = timedelta(hours=critical_hours)
        self.renewal_cooldown = timedelta(seconds=renewal_cooldown)
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._last_report: HealthReport | None = None

    @classmethod
    def from_config(cls, config: MirrorConfig, store: TokenStore) -> "HealthMonitor":
        return cls(
            store,
            interval=config.health_interval,
            warning_hours=config.warning_hours,
            critical_hours=config.critical_hours,
            renewal_cooldown=config.renewal_cooldown,
        )

    # ------------------------------------------------------------------
    # Assessment
    # ------------------------------------------------------------------

    def classify(self, pair: CredentialPair | None, now: datetime) -> HealthStatus:
        if pair is None:
            return HealthStatus.MISSING
        age = pair.age(now)
        if age is None:
            # Environment / secret-store pairs carry no timestamp
            return HealthStatus.HEALTHY
        if age >= self.critical_after:
            return HealthStatus.CRITICAL
        if age >= self.warning_after:
            return HealthStatus.WARNING
        return HealthStatus.HEALTHY

    def _cooldown_elapsed(self, now: datetime) -> bool:
        last = self.store.last_renewal_attempt
        return last is None or now - last >= self.renewal_cooldown

    async def check(self) -> HealthReport:
        """Run one tick: assess credentials and renew them if they are aging."""
        now = self._clock()
        pair = await self.store.resolve(force_renewal=False)
        status = self.classify(pair, now)
        attempted = False

        if (
            status in (HealthStatus.WARNING, HealthStatus.CRITICAL)
            and self.store.is_renewal_available()
            and self._cooldown_elapsed(now)
        ):
            attempted = True
            logger.info(f"[health] Credentials are {status.value}, attempting proactive renewal")
            renewed = await self.store.renew()
            if renewed is not None:
                pair = renewed
                status = HealthStatus.HEALTHY
            else:
                logger.warning("[health] Proactive renewal failed")

        age = pair.age(now) if pair is not None else None
        report = HealthReport(
            status=status,
            checked_at=now.isoformat(),
            source=pair.source.value if pair is not None else None,
            updated_at=_iso(pair.updated_at) if pair is not None else None,
            age_hours=round(age.total_seconds() / 3600, 2) if age is not None else None,
            renewal_available=self.store.is_renewal_available(),
            renewal_attempted=attempted,
            last_renewal_attempt=_iso(self.store.last_renewal_attempt),
            last_renewal_success=_iso(self.store.last_renewal_success),
        )
        if self._last_report is None or self._last_report.status != report.status:
            logger.info(f"[health] Credential status: {report.status.value}")
        self._last_report = report
        return report

    def report(self) -> HealthReport | None:
        """Most recent report, or None before the first tick."""
        return self._last_report

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        """Start the periodic task on the running loop (idempotent)."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="slackmirror:health")
            logger.debug(f"[health] Monitor started (interval={self.interval}s)")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("[health] Monitor stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.check()
            except Exception as exc:
                logger.error(f"[health] Check failed: {exc}")
            await asyncio.sleep(self.interval)
