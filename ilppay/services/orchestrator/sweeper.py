"""Periodic removal of stale payment sessions."""

import asyncio
from datetime import timedelta

from ilppay.common.logging import logger
from ilppay.common.metrics import active_sessions, sessions_swept_total
from ilppay.services.sessions.store import Clock, SessionStore, utc_now


class ExpirySweeper:
    """Deletes sessions past the TTL, whatever their status.

    Only deletes; abandoned grants on the payment network are left to expire there.
    """

    def __init__(
        self,
        store: SessionStore,
        ttl: timedelta = timedelta(hours=1),
        interval_seconds: float = 1800,
        clock: Clock = utc_now,
        service_name: str = "ilppay",
    ) -> None:
        self.store = store
        self.ttl = ttl
        self.interval_seconds = interval_seconds
        self.service_name = service_name
        self._clock = clock

    async def sweep_once(self) -> int:
        now = self._clock()
        removed = 0
        remaining = 0
        for session in await self.store.list_all():
            if session.older_than(now, self.ttl) or session.is_expired(now):
                if await self.store.delete(session.id):
                    removed += 1
            else:
                remaining += 1
        active_sessions.labels(service=self.service_name).set(remaining)
        if removed:
            sessions_swept_total.labels(service=self.service_name).inc(removed)
            logger.info("expired_sessions_swept count=%s remaining=%s", removed, remaining)
        return removed

    async def run_forever(self) -> None:
        """Sweep every `interval_seconds` until cancelled."""

        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("session sweep failed: %s", exc)
