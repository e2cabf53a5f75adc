from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .relay import Relay
from .sessions import NowFn

log = logging.getLogger("tokenrelay.cleaner")


@dataclass
class SweepReport:
    forgotten_tokens: List[str] = field(default_factory=list)
    expired_sessions: List[str] = field(default_factory=list)
    expired_channel_entries: int = 0


class Cleaner:
    """Periodic sweep over the relay's time-bounded state.

    ``tick`` is synchronous and can be driven directly; ``start``/``stop``
    own the background task that calls it every ``interval_s`` seconds.
    """

    def __init__(self, relay: Relay, *, interval_s: float = 60.0, now: Optional[NowFn] = None) -> None:
        self.relay = relay
        self.interval_s = interval_s
        self.now = now or relay.now
        self._task: Optional[asyncio.Task] = None

    def tick(self) -> SweepReport:
        now = self.now()
        report = SweepReport()

        tokens = self.relay.identity.sweep_expired(now)
        report.forgotten_tokens = tokens.forgotten
        for token in tokens.inactive:
            if self.relay.expire(token):
                report.expired_sessions.append(token)

        report.expired_channel_entries = self.relay.channels.sweep_expired(now)

        if report.expired_sessions:
            log.info("Expired %d inactive session(s)", len(report.expired_sessions))
        return report

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="tokenrelay-cleaner")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                self.tick()
            except Exception:  # pragma: no cover - defensive
                log.exception("cleaner tick failed")


__all__ = ["Cleaner", "SweepReport"]
