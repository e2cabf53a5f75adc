from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Callable, Dict, List, Optional

from .proto import now_ms

log = logging.getLogger("tokenrelay.channels")

NowFn = Callable[[], int]


class ChannelDirectory:
    """Named channels of publisher tokens.

    Each channel is an insertion-ordered ``token -> published_at`` map, so
    republishing is a move-to-end and the oldest publisher is always first.
    """

    def __init__(self, *, max_entries: int = 100, ttl_ms: int = 20 * 60 * 1000, now: NowFn = now_ms) -> None:
        self.max_entries = max_entries
        self.ttl_ms = ttl_ms
        self.now = now
        self._channels: Dict[str, "OrderedDict[str, int]"] = {}

    def publish(self, channel: str, token: str) -> None:
        entries = self._channels.setdefault(channel, OrderedDict())
        entries.pop(token, None)
        entries[token] = self.now()
        while len(entries) > self.max_entries:
            evicted, _ = entries.popitem(last=False)
            log.debug("Channel %s full, evicted %s", channel, evicted)

    def list(self, channel: str) -> List[str]:
        entries = self._channels.get(channel)
        if entries is None:
            return []
        self._evict_expired(entries, self.now())
        return list(entries)

    def withdraw(self, token: str) -> int:
        removed = 0
        for name, entries in list(self._channels.items()):
            if entries.pop(token, None) is not None:
                removed += 1
                if not entries:
                    del self._channels[name]
        return removed

    def sweep_expired(self, now: Optional[int] = None) -> int:
        now = self.now() if now is None else now
        removed = 0
        for name, entries in list(self._channels.items()):
            removed += self._evict_expired(entries, now)
            if not entries:
                del self._channels[name]
        if removed:
            log.info("Channel sweep: removed %d expired entr%s", removed, "y" if removed == 1 else "ies")
        return removed

    def _evict_expired(self, entries: "OrderedDict[str, int]", now: int) -> int:
        stale = [token for token, published_at in entries.items() if now - published_at >= self.ttl_ms]
        for token in stale:
            del entries[token]
        return len(stale)

    def stats(self) -> dict:
        return {
            "channels": len(self._channels),
            "entries": sum(len(entries) for entries in self._channels.values()),
        }

    def __contains__(self, channel: object) -> bool:
        return channel in self._channels


__all__ = ["ChannelDirectory"]
