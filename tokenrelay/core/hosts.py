from __future__ import annotations

import logging
from collections import OrderedDict
from typing import List

log = logging.getLogger("tokenrelay.hosts")


class PublicHostFIFO:
    """Discovery list of public hosts: deduplicated, oldest first, bounded."""

    def __init__(self, capacity: int = 20) -> None:
        self.capacity = capacity
        self._items: "OrderedDict[str, None]" = OrderedDict()

    def add(self, token: str) -> None:
        self._items.pop(token, None)
        self._items[token] = None
        while len(self._items) > self.capacity:
            evicted, _ = self._items.popitem(last=False)
            log.info("Public host list full, dropped %s", evicted)

    def remove(self, token: str) -> bool:
        if token not in self._items:
            return False
        del self._items[token]
        return True

    def list(self) -> List[str]:
        return list(self._items)

    def __contains__(self, token: object) -> bool:
        return token in self._items

    def __len__(self) -> int:
        return len(self._items)


__all__ = ["PublicHostFIFO"]
