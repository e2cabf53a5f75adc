from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Set

from .proto import Mode, Visibility, build_event, iso_timestamp, now_ms

log = logging.getLogger("tokenrelay.sessions")

NowFn = Callable[[], int]


class Link(Protocol):
    """Outbound side of one peer's transport, as seen by the relay core."""

    @property
    def is_open(self) -> bool: ...

    def deliver(self, frame: Dict[str, Any]) -> bool:
        """Queue a frame; False (never an exception) when the peer is gone."""
        ...

    def close(self, code: int = 1000, reason: str = "") -> None: ...


@dataclass(slots=True, eq=False)
class Session:
    token: str
    address: str
    link: Link
    connected_at: int
    last_activity_at: int
    mode: Mode = Mode.NONE
    subscribed_to: Optional[str] = None
    subscribers: Set[str] = field(default_factory=set)
    visibility: Optional[Visibility] = None

    @property
    def is_host(self) -> bool:
        return self.mode is Mode.HOST

    @property
    def is_guest(self) -> bool:
        return self.mode is Mode.GUEST

    def notify(self, type_: str, **fields: Any) -> bool:
        return self.link.deliver(build_event(type_, **fields))

    def describe(self, now: int) -> Dict[str, Any]:
        return {
            "ip": self.address,
            "connectedAt": iso_timestamp(self.connected_at),
            "lastActivity": iso_timestamp(self.last_activity_at),
            "inactiveForMinutes": (now - self.last_activity_at) // 60000,
            "mode": self.mode.value,
            "visibility": self.visibility.value if self.visibility else None,
            "subscribedTo": self.subscribed_to,
            "subscribersCount": len(self.subscribers),
        }


RemoveHook = Callable[[Session], None]


class SessionRegistry:
    """Live sessions keyed by token.

    ``remove`` is the only way a session leaves the registry and runs every
    registered cleanup hook with the departed session, after it is no longer
    reachable by token.
    """

    def __init__(self, now: NowFn = now_ms) -> None:
        self.now = now
        self.sessions: Dict[str, Session] = {}
        self._remove_hooks: List[RemoveHook] = []

    def add_remove_hook(self, hook: RemoveHook) -> None:
        self._remove_hooks.append(hook)

    def create(self, token: str, address: str, link: Link) -> Session:
        if token in self.sessions:
            raise ValueError(f"session for {token} already exists")
        now = self.now()
        session = Session(token=token, address=address, link=link, connected_at=now, last_activity_at=now)
        self.sessions[token] = session
        return session

    def get(self, token: str) -> Optional[Session]:
        return self.sessions.get(token)

    def touch(self, token: str) -> bool:
        session = self.sessions.get(token)
        if session is None:
            return False
        session.last_activity_at = self.now()
        return True

    def rebind(self, token: str, link: Link) -> Optional[Session]:
        session = self.sessions.get(token)
        if session is None:
            return None
        session.link = link
        session.last_activity_at = self.now()
        return session

    def remove(self, token: str, *, link: Optional[Link] = None) -> Optional[Session]:
        session = self.sessions.get(token)
        if session is None:
            return None
        if link is not None and session.link is not link:
            # session was resumed on another transport; the old one closing is not a departure
            return None
        del self.sessions[token]
        for hook in self._remove_hooks:
            try:
                hook(session)
            except Exception:  # pragma: no cover - defensive
                log.exception("cleanup hook failed for %s", token)
        return session

    def __contains__(self, token: object) -> bool:
        return token in self.sessions

    def __len__(self) -> int:
        return len(self.sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self.sessions.values()))


__all__ = ["Link", "Session", "SessionRegistry"]
