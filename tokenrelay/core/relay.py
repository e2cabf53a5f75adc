from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Union

from .channels import ChannelDirectory
from .errors import RelayError, UnknownTarget
from .hosts import PublicHostFIFO
from .identity import ChoiceSource, IdentityAllocator
from .proto import (
    DirectSend,
    ListChannel,
    ListPublicHosts,
    Mode,
    Operation,
    Publish,
    SetMode,
    Subscribe,
    Unsubscribe,
    Visibility,
    decode_operation,
    iso_timestamp,
    now_ms,
)
from .router import Router
from .sessions import Link, NowFn, Session, SessionRegistry
from .settings import RelaySettings
from .subscriptions import SubscriptionGraph

log = logging.getLogger("tokenrelay.relay")


class Relay:
    """All shared relay state plus the operations peers can invoke on it.

    Created once per process and handed to the transport and the cleaner.
    Every method is synchronous, so on a single event loop each call is
    atomic with respect to every other call and to the periodic sweep.
    """

    def __init__(
        self,
        settings: Optional[RelaySettings] = None,
        *,
        now: NowFn = now_ms,
        rng: Optional[ChoiceSource] = None,
    ) -> None:
        self.settings = settings or RelaySettings()
        self.now = now

        self.identity = IdentityAllocator(
            expiry_ms=self.settings.token_expiry_ms,
            initial_length=self.settings.initial_token_length,
            max_attempts=self.settings.max_token_attempts,
            now=now,
            rng=rng,
        )
        self.sessions = SessionRegistry(now=now)
        self.channels = ChannelDirectory(
            max_entries=self.settings.channel_max_entries,
            ttl_ms=self.settings.channel_ttl_ms,
            now=now,
        )
        self.public_hosts = PublicHostFIFO(capacity=self.settings.max_public_hosts)
        self.router = Router(self.sessions)
        self.graph = SubscriptionGraph(self.sessions, self.public_hosts)

        self.sessions.add_remove_hook(self._on_session_removed)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self, link: Link, address: str, requested_token: Optional[str] = None) -> Optional[Session]:
        """Bind a new transport to a token.

        Without ``requested_token`` a fresh token is issued. With one, the
        caller either resumes a live session whose transport dropped, or
        reclaims a released token it owned. Returns None when the token may
        not be used from this address; the caller closes the transport.
        """

        if requested_token is None:
            token = self.identity.allocate(address)
            session = self.sessions.create(token, address, link)
            reconnected = False
        else:
            session = self._reattach(link, address, requested_token)
            if session is None:
                log.warning("Rejected token %s from %s", requested_token, address)
                return None
            reconnected = True

        session.notify(
            "connection_established",
            token=session.token,
            shortToken=session.token,
            reconnected=reconnected,
        )
        log.info(
            "Client %s - token %s, ip %s. Active: %d",
            "reconnected" if reconnected else "connected",
            session.token,
            address,
            len(self.sessions),
        )
        return session

    def _reattach(self, link: Link, address: str, token: str) -> Optional[Session]:
        existing = self.sessions.get(token)
        if existing is not None:
            if existing.link.is_open or not self.identity.validate(token, address):
                return None
            self.identity.touch(token)
            return self.sessions.rebind(token, link)
        if self.identity.reclaim(token, address):
            return self.sessions.create(token, address, link)
        return None

    def disconnect(self, token: str, link: Optional[Link] = None) -> bool:
        """Remove a session after its transport closed. Safe to repeat."""
        return self.sessions.remove(token, link=link) is not None

    def expire(self, token: str) -> bool:
        """Drop an inactive session and close its transport."""
        session = self.sessions.remove(token)
        if session is None:
            return False
        session.link.close(1001, "inactive")
        return True

    def close_all(self, reason: str = "server shutting down") -> int:
        sessions = list(self.sessions)
        for session in sessions:
            session.link.close(1001, reason)
        return len(sessions)

    def _on_session_removed(self, session: Session) -> None:
        token = session.token
        notified = self.router.notify_disconnect(token)
        self.graph.on_disconnect(session)
        self.channels.withdraw(token)
        self.identity.release(token)
        log.info(
            "Client disconnected - token %s. Notified: %d peer(s). Active: %d",
            token,
            notified,
            len(self.sessions),
        )

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    def handle_frame(self, session: Session, raw: Union[str, bytes]) -> None:
        if self.sessions.get(session.token) is not session:
            return
        self.sessions.touch(session.token)
        self.identity.touch(session.token)
        try:
            self.dispatch(session, decode_operation(raw))
        except RelayError as exc:
            log.debug("Error for %s: %s", session.token, exc)
            session.notify("error", error=str(exc))

    def dispatch(self, session: Session, op: Operation) -> None:
        if isinstance(op, DirectSend):
            self._handle_direct(session, op)
        elif isinstance(op, Publish):
            self._handle_publish(session, op)
        elif isinstance(op, ListChannel):
            self._handle_list(session, op)
        elif isinstance(op, SetMode):
            self._handle_set_mode(session, op)
        elif isinstance(op, Subscribe):
            self._handle_subscribe(session, op)
        elif isinstance(op, Unsubscribe):
            self._handle_unsubscribe(session)
        elif isinstance(op, ListPublicHosts):
            self._handle_list_public_hosts(session)
        else:  # pragma: no cover - the union is closed
            raise TypeError(f"unhandled operation {type(op).__name__}")

    def _handle_direct(self, session: Session, op: DirectSend) -> None:
        targets = op.targets
        if session.is_host and targets == [session.token]:
            report = self.router.broadcast(session.token, op.message)
            session.notify("broadcast_sent", subscribersCount=report.sent, **report.as_payload())
            return

        report = self.router.send_direct(session.token, targets, op.message)
        if op.unicast and report.failed:
            raise UnknownTarget(report.failed[0])
        session.notify("message_sent", **report.as_payload())

    def _handle_publish(self, session: Session, op: Publish) -> None:
        self.channels.publish(op.channel, session.token)
        session.notify("published", channel=op.channel)
        log.info("Client %s published on channel %s", session.token, op.channel)

    def _handle_list(self, session: Session, op: ListChannel) -> None:
        tokens = self.channels.list(op.channel)
        session.notify(
            "channel_list",
            channel=op.channel,
            tokens=tokens,
            count=len(tokens),
            maxEntries=self.channels.max_entries,
        )

    def _handle_set_mode(self, session: Session, op: SetMode) -> None:
        visibility = Visibility(op.visibility) if op.visibility else None
        self.graph.set_mode(session.token, Mode(op.mode), visibility)
        payload: Dict[str, Any] = {"mode": session.mode.value}
        if session.visibility is not None:
            payload["visibility"] = session.visibility.value
        session.notify("mode_set", **payload)

    def _handle_subscribe(self, session: Session, op: Subscribe) -> None:
        result = self.graph.subscribe(session.token, op.to)
        if result.already_subscribed:
            message = f"already subscribed to {result.host}"
        else:
            message = f"subscribed to {result.host}"
        session.notify(
            "subscribed",
            host=result.host,
            subscribersCount=result.subscribers_count,
            alreadySubscribed=result.already_subscribed,
            message=message,
        )

    def _handle_unsubscribe(self, session: Session) -> None:
        host = self.graph.unsubscribe(session.token)
        session.notify("unsubscribed", host=host, message=f"unsubscribed from {host}")

    def _handle_list_public_hosts(self, session: Session) -> None:
        hosts = self.list_public_hosts()
        session.notify(
            "public_hosts_list",
            hosts=hosts,
            count=len(hosts),
            maxPublicHosts=self.public_hosts.capacity,
        )

    def list_public_hosts(self) -> List[Dict[str, Any]]:
        hosts = []
        for token in self.public_hosts.list():
            host = self.sessions.get(token)
            if host is None or not host.is_host:
                continue
            hosts.append(
                {
                    "shortToken": token,
                    "subscribersCount": len(host.subscribers),
                    "visibility": host.visibility.value if host.visibility else None,
                }
            )
        return hosts

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """Read-only view of the relay for status endpoints."""
        now = self.now()
        sessions = list(self.sessions)
        by_mode = Counter(session.mode.value for session in sessions)
        channel_stats = self.channels.stats()
        return {
            "activeConnections": len(sessions),
            "tokens": self.identity.stats(),
            "sessions": {session.token: session.describe(now) for session in sessions},
            "stats": {
                "hosts": by_mode[Mode.HOST.value],
                "guests": by_mode[Mode.GUEST.value],
                "unassigned": by_mode[Mode.NONE.value],
                "publicHosts": len(self.public_hosts),
                "totalSubscribers": sum(len(s.subscribers) for s in sessions if s.is_host),
                "subscribedGuests": sum(1 for s in sessions if s.is_guest and s.subscribed_to),
                "pairs": len(self.router.pairs),
                "channels": channel_stats["channels"],
                "channelEntries": channel_stats["entries"],
            },
            "timestamp": iso_timestamp(now),
        }


__all__ = ["Relay"]
