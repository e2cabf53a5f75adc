from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import InvalidState, UnknownTarget
from .hosts import PublicHostFIFO
from .proto import Mode, Visibility
from .sessions import Session, SessionRegistry

log = logging.getLogger("tokenrelay.subscriptions")


@dataclass
class SubscribeResult:
    host: str
    subscribers_count: int
    already_subscribed: bool = False


class SubscriptionGraph:
    """Host/guest relationships layered over ``Session.mode``.

    A guest follows at most one host; a host owns the set of its subscribers
    and, when public, a slot in the public host list. Every transition that
    touches more than one session completes before returning, so a host's
    subscriber set is already empty by the time its guests hear it left.
    """

    def __init__(self, registry: SessionRegistry, public_hosts: PublicHostFIFO) -> None:
        self.registry = registry
        self.public_hosts = public_hosts

    def _require(self, token: str) -> Session:
        session = self.registry.get(token)
        if session is None:
            raise UnknownTarget(token)
        return session

    # ------------------------------------------------------------------
    # Mode transitions
    # ------------------------------------------------------------------

    def set_mode(self, token: str, mode: Mode, visibility: Optional[Visibility] = None) -> Session:
        session = self._require(token)
        if mode is Mode.HOST:
            self._become_host(session, visibility or Visibility.PRIVATE)
        elif mode is Mode.GUEST:
            self._become_guest(session)
        else:
            raise InvalidState(f"cannot switch to mode {mode.value!r}")
        log.info(
            "Session %s now %s%s",
            token,
            session.mode.value,
            f" ({session.visibility.value})" if session.visibility else "",
        )
        return session

    def _become_host(self, session: Session, visibility: Visibility) -> None:
        if session.is_guest and session.subscribed_to is not None:
            self._detach_guest(session, "subscriber_left")
        # host -> host only changes visibility; subscribers stay
        session.mode = Mode.HOST
        session.subscribed_to = None
        session.visibility = visibility
        if visibility is Visibility.PUBLIC:
            self.public_hosts.add(session.token)
        else:
            self.public_hosts.remove(session.token)

    def _become_guest(self, session: Session) -> None:
        if session.is_host:
            self._retire_host(session)
        elif not session.is_guest:
            session.subscribed_to = None
        session.mode = Mode.GUEST
        session.subscribers.clear()
        session.visibility = None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, guest_token: str, host_token: str) -> SubscribeResult:
        guest = self._require(guest_token)
        if not guest.is_guest:
            raise InvalidState("switch to guest mode before subscribing")
        host = self.registry.get(host_token)
        if host is None:
            raise UnknownTarget(host_token)
        if not host.is_host:
            raise InvalidState(f"{host_token} is not in host mode")

        if guest.subscribed_to == host_token and guest_token in host.subscribers:
            return SubscribeResult(host=host_token, subscribers_count=len(host.subscribers), already_subscribed=True)

        if guest.subscribed_to is not None:
            self._detach_guest(guest, "subscriber_left")

        guest.subscribed_to = host_token
        host.subscribers.add(guest_token)
        host.notify("new_subscriber", guest=guest_token, subscribersCount=len(host.subscribers))
        log.info("Guest %s subscribed to %s (%d subscriber(s))", guest_token, host_token, len(host.subscribers))
        return SubscribeResult(host=host_token, subscribers_count=len(host.subscribers))

    def unsubscribe(self, guest_token: str) -> str:
        guest = self._require(guest_token)
        if guest.subscribed_to is None:
            raise InvalidState("not subscribed to any host")
        return self._detach_guest(guest, "subscriber_left")

    # ------------------------------------------------------------------
    # Departure
    # ------------------------------------------------------------------

    def on_disconnect(self, session: Session) -> None:
        if session.is_guest and session.subscribed_to is not None:
            self._detach_guest(session, "subscriber_disconnected")
        elif session.is_host:
            self._retire_host(session)

    def _detach_guest(self, guest: Session, event: str) -> str:
        host_token = guest.subscribed_to
        guest.subscribed_to = None
        host = self.registry.get(host_token) if host_token else None
        if host is not None and host.is_host and guest.token in host.subscribers:
            host.subscribers.discard(guest.token)
            host.notify(event, guest=guest.token, subscribersCount=len(host.subscribers))
            log.info("Guest %s left %s (%s)", guest.token, host_token, event)
        return host_token

    def _retire_host(self, host: Session) -> None:
        guests = sorted(host.subscribers)
        host.subscribers.clear()
        self.public_hosts.remove(host.token)
        for guest_token in guests:
            guest = self.registry.get(guest_token)
            if guest is not None:
                guest.notify("host_disconnected", host=host.token)
        if guests:
            log.info("Host %s retired, notified %d guest(s)", host.token, len(guests))


__all__ = ["SubscribeResult", "SubscriptionGraph"]
