from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Set

from .errors import InvalidRequest, InvalidState, SelfSendError
from .sessions import SessionRegistry

log = logging.getLogger("tokenrelay.router")


def pair_key(a: str, b: str) -> str:
    """Order-independent key for two tokens that have exchanged a message."""
    return f"{a}:{b}" if a < b else f"{b}:{a}"


@dataclass
class DeliveryReport:
    sent: int
    total: int
    failed: List[str] = field(default_factory=list)

    def as_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"sent": self.sent, "total": self.total}
        if self.failed:
            payload["failed"] = list(self.failed)
        return payload


class Router:
    """Direct, multicast and host broadcast delivery between live sessions.

    Also keeps the pairing set: who has successfully messaged whom, so both
    sides can be told when the other one leaves.
    """

    def __init__(self, registry: SessionRegistry) -> None:
        self.registry = registry
        self.pairs: Set[str] = set()

    # --- direct / multicast ---
    def send_direct(self, from_token: str, to_tokens: Sequence[str], body: str) -> DeliveryReport:
        if not to_tokens:
            raise InvalidRequest("'to' must contain at least one token")
        if from_token in to_tokens:
            raise SelfSendError(from_token)

        report = DeliveryReport(sent=0, total=len(to_tokens))
        for target in to_tokens:
            session = self.registry.get(target)
            if session is None:
                report.failed.append(target)
                continue
            if not session.notify("message", message=body, **{"from": from_token}):
                # transport already gone; only shows up as a lower sent count
                continue
            self.pairs.add(pair_key(from_token, target))
            report.sent += 1

        log.debug(
            "Message from %s to %d/%d target(s): %.50r", from_token, report.sent, report.total, body
        )
        return report

    # --- pairing ---
    def notify_disconnect(self, token: str) -> int:
        peers: Set[str] = set()
        for key in list(self.pairs):
            a, b = key.split(":", 1)
            if token == a:
                peers.add(b)
            elif token == b:
                peers.add(a)
            else:
                continue
            self.pairs.discard(key)

        notified = 0
        for peer in sorted(peers):
            session = self.registry.get(peer)
            if session is not None and session.notify("disconnected", token=token):
                notified += 1
        return notified

    # --- host broadcast ---
    def broadcast(self, host_token: str, body: str) -> DeliveryReport:
        host = self.registry.get(host_token)
        if host is None or not host.is_host:
            raise InvalidState("only sessions in host mode can broadcast")

        report = DeliveryReport(sent=0, total=len(host.subscribers))
        for guest_token in sorted(host.subscribers):
            guest = self.registry.get(guest_token)
            if guest is None or not guest.link.is_open:
                continue
            if guest.notify("broadcast_message", message=body, **{"from": host_token}):
                report.sent += 1

        log.debug("Broadcast from %s reached %d/%d subscriber(s)", host_token, report.sent, report.total)
        return report


__all__ = ["pair_key", "DeliveryReport", "Router"]
