from __future__ import annotations


class RelayError(Exception):
    """Base for every condition answered with an ``error`` event.

    None of these close the connection; the dispatcher turns them into
    ``{"type": "error", "error": str(exc)}`` for the offending session only.
    """


class MalformedFrame(RelayError):
    """Unparseable frame, missing/wrong field, or unknown operation type."""


class InvalidRequest(RelayError):
    """Well-formed frame whose arguments cannot be acted on (e.g. no targets)."""


class SelfSendError(InvalidRequest):
    def __init__(self, token: str) -> None:
        super().__init__(f"cannot send a message to yourself ({token})")
        self.token = token


class UnknownTarget(RelayError):
    def __init__(self, token: str) -> None:
        super().__init__(f"token {token} is not connected")
        self.token = token


class InvalidState(RelayError):
    """A mode/subscription precondition does not hold for the session."""


__all__ = [
    "RelayError",
    "MalformedFrame",
    "InvalidRequest",
    "SelfSendError",
    "UnknownTarget",
    "InvalidState",
]
