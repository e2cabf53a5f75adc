from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol

from .proto import now_ms

log = logging.getLogger("tokenrelay.identity")

# 1-9 and A-Z: no zero and no lowercase so tokens survive being read aloud
TOKEN_ALPHABET = "123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

NowFn = Callable[[], int]


class ChoiceSource(Protocol):
    def choice(self, seq: str) -> str: ...


@dataclass
class TokenRecord:
    address: str
    assigned_at: int
    last_activity: int


@dataclass
class ReleasedToken:
    address: str
    released_at: int


@dataclass
class SweepResult:
    forgotten: List[str] = field(default_factory=list)
    inactive: List[str] = field(default_factory=list)


class IdentityAllocator:
    """Issues short tokens and remembers recently released ones.

    A token is either active (bound to the address that received it), released
    (kept out of circulation for ``expiry_ms`` so nobody else can pick up a
    just-disconnected identity), or unknown. The two sets never overlap.
    """

    def __init__(
        self,
        *,
        expiry_ms: int = 10 * 60 * 1000,
        initial_length: int = 4,
        max_attempts: int = 100,
        now: NowFn = now_ms,
        rng: Optional[ChoiceSource] = None,
    ) -> None:
        self.expiry_ms = expiry_ms
        self.current_length = initial_length
        self.max_attempts = max_attempts
        self.now = now
        self.rng = rng or secrets.SystemRandom()

        self.active: Dict[str, TokenRecord] = {}
        self.released: Dict[str, ReleasedToken] = {}

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def _draw(self, length: int) -> str:
        return "".join(self.rng.choice(TOKEN_ALPHABET) for _ in range(length))

    def in_use(self, token: str) -> bool:
        return token in self.active or token in self.released

    def _generate(self) -> str:
        while True:
            for _ in range(self.max_attempts):
                token = self._draw(self.current_length)
                if not self.in_use(token):
                    return token
            self.current_length += 1
            log.warning("Token space congested, growing token length to %d", self.current_length)

    def allocate(self, address: str) -> str:
        token = self._generate()
        now = self.now()
        self.active[token] = TokenRecord(address=address, assigned_at=now, last_activity=now)
        log.debug("Allocated token %s for %s", token, address)
        return token

    # ------------------------------------------------------------------
    # Binding checks
    # ------------------------------------------------------------------

    def validate(self, token: str, address: str) -> bool:
        record = self.active.get(token)
        return record is not None and record.address == address

    def reclaim(self, token: str, address: str) -> bool:
        """Move a released token back to active for the address it was bound to."""
        record = self.released.get(token)
        if record is None or record.address != address:
            return False
        now = self.now()
        if now - record.released_at > self.expiry_ms:
            return False
        del self.released[token]
        self.active[token] = TokenRecord(address=address, assigned_at=now, last_activity=now)
        log.info("Token %s reclaimed by %s", token, address)
        return True

    def touch(self, token: str) -> bool:
        record = self.active.get(token)
        if record is None:
            return False
        record.last_activity = self.now()
        return True

    def release(self, token: str) -> bool:
        record = self.active.pop(token, None)
        if record is None:
            return False
        self.released[token] = ReleasedToken(address=record.address, released_at=self.now())
        return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep_expired(self, now: Optional[int] = None) -> SweepResult:
        now = self.now() if now is None else now
        result = SweepResult()

        for token, record in list(self.released.items()):
            if now - record.released_at > self.expiry_ms:
                del self.released[token]
                result.forgotten.append(token)

        for token, record in list(self.active.items()):
            if now - record.last_activity > self.expiry_ms:
                log.info(
                    "Releasing inactive token %s (idle %d min)",
                    token,
                    (now - record.last_activity) // 60000,
                )
                del self.active[token]
                self.released[token] = ReleasedToken(address=record.address, released_at=now)
                result.inactive.append(token)

        if result.forgotten:
            log.info("Forgot %d expired token(s): %s", len(result.forgotten), ", ".join(result.forgotten))
        return result

    def stats(self) -> dict:
        return {
            "activeTokens": len(self.active),
            "releasedTokens": len(self.released),
            "currentTokenLength": self.current_length,
            "expirationTimeMinutes": self.expiry_ms / 60000,
        }


__all__ = ["TOKEN_ALPHABET", "IdentityAllocator", "SweepResult", "TokenRecord", "ReleasedToken"]
