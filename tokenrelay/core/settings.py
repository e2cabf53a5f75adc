from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RelaySettings(BaseModel):
    """Tunables of the relay, loaded from the server YAML config."""

    model_config = ConfigDict(extra="forbid")

    listen: str = "0.0.0.0:4001"
    sweep_interval_secs: float = Field(default=60.0, gt=0)
    token_expiry_secs: int = Field(default=600, gt=0)
    initial_token_length: int = Field(default=4, ge=1)
    max_token_attempts: int = Field(default=100, ge=1)
    channel_max_entries: int = Field(default=100, ge=1)
    channel_ttl_secs: int = Field(default=1200, gt=0)
    max_public_hosts: int = Field(default=20, ge=1)
    max_message_bytes: int = Field(default=100 * 1024 * 1024, ge=1)
    trust_forwarded_for: bool = False

    @field_validator("listen")
    @classmethod
    def _listen_has_port(cls, value: str) -> str:
        host, sep, port = value.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError("listen must look like host:port")
        return value

    @property
    def listen_address(self) -> Tuple[str, int]:
        host, _, port = self.listen.rpartition(":")
        return host, int(port)

    @property
    def token_expiry_ms(self) -> int:
        return self.token_expiry_secs * 1000

    @property
    def channel_ttl_ms(self) -> int:
        return self.channel_ttl_secs * 1000

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]]) -> "RelaySettings":
        return cls(**(data or {}))


__all__ = ["RelaySettings"]
