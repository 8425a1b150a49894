# File: src/relay/connector.py
# Contract between the lifecycle controller and whatever speaks the chat protocol.

from __future__ import annotations

import re
from enum import IntEnum
from typing import Any, AsyncIterator, Dict, Protocol

from relay.errors import ValidationError
from relay.state import ConnectionEvent

DEFAULT_JID_SUFFIX = "@s.whatsapp.net"
_NON_DIGITS = re.compile(r"\D+")


class DisconnectReason(IntEnum):
    """Close status codes reported by the protocol layer."""

    BAD_SESSION = 500
    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    RESTART_REQUIRED = 515
    UNAVAILABLE_SERVICE = 503


class Connector(Protocol):
    """One protocol connection, owned by exactly one Session."""

    async def connect(self) -> None: ...

    def events(self) -> AsyncIterator[ConnectionEvent]: ...

    async def send_text(self, jid: str, text: str) -> Dict[str, Any]: ...

    async def logout(self) -> None: ...

    async def close(self) -> None: ...


class ConnectorFactory(Protocol):
    """Builds a connector for a user from their stored credential record."""

    def __call__(self, user_id: str, creds: Dict[str, Any]) -> Connector: ...


def normalize_recipient(number: str, suffix: str = DEFAULT_JID_SUFFIX) -> str:
    """Turn a phone number into a protocol address; fully qualified addresses pass through."""
    number = (number or "").strip()
    if "@" in number:
        return number
    digits = _NON_DIGITS.sub("", number)
    if not digits:
        raise ValidationError(f"Invalid recipient number: {number!r}")
    return f"{digits}{suffix}"
