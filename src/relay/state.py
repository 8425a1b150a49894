# File: src/relay/state.py
# In-memory session record and the connection events that drive it.

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_QR = "awaiting_qr"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    LOGGED_OUT = "logged_out"


# Wire status reported by /login and /status.
PUBLIC_STATUS = {
    SessionState.IDLE: "pending",
    SessionState.AWAITING_QR: "pending",
    SessionState.CONNECTED: "connected",
    SessionState.DISCONNECTED: "disconnected",
    SessionState.LOGGED_OUT: "disconnected",
}


@dataclass(slots=True, frozen=True)
class LastError:
    code: Optional[Union[int, str]]
    message: str
    timestamp: float = field(default_factory=time.time)


# ---- connection events (one ordered stream per session) ----

@dataclass(slots=True, frozen=True)
class QrIssued:
    qr: str


@dataclass(slots=True, frozen=True)
class Opened:
    pass


@dataclass(slots=True, frozen=True)
class Closed:
    status_code: Optional[int] = None
    message: str = "connection closed"


@dataclass(slots=True, frozen=True)
class CredsUpdated:
    creds: Dict[str, Any]


ConnectionEvent = Union[QrIssued, Opened, Closed, CredsUpdated]


@dataclass(slots=True, eq=False)
class Session:
    """One user's protocol connection and where it is in its lifecycle."""

    user_id: str
    connector: Any
    state: SessionState = SessionState.IDLE
    current_qr: Optional[str] = None  # PNG data URL
    raw_qr: Optional[str] = None
    last_error: Optional[LastError] = None
    retry_count: int = 0
    handle_closed: bool = False
    created_at: float = field(default_factory=time.time)
    qr_timeout_task: Optional[asyncio.Task] = None
    reconnect_task: Optional[asyncio.Task] = None
    consumer_task: Optional[asyncio.Task] = None
    # set once the first QR/open/close arrives (or the session is torn down)
    first_update: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def public_status(self) -> str:
        return PUBLIC_STATUS[self.state]

    def record_error(self, code: Optional[Union[int, str]], message: str) -> LastError:
        self.last_error = LastError(code=code, message=message)
        return self.last_error

    def clear_qr(self) -> None:
        self.current_qr = None
        self.raw_qr = None
