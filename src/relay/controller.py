# File: src/relay/controller.py
# Lifecycle controller: drives every Session through
#   idle -> awaiting_qr -> connected -> disconnected -> (reconnect | logged_out)
# Mutations for a user id happen under registry.lock(user_id). Connector events are
# consumed by one task per session, strictly in order.

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from relay.connector import ConnectorFactory, DisconnectReason, DEFAULT_JID_SUFFIX, normalize_recipient
from relay.credentials import CredentialStore, validate_user_id
from relay.errors import (
    CreationError,
    CredentialStoreError,
    NotConnectedError,
    QrEncodingError,
    ResetError,
    SendError,
    ValidationError,
)
from relay.qr import encode_qr
from relay.registry import SessionRegistry
from relay.state import (
    Closed,
    ConnectionEvent,
    CredsUpdated,
    LastError,
    Opened,
    QrIssued,
    Session,
    SessionState,
)

ACTIVE_STATES = (SessionState.IDLE, SessionState.AWAITING_QR, SessionState.CONNECTED)
CLOSE_TIMEOUT_SECONDS = 5.0
LOGOUT_TIMEOUT_SECONDS = 10.0


class LifecycleController:
    """Owns session creation, teardown and every state transition in between."""

    def __init__(self, logger_manager: object, registry: SessionRegistry, credential_store: CredentialStore,
                 connector_factory: ConnectorFactory, config: dict,
                 qr_encoder: Callable[[str], Awaitable[str]] = encode_qr):
        self.config = config
        self.logger = logger_manager.create_logger(logger_name="LifecycleController",
                                                   logging_level=self.config.get("LOGGING_LEVEL", "INFO"))
        self.registry = registry
        self.credential_store = credential_store
        self.connector_factory = connector_factory
        self.qr_encoder = qr_encoder

        self.qr_timeout = float(self.config.get("QR_TIMEOUT_SECONDS", 30))
        self.qr_wait = float(self.config.get("QR_WAIT_SECONDS", 10))
        self.reconnect_delay = float(self.config.get("RECONNECT_DELAY_SECONDS", 5))
        self.max_retries = int(self.config.get("MAX_RETRIES", 5))
        self.wipe_threshold = int(self.config.get("CREDENTIAL_WIPE_RETRY_THRESHOLD", 3))
        self.wipe_on_exhaustion = bool(self.config.get("WIPE_ON_RETRY_EXHAUSTION", True))
        self.reuse_pending_qr = bool(self.config.get("REUSE_PENDING_QR", True))
        self.jid_suffix = self.config.get("JID_SUFFIX", DEFAULT_JID_SUFFIX)

        # why a session that is no longer registered went away, for /status
        self.recent_errors: Dict[str, LastError] = {}
        self.started_at = time.time()

    # ------------------------------------------------------------------
    # API operations
    # ------------------------------------------------------------------

    async def login(self, user_id: str, reset: bool = False) -> Session:
        """Return the user's session, creating it when absent or when a reset is requested."""
        validate_user_id(user_id)
        async with self.registry.lock(user_id):
            existing = self.registry.get(user_id)
            if existing is not None and not reset and self._reusable(existing):
                self.logger.debug(f"Login for {user_id} reuses session in state {existing.state.value}")
                session = existing
            else:
                if existing is not None:
                    await self._terminate(existing, SessionState.LOGGED_OUT, wipe=False, remember=False)
                if reset:
                    try:
                        await self.credential_store.wipe(user_id)
                    except CredentialStoreError as e:
                        raise CreationError(e.message) from e
                self.recent_errors.pop(user_id, None)
                session = await self._create_locked(user_id)
        await self._wait_first_update(session)
        return session

    def snapshot(self, user_id: str) -> Dict[str, Any]:
        """Lock-free view of a user's state for status polling."""
        validate_user_id(user_id)
        session = self.registry.get(user_id)
        if session is None:
            return {
                "status": "disconnected",
                "qr": None,
                "last_error": self.recent_errors.get(user_id),
                "retry_count": None,
            }
        return {
            "status": session.public_status,
            "qr": session.current_qr,
            "last_error": session.last_error,
            "retry_count": session.retry_count,
        }

    async def send_message(self, user_id: str, number: str, text: str) -> Tuple[str, Dict[str, Any]]:
        validate_user_id(user_id)
        if not text:
            raise ValidationError("Message text is required")
        jid = normalize_recipient(number, self.jid_suffix)
        session = self.registry.get(user_id)
        if session is None or session.state is not SessionState.CONNECTED:
            raise NotConnectedError(f"Session for {user_id} is not connected")
        try:
            response = await session.connector.send_text(jid, text)
        except Exception as e:
            self.logger.error(f"Failed to send message for {user_id} to {jid}: {e}")
            raise SendError(str(e)) from e
        self.logger.info(f"Message sent for {user_id} to {jid}")
        return jid, response or {}

    async def logout(self, user_id: str) -> None:
        """Drop the session and its credentials. Succeeds even when nothing exists."""
        validate_user_id(user_id)
        async with self.registry.lock(user_id):
            session = self.registry.get(user_id)
            if session is not None:
                if session.state is SessionState.CONNECTED and not session.handle_closed:
                    try:
                        await asyncio.wait_for(session.connector.logout(), LOGOUT_TIMEOUT_SECONDS)
                    except Exception as e:
                        self.logger.warning(f"Server-side logout failed for {user_id}: {e!r}")
                await self._terminate(session, SessionState.LOGGED_OUT, wipe=False, remember=False)
            self.recent_errors.pop(user_id, None)
            await self._wipe_quietly(user_id)
        self.logger.info(f"Logged out {user_id}")

    async def reset(self, user_id: str) -> None:
        """Wipe credentials and remove any live session, whatever its state."""
        validate_user_id(user_id)
        async with self.registry.lock(user_id):
            session = self.registry.get(user_id)
            if session is not None:
                await self._terminate(session, SessionState.LOGGED_OUT, wipe=False, remember=False)
            self.recent_errors.pop(user_id, None)
            try:
                await self.credential_store.wipe(user_id)
            except CredentialStoreError as e:
                raise ResetError(e.message) from e
        self.logger.info(f"Reset {user_id}")

    def health(self) -> Dict[str, Any]:
        return {
            "active_sessions": self.registry.size(),
            "uptime": time.time() - self.started_at,
        }

    # ------------------------------------------------------------------
    # process lifecycle
    # ------------------------------------------------------------------

    async def startup(self) -> None:
        if self.config.get("WIPE_ON_STARTUP", False):
            wiped = await self.credential_store.wipe_all()
            self.logger.info(f"Deleted {wiped} stored credential folders on startup")
            return
        if not self.config.get("RESTORE_ON_STARTUP", True):
            return
        restored = 0
        for user_id in await self.credential_store.list_users():
            async with self.registry.lock(user_id):
                if self.registry.get(user_id) is not None:
                    continue
                try:
                    await self._create_locked(user_id)
                    restored += 1
                except CreationError as e:
                    self.logger.error(f"Failed to restore session for {user_id}: {e.message}")
        self.logger.info(f"Restored {restored} sessions from {self.credential_store.root_dir}")

    async def shutdown(self) -> None:
        """Close every live handle; credentials stay on disk for the next start."""
        sessions = self.registry.sessions()
        tasks = []
        for session in sessions:
            async with self.registry.lock(session.user_id):
                tasks.extend(t for t in (session.qr_timeout_task, session.reconnect_task, session.consumer_task) if t)
                await self._terminate(session, SessionState.DISCONNECTED, wipe=False, remember=False)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.logger.info(f"Closed {len(sessions)} sessions on shutdown")

    # ------------------------------------------------------------------
    # creation / teardown (caller holds the user's lock)
    # ------------------------------------------------------------------

    def _reusable(self, session: Session) -> bool:
        if session.state in (SessionState.IDLE, SessionState.AWAITING_QR):
            return self.reuse_pending_qr
        return session.state in (SessionState.CONNECTED, SessionState.DISCONNECTED)

    async def _create_locked(self, user_id: str, retry_count: int = 0) -> Session:
        try:
            creds = await self.credential_store.load(user_id)
        except CredentialStoreError as e:
            raise CreationError(e.message) from e
        try:
            connector = self.connector_factory(user_id, creds)
        except Exception as e:
            self.logger.exception(f"Connector construction failed for {user_id}")
            raise CreationError(f"Failed to build connector for {user_id}: {e}") from e

        session = Session(user_id=user_id, connector=connector, retry_count=retry_count)
        try:
            await connector.connect()
        except Exception as e:
            self.logger.error(f"Connector failed to connect for {user_id}: {e}")
            await self._close_connector(session)
            raise CreationError(f"Failed to connect session for {user_id}: {e}") from e

        session.state = SessionState.AWAITING_QR
        self.registry.put(user_id, session)
        session.consumer_task = asyncio.create_task(self._consume(session), name=f"relay-events:{user_id}")
        self.logger.info(f"Created session for {user_id} (retry {retry_count}, {len(creds)} stored credential entries)")
        return session

    async def _terminate(self, session: Session, final_state: SessionState, wipe: bool, remember: bool) -> None:
        await self._release(session)
        session.state = final_state
        if self.registry.is_current(session):
            self.registry.remove(session.user_id)
        if remember and session.last_error is not None:
            self.recent_errors[session.user_id] = session.last_error
        if wipe:
            await self._wipe_quietly(session.user_id)

    async def _release(self, session: Session) -> None:
        for name in ("qr_timeout_task", "reconnect_task", "consumer_task"):
            self._cancel_task(getattr(session, name))
            setattr(session, name, None)
        await self._close_connector(session)
        session.first_update.set()

    async def _close_connector(self, session: Session) -> None:
        if session.handle_closed:
            return
        session.handle_closed = True
        try:
            await asyncio.wait_for(session.connector.close(), CLOSE_TIMEOUT_SECONDS)
        except Exception as e:
            self.logger.warning(f"Error closing connection for {session.user_id}: {e!r}")

    async def _wipe_quietly(self, user_id: str) -> None:
        try:
            await self.credential_store.wipe(user_id)
        except CredentialStoreError as e:
            self.logger.error(e.message)

    @staticmethod
    def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _wait_first_update(self, session: Session) -> None:
        if session.state is not SessionState.AWAITING_QR or session.current_qr is not None or self.qr_wait <= 0:
            return
        try:
            await asyncio.wait_for(session.first_update.wait(), self.qr_wait)
        except asyncio.TimeoutError:
            self.logger.debug(f"No QR for {session.user_id} within {self.qr_wait}s; answering pending")

    # ------------------------------------------------------------------
    # event stream
    # ------------------------------------------------------------------

    async def _consume(self, session: Session) -> None:
        reason = "event stream ended"
        try:
            async for event in session.connector.events():
                if not self.registry.is_current(session):
                    return
                await self._dispatch(session, event)
                if session.state not in ACTIVE_STATES or not self.registry.is_current(session):
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Event stream for {session.user_id} failed: {e!r}")
            reason = f"event stream failed: {e}"
        if self.registry.is_current(session) and session.state in ACTIVE_STATES:
            await self._dispatch(session, Closed(status_code=None, message=reason))

    async def _dispatch(self, session: Session, event: ConnectionEvent) -> None:
        qr_url = None
        qr_error = None
        if isinstance(event, QrIssued):
            try:
                qr_url = await self.qr_encoder(event.qr)
            except QrEncodingError as e:
                qr_error = e

        async with self.registry.lock(session.user_id):
            if not self.registry.is_current(session) or session.state not in ACTIVE_STATES:
                return
            try:
                if isinstance(event, QrIssued):
                    self._on_qr(session, event, qr_url, qr_error)
                elif isinstance(event, Opened):
                    self._on_open(session)
                elif isinstance(event, Closed):
                    await self._on_closed(session, event)
                elif isinstance(event, CredsUpdated):
                    await self.credential_store.save(session.user_id, event.creds)
                else:
                    self.logger.warning(f"Ignoring unknown event {event!r} for {session.user_id}")
            except Exception as e:
                self.logger.exception(f"Handling {type(event).__name__} for {session.user_id} failed")
                await self._on_closed(session, Closed(status_code=None, message=f"event handling failed: {e}"))

    def _on_qr(self, session: Session, event: QrIssued, qr_url: Optional[str],
               qr_error: Optional[QrEncodingError]) -> None:
        session.state = SessionState.AWAITING_QR
        session.raw_qr = event.qr
        session.retry_count = 0
        if qr_error is not None:
            session.current_qr = None
            session.record_error("qr_encoding", qr_error.message)
            self.logger.error(f"QR for {session.user_id} could not be rendered: {qr_error.message}")
        else:
            session.current_qr = qr_url
        self._cancel_task(session.qr_timeout_task)
        session.qr_timeout_task = asyncio.create_task(self._expire_qr(session),
                                                      name=f"relay-qr-timeout:{session.user_id}")
        session.first_update.set()
        self.logger.info(f"QR issued for {session.user_id}; waiting {self.qr_timeout}s for scan")

    def _on_open(self, session: Session) -> None:
        session.state = SessionState.CONNECTED
        session.clear_qr()
        session.last_error = None
        session.retry_count = 0
        self._cancel_task(session.qr_timeout_task)
        session.qr_timeout_task = None
        self.recent_errors.pop(session.user_id, None)
        session.first_update.set()
        self.logger.info(f"Session for {session.user_id} connected")

    async def _on_closed(self, session: Session, event: Closed) -> None:
        session.state = SessionState.DISCONNECTED
        session.clear_qr()
        session.record_error(event.status_code, event.message)
        self._cancel_task(session.qr_timeout_task)
        session.qr_timeout_task = None
        await self._close_connector(session)
        session.first_update.set()
        self.logger.warning(f"Session for {session.user_id} disconnected: {event.status_code} {event.message}")

        if event.status_code == DisconnectReason.LOGGED_OUT:
            self.logger.warning(f"{session.user_id} was logged out; dropping session and credentials")
            await self._terminate(session, SessionState.LOGGED_OUT, wipe=True, remember=True)
            return
        await self._retry_or_give_up(session)

    async def _retry_or_give_up(self, session: Session) -> None:
        if session.retry_count >= self.max_retries:
            self.logger.error(f"Giving up on {session.user_id} after {session.retry_count} reconnect attempts")
            await self._terminate(session, SessionState.LOGGED_OUT, wipe=self.wipe_on_exhaustion, remember=True)
            return
        session.retry_count += 1
        self.logger.info(f"Reconnecting {session.user_id} in {self.reconnect_delay}s "
                         f"(attempt {session.retry_count}/{self.max_retries})")
        session.reconnect_task = asyncio.create_task(self._reconnect_later(session),
                                                     name=f"relay-reconnect:{session.user_id}")

    # ------------------------------------------------------------------
    # timers
    # ------------------------------------------------------------------

    async def _expire_qr(self, session: Session) -> None:
        await asyncio.sleep(self.qr_timeout)
        async with self.registry.lock(session.user_id):
            if not self.registry.is_current(session) or session.state is not SessionState.AWAITING_QR:
                return
            session.qr_timeout_task = None
            session.clear_qr()
            session.record_error("qr_timeout", f"QR code was not scanned within {self.qr_timeout:g}s")
            self.logger.warning(f"QR for {session.user_id} expired; dropping session")
            await self._terminate(session, SessionState.DISCONNECTED, wipe=True, remember=True)

    async def _reconnect_later(self, session: Session) -> None:
        await asyncio.sleep(self.reconnect_delay)
        user_id = session.user_id
        async with self.registry.lock(user_id):
            if not self.registry.is_current(session) or session.state is not SessionState.DISCONNECTED:
                return
            session.reconnect_task = None
            attempt = session.retry_count
            if attempt >= self.wipe_threshold:
                self.logger.warning(f"Reconnect attempt {attempt} for {user_id}: starting from fresh credentials")
                await self._wipe_quietly(user_id)
            try:
                replacement = await self._create_locked(user_id, retry_count=attempt)
            except CreationError as e:
                self.logger.error(f"Reconnect attempt {attempt} for {user_id} failed: {e.message}")
                session.record_error("reconnect_failed", e.message)
                await self._retry_or_give_up(session)
                return
            replacement.last_error = session.last_error
