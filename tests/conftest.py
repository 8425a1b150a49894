from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest

from relay.controller import LifecycleController
from relay.credentials import CredentialStore
from relay.registry import SessionRegistry
from relay.state import QrIssued
from utils.logger import Logger

_END_OF_STREAM = object()

RELAY_TEST_CONFIG: Dict[str, Any] = {
    "LOGGING_LEVEL": "DEBUG",
    "QR_TIMEOUT_SECONDS": 30,
    "QR_WAIT_SECONDS": 1,
    "RECONNECT_DELAY_SECONDS": 0.01,
    "MAX_RETRIES": 3,
    "CREDENTIAL_WIPE_RETRY_THRESHOLD": 2,
    "WIPE_ON_RETRY_EXHAUSTION": True,
    "REUSE_PENDING_QR": True,
    "RESTORE_ON_STARTUP": False,
    "WIPE_ON_STARTUP": False,
    "JID_SUFFIX": "@s.whatsapp.net",
    "RATE_LIMIT_ENABLED": False,
    "SEND_RATE_LIMIT": "1000/minute",
}


class FakeConnector:
    """In-memory connector: tests push events, the controller consumes them."""

    def __init__(
        self,
        user_id: str,
        creds: Dict[str, Any],
        *,
        on_connect: List[Any] | None = None,
        fail_connect: bool = False,
        fail_send: bool = False,
    ) -> None:
        self.user_id = user_id
        self.creds = creds
        self.on_connect = [QrIssued(qr=f"{user_id}-ref-1")] if on_connect is None else list(on_connect)
        self.fail_connect = fail_connect
        self.fail_send = fail_send
        self.queue: asyncio.Queue = asyncio.Queue()
        self.sent: list[tuple[str, str]] = []
        self.connected = False
        self.closed = False
        self.logged_out = False

    async def connect(self) -> None:
        if self.fail_connect:
            raise ConnectionError("bridge unreachable")
        self.connected = True
        for event in self.on_connect:
            self.queue.put_nowait(event)

    def emit(self, event: Any) -> None:
        self.queue.put_nowait(event)

    def end(self) -> None:
        self.queue.put_nowait(_END_OF_STREAM)

    async def events(self):
        while True:
            event = await self.queue.get()
            if event is _END_OF_STREAM:
                return
            if isinstance(event, Exception):
                raise event
            yield event

    async def send_text(self, jid: str, text: str) -> Dict[str, Any]:
        if self.fail_send:
            raise RuntimeError("socket write failed")
        self.sent.append((jid, text))
        return {"id": f"msg-{len(self.sent)}", "jid": jid}

    async def logout(self) -> None:
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True


class FakeConnectorFactory:
    def __init__(self) -> None:
        self.created: list[FakeConnector] = []
        self.options: Dict[str, Any] = {}
        self.fail = False

    def __call__(self, user_id: str, creds: Dict[str, Any]) -> FakeConnector:
        if self.fail:
            raise RuntimeError("cannot build connector")
        connector = FakeConnector(user_id, creds, **self.options)
        self.created.append(connector)
        return connector

    def latest(self) -> FakeConnector:
        return self.created[-1]


async def fake_qr_encoder(qr_text: str) -> str:
    return f"data:image/png;base64,{qr_text}"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def logger_manager(tmp_path: Path) -> Logger:
    return Logger(project_root=str(tmp_path))


@pytest.fixture
def sessions_dir(tmp_path: Path) -> Path:
    return tmp_path / "sessions"


@pytest.fixture
def store(sessions_dir: Path, logger_manager: Logger) -> CredentialStore:
    return CredentialStore(str(sessions_dir), logger_manager.create_logger("CredentialStore", "DEBUG"))


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def factory() -> FakeConnectorFactory:
    return FakeConnectorFactory()


@pytest.fixture
async def make_controller(logger_manager, registry, store, factory):
    controllers: list[LifecycleController] = []

    def _make(qr_encoder=fake_qr_encoder, **overrides: Any) -> LifecycleController:
        config = {**RELAY_TEST_CONFIG, **overrides}
        controller = LifecycleController(
            logger_manager=logger_manager,
            registry=registry,
            credential_store=store,
            connector_factory=factory,
            config=config,
            qr_encoder=qr_encoder,
        )
        controllers.append(controller)
        return controller

    yield _make
    # cancel QR timers and reconnects left behind by a test
    for controller in controllers:
        await controller.shutdown()


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return _wait
