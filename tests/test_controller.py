import asyncio

import pytest

from relay.errors import CreationError, NotConnectedError, QrEncodingError, SendError, ValidationError
from relay.state import Closed, CredsUpdated, Opened, QrIssued, SessionState


@pytest.mark.anyio
async def test_login_without_prior_session_returns_pending_qr(make_controller, registry):
    controller = make_controller()
    session = await controller.login("alice")

    assert session.state is SessionState.AWAITING_QR
    assert session.current_qr == "data:image/png;base64,alice-ref-1"
    assert session.qr_timeout_task is not None
    assert registry.get("alice") is session
    assert controller.snapshot("alice")["status"] == "pending"
    await controller.shutdown()


@pytest.mark.anyio
async def test_open_clears_qr_and_timeout(make_controller, factory, wait_until):
    controller = make_controller()
    session = await controller.login("alice")
    session.record_error(428, "earlier failure")

    factory.latest().emit(Opened())
    await wait_until(lambda: session.state is SessionState.CONNECTED)

    assert session.current_qr is None
    assert session.raw_qr is None
    assert session.last_error is None
    assert session.qr_timeout_task is None
    snapshot = controller.snapshot("alice")
    assert snapshot["status"] == "connected"
    assert snapshot["retry_count"] == 0
    await controller.shutdown()


@pytest.mark.anyio
async def test_second_login_returns_pending_qr(make_controller, factory):
    controller = make_controller()
    first = await controller.login("alice")
    second = await controller.login("alice")

    assert first is second
    assert len(factory.created) == 1
    await controller.shutdown()


@pytest.mark.anyio
async def test_second_login_replaces_pending_session_when_reuse_disabled(make_controller, factory, registry):
    controller = make_controller(REUSE_PENDING_QR=False)
    first = await controller.login("alice")
    second = await controller.login("alice")

    assert first is not second
    assert factory.created[0].closed
    assert first.state is SessionState.LOGGED_OUT
    assert registry.get("alice") is second
    await controller.shutdown()


@pytest.mark.anyio
async def test_login_on_connected_session_is_a_no_op(make_controller, factory, wait_until):
    controller = make_controller()
    session = await controller.login("alice")
    factory.latest().emit(Opened())
    await wait_until(lambda: session.state is SessionState.CONNECTED)

    again = await controller.login("alice")

    assert again is session
    assert len(factory.created) == 1
    await controller.shutdown()


@pytest.mark.anyio
async def test_concurrent_logins_open_one_connection(make_controller, factory, registry):
    controller = make_controller()
    sessions = await asyncio.gather(*(controller.login("alice") for _ in range(5)))

    assert len(factory.created) == 1
    assert registry.size() == 1
    assert all(s is sessions[0] for s in sessions)
    await controller.shutdown()


@pytest.mark.anyio
async def test_login_loads_stored_credentials(make_controller, factory, store):
    await store.save("alice", {"creds": {"me": "alice"}})
    controller = make_controller()
    await controller.login("alice")

    assert factory.created[0].creds == {"creds": {"me": "alice"}}
    await controller.shutdown()


@pytest.mark.anyio
async def test_login_with_reset_starts_from_fresh_credentials(make_controller, factory, store):
    await store.save("alice", {"creds": {"me": "alice"}})
    controller = make_controller()
    await controller.login("alice", reset=True)

    assert factory.created[0].creds == {}
    await controller.shutdown()


@pytest.mark.anyio
async def test_login_rejects_path_like_user_id(make_controller, registry):
    controller = make_controller()
    with pytest.raises(ValidationError):
        await controller.login("../etc")
    assert registry.size() == 0


@pytest.mark.anyio
async def test_new_qr_resets_retry_count_and_restarts_timer(make_controller, factory, wait_until):
    controller = make_controller()
    session = await controller.login("alice")
    session.retry_count = 2
    old_timer = session.qr_timeout_task

    factory.latest().emit(QrIssued(qr="alice-ref-2"))
    await wait_until(lambda: session.raw_qr == "alice-ref-2")
    await wait_until(old_timer.done)

    assert old_timer.cancelled()
    assert session.retry_count == 0
    assert session.current_qr == "data:image/png;base64,alice-ref-2"
    assert session.qr_timeout_task is not old_timer
    assert not session.qr_timeout_task.done()
    await controller.shutdown()


@pytest.mark.anyio
async def test_unscanned_qr_expires_and_drops_credentials(make_controller, factory, registry, store, wait_until):
    controller = make_controller(QR_TIMEOUT_SECONDS=0.05)
    session = await controller.login("alice")
    assert await store.exists("alice")

    await wait_until(lambda: registry.get("alice") is None)

    assert session.state is SessionState.DISCONNECTED
    assert factory.latest().closed
    assert not await store.exists("alice")
    snapshot = controller.snapshot("alice")
    assert snapshot["status"] == "disconnected"
    assert snapshot["last_error"].code == "qr_timeout"
    # no reconnect follows a QR timeout
    await asyncio.sleep(0.05)
    assert len(factory.created) == 1


@pytest.mark.anyio
async def test_open_cancels_qr_timeout(make_controller, factory, registry, wait_until):
    controller = make_controller(QR_TIMEOUT_SECONDS=0.05)
    session = await controller.login("alice")
    factory.latest().emit(Opened())
    await wait_until(lambda: session.state is SessionState.CONNECTED)

    await asyncio.sleep(0.1)

    assert registry.get("alice") is session
    assert session.state is SessionState.CONNECTED
    await controller.shutdown()


@pytest.mark.anyio
async def test_close_schedules_reconnect(make_controller, factory, registry, wait_until):
    controller = make_controller(QR_WAIT_SECONDS=0)
    first = await controller.login("alice")
    factory.latest().emit(Opened())
    await wait_until(lambda: first.state is SessionState.CONNECTED)

    factory.options = {"on_connect": []}
    factory.latest().emit(Closed(status_code=428, message="Connection Closed"))
    await wait_until(lambda: len(factory.created) == 2)

    replacement = registry.get("alice")
    assert replacement is not first
    assert first.state is SessionState.DISCONNECTED
    assert factory.created[0].closed
    assert replacement.retry_count == 1
    assert replacement.state is SessionState.AWAITING_QR
    assert replacement.last_error.code == 428
    await controller.shutdown()


@pytest.mark.anyio
async def test_disconnected_session_is_reported_while_waiting_to_reconnect(make_controller, factory, wait_until):
    controller = make_controller(RECONNECT_DELAY_SECONDS=10)
    session = await controller.login("alice")
    factory.latest().emit(Opened())
    factory.latest().emit(Closed(status_code=408, message="timed out"))
    await wait_until(lambda: session.state is SessionState.DISCONNECTED)

    snapshot = controller.snapshot("alice")
    assert snapshot["status"] == "disconnected"
    assert snapshot["retry_count"] == 1
    assert snapshot["last_error"].code == 408
    assert session.reconnect_task is not None

    with pytest.raises(NotConnectedError):
        await controller.send_message("alice", "15551234567", "hi")
    await controller.shutdown()
    assert session.reconnect_task is None


@pytest.mark.anyio
async def test_logged_out_close_is_terminal(make_controller, factory, registry, store, wait_until):
    controller = make_controller()
    session = await controller.login("alice")
    factory.latest().emit(Opened())
    factory.latest().emit(Closed(status_code=401, message="Logged out from phone"))

    await wait_until(lambda: registry.get("alice") is None)

    assert session.state is SessionState.LOGGED_OUT
    assert not await store.exists("alice")
    await asyncio.sleep(0.05)
    assert len(factory.created) == 1
    assert controller.snapshot("alice")["last_error"].code == 401


@pytest.mark.anyio
async def test_reconnect_gives_up_after_max_retries(make_controller, factory, registry, store, wait_until):
    await store.save("alice", {"creds": {"me": "alice"}})
    controller = make_controller(QR_WAIT_SECONDS=0)
    await controller.login("alice")
    factory.options = {"on_connect": []}

    for attempt in range(4):
        factory.latest().emit(Closed(status_code=408, message="timed out"))
        if attempt < 3:
            await wait_until(lambda: len(factory.created) == attempt + 2
                             and registry.get("alice").connector is factory.latest())
            assert registry.get("alice").retry_count == attempt + 1

    await wait_until(lambda: registry.get("alice") is None)
    await asyncio.sleep(0.05)

    assert len(factory.created) == 4
    # attempts below the wipe threshold keep credentials, later ones start fresh
    assert factory.created[1].creds == {"creds": {"me": "alice"}}
    assert factory.created[2].creds == {}
    assert not await store.exists("alice")
    assert controller.snapshot("alice")["last_error"].code == 408


@pytest.mark.anyio
async def test_retry_exhaustion_can_keep_credentials(make_controller, factory, registry, store, wait_until):
    await store.save("alice", {"creds": {"me": "alice"}})
    controller = make_controller(MAX_RETRIES=0, WIPE_ON_RETRY_EXHAUSTION=False)
    await controller.login("alice")

    factory.latest().emit(Closed(status_code=408, message="timed out"))
    await wait_until(lambda: registry.get("alice") is None)

    assert await store.exists("alice")
    assert len(factory.created) == 1


@pytest.mark.anyio
async def test_failed_reconnect_counts_as_attempt(make_controller, factory, registry, wait_until):
    controller = make_controller(MAX_RETRIES=2)
    session = await controller.login("alice")
    factory.fail = True

    factory.latest().emit(Closed(status_code=503, message="unavailable"))
    await wait_until(lambda: registry.get("alice") is None)

    assert session.retry_count == 2
    assert session.state is SessionState.LOGGED_OUT
    assert controller.snapshot("alice")["last_error"].code == "reconnect_failed"


@pytest.mark.anyio
async def test_credential_updates_are_persisted_in_order(make_controller, factory, store, wait_until):
    controller = make_controller()
    session = await controller.login("alice")
    connector = factory.latest()
    connector.emit(CredsUpdated(creds={"creds": {"v": 1}, "pre-key-1": {"k": 1}}))
    connector.emit(CredsUpdated(creds={"creds": {"v": 2}}))
    connector.emit(CredsUpdated(creds={"pre-key-1": None}))
    connector.emit(Opened())
    await wait_until(lambda: session.state is SessionState.CONNECTED)

    assert await store.load("alice") == {"creds": {"v": 2}}
    await controller.shutdown()


@pytest.mark.anyio
async def test_send_requires_connected_session(make_controller, factory):
    controller = make_controller()
    with pytest.raises(NotConnectedError):
        await controller.send_message("alice", "15551234567", "hi")

    await controller.login("alice")
    with pytest.raises(NotConnectedError):
        await controller.send_message("alice", "15551234567", "hi")
    assert factory.latest().sent == []
    await controller.shutdown()


@pytest.mark.anyio
async def test_send_normalizes_recipient(make_controller, factory, wait_until):
    controller = make_controller()
    session = await controller.login("alice")
    factory.latest().emit(Opened())
    await wait_until(lambda: session.state is SessionState.CONNECTED)

    jid, response = await controller.send_message("alice", "+1 (555) 123-4567", "hello")

    assert jid == "15551234567@s.whatsapp.net"
    assert response["id"] == "msg-1"
    assert factory.latest().sent == [("15551234567@s.whatsapp.net", "hello")]
    await controller.shutdown()


@pytest.mark.anyio
async def test_send_failure_keeps_session_connected(make_controller, factory, wait_until):
    factory.options = {"fail_send": True}
    controller = make_controller()
    session = await controller.login("alice")
    factory.latest().emit(Opened())
    await wait_until(lambda: session.state is SessionState.CONNECTED)

    with pytest.raises(SendError):
        await controller.send_message("alice", "15551234567", "hello")

    assert session.state is SessionState.CONNECTED
    await controller.shutdown()


@pytest.mark.anyio
async def test_logout_is_idempotent(make_controller, factory, registry, store, wait_until):
    controller = make_controller()
    session = await controller.login("alice")
    connector = factory.latest()
    connector.emit(Opened())
    await wait_until(lambda: session.state is SessionState.CONNECTED)

    await controller.logout("alice")
    await controller.logout("alice")

    assert connector.logged_out
    assert connector.closed
    assert registry.get("alice") is None
    assert not await store.exists("alice")
    assert controller.snapshot("alice")["status"] == "disconnected"


@pytest.mark.anyio
async def test_logout_of_pending_session_skips_server_logout(make_controller, factory, registry):
    controller = make_controller()
    await controller.login("alice")
    await controller.logout("alice")

    assert not factory.latest().logged_out
    assert factory.latest().closed
    assert registry.get("alice") is None


@pytest.mark.anyio
async def test_reset_removes_live_session_and_credentials(make_controller, factory, registry, store, wait_until):
    controller = make_controller()
    session = await controller.login("alice")
    factory.latest().emit(Opened())
    await wait_until(lambda: session.state is SessionState.CONNECTED)

    await controller.reset("alice")

    assert registry.get("alice") is None
    assert not await store.exists("alice")
    assert factory.latest().closed
    assert controller.snapshot("alice")["status"] == "disconnected"


async def _session_waiting_to_reconnect(controller, factory, wait_until):
    session = await controller.login("alice")
    factory.latest().emit(Opened())
    factory.latest().emit(Closed(status_code=408, message="timed out"))
    await wait_until(lambda: session.reconnect_task is not None)
    return session, session.reconnect_task


@pytest.mark.anyio
@pytest.mark.parametrize("operation", ["logout", "reset"])
async def test_logout_and_reset_cancel_pending_reconnect(operation, make_controller, factory, registry, store,
                                                          wait_until):
    controller = make_controller(RECONNECT_DELAY_SECONDS=0.1)
    session, reconnect = await _session_waiting_to_reconnect(controller, factory, wait_until)

    await getattr(controller, operation)("alice")
    await asyncio.sleep(0.2)

    assert reconnect.cancelled()
    assert session.reconnect_task is None
    assert len(factory.created) == 1
    assert registry.get("alice") is None
    assert not await store.exists("alice")


@pytest.mark.anyio
async def test_login_with_reset_replaces_pending_reconnect(make_controller, factory, registry, wait_until):
    controller = make_controller(RECONNECT_DELAY_SECONDS=0.1)
    _, reconnect = await _session_waiting_to_reconnect(controller, factory, wait_until)

    fresh = await controller.login("alice", reset=True)
    await asyncio.sleep(0.2)

    assert reconnect.cancelled()
    assert len(factory.created) == 2
    assert registry.get("alice") is fresh
    assert fresh.connector is factory.latest()
    assert fresh.retry_count == 0


@pytest.mark.anyio
async def test_reset_without_session_succeeds(make_controller, store):
    controller = make_controller()
    await controller.reset("nobody")
    assert not await store.exists("nobody")


@pytest.mark.anyio
async def test_connector_construction_failure_registers_nothing(make_controller, factory, registry):
    factory.fail = True
    controller = make_controller()
    with pytest.raises(CreationError):
        await controller.login("alice")
    assert registry.get("alice") is None


@pytest.mark.anyio
async def test_connect_failure_closes_connector(make_controller, factory, registry):
    factory.options = {"fail_connect": True}
    controller = make_controller()
    with pytest.raises(CreationError):
        await controller.login("alice")
    assert registry.get("alice") is None
    assert factory.latest().closed


@pytest.mark.anyio
async def test_stream_failure_is_treated_as_close(make_controller, factory, wait_until):
    controller = make_controller(RECONNECT_DELAY_SECONDS=10)
    session = await controller.login("alice")
    factory.latest().emit(RuntimeError("socket reset"))

    await wait_until(lambda: session.state is SessionState.DISCONNECTED)

    assert session.last_error.code is None
    assert "socket reset" in session.last_error.message
    assert session.retry_count == 1
    await controller.shutdown()


@pytest.mark.anyio
async def test_qr_encoding_failure_is_recorded(make_controller, factory):
    async def broken_encoder(qr_text: str) -> str:
        raise QrEncodingError("renderer unavailable")

    controller = make_controller(qr_encoder=broken_encoder)
    session = await controller.login("alice")

    assert session.state is SessionState.AWAITING_QR
    assert session.current_qr is None
    assert session.raw_qr == "alice-ref-1"
    assert session.last_error.code == "qr_encoding"
    await controller.shutdown()


@pytest.mark.anyio
async def test_startup_restores_stored_users(make_controller, factory, registry, store):
    await store.save("bob", {"creds": {"me": "bob"}})
    controller = make_controller(RESTORE_ON_STARTUP=True)

    await controller.startup()

    assert registry.get("bob") is not None
    assert factory.created[0].creds == {"creds": {"me": "bob"}}
    await controller.shutdown()


@pytest.mark.anyio
async def test_startup_can_wipe_stored_credentials(make_controller, factory, registry, store):
    await store.save("bob", {"creds": {"me": "bob"}})
    controller = make_controller(WIPE_ON_STARTUP=True, RESTORE_ON_STARTUP=True)

    await controller.startup()

    assert registry.size() == 0
    assert factory.created == []
    assert not await store.exists("bob")


@pytest.mark.anyio
async def test_shutdown_closes_connections_and_keeps_credentials(make_controller, factory, registry, store):
    controller = make_controller()
    await controller.login("alice")
    await controller.login("bob")

    await controller.shutdown()

    assert registry.size() == 0
    assert all(c.closed for c in factory.created)
    assert await store.exists("alice")
    assert controller.health()["active_sessions"] == 0
