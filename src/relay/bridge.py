# File: src/relay/bridge.py
# Connector that talks to an external protocol bridge:
#   events   -> websocket  {ws_url}/sessions/{user_id}
#   commands -> HTTP POST  {http_url}/sessions/{user_id}/messages | /logout
# Frames are JSON objects with a "type" of qr | open | close | creds.

from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import quote

import orjson
import websockets
from websockets.exceptions import ConnectionClosed

from relay.state import Closed, ConnectionEvent, CredsUpdated, Opened, QrIssued
from utils.httpx_manager import HttpxManager, RequestPayload


class BridgeError(Exception):
    pass


def parse_frame(raw: Any) -> Optional[ConnectionEvent]:
    """Map one bridge frame to a connection event; unknown frames map to None.
    Raises ValueError/TypeError for undecodable JSON or a bad statusCode."""
    message = orjson.loads(raw)
    if not isinstance(message, dict):
        return None
    kind = message.get("type")
    if kind == "qr" and message.get("qr"):
        return QrIssued(qr=message["qr"])
    if kind == "open":
        return Opened()
    if kind == "close":
        status_code = message.get("statusCode")
        return Closed(status_code=int(status_code) if status_code is not None else None,
                      message=message.get("message") or "connection closed")
    if kind == "creds" and isinstance(message.get("creds"), dict):
        return CredsUpdated(creds=message["creds"])
    return None


class BridgeConnector:
    def __init__(self, user_id: str, creds: Dict[str, Any], httpx_manager: HttpxManager, config: dict,
                 logger: Any):
        self.user_id = user_id
        self.creds = creds
        self.httpx_manager = httpx_manager
        self.logger = logger
        self.http_base = f"{config['HTTP_URL'].rstrip('/')}/sessions/{quote(user_id, safe='')}"
        self.ws_url = f"{config['WS_URL'].rstrip('/')}/sessions/{quote(user_id, safe='')}"
        self.open_timeout = config.get("OPEN_TIMEOUT", 10)
        self.ping_interval = config.get("PING_INTERVAL", 20)
        self._ws = None

    async def connect(self) -> None:
        self._ws = await websockets.connect(self.ws_url, open_timeout=self.open_timeout,
                                            ping_interval=self.ping_interval)
        await self._ws.send(orjson.dumps({"type": "auth", "creds": self.creds}).decode())
        self.logger.debug(f"Bridge socket open for {self.user_id}")

    async def events(self) -> AsyncIterator[ConnectionEvent]:
        if self._ws is None:
            raise BridgeError("connect() must be called before events()")
        try:
            async for raw in self._ws:
                try:
                    event = parse_frame(raw)
                except (ValueError, TypeError) as e:
                    # orjson.JSONDecodeError is a ValueError; so is a non-numeric statusCode
                    self.logger.warning(f"Dropping malformed bridge frame for {self.user_id}: {e}")
                    continue
                if event is None:
                    self.logger.debug(f"Ignoring bridge frame for {self.user_id}: {raw!r:.200}")
                    continue
                yield event
        except ConnectionClosed as e:
            reason = f"bridge connection closed ({e.rcvd.code})" if e.rcvd else "bridge connection lost"
            yield Closed(status_code=None, message=reason)

    async def send_text(self, jid: str, text: str) -> Dict[str, Any]:
        result = await self.httpx_manager.make_request(RequestPayload(
            url=f"{self.http_base}/messages",
            method="POST",
            body={"jid": jid, "text": text},
        ))
        if "error" in result:
            raise BridgeError(f"{result['error']}: {result.get('message')}")
        return result

    async def logout(self) -> None:
        result = await self.httpx_manager.make_request(RequestPayload(url=f"{self.http_base}/logout",
                                                                      method="POST"))
        if "error" in result:
            raise BridgeError(f"{result['error']}: {result.get('message')}")

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None


class BridgeConnectorFactory:
    """ConnectorFactory wiring every BridgeConnector to the shared HTTP client."""

    def __init__(self, logger_manager: object, httpx_manager: HttpxManager, config: dict):
        self.config = config
        self.logger = logger_manager.create_logger(logger_name="BridgeConnector",
                                                   logging_level=self.config.get("LOGGING_LEVEL", "INFO"))
        self.httpx_manager = httpx_manager

    def __call__(self, user_id: str, creds: Dict[str, Any]) -> BridgeConnector:
        return BridgeConnector(user_id, creds, self.httpx_manager, self.config, self.logger)
