# File: src/relay/manager.py

# RelayManager: HTTP surface of the relay (login/status/send/logout/reset).
# Routes are thin; every state change goes through the LifecycleController.
# Domain errors (relay.errors) propagate to the exception handlers in FastApiManager.

from typing import Dict, Any

from fastapi import APIRouter, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from fast_api.error_models import RELAY_ERROR_RESPONSES, SEND_ERROR_RESPONSES
from relay.controller import LifecycleController
from relay.errors import ValidationError
from relay.models import (
    ActionResponse,
    LastErrorModel,
    LoginResponse,
    SendMessageRequest,
    SendMessageResponse,
    StatusResponse,
)


class RelayManager:
    def __init__(self, logger_manager: object, controller: LifecycleController, config: dict):
        self.config = config
        self.logger = logger_manager.create_logger(logger_name="RelayManager",
                                                   logging_level=self.config.get('LOGGING_LEVEL', 'INFO'))
        self.controller = controller
        self.limiter = Limiter(key_func=get_remote_address,
                               enabled=self.config.get("RATE_LIMIT_ENABLED", True))
        self.send_rate_limit = self.config.get("SEND_RATE_LIMIT", "60/minute")
        self.router = APIRouter(tags=["Relay"])
        self.setup_routes()

    def _status_payload(self, user_id: str) -> Dict[str, Any]:
        snapshot = self.controller.snapshot(user_id)
        return {
            "status": snapshot["status"],
            "qr": snapshot["qr"],
            "last_error": LastErrorModel.from_error(snapshot["last_error"]),
            "retry_count": snapshot["retry_count"],
        }

    def setup_routes(self):
        """Setup relay routes"""

        @self.router.get("/login/{user_id}", response_model=LoginResponse, response_model_exclude_none=True,
                         responses=RELAY_ERROR_RESPONSES)
        async def login(user_id: str, reset: bool = False):
            """Start (or reuse) a session; the response carries the QR to scan while pending"""
            await self.controller.login(user_id, reset=reset)
            payload = self._status_payload(user_id)
            payload.pop("retry_count")
            self.logger.info(f"Login for {user_id} (reset={reset}) -> {payload['status']}")
            return LoginResponse(**payload)

        @self.router.get("/status/{user_id}", response_model=StatusResponse, response_model_exclude_none=True,
                         responses=RELAY_ERROR_RESPONSES)
        async def status(user_id: str):
            """Current connection state for a user"""
            return StatusResponse(**self._status_payload(user_id))

        @self.router.post("/send-message", response_model=SendMessageResponse, response_model_exclude_none=True,
                          responses=SEND_ERROR_RESPONSES)
        @self.limiter.limit(self.send_rate_limit)
        async def send_message(request: Request, body: SendMessageRequest):
            """Send a text message through a connected session"""
            number = str(body.number).strip() if body.number is not None else ""
            if not body.user_id or not number or not body.message:
                raise ValidationError("Missing userId, number or message")
            jid, response = await self.controller.send_message(body.user_id, number, body.message)
            return SendMessageResponse(message="Message sent successfully", to=jid, response=response)

        @self.router.post("/logout/{user_id}", response_model=ActionResponse, responses=RELAY_ERROR_RESPONSES)
        async def logout(user_id: str):
            """Log out and forget stored credentials (idempotent)"""
            await self.controller.logout(user_id)
            return ActionResponse(message=f"Logged out {user_id}")

        @self.router.post("/reset/{user_id}", response_model=ActionResponse, responses=RELAY_ERROR_RESPONSES)
        async def reset(user_id: str):
            """Drop any session and wipe stored credentials"""
            await self.controller.reset(user_id)
            return ActionResponse(message=f"Session for {user_id} reset")
