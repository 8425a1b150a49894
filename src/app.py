# File: src/app.py
from utils.env_loader import load_env

load_env()
import asyncio
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

# Local imports
from config import MAIN_CONFIG, FASTAPI_CONFIG, HTTPX_CONFIG, RELAY_CONFIG, BRIDGE_CONFIG
from fast_api.fastapi_manager import FastApiManager
from relay.bridge import BridgeConnectorFactory
from relay.connector import ConnectorFactory
from relay.controller import LifecycleController
from relay.credentials import CredentialStore
from relay.manager import RelayManager
from relay.registry import SessionRegistry
from utils.httpx_manager import HttpxManager
from utils.logger import Logger

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def build_app(relay_config: dict = RELAY_CONFIG,
              fastapi_config: dict = FASTAPI_CONFIG,
              connector_factory: Optional[ConnectorFactory] = None,
              logger_manager: Optional[Logger] = None) -> FastAPI:
    """Wire managers together and return the FastAPI app. Tests pass their own config and connector factory."""
    logger_manager = logger_manager or Logger(project_root=PROJECT_ROOT, log_to_file=MAIN_CONFIG["LOG_TO_FILE"])
    logger = logger_manager.create_logger(logger_name='MAIN', logging_level=MAIN_CONFIG.get('LOGGING_LEVEL', 'INFO'))

    # Httpx for bridge commands (send/logout)
    httpx_manager = HttpxManager(logger_manager=logger_manager, config=HTTPX_CONFIG)
    if connector_factory is None:
        connector_factory = BridgeConnectorFactory(logger_manager=logger_manager,
                                                   httpx_manager=httpx_manager,
                                                   config=BRIDGE_CONFIG)

    # Session lifecycle: registry + credential folders + controller
    registry = SessionRegistry()
    credential_store = CredentialStore(
        root_dir=relay_config["SESSIONS_DIR"],
        logger=logger_manager.create_logger(logger_name="CredentialStore",
                                            logging_level=relay_config.get("LOGGING_LEVEL", "INFO")),
    )
    controller = LifecycleController(
        logger_manager=logger_manager,
        registry=registry,
        credential_store=credential_store,
        connector_factory=connector_factory,
        config=relay_config,
    )

    relay_manager = RelayManager(logger_manager=logger_manager, controller=controller, config=relay_config)
    fast_api_manager = FastApiManager(logger_manager=logger_manager, relay_controller=controller,
                                      config=fastapi_config)

    def _loop_exception_handler(loop, context):
        # stray task failures are logged; the registry is disposable so the process keeps running
        exc = context.get("exception")
        logger.error(f"Unhandled error in event loop: {context.get('message')}", exc_info=exc)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        asyncio.get_running_loop().set_exception_handler(_loop_exception_handler)
        await controller.startup()
        logger.info(f"Relay started; sessions root {credential_store.root_dir}")
        yield
        # Shutdown (SIGINT/SIGTERM via uvicorn): close every live connection
        await controller.shutdown()
        await httpx_manager.close()
        logger.info("Relay stopped")
        logger_manager.close_all_loggers()

    app = fast_api_manager.setup(lifespan=lifespan, limiter=relay_manager.limiter)
    app.include_router(relay_manager.router)  # /login, /status, /send-message, /logout, /reset
    app.state.controller = controller
    return app


app = build_app()


if __name__ == "__main__":
    host = FASTAPI_CONFIG.get("DEFAULT_HOST", "0.0.0.0")
    port = FASTAPI_CONFIG.get("DEFAULT_PORT", 8080)
    reload = FASTAPI_CONFIG.get("RELOAD", False)
    uvicorn_log_level = MAIN_CONFIG.get("LOGGING_LEVEL", "INFO").lower()
    uvicorn.run(
        "app:app",
        host=host,
        port=port,
        reload=reload,
        workers=1,  # sessions live in process memory
        loop="uvloop",
        log_level=uvicorn_log_level,
    )

#while developing: uvicorn app:app --reload --port 8080 (from src/)
