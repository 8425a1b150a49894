# file: src/fast_api/fastapi_manager.py
# Builds the FastAPI app for the relay: process title, CORS, limiter state,
# one error body shape for every failure, and the /health route.

from datetime import datetime, timezone

import setproctitle
from fastapi import FastAPI, Request, APIRouter
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from fast_api.error_models import ErrorResponse, ValidationErrorResponse, RateLimitResponse
from relay.errors import RelayError
from relay.models import HealthResponse

HTTP_TITLES = {400: "Bad Request", 401: "Unauthorized", 403: "Forbidden", 404: "Not Found",
               405: "Method Not Allowed", 429: "Rate Limit Exceeded"}


class FastApiManager:
    """
    Owns the FastAPI application object.
    - sets the process title so relay workers are easy to spot in ps/top
    - installs CORS and the send-message limiter state
    - turns RelayError, framework and unexpected errors into ErrorResponse bodies
    - serves /health from the LifecycleController counters
    """
    def __init__(self, logger_manager: object,
                 relay_controller: object,
                 config: dict):
        """
        Args:
            logger_manager: Logger instance; one named logger per manager
            relay_controller: LifecycleController, read for health reporting
            config: FASTAPI_CONFIG-shaped dict
        """
        self.config = config
        self.logger = logger_manager.create_logger(logger_name="FastApiManager",
                                                   logging_level=self.config.get("LOGGING_LEVEL", "INFO"))
        self.relay_controller = relay_controller
        self.router = APIRouter(tags=["Health"])
        self._setup_routes()

    def setup(self, lifespan=None, limiter=None, app_name: str = None) -> FastAPI:
        app_name = app_name or self.config.get("APP_NAME", "Chat Relay Gateway")
        try:
            setproctitle.setproctitle(app_name)
            app = FastAPI(
                title=app_name,
                version=self.config.get("VERSION", "1.0"),
                lifespan=lifespan,
                docs_url="/docs" if self.config.get("ENABLE_DOCS", True) else None,
                redoc_url="/redoc" if self.config.get("ENABLE_REDOC", False) else None,
            )
            # ---------- Add Exception Handlers FIRST ----------
            self._setup_exception_handlers(app)

            # ---------- CORS ----------
            app.add_middleware(
                CORSMiddleware,
                allow_origins=self.config.get("ALLOW_ORIGINS", ["*"]),
                allow_credentials=self.config.get("ALLOW_CREDENTIALS", False),
                allow_methods=self.config.get("ALLOW_METHODS", ["GET", "POST"]),
                allow_headers=self.config.get("ALLOW_HEADERS", ["Content-Type"]),
                expose_headers=self.config.get("EXPOSE_HEADERS", []),
            )
            # ---------- Rate limiting ----------
            if limiter is not None:
                app.state.limiter = limiter

            # ---------- Register router ----------
            app.include_router(self.router)

            self.logger.debug(f"FastAPI app '{app_name}' ready")
            return app
        except Exception as exc:
            self.logger.exception(f"Failed to build FastAPI app: {exc}")
            raise

    def _error(self, request: Request, status_code: int, error: str, detail: str = None, **extra) -> JSONResponse:
        model = extra.pop("model", ErrorResponse)
        error_response = model(
            error=error,
            detail=detail,
            status_code=status_code,
            timestamp=datetime.now(timezone.utc).isoformat(),
            path=request.url.path,
            **extra
        )
        return JSONResponse(status_code=status_code, content=error_response.model_dump(exclude_none=True))

    def _setup_exception_handlers(self, app: FastAPI):
        """Map every failure onto ErrorResponse; status codes come from the exception."""
        @app.exception_handler(RelayError)
        async def relay_error_handler(request: Request, exc: RelayError):
            # 400 validation, 401 not connected, 500 creation/send/reset/credentials
            if exc.status_code >= 500:
                self.logger.error(f"{exc.error} at {request.url.path}: {exc.message}")
            else:
                self.logger.warning(f"{exc.status_code} {exc.error} at {request.url.path}: {exc.message}")
            return self._error(request, exc.status_code, exc.error, exc.message)

        @app.exception_handler(StarletteHTTPException)
        async def http_error_handler(request: Request, exc: StarletteHTTPException):
            # unknown routes (404), wrong verbs (405) and explicit HTTPException raises
            title = HTTP_TITLES.get(exc.status_code, "HTTP Error")
            if isinstance(exc.detail, dict):
                title = exc.detail.get("error", title)
                detail = exc.detail.get("detail")
            elif exc.status_code == 404:
                detail = f"No route for {request.method} {request.url.path}"
            elif exc.status_code == 405:
                detail = f"{request.method} is not supported on {request.url.path}"
            else:
                detail = str(exc.detail)
            self.logger.warning(f"{exc.status_code} at {request.method} {request.url.path}: {detail}")
            return self._error(request, exc.status_code, title, detail)

        @app.exception_handler(RequestValidationError)
        async def request_validation_handler(request: Request, exc: RequestValidationError):
            # unparsable JSON or wrong field types: a client error like any missing field
            errors = [{"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]} for err in exc.errors()]
            self.logger.warning(f"Rejected request body at {request.url.path}: {errors}")
            return self._error(request, 400, "Validation Error", "Request body or parameters are malformed",
                               model=ValidationErrorResponse, errors=errors)

        @app.exception_handler(RateLimitExceeded)
        async def send_rate_limit_handler(request: Request, exc: RateLimitExceeded):
            retry_after = getattr(exc, "retry_after", None)
            client_host = request.client.host if request.client else "unknown"
            self.logger.warning(f"Send rate limit hit by {client_host} ({exc.detail})")
            response = self._error(request, 429, "Rate Limit Exceeded", f"Limit {exc.detail} reached",
                                   model=RateLimitResponse, retry_after=retry_after)
            if retry_after:
                response.headers["Retry-After"] = str(retry_after)
            return response

        @app.exception_handler(Exception)
        async def unexpected_error_handler(request: Request, exc: Exception):
            self.logger.error(f"Unhandled error at {request.url.path}: {exc!r}", exc_info=True)
            if self.config.get("ENVIRONMENT") == "production":
                detail = "Unexpected server error"
            else:
                detail = f"{type(exc).__name__}: {exc}"
            return self._error(request, 500, "Internal Server Error", detail)

    # ------------------------------------------------------------------
    # Route definitions
    # ------------------------------------------------------------------
    def _setup_routes(self) -> None:

        @self.router.get("/health", response_model=HealthResponse)
        async def health():
            """Liveness plus the number of registered sessions"""
            stats = self.relay_controller.health()
            return HealthResponse(status="ok", active_sessions=stats["active_sessions"], uptime=stats["uptime"])
