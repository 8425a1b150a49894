# file: src/utils/httpx_manager.py

import logging

# internal httpx logs are noisy; failures are logged by HttpxManager itself
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

from typing import Optional, Dict, Any
import httpx
import orjson
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception
from pydantic import BaseModel, AnyHttpUrl, Field
from aiocircuitbreaker import CircuitBreaker, CircuitBreakerError


# ----------------------------
# Pydantic Models
# ----------------------------
class RequestPayload(BaseModel):
    url: AnyHttpUrl
    method: str = Field(default="GET", pattern="^(GET|POST|PUT|DELETE)$")
    body: Optional[dict] = None
    headers: Optional[dict] = None
    timeout: Optional[float] = None
    follow_redirects: bool = True

# ----------------------------
# Retry filter
# ----------------------------
def _should_retry(exception: BaseException) -> bool:
    if isinstance(exception, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code >= 500 or exception.response.status_code == 429
    return False

# ----------------------------
# HTTPX Manager
# ----------------------------
class HttpxManager:
    """Shared async HTTP client with retries and a circuit breaker (protocol bridge calls)."""

    def __init__(self, logger_manager: object, config: dict):
        self.config = config
        self.logger = logger_manager.create_logger(logger_name="HttpxManager",
                                                   logging_level=self.config.get('LOGGING_LEVEL', 'WARNING'))

        self.timeout = self.config.get('TIMEOUT', 30.0)
        self.retry_attempts = self.config.get('RETRY_ATTEMPTS', 3)
        self.retry_multiplier = self.config.get('RETRY_MULTIPLIER', 1)
        self.retry_min_wait = self.config.get('RETRY_MIN_WAIT', 1)
        self.retry_max_wait = self.config.get('RETRY_MAX_WAIT', 10)

        self.circuit_breaker = CircuitBreaker(
            failure_threshold=self.config.get('CIRCUIT_FAILURE_THRESHOLD', 5),
            recovery_timeout=self.config.get('CIRCUIT_RECOVERY_TIMEOUT', 30),
            expected_exception=(httpx.TimeoutException, httpx.NetworkError),
            name="BridgeCircuitBreaker"
        )
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def make_request(self, payload: RequestPayload) -> Dict[str, Any]:
        """
        Send one request with retries. Returns the decoded JSON body.
        Failures come back as {"error": ..., "message": ...} instead of raising,
        except for transport errors that survive every retry.
        """
        url = str(payload.url)
        method = payload.method.upper()
        timeout = payload.timeout or self.timeout
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retry_attempts),
                wait=wait_exponential(multiplier=self.retry_multiplier, min=self.retry_min_wait,
                                      max=self.retry_max_wait),
                retry=retry_if_exception(_should_retry),
                reraise=True,
            ):
                with attempt:
                    decorated_execute = self.circuit_breaker.decorate(self._execute_request)
                    return await decorated_execute(url, method, payload.body, payload.headers, timeout,
                                                   payload.follow_redirects)
        except CircuitBreakerError as e:
            self.logger.warning(f"Circuit breaker open: {url} - {e}")
            return {"error": "CIRCUIT_BREAKER_OPEN", "message": "Service temporarily unavailable"}
        except httpx.HTTPStatusError as e:
            self.logger.warning(f"{method} {url} -> HTTP {e.response.status_code}")
            return {"error": f"HTTP_{e.response.status_code}", "message": e.response.text or str(e)}

    async def _execute_request(self, url: str, method: str, body: Optional[dict],
                               headers: Optional[dict], timeout: float, follow_redirects: bool = True) -> Dict[str, Any]:
        self.logger.debug(f"Making {method} request to {url}")
        headers = headers or {"Content-Type": "application/json"}
        content = orjson.dumps(body) if body is not None else None
        resp = await self.client.request(method, url, content=content, headers=headers, timeout=timeout,
                                         follow_redirects=follow_redirects)
        resp.raise_for_status()
        try:
            return orjson.loads(resp.content) if resp.content else {}
        except orjson.JSONDecodeError:
            return {"data": resp.text, "status_code": resp.status_code}

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
