import asyncio
import io
import json
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from .. import config
from ..errors import (
    ApiError,
    ClientError,
    NetworkError,
    RateLimitedError,
    RequestCancelledError,
    RequestTimeoutError,
    ServerError,
)
from ..models.api_models import MultipartForm, RequestConfig, ResponseEnvelope
from ..timers import AsyncioTimer, Timer

logger = logging.getLogger(__name__)


class CancellationToken:
    """Marks an in-flight request as obsolete; its eventual result is discarded."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RequestCancelledError()


def _is_raw_payload(data: Any) -> bool:
    return isinstance(data, (bytes, bytearray, memoryview, io.IOBase, MultipartForm))


def _error_from_response(response: httpx.Response) -> ApiError:
    """Maps a non-2xx response onto the error taxonomy."""
    status_code = response.status_code
    try:
        payload = response.json()
    except ValueError:
        payload = None

    server_message = None
    if isinstance(payload, dict):
        server_message = payload.get("message") or payload.get("error") or payload.get("detail")
        if not isinstance(server_message, str):
            # e.g. FastAPI validation errors; kept in `details`, not shown to users
            server_message = None
    message = server_message or f"HTTP {status_code}: {response.reason_phrase}"
    kwargs = dict(status_code=status_code, details=payload, server_message=server_message is not None)

    if status_code == config.HTTP_STATUS["TOO_MANY_REQUESTS"]:
        return RateLimitedError(message, **kwargs)
    if 400 <= status_code < 500:
        return ClientError(message, **kwargs)
    if status_code >= 500:
        return ServerError(message, **kwargs)
    # 1xx/3xx that httpx did not resolve
    return NetworkError(message, **kwargs)


def _normalize(response: httpx.Response) -> ResponseEnvelope:
    if not response.content:
        return ResponseEnvelope(data=None, success=True)
    try:
        payload = response.json()
    except ValueError:
        return ResponseEnvelope(data=response.text, success=True)
    if isinstance(payload, dict) and "success" in payload:
        return ResponseEnvelope(
            data=payload.get("data"),
            success=bool(payload.get("success")),
            message=payload.get("message"),
        )
    return ResponseEnvelope(data=payload, success=True)


class Transport:
    """
    Async HTTP client for the backend API.

    One shared httpx.AsyncClient holds the cookie jar, so the session cookie set
    by the backend rides along on every call. Each call is bounded by its timeout
    and retried with exponential backoff on network errors, 429 and 5xx.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timer: Timer | None = None,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.base_url = (base_url or config.API_BASE_URL).rstrip("/")
        self._timer = timer or AsyncioTimer()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            headers={**config.DEFAULT_HEADERS, **(headers or {})},
            follow_redirects=True,
        )
        logger.info(f"Transport initialised for {self.base_url}")

    @property
    def cookies(self) -> httpx.Cookies:
        return self._client.cookies

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "Transport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # --- Verbs ---

    async def get(self, endpoint: str, request_config: RequestConfig | None = None, *, cancel_token: CancellationToken | None = None) -> ResponseEnvelope:
        request_config = (request_config or RequestConfig()).model_copy(update={"method": "GET", "body": None})
        return await self.request(endpoint, request_config, cancel_token=cancel_token)

    async def post(self, endpoint: str, data: Any = None, request_config: RequestConfig | None = None, *, cancel_token: CancellationToken | None = None) -> ResponseEnvelope:
        return await self._mutate("POST", endpoint, data, request_config, cancel_token)

    async def put(self, endpoint: str, data: Any = None, request_config: RequestConfig | None = None, *, cancel_token: CancellationToken | None = None) -> ResponseEnvelope:
        return await self._mutate("PUT", endpoint, data, request_config, cancel_token)

    async def patch(self, endpoint: str, data: Any = None, request_config: RequestConfig | None = None, *, cancel_token: CancellationToken | None = None) -> ResponseEnvelope:
        return await self._mutate("PATCH", endpoint, data, request_config, cancel_token)

    async def delete(self, endpoint: str, request_config: RequestConfig | None = None, *, cancel_token: CancellationToken | None = None) -> ResponseEnvelope:
        request_config = request_config or RequestConfig.for_method("DELETE")
        request_config = request_config.model_copy(update={"method": "DELETE"})
        return await self.request(endpoint, request_config, cancel_token=cancel_token)

    async def _mutate(
        self,
        method: str,
        endpoint: str,
        data: Any,
        request_config: RequestConfig | None,
        cancel_token: CancellationToken | None,
    ) -> ResponseEnvelope:
        request_config = request_config or RequestConfig.for_method(method)
        request_config = request_config.model_copy(update={"method": method, "body": data})
        return await self.request(endpoint, request_config, cancel_token=cancel_token)

    # --- Core request loop ---

    async def request(self, endpoint: str, request_config: RequestConfig, *, cancel_token: CancellationToken | None = None) -> ResponseEnvelope:
        """
        Sends the request, retrying retryable failures with exponential backoff.

        Args:
            endpoint: Path relative to the base URL.
            request_config: Verb, timeout, retry policy, headers and body.
            cancel_token: Optional token; once fired, the result is discarded.

        Returns:
            The normalized ResponseEnvelope.

        Raises:
            RequestTimeoutError: The attempt exceeded its time budget (never retried).
            ClientError: 4xx other than 429 (never retried).
            RateLimitedError, ServerError, NetworkError: After retries are exhausted.
            RequestCancelledError: The cancel token fired.
        """
        method = request_config.method
        max_retries = request_config.max_retries
        last_error: ApiError | None = None

        for attempt in range(max_retries + 1):
            if cancel_token:
                cancel_token.raise_if_cancelled()
            try:
                logger.debug(f"{method} {endpoint} attempt {attempt + 1}/{max_retries + 1}")
                return await self._send_once(endpoint, request_config, cancel_token)
            except (RequestTimeoutError, ClientError, RequestCancelledError):
                raise
            except ApiError as e:
                last_error = e
                if attempt < max_retries:
                    delay = request_config.base_retry_delay * (2 ** attempt)
                    logger.warning(f"{method} {endpoint} failed ({e.kind.value}: {e.message}). Retrying in {delay}s...")
                    await self._timer.sleep(delay)

        logger.error(f"{method} {endpoint} failed after {max_retries + 1} attempt(s): {last_error!r}")
        raise last_error

    async def _send_once(self, endpoint: str, request_config: RequestConfig, cancel_token: CancellationToken | None) -> ResponseEnvelope:
        kwargs = self._encode_body(request_config)
        try:
            response = await asyncio.wait_for(
                self._client.request(request_config.method, endpoint, **kwargs),
                timeout=request_config.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise RequestTimeoutError(f"Request timeout after {request_config.timeout}s")
        except httpx.TransportError as e:
            raise NetworkError(f"{type(e).__name__}: {e}") from e

        if cancel_token:
            cancel_token.raise_if_cancelled()

        if response.is_success:
            return _normalize(response)
        raise _error_from_response(response)

    def _encode_body(self, request_config: RequestConfig) -> Dict[str, Any]:
        headers = dict(request_config.headers)
        kwargs: Dict[str, Any] = {"headers": headers, "timeout": request_config.timeout}
        data = request_config.body
        if data is None or request_config.method == "GET":
            return kwargs

        if _is_raw_payload(data):
            # Let httpx pick the content type (and multipart boundary)
            for key in [k for k in headers if k.lower() == "content-type"]:
                del headers[key]
            if isinstance(data, MultipartForm):
                kwargs["data"] = data.fields
                kwargs["files"] = data.files
            elif isinstance(data, io.IOBase):
                kwargs["content"] = data.read()
            else:
                kwargs["content"] = data
            return kwargs

        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json", by_alias=True)
        headers["Content-Type"] = "application/json"
        kwargs["content"] = json.dumps(data).encode("utf-8")
        return kwargs
