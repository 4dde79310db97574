"""
RequestExecutor - one HTTP call, no retries.

Pipeline stages, each usable on its own:
- build_headers(): auth-inject, tenant scoping and request id
- RequestExecutor.execute(): send through httpx and time it
- classify(): map httpx failures and error statuses onto dashsync.errors
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
from loguru import logger

from dashsync.auth import AuthProvider
from dashsync.config import ClientConfig
from dashsync.errors import (
    NetworkError,
    RequestTimeoutError,
    SyncError,
    classify_response,
)
from dashsync.hooks import LoggingHooks, RequestEvent, RequestHooks, ResponseEvent
from dashsync.keys import canonicalize

AUTHORIZATION_HEADER = "Authorization"
TENANT_HEADER = "X-Company-ID"
REQUEST_ID_HEADER = "X-Request-ID"
REQUEST_TIME_HEADER = "X-Request-Time"


@dataclass(frozen=True, slots=True)
class ApiRequest:
    """A single HTTP call description.

    ``timeout`` is in seconds and overrides the client default.
    ``retryable=False`` keeps the RetryCoordinator from backing off, which
    mutations want.
    """

    method: str
    path: str
    params: dict[str, Any] | None = None
    json: Any = None
    headers: dict[str, str] | None = None
    timeout: float | None = None
    skip_auth: bool = False
    skip_error_notification: bool = False
    retryable: bool = True


@dataclass(slots=True)
class ApiResponse:
    """A successful response with its decoded body."""

    status: int
    data: Any
    headers: dict[str, str] = field(default_factory=dict)
    request_id: str | None = None
    elapsed_ms: float = 0.0


def generate_request_id() -> str:
    return uuid.uuid4().hex[:12]


def build_headers(
    request: ApiRequest,
    *,
    auth: AuthProvider | None,
    tenant_id: str | None,
    request_id: str,
    defaults: dict[str, str] | None = None,
) -> dict[str, str]:
    """Assemble outgoing headers for ``request``.

    The bearer token and tenant header are only attached when the request
    does not skip auth.
    """
    headers = dict(defaults or {})
    if request.headers:
        headers.update(request.headers)

    if not request.skip_auth:
        session = auth.session if auth is not None else None
        if session is not None:
            headers[AUTHORIZATION_HEADER] = f"Bearer {session.access_token}"
        if tenant_id:
            headers[TENANT_HEADER] = tenant_id

    headers[REQUEST_ID_HEADER] = request_id
    headers[REQUEST_TIME_HEADER] = (
        datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )
    return headers


def classify(
    error: Exception,
    *,
    timeout: float,
    request_id: str | None = None,
    path: str | None = None,
) -> SyncError:
    """Map a transport exception onto the error taxonomy."""
    if isinstance(error, SyncError):
        return error
    if isinstance(error, httpx.TimeoutException):
        return RequestTimeoutError(timeout, request_id=request_id, path=path)
    if isinstance(error, httpx.HTTPStatusError):
        return classify_response(error.response, request_id=request_id, path=path)
    return NetworkError(
        request_id=request_id,
        path=path,
        details={"original_error": str(error) or type(error).__name__},
    )


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        return response.json()
    return response.text


def _query_params(params: dict[str, Any] | None) -> dict[str, Any] | None:
    if not params:
        return None
    return canonicalize(params)


class RequestExecutor:
    """
    Performs one HTTP call with auth, tenant and request-id headers.

    Usage:
        executor = RequestExecutor(config, auth=session_store)
        response = await executor.execute(ApiRequest("GET", "/reports"))
        await executor.aclose()
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        auth: AuthProvider | None = None,
        http_client: httpx.AsyncClient | None = None,
        hooks: list[RequestHooks] | None = None,
    ):
        self._config = config
        self._auth = auth
        self._tenant_id = config.tenant_id
        self._hooks: list[RequestHooks] = (
            list(hooks) if hooks is not None else [LoggingHooks(debug=config.debug)]
        )
        self._owns_client = http_client is None
        self._http_client = http_client

    @property
    def tenant_id(self) -> str | None:
        return self._tenant_id

    @tenant_id.setter
    def tenant_id(self, value: str | None) -> None:
        self._tenant_id = value

    def add_hooks(self, hooks: RequestHooks) -> None:
        self._hooks.append(hooks)

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.timeout_seconds),
                follow_redirects=True,
            )
        return self._http_client

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self._config.base_url.rstrip('/')}/{path.lstrip('/')}"

    async def execute(self, request: ApiRequest) -> ApiResponse:
        """
        Send ``request`` once.

        Raises:
            NetworkError: no response reached us, or its body could not be decoded
            RequestTimeoutError: the per-request timeout elapsed
            HttpError: the server answered with a 4xx/5xx status
        """
        request_id = generate_request_id()
        timeout = request.timeout or self._config.timeout_seconds
        method = request.method.upper()
        headers = build_headers(
            request,
            auth=self._auth,
            tenant_id=self._tenant_id,
            request_id=request_id,
            defaults=self._config.default_headers,
        )

        started = time.perf_counter()
        self._emit_request(
            RequestEvent(request_id, method, request.path, request.params, started)
        )

        client = self._get_http_client()
        try:
            response = await client.request(
                method,
                self.url_for(request.path),
                params=_query_params(request.params),
                json=request.json,
                headers=headers,
                timeout=timeout,
            )
        except httpx.HTTPError as e:
            error = classify(e, timeout=timeout, request_id=request_id, path=request.path)
            self._emit_response(
                ResponseEvent(
                    request_id, method, request.path, None, _elapsed(started), error
                )
            )
            raise error from e

        elapsed_ms = _elapsed(started)
        if response.is_error:
            error = classify_response(response, request_id=request_id, path=request.path)
            self._emit_response(
                ResponseEvent(
                    request_id, method, request.path, response.status_code, elapsed_ms, error
                )
            )
            raise error

        try:
            data = _decode_body(response)
        except ValueError as e:
            error = NetworkError(
                "Malformed response from server.",
                code="INVALID_RESPONSE",
                request_id=request_id,
                path=request.path,
                details={"status": response.status_code, "original_error": str(e)},
            )
            self._emit_response(
                ResponseEvent(
                    request_id, method, request.path, response.status_code, elapsed_ms, error
                )
            )
            raise error from e

        self._emit_response(
            ResponseEvent(request_id, method, request.path, response.status_code, elapsed_ms)
        )
        return ApiResponse(
            status=response.status_code,
            data=data,
            headers=dict(response.headers),
            request_id=request_id,
            elapsed_ms=elapsed_ms,
        )

    def _emit_request(self, event: RequestEvent) -> None:
        for hooks in self._hooks:
            try:
                hooks.before_request(event)
            except Exception:
                logger.exception(f"before_request hook failed for {event.request_id}")

    def _emit_response(self, event: ResponseEvent) -> None:
        for hooks in self._hooks:
            try:
                hooks.after_response(event)
            except Exception:
                logger.exception(f"after_response hook failed for {event.request_id}")

    async def aclose(self) -> None:
        """Close the HTTP client if this executor created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None
        logger.debug("RequestExecutor closed")


def _elapsed(started: float) -> float:
    return (time.perf_counter() - started) * 1000


__all__ = [
    "AUTHORIZATION_HEADER",
    "REQUEST_ID_HEADER",
    "TENANT_HEADER",
    "ApiRequest",
    "ApiResponse",
    "RequestExecutor",
    "build_headers",
    "classify",
    "generate_request_id",
]
