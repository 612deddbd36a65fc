"""Request gateway - the single choke point for outbound platform calls.

Request side:
    - refuse new requests while a login redirect is in progress
    - attach the bearer token when the request has none
    - normalize relative paths onto the API prefix

Response side:
    - HTTP 401, or an HTTP 200 body whose code is 401/406, is a session-expiry
      signal: the expiry coordinator is invoked and the caller gets an
      awaitable that never completes, so no business logic runs against the
      dead session
    - other HTTP errors become ServerRejectedError / NotFoundError
    - transport failures are classified into timeout / unreachable / other
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from opslog.opslog_api_control import (
    APIEndpoints,
    MalformedPayloadError,
    NotFoundError,
    OpslogAPIError,
    RedirectInProgressError,
    RequestTimeoutError,
    ServerRejectedError,
    SESSION_EXPIRED_CODES,
    SUCCESS_CODES,
    TransportUnreachableError,
    UnauthorizedError,
)
from opslog.cli.utils.expiry import SessionExpiryCoordinator, get_coordinator
from opslog.cli.utils.storage import SessionStore


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
ERROR_BODY_PREVIEW_LIMIT = 500


@dataclass
class RequestSpec:
    """Description of one outbound call."""

    method: str = "GET"
    path: str = ""
    params: Optional[Dict[str, Any]] = None
    json: Optional[Any] = None
    headers: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None


def _has_header(headers: Dict[str, str], name: str) -> bool:
    return any(key.lower() == name.lower() for key in headers)


def _json_body(response: httpx.Response) -> Optional[Any]:
    """Decode a JSON body, or None if the response is not JSON."""
    content_type = response.headers.get("content-type", "")
    if "json" not in content_type and not response.content.lstrip().startswith(b"{"):
        return None
    try:
        return response.json()
    except ValueError:
        return None


def _is_event_stream(response: httpx.Response) -> bool:
    return "text/event-stream" in response.headers.get("content-type", "")


async def _never() -> Any:
    """Suspend forever (until cancelled)."""
    await asyncio.get_running_loop().create_future()


class RequestGateway:
    """Async HTTP client wrapper applying the session interceptors.

    Args:
        base_url: Platform base URL
        store: Session store read for the bearer token on every request
        coordinator: Expiry coordinator; defaults to the process-wide one
        api_prefix: Canonical API prefix for relative paths
        timeout: Default per-request timeout in seconds
        verify_ssl: Verify TLS certificates
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        store: SessionStore,
        coordinator: Optional[SessionExpiryCoordinator] = None,
        *,
        api_prefix: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        verify_ssl: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.coordinator = coordinator or get_coordinator(store)
        self.endpoints = APIEndpoints(api_prefix=api_prefix)
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            verify=verify_ssl,
            transport=transport,
            trust_env=True,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "RequestGateway":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Request interceptors
    # ------------------------------------------------------------------

    def _guard(self, method: str, path: str) -> None:
        if self.coordinator.redirect_in_progress:
            logger.debug("Refusing %s %s: login redirect in progress", method, path)
            raise RedirectInProgressError("Redirecting to login, request cancelled")

    def _prepare(self, spec: RequestSpec) -> RequestSpec:
        self._guard(spec.method, spec.path)

        headers = dict(spec.headers)
        if not _has_header(headers, "Authorization"):
            token = self.store.get_token()
            if token:
                headers["Authorization"] = f"Bearer {token}"

        return RequestSpec(
            method=spec.method.upper(),
            path=self.endpoints.normalize(spec.path),
            params=spec.params,
            json=spec.json,
            headers=headers,
            timeout=spec.timeout,
        )

    # ------------------------------------------------------------------
    # Response interceptors
    # ------------------------------------------------------------------

    @staticmethod
    def expiry_message(response: httpx.Response) -> Optional[str]:
        """Return the expiry notice if ``response`` signals a dead session.

        Both an HTTP 401 and an HTTP 200 body carrying code 401/406 count;
        not every backend endpoint is known to use the body convention, so
        the two checks are kept side by side.
        """
        body = _json_body(response)
        message = body.get("message") if isinstance(body, dict) else None

        if response.status_code == 401:
            return message or "Login expired, redirecting to login..."
        if response.is_success and isinstance(body, dict) and body.get("code") in SESSION_EXPIRED_CODES:
            return message or "Token expired, redirecting to login..."
        return None

    @staticmethod
    def _rejection(response: httpx.Response) -> ServerRejectedError:
        body = _json_body(response)
        code = None
        message = None
        if isinstance(body, dict):
            code = body.get("code")
            message = body.get("message")
        if not message:
            message = (response.text or "")[:ERROR_BODY_PREVIEW_LIMIT].strip() or f"Request failed ({response.status_code})"
        error_cls = NotFoundError if response.status_code == 404 else ServerRejectedError
        return error_cls(message, status_code=response.status_code, code=code)

    def _classify_transport_error(self, error: httpx.HTTPError, timeout: Optional[float]) -> OpslogAPIError:
        if isinstance(error, httpx.TimeoutException):
            return RequestTimeoutError(f"Request timed out after {timeout}s", timeout=timeout)
        if isinstance(error, httpx.NetworkError):
            return TransportUnreachableError(f"Network connection failed: {error}")
        return OpslogAPIError(f"Request failed: {error}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send(self, spec: RequestSpec) -> httpx.Response:
        """Dispatch ``spec`` through the interceptors.

        Raises:
            RedirectInProgressError: A login redirect is underway
            RequestTimeoutError, TransportUnreachableError, OpslogAPIError:
                No response was received
            NotFoundError, ServerRejectedError: The backend rejected the call
        """
        prepared = self._prepare(spec)
        timeout = prepared.timeout if prepared.timeout is not None else self.timeout

        logger.debug("Request: %s %s", prepared.method, prepared.path)
        try:
            response = await self._client.request(
                prepared.method,
                prepared.path,
                params=prepared.params,
                json=prepared.json,
                headers=prepared.headers,
                timeout=timeout,
            )
        except httpx.HTTPError as e:
            raise self._classify_transport_error(e, timeout) from e
        logger.debug("Response status: %s", response.status_code)

        message = self.expiry_message(response)
        if message is not None:
            self.coordinator.report_expiry(message)
            return await _never()

        if response.status_code >= 400:
            raise self._rejection(response)
        return response

    @asynccontextmanager
    async def open_stream(
        self,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        last_event_id: Optional[str] = None,
    ) -> AsyncIterator[AsyncIterator[str]]:
        """Open a text/event-stream response and yield its line iterator.

        The token travels as the ``token`` query parameter, matching what the
        browser EventSource transport can send. It is omitted when logged out.

        Raises:
            UnauthorizedError: The stream was refused for an expired session
                (the expiry coordinator has already been invoked)
        """
        self._guard("GET", path)

        query = dict(params or {})
        token = self.store.get_token()
        if token:
            query["token"] = token
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        if last_event_id:
            headers["Last-Event-ID"] = last_event_id

        request = self._client.build_request(
            "GET",
            self.endpoints.normalize(path),
            params=query,
            headers=headers,
            timeout=httpx.Timeout(self.timeout, read=None),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise self._classify_transport_error(e, self.timeout) from e

        try:
            # A live event stream is left unread; only buffered bodies are inspected
            if not (response.is_success and _is_event_stream(response)):
                await response.aread()
                message = self.expiry_message(response)
                if message is not None:
                    self.coordinator.report_expiry(message)
                    raise UnauthorizedError(message)
                if response.status_code >= 400:
                    raise self._rejection(response)
            yield self._iter_lines(response)
        finally:
            await response.aclose()

    async def _iter_lines(self, response: httpx.Response) -> AsyncIterator[str]:
        try:
            async for line in response.aiter_lines():
                yield line
        except httpx.HTTPError as e:
            raise self._classify_transport_error(e, None) from e


def unwrap_result(response: httpx.Response) -> Any:
    """Return ``data`` from the platform's {code, message, data} envelope.

    Raises:
        MalformedPayloadError: The body is not a JSON envelope
        ServerRejectedError: The envelope carries a failure code
    """
    body = _json_body(response)
    if not isinstance(body, dict) or "code" not in body:
        raise MalformedPayloadError("Invalid API response format")
    if body.get("code") not in SUCCESS_CODES:
        raise ServerRejectedError(
            body.get("message") or f"Request failed with code {body.get('code')}",
            status_code=response.status_code,
            code=body.get("code"),
        )
    return body.get("data")
