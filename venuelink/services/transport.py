"""
Transport - one HTTP request/response exchange against the backend API.

Handles:
- Bearer credential injection (skipped for the renewal call itself)
- Key-case conversion of payloads at the wire boundary
- Normalizing every response into the ApiResponse envelope
- One transparent re-send after renewing a rejected credential
- Mapping failures onto the service error taxonomy
"""

import json
from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel

from venuelink.services.casing import KeyCodec, camel_to_snake
from venuelink.services.credentials import CredentialCoordinator
from venuelink.services.errors import (
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    ServiceError,
    SessionExpiredError,
    StaleBundleError,
    default_code_for_status,
    error_class_for_status,
)

_ENVELOPE_FIELDS = ("success", "message", "error", "error_code", "timestamp")


class ApiResponse(BaseModel):
    """Normalized response envelope."""

    success: bool
    data: Any = None
    message: str | None = None
    error: str | None = None
    error_code: str | None = None
    details: Any = None
    timestamp: str | None = None
    status_code: int | None = None


class Transport:
    """
    Executes single requests against one API base URL.

    Usage:
        transport = Transport("https://api.example.com/api/v1", coordinator)
        response = await transport.send("GET", "/venues/123")
        response.data  # keys already in the internal case
    """

    def __init__(
        self,
        base_url: str,
        coordinator: CredentialCoordinator | None = None,
        codec: KeyCodec | None = None,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        service_id: str = "api",
        debug: bool = False,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_id = service_id
        self._coordinator = coordinator
        self._codec = codec or KeyCodec()
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None
        self._debug = debug

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
            )
        return self._http_client

    async def send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
        headers: dict[str, str] | None = None,
        skip_auth: bool = False,
        timeout: float | None = None,
    ) -> ApiResponse:
        """
        Execute one request and return the normalized envelope.

        Raises:
            NetworkError / RequestTimeoutError: no response received
            SessionExpiredError: credential renewal failed, or the renewed
                credential was rejected too
            ServiceError subclass: any other error status
            StaleBundleError: an HTML page came back instead of JSON
        """
        method = method.upper()
        wire_params = self._codec.encode(params) if params else None
        wire_body = self._codec.encode(json_data) if json_data is not None else None

        response = await self._exchange(
            method, path, wire_params, wire_body, headers, skip_auth, timeout
        )

        if response.status_code == 401 and not skip_auth and self._coordinator:
            logger.info(f"{method} {path} rejected with 401, renewing credential")
            await self._coordinator.renew()
            response = await self._exchange(
                method, path, wire_params, wire_body, headers, skip_auth, timeout
            )
            if response.status_code == 401:
                self._coordinator.expire_session(
                    f"renewed credential rejected by {method} {path}"
                )
                raise SessionExpiredError(
                    self._error_message(response, self._parse_body(response)),
                    service_id=self.service_id,
                    status_code=401,
                    response=response,
                )

        if response.is_error:
            raise self._error_from_response(response)

        return self._normalize(response)

    async def _exchange(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        body: Any,
        headers: dict[str, str] | None,
        skip_auth: bool,
        timeout: float | None,
    ) -> httpx.Response:
        client = await self._get_http_client()
        req_timeout = timeout or self._timeout

        req_headers: dict[str, str] = {}
        if not skip_auth and self._coordinator is not None:
            credential = await self._coordinator.get_valid_credential()
            if credential is not None:
                req_headers["Authorization"] = f"Bearer {credential.token}"
        if headers:
            req_headers.update(headers)

        self._log(f"{method} {path} params={params}")
        try:
            return await client.request(
                method=method,
                url=self._url(path),
                params=params,
                json=body,
                headers=req_headers,
                timeout=req_timeout,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(self.service_id, req_timeout) from e
        except httpx.RequestError as e:
            raise NetworkError(
                f"Network error. Please check your connection. ({e})",
                service_id=self.service_id,
            ) from e

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _parse_body(self, response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return response.text

    def _normalize(self, response: httpx.Response) -> ApiResponse:
        content_type = response.headers.get("content-type", "")
        if "text/html" in content_type or _looks_like_html(response.text):
            raise StaleBundleError(
                f"Expected JSON from {response.request.url.path} but received an "
                f"HTML page; the application is out of date, reload it",
                service_id=self.service_id,
                status_code=response.status_code,
                response=response,
            )

        body = self._parse_body(response)

        if isinstance(body, dict) and "success" in body:
            envelope = {camel_to_snake(k): v for k, v in body.items()}
            return ApiResponse(
                **{k: envelope.get(k) for k in _ENVELOPE_FIELDS if k in envelope},
                data=self._codec.decode(envelope.get("data")),
                details=self._codec.decode(envelope.get("details")),
                status_code=response.status_code,
            )

        return ApiResponse(
            success=True,
            data=self._codec.decode(body),
            message="Request successful",
            status_code=response.status_code,
        )

    def _error_from_response(self, response: httpx.Response) -> ServiceError:
        status = response.status_code
        body = self._parse_body(response)
        error_cls = error_class_for_status(status)

        code = None
        if isinstance(body, dict):
            code = body.get("error_code") or body.get("errorCode")
        if not code and error_cls.code == ServiceError.code:
            code = default_code_for_status(status)

        kwargs: dict[str, Any] = dict(
            service_id=self.service_id,
            code=code,
            status_code=status,
            response=response,
            details=self._codec.decode(body) if isinstance(body, dict) else None,
        )
        message = self._error_message(response, body)

        if error_cls is RateLimitError:
            return RateLimitError(
                message, retry_after=_retry_after(response), **kwargs
            )
        return error_cls(message, **kwargs)

    def _error_message(self, response: httpx.Response, body: Any) -> str:
        if body is None or body == "":
            return f"HTTP {response.status_code}: {response.reason_phrase}"
        if isinstance(body, str):
            return body[:200]
        if not isinstance(body, dict):
            return json.dumps(body)

        detail = body.get("detail")
        if detail is not None:
            if isinstance(detail, list):
                return flatten_validation_errors(detail)
            if isinstance(detail, dict):
                return json.dumps(detail)
            return str(detail)
        if body.get("message"):
            return str(body["message"])
        if body.get("error"):
            return str(body["error"])
        return json.dumps(body)

    async def health_check(self) -> bool:
        """True if ``/health`` answers successfully."""
        try:
            response = await self.send("GET", "/health", skip_auth=True)
            return response.success
        except ServiceError as e:
            logger.warning(f"Health check failed: {e}")
            return False

    async def close(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Transport] {message}")


def flatten_validation_errors(errors: list[Any]) -> str:
    """
    Join field-level validation failures into one message.

    Accepts ``{"loc": [...], "msg": ...}`` items as produced by pydantic
    backends as well as ``{"location": ..., "message": ...}``.
    """
    parts = []
    for err in errors:
        if not isinstance(err, dict):
            parts.append(str(err))
            continue
        loc = err.get("loc", err.get("location"))
        if isinstance(loc, (list, tuple)):
            field = ".".join(str(p) for p in loc)
        else:
            field = str(loc) if loc else "field"
        message = err.get("msg") or err.get("message") or "Invalid value"
        parts.append(f"{field}: {message}")
    return f"Validation error: {', '.join(parts)}"


def _looks_like_html(text: str) -> bool:
    head = text[:100].lstrip().lower()
    return head.startswith("<!doctype html") or head.startswith("<html")


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
