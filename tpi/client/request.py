"""Legacy API requests with bearer authentication and a single 401 retry."""

import asyncio
import logging
import platform
from enum import Enum
from typing import Any, Iterable, Optional
from urllib.parse import quote_plus

import httpx

from tpi.client.auth import Authenticator
from tpi.common.constants import API_VERSION_V1, DEFAULT_TIMEOUT
from tpi.common.errors import AuthenticationFailed, ProtocolError
from tpi.common.models import Endpoint

logger = logging.getLogger("tpi.client.request")

QueryPair = tuple[str, Optional[str]]


def user_agent() -> str:
    """``TPI (<system>;<machine>;<release>)``, or plain ``TPI``."""
    system = platform.system()
    if not system:
        return "TPI"
    return f"TPI ({system};{platform.machine()};{platform.release()})"


def create_http_client(endpoint: Endpoint, timeout: float = DEFAULT_TIMEOUT) -> httpx.AsyncClient:
    """Build the HTTP client for the endpoint's API version.

    v1 talks plain HTTP with default settings. v1-1 talks HTTPS over
    HTTP/1.1 only, without certificate verification (the BMC serves a
    self-signed certificate).
    """
    headers = {"User-Agent": user_agent()}
    if endpoint.api_version == API_VERSION_V1:
        return httpx.AsyncClient(headers=headers, timeout=timeout)
    return httpx.AsyncClient(
        headers=headers,
        timeout=timeout,
        verify=False,  # nosec B501
        http1=True,
        http2=False,
    )


class ApiRequest:
    """A logical request against the legacy API.

    Query pairs keep their order and may be key-only (``value=None``),
    which renders as a bare ``key`` in the query string. Query methods
    return ``self`` so calls can be chained.
    """

    def __init__(
        self,
        method: str = "GET",
        segments: Iterable[str] = (),
        query: Optional[Iterable[QueryPair]] = None,
        json: Any = None,
        content: Optional[bytes] = None,
        files: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        self.method = method
        self.segments = [str(s) for s in segments]
        self.query: list[QueryPair] = list(query or [])
        self.json = json
        self.content = content
        self.files = files
        self.headers = dict(headers or {})

    def append(self, key: str, value: Any = None) -> "ApiRequest":
        self.query.append((key, None if value is None else str(value)))
        return self

    def append_key_only(self, key: str) -> "ApiRequest":
        self.query.append((key, None))
        return self

    def push(self, *segments: Any) -> "ApiRequest":
        self.segments.extend(str(s) for s in segments)
        return self

    def query_string(self) -> str:
        parts = []
        for key, value in self.query:
            if value is None:
                parts.append(quote_plus(key))
            else:
                parts.append(f"{quote_plus(key)}={quote_plus(value)}")
        return "&".join(parts)

    def url(self, endpoint: Endpoint) -> str:
        base = endpoint.url_for(*self.segments)
        qs = self.query_string()
        return f"{base}?{qs}" if qs else base

    def clone(self) -> "ApiRequest":
        """Copy of this request. A multipart body is not carried over."""
        return ApiRequest(
            method=self.method,
            segments=self.segments,
            query=self.query,
            json=self.json,
            content=self.content,
            headers=self.headers,
        )

    def to_post(self) -> "ApiRequest":
        """Empty POST against the same endpoint."""
        return ApiRequest(method="POST")

    def __repr__(self) -> str:
        return f"ApiRequest({self.method} /{'/'.join(self.segments)}?{self.query_string()})"


class _SendState(Enum):
    """Where a request is in the 401 retry protocol."""

    AUTHENTICATED = "authenticated"
    RETRYING = "retrying"


class RequestChannel:
    """Dispatch :class:`ApiRequest` objects with a bearer token.

    On ``401 Unauthorized`` the cached token is dropped, a fresh login is
    forced and the request is retried exactly once. A second 401 raises
    :class:`AuthenticationFailed`. Token acquisition is serialized so only
    one login runs at a time per channel.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        authenticator: Authenticator,
        http: httpx.AsyncClient,
    ) -> None:
        self.endpoint = endpoint
        self.authenticator = authenticator
        self.http = http
        self._token: Optional[str] = None
        self._token_lock = asyncio.Lock()

    async def aclose(self) -> None:
        await self.http.aclose()

    async def __aenter__(self) -> "RequestChannel":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def send(self, request: ApiRequest) -> httpx.Response:
        """Send *request*, re-authenticating once on 401.

        Raises:
            AuthenticationFailed: Still 401 after the retry.
            httpx.TransportError: Connection-level failures, not retried.
        """
        state = _SendState.AUTHENTICATED
        token = await self._current_token()

        while True:
            resp = await self._dispatch(request, token)
            if resp.status_code != 401:
                return resp

            if state is _SendState.RETRYING:
                raise AuthenticationFailed()

            logger.info("Token rejected for %r, logging in again", request)
            token = await self._refresh_token(token)
            state = _SendState.RETRYING

    async def _dispatch(self, request: ApiRequest, token: str) -> httpx.Response:
        headers = dict(request.headers)
        headers["Authorization"] = f"Bearer {token}"
        url = request.url(self.endpoint)
        logger.debug("%s %s", request.method, url)
        return await self.http.request(
            request.method,
            url,
            headers=headers,
            json=request.json,
            content=request.content,
            files=request.files,
        )

    async def _current_token(self) -> str:
        async with self._token_lock:
            if self._token is None:
                self._token = await self.authenticator.obtain_token()
            return self._token

    async def _refresh_token(self, rejected: str) -> str:
        async with self._token_lock:
            if self._token is not None and self._token != rejected:
                # Another task already logged in again.
                return self._token
            self._token = None
            store = self.authenticator.store
            if store.load() == rejected:
                store.delete()
            self._token = await self.authenticator.obtain_token(force_login=True)
            return self._token


def read_json(response: httpx.Response) -> Any:
    """Parse a JSON body, keeping the raw text in the error when it is not JSON."""
    try:
        return response.json()
    except ValueError as e:
        raise ProtocolError(f"{response.reason_phrase or 'unknown reason'}:\n{response.text}") from e


def extract_payload(body: Any) -> Any:
    """First element of the ``response`` array of a legacy API answer."""
    payload = body.get("response") if isinstance(body, dict) else None
    if payload is None:
        raise ProtocolError("expected 'response' key in JSON payload")
    if not isinstance(payload, list) or not payload:
        raise ProtocolError(f"API error: `response` is not a non-empty array: {payload!r}")
    return payload[0]


def read_envelope(response: httpx.Response) -> Any:
    """Parse *response* and return its ``response`` payload."""
    return extract_payload(read_json(response))


def envelope_detail(response: httpx.Response) -> Any:
    """``response`` value of an error body, or None when there is none."""
    try:
        body = response.json()
    except ValueError:
        return None
    return body.get("response") if isinstance(body, dict) else None
