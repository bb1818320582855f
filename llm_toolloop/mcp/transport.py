"""
Transport channels for tool servers.

Two variants sit behind the same small interface (``start``, ``send``,
``messages``, ``close``) and are selected by URL scheme in ``open_channel``:

- ``WebSocketChannel``: one full-duplex socket carrying JSON-RPC text frames.
- ``HttpSseChannel``: a long-lived SSE stream for inbound messages plus
  HTTP POSTs for outbound ones, with session discovery, cookie replay,
  manual redirects and reconnect backoff.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union
from urllib.parse import urljoin, urlparse, urlunparse

import httpx
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ..constants import (
    BACKOFF_BASE,
    BACKOFF_MAX,
    HTTP_CONNECT_TIMEOUT,
    MAX_REDIRECTS,
    POST_FALLBACK_PATHS,
    REDIRECT_STATUSES,
    SESSION_WAIT_TIMEOUT,
    SSE_CANDIDATE_PATHS,
)
from ..errors import TransportError
from ..observability import EventLog
from ..utils import truncate_string
from .sse import (
    ENDPOINT_EVENT,
    SessionEndpoints,
    SSEDecoder,
    SSEEvent,
    extract_messages,
    has_session_marker,
    parse_session_endpoint,
    unwrap_envelope,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class ReconnectBackoff:
    """
    Exponential reconnect delay: base, 2*base, 4*base ... capped at max_delay.

    Attributes:
        base: First delay in seconds
        max_delay: Upper bound for any delay
        multiplier: Growth factor per attempt
        attempt: Number of delays handed out since the last reset
    """
    base: float = BACKOFF_BASE
    max_delay: float = BACKOFF_MAX
    multiplier: float = 2.0
    attempt: int = 0

    def delay(self, attempt: int) -> float:
        return min(self.base * (self.multiplier ** attempt), self.max_delay)

    def next_delay(self) -> float:
        d = self.delay(self.attempt)
        self.attempt += 1
        return d

    def reset(self) -> None:
        self.attempt = 0


def _auth_headers(auth_token: Optional[str]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {auth_token}"} if auth_token else {}


class WebSocketChannel:
    """JSON-RPC over a single WebSocket connection."""

    kind = "websocket"
    needs_heartbeat = True

    def __init__(
        self,
        url: str,
        auth_token: Optional[str] = None,
        event_log: Optional[EventLog] = None,
        connect: Optional[Callable[..., Any]] = None,
    ) -> None:
        """
        Args:
            url: ws:// or wss:// endpoint
            auth_token: Optional bearer token sent at connect time
            event_log: Diagnostics sink
            connect: Factory compatible with ``websockets.asyncio.client.connect``
        """
        self.url = url
        self._auth_token = auth_token
        self._event_log = event_log or EventLog()
        self._connect = connect or ws_connect
        self._ws: Any = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        headers = _auth_headers(self._auth_token)
        try:
            self._ws = await self._connect(
                self.url,
                additional_headers=headers or None,
                open_timeout=HTTP_CONNECT_TIMEOUT,
            )
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as e:
            self._closed = True
            raise TransportError(f"WebSocket connect failed: {e}") from e
        self._event_log.info("connection", "WebSocket opened", server_url=self.url)

    async def send(self, message: Dict[str, Any]) -> None:
        if self._closed or self._ws is None:
            raise TransportError("WebSocket is closed")
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as e:
            raise TransportError(f"WebSocket closed while sending: {e}") from e

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield inbound JSON-RPC messages until the socket closes."""
        if self._ws is None:
            return
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                try:
                    decoded = json.loads(raw)
                except json.JSONDecodeError:
                    logger.debug("Dropping non-JSON frame: %s", truncate_string(raw, 200))
                    continue
                for message in unwrap_envelope(decoded):
                    yield message
        except ConnectionClosed as e:
            self._event_log.warn("connection", f"WebSocket closed: {e}", server_url=self.url)
        finally:
            self._closed = True

    async def close(self) -> None:
        self._closed = True
        if self._ws is not None:
            await self._ws.close()
            self._ws = None


class HttpSseChannel:
    """
    JSON-RPC over HTTP: SSE stream inbound, POST outbound.

    Outbound messages go through a single queue drained by one sender
    task, which holds them until the gateway has announced a session
    endpoint (or the wait times out), so sends are delivered in order.
    """

    kind = "http-sse"
    needs_heartbeat = False

    def __init__(
        self,
        url: str,
        auth_token: Optional[str] = None,
        event_log: Optional[EventLog] = None,
        client: Optional[httpx.AsyncClient] = None,
        session_wait_timeout: float = SESSION_WAIT_TIMEOUT,
        backoff: Optional[ReconnectBackoff] = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        """
        Args:
            url: http:// or https:// base URL of the server or gateway
            auth_token: Optional bearer token sent on every request
            event_log: Diagnostics sink
            client: HTTP client to use; one is created and owned if omitted
            session_wait_timeout: How long queued sends wait for a session
            backoff: Reconnect delay policy for the SSE stream
            sleep: Awaitable sleep used between reconnect attempts
        """
        self.url = url.rstrip("/")
        self._headers = _auth_headers(auth_token)
        self._event_log = event_log or EventLog()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(HTTP_CONNECT_TIMEOUT, read=None),
            follow_redirects=False,
        )
        self._session_wait_timeout = session_wait_timeout
        self._backoff = backoff or ReconnectBackoff()
        self._sleep = sleep or asyncio.sleep

        self._inbound: asyncio.Queue = asyncio.Queue()
        self._outbound: asyncio.Queue = asyncio.Queue()
        self._session: Optional[SessionEndpoints] = None
        self._session_ready = asyncio.Event()
        self._cookies: Dict[str, str] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._sender_task: Optional[asyncio.Task] = None
        self._closed = False
        self.stream_url: Optional[str] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def session(self) -> Optional[SessionEndpoints]:
        return self._session

    @property
    def cookies(self) -> Dict[str, str]:
        return dict(self._cookies)

    def _resolve(self, path: str) -> str:
        return f"{self.url}{path}" if path else self.url

    def _request_headers(self) -> Dict[str, str]:
        headers = dict(self._headers)
        if self._cookies:
            headers["Cookie"] = "; ".join(f"{k}={v}" for k, v in self._cookies.items())
        return headers

    def _capture_cookies(self, response: httpx.Response) -> None:
        for header in response.headers.get_list("set-cookie"):
            pair = header.split(";", 1)[0]
            name, sep, value = pair.partition("=")
            if sep and name.strip():
                self._cookies[name.strip()] = value.strip()

    # Inbound

    async def start(self) -> None:
        """Open the SSE stream and start the reader and sender tasks."""
        response = await self._open_stream()
        self._reader_task = asyncio.create_task(self._read_loop(response))
        self._sender_task = asyncio.create_task(self._send_loop())

    async def _open_stream(self) -> httpx.Response:
        """
        Try each candidate SSE path with GET, then POST.

        Returns:
            The first 200 response with an event-stream content type

        Raises:
            TransportError: If no candidate produced an event stream
        """
        last_error = "no candidates"
        for path in SSE_CANDIDATE_PATHS:
            url = self._resolve(path)
            for method in ("GET", "POST"):
                headers = {
                    **self._request_headers(),
                    "Accept": "text/event-stream",
                    "Cache-Control": "no-cache",
                }
                request = self._client.build_request(method, url, headers=headers)
                try:
                    response = await self._client.send(request, stream=True)
                except httpx.HTTPError as e:
                    last_error = f"{method} {url}: {e}"
                    continue

                self._capture_cookies(response)
                content_type = response.headers.get("content-type", "")
                if response.status_code == 200 and "event-stream" in content_type:
                    self.stream_url = url
                    self._event_log.info(
                        "sse", f"SSE stream opened with {method} {url}", server_url=self.url
                    )
                    return response

                await response.aclose()
                last_error = f"{method} {url}: HTTP {response.status_code} ({content_type or 'no content type'})"
                self._event_log.debug("sse", f"SSE candidate rejected: {last_error}", server_url=self.url)

        raise TransportError(f"SSE handshake failed for {self.url}: {last_error}")

    async def _read_loop(self, response: httpx.Response) -> None:
        while not self._closed:
            reason = "stream ended"
            try:
                await self._consume(response)
            except httpx.HTTPError as e:
                reason = str(e) or type(e).__name__
            finally:
                await response.aclose()

            if self._closed:
                return
            self._reset_session()
            self._event_log.warn("sse", f"SSE stream lost: {reason}", server_url=self.url)
            response = await self._reconnect()
            if response is None:
                return

    async def _reconnect(self) -> Optional[httpx.Response]:
        while not self._closed:
            delay = self._backoff.next_delay()
            self._event_log.info("sse", f"Reconnecting SSE in {delay:g}s", server_url=self.url)
            await self._sleep(delay)
            if self._closed:
                return None
            try:
                response = await self._open_stream()
            except TransportError as e:
                self._event_log.warn("sse", str(e), server_url=self.url)
                continue
            self._backoff.reset()
            return response
        return None

    async def _consume(self, response: httpx.Response) -> None:
        decoder = SSEDecoder()
        async for line in response.aiter_lines():
            event = decoder.feed(line)
            if event is not None:
                self._dispatch(event)
        event = decoder.flush()
        if event is not None:
            self._dispatch(event)

    def _dispatch(self, event: SSEEvent) -> None:
        data = event.data.strip()
        is_json = data.startswith(("{", "["))
        if event.event == ENDPOINT_EVENT or (not is_json and has_session_marker(data)):
            endpoints = parse_session_endpoint(data, self.url)
            if endpoints is None:
                self._event_log.warn(
                    "sse", f"Could not extract session id from: {truncate_string(data, 120)}",
                    server_url=self.url,
                )
                return
            self._set_session(endpoints)
            return

        messages = extract_messages(data)
        if not messages and data:
            logger.debug("SSE event %r carried no JSON-RPC messages", event.event)
        for message in messages:
            self._inbound.put_nowait(message)

    def _set_session(self, endpoints: SessionEndpoints) -> None:
        self._session = endpoints
        self._session_ready.set()
        self._event_log.info(
            "sse", f"Session endpoint ready: {endpoints.preferred}", server_url=self.url,
            session_id=endpoints.session_id,
        )

    def _reset_session(self) -> None:
        self._session = None
        self._session_ready.clear()

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield inbound JSON-RPC messages until the channel is closed."""
        while True:
            message = await self._inbound.get()
            if message is None:
                return
            yield message

    # Outbound

    async def send(self, message: Dict[str, Any]) -> None:
        """Queue a message for delivery; ordering is preserved."""
        if self._closed:
            raise TransportError("Channel is closed")
        self._outbound.put_nowait(message)

    async def _send_loop(self) -> None:
        while True:
            message = await self._outbound.get()
            try:
                await self._deliver(message)
            except TransportError as e:
                self._event_log.error(
                    "sse", str(e), server_url=self.url,
                    request_id=str(message.get("id")) if message.get("id") is not None else None,
                )

    def _post_targets(self) -> List[str]:
        targets = self._session.targets() if self._session else []
        targets += [self._resolve(path) for path in POST_FALLBACK_PATHS]
        return list(dict.fromkeys(targets))

    async def _deliver(self, message: Dict[str, Any]) -> None:
        if not self._session_ready.is_set():
            try:
                await asyncio.wait_for(self._session_ready.wait(), self._session_wait_timeout)
            except asyncio.TimeoutError:
                self._event_log.warn(
                    "sse",
                    f"No session endpoint after {self._session_wait_timeout:g}s, trying fallbacks",
                    server_url=self.url,
                )

        body = json.dumps(message)
        last_error = "no endpoints"
        for url in self._post_targets():
            try:
                response = await self._post(url, body)
            except (httpx.HTTPError, TransportError) as e:
                last_error = f"{url}: {e}"
                continue
            if 200 <= response.status_code < 300:
                self._event_log.debug(
                    "rpc", f"POST {url} -> {response.status_code}", server_url=self.url,
                    request_id=str(message.get("id")) if message.get("id") is not None else None,
                )
                self._forward_response_body(response)
                return
            last_error = f"{url}: HTTP {response.status_code}"
            if response.status_code not in (404, 405):
                logger.debug("POST %s failed: %s", url, truncate_string(response.text, 200))

        raise TransportError(f"All POST endpoints rejected the message ({last_error})")

    async def _post(self, url: str, body: str) -> httpx.Response:
        """POST following 301/302/307 redirects by hand, at most MAX_REDIRECTS times."""
        current = url
        for _ in range(MAX_REDIRECTS + 1):
            headers = {**self._request_headers(), "Content-Type": "application/json"}
            response = await self._client.post(
                current, content=body, headers=headers, follow_redirects=False
            )
            self._capture_cookies(response)
            if response.status_code not in REDIRECT_STATUSES:
                return response
            location = response.headers.get("location")
            if not location:
                return response
            current = resolve_location(current, location)
            logger.debug("Following redirect to %s", current)
        raise TransportError(f"Too many redirects posting to {url}")

    def _forward_response_body(self, response: httpx.Response) -> None:
        if "json" not in response.headers.get("content-type", "") or not response.content:
            return
        try:
            decoded = response.json()
        except ValueError:
            return
        for message in unwrap_envelope(decoded):
            self._inbound.put_nowait(message)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in (self._reader_task, self._sender_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._inbound.put_nowait(None)
        if self._owns_client:
            await self._client.aclose()


def resolve_location(current: str, location: str) -> str:
    """Resolve a redirect Location against the URL that produced it."""
    if location.startswith(("http://", "https://")):
        return location
    if location.startswith("/"):
        parsed = urlparse(current)
        path, _, query = location.partition("?")
        return urlunparse((parsed.scheme, parsed.netloc, path, "", query, ""))
    return urljoin(current, location)


AnyChannel = Union[WebSocketChannel, HttpSseChannel]


def open_channel(
    url: str,
    auth_token: Optional[str] = None,
    event_log: Optional[EventLog] = None,
    **kwargs: Any,
) -> AnyChannel:
    """
    Create the channel variant matching the URL scheme.

    Raises:
        TransportError: For schemes other than ws, wss, http and https
    """
    scheme = urlparse(url).scheme.lower()
    if scheme in ("ws", "wss"):
        return WebSocketChannel(url, auth_token=auth_token, event_log=event_log, **kwargs)
    if scheme in ("http", "https"):
        return HttpSseChannel(url, auth_token=auth_token, event_log=event_log, **kwargs)
    raise TransportError(f"Unsupported server URL scheme: {scheme or url}")
