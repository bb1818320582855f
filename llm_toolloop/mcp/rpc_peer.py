"""
JSON-RPC 2.0 peer over a transport channel.

Matches responses to pending requests by id, dispatches notifications to
registered handlers and answers the few server-initiated requests a client
is expected to handle.
"""
import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from ..constants import DEFAULT_TOOL_TIMEOUT, HEARTBEAT_TIMEOUT, JSONRPC_VERSION, PING_METHOD
from ..errors import (
    METHOD_NOT_FOUND,
    DisconnectedError,
    RequestTimeoutError,
    RpcError,
    TransportError,
)
from ..observability import EventLog
from ..utils import new_id
from .transport import AnyChannel

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[Dict[str, Any]], Any]
CloseCallback = Callable[[], Any]


class RpcPeer:
    """
    JSON-RPC 2.0 framing on top of a channel.

    The peer owns a reader task consuming ``channel.messages()``. When the
    channel ends on its own, every pending request fails with
    ``DisconnectedError`` and the close callbacks run; an explicit
    ``close()`` fails pending requests without running them.
    """

    def __init__(
        self,
        channel: AnyChannel,
        event_log: Optional[EventLog] = None,
        server_url: Optional[str] = None,
    ) -> None:
        self._channel = channel
        self._event_log = event_log or EventLog()
        self._server_url = server_url or getattr(channel, "url", None)
        self._pending: Dict[str, asyncio.Future] = {}
        self._notification_handlers: Dict[str, List[NotificationHandler]] = {}
        self._close_callbacks: List[CloseCallback] = []
        self._background: set = set()
        self._reader_task: Optional[asyncio.Task] = None
        self._closing = False
        self._closed = False
        self.done = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        """Begin consuming inbound messages."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop())

    def on_notification(self, method: str, handler: NotificationHandler) -> None:
        """Register a handler for a server notification; coroutine handlers are scheduled."""
        self._notification_handlers.setdefault(method, []).append(handler)

    def on_close(self, callback: CloseCallback) -> None:
        """Register a callback for when the channel ends without ``close()``."""
        self._close_callbacks.append(callback)

    async def request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: float = DEFAULT_TOOL_TIMEOUT,
    ) -> Any:
        """
        Send a request and wait for its response.

        Args:
            method: RPC method name
            params: Method parameters
            timeout: Seconds to wait for the response

        Returns:
            The ``result`` member of the response

        Raises:
            RpcError: For an error response, a timeout or a disconnect
            TransportError: If the message could not be handed to the channel
        """
        if self._closed:
            raise DisconnectedError()

        request_id = new_id()
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message = {
            "jsonrpc": JSONRPC_VERSION,
            "id": request_id,
            "method": method,
            "params": params if params is not None else {},
        }
        self._event_log.debug(
            "rpc", f"-> {method}", server_url=self._server_url, request_id=request_id
        )

        try:
            await self._channel.send(message)
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            self._event_log.warn(
                "rpc", f"{method} timed out after {timeout:g}s",
                server_url=self._server_url, request_id=request_id,
            )
            raise RequestTimeoutError(method, timeout) from None
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a notification; no response is expected."""
        if self._closed:
            raise DisconnectedError()
        await self._channel.send({
            "jsonrpc": JSONRPC_VERSION,
            "method": method,
            "params": params if params is not None else {},
        })
        self._event_log.debug("rpc", f"-> {method} (notification)", server_url=self._server_url)

    async def ping(self, timeout: float = HEARTBEAT_TIMEOUT) -> bool:
        """
        Best-effort liveness check.

        A method-not-found error still proves the server is answering.
        """
        try:
            await self.request(PING_METHOD, {}, timeout=timeout)
        except RpcError as e:
            return e.is_method_not_found
        except TransportError:
            return False
        return True

    async def _read_loop(self) -> None:
        try:
            async for message in self._channel.messages():
                await self._handle_message(message)
        finally:
            self._shutdown(unexpected=not self._closing)

    async def _handle_message(self, message: Dict[str, Any]) -> None:
        if not isinstance(message, dict):
            return

        method = message.get("method")
        if isinstance(method, str):
            if message.get("id") is not None:
                await self._answer_server_request(message["id"], method)
            else:
                self._dispatch_notification(method, message)
            return

        if "id" not in message:
            logger.debug("Ignoring message without id or method: %s", message)
            return

        request_id = message["id"]
        future = self._pending.get(request_id)
        if future is None and not isinstance(request_id, str):
            future = self._pending.get(str(request_id))
        if future is None or future.done():
            # Gateways may echo a response both on the stream and in the POST body
            logger.debug("Unmatched response id %r", request_id)
            return

        error = message.get("error")
        if error is not None:
            rpc_error = RpcError.from_dict(error)
            self._event_log.debug(
                "rpc", f"<- error {rpc_error.code}: {rpc_error.message}",
                server_url=self._server_url, request_id=str(request_id),
            )
            future.set_exception(rpc_error)
        else:
            self._event_log.debug(
                "rpc", "<- result", server_url=self._server_url, request_id=str(request_id)
            )
            future.set_result(message.get("result"))

    async def _answer_server_request(self, request_id: Any, method: str) -> None:
        if method == "ping":
            reply = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": {}}
        else:
            reply = {
                "jsonrpc": JSONRPC_VERSION,
                "id": request_id,
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"},
            }
        try:
            await self._channel.send(reply)
        except TransportError as e:
            self._event_log.warn(
                "rpc", f"Could not answer server request {method}: {e}", server_url=self._server_url
            )

    def _dispatch_notification(self, method: str, message: Dict[str, Any]) -> None:
        self._event_log.debug("rpc", f"<- {method} (notification)", server_url=self._server_url)
        for handler in self._notification_handlers.get(method, []):
            try:
                result = handler(message.get("params") or {})
            except Exception:
                logger.exception("Notification handler for %s failed", method)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._background.add(task)
                task.add_done_callback(self._background.discard)

    def _shutdown(self, unexpected: bool) -> None:
        if self._closed:
            return
        self._closed = True
        for future in self._pending.values():
            if not future.done():
                future.set_exception(DisconnectedError())
        self._pending.clear()
        self.done.set()

        if not unexpected:
            return
        self._event_log.warn("connection", "Connection closed by peer", server_url=self._server_url)
        for callback in list(self._close_callbacks):
            try:
                result = callback()
            except Exception:
                logger.exception("Close callback failed")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._background.add(task)
                task.add_done_callback(self._background.discard)

    async def close(self) -> None:
        """Stop reading, fail pending requests and close the channel."""
        self._closing = True
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._shutdown(unexpected=False)
        await self._channel.close()
