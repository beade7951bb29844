import asyncio
import math
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Protocol

import anyio
from mcp import ClientSession, types
from mcp.shared.exceptions import McpError
from mcp.shared.message import SessionMessage
from pydantic import ValidationError

from errors import TransportError
from logs import get_logger
from nostr_transport import NostrClientTransport, Signer
from settings import Settings

CLIENT_INFO = types.Implementation(name="lnurl-proxy-client", version="1.0.0")

logger = get_logger(__name__)


class Transport(Protocol):
    on_message: Callable[[dict[str, Any]], None] | None
    on_close: Callable[[], None] | None

    async def start(self) -> None: ...

    async def send(self, message: dict[str, Any]) -> str: ...

    async def close(self) -> None: ...


class ClientState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    CLOSED = "closed"


class CancellingClientSession(ClientSession):
    """ClientSession whose tool calls are bounded by ``request_timeout``.

    A call that runs out of time is reported to the server with
    ``notifications/cancelled`` so the remote work stops too.
    """

    def __init__(self, *args: Any, request_timeout: float, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.request_timeout = request_timeout

    async def call_tool(self, name: str, *args: Any, **kwargs: Any) -> types.CallToolResult:
        # tools/call takes the next id before the session first yields
        request_id = self._request_id
        try:
            async with asyncio.timeout(self.request_timeout):
                return await super().call_tool(name, *args, **kwargs)
        except TimeoutError:
            await self._send_cancelled(request_id, f"{name} timed out")
            raise

    async def _send_cancelled(self, request_id: types.RequestId, reason: str) -> None:
        notification = types.CancelledNotification(
            method="notifications/cancelled",
            params=types.CancelledNotificationParams(requestId=request_id, reason=reason),
        )
        try:
            await self.send_notification(types.ClientNotification(notification))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.debug("cancel_not_sent", request_id=request_id)


class McpClient:
    """MCP session with one remote server, carried over a message transport.

    The SDK session lives in its own runner task so that its task group is
    entered and exited by the same task, whichever caller closes the client.
    """

    def __init__(self, transport: Transport, request_timeout: float = 30.0) -> None:
        self.state = ClientState.CONNECTING
        self.server_info: types.Implementation | None = None
        self._transport = transport
        self._request_timeout = request_timeout
        self._session: CancellingClientSession | None = None
        self._runner: asyncio.Task[None] | None = None
        self._stop = asyncio.Event()
        self._incoming_send, self._incoming_receive = anyio.create_memory_object_stream(
            math.inf
        )
        self._outgoing_send, self._outgoing_receive = anyio.create_memory_object_stream(0)
        transport.on_message = self._handle_message
        transport.on_close = self._handle_transport_closed

    @property
    def is_ready(self) -> bool:
        return self.state is ClientState.READY

    async def connect(self) -> None:
        await self._transport.start()
        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._runner = asyncio.create_task(self._run(ready))
        await ready
        if self.state is not ClientState.CONNECTING:
            raise TransportError("Connection lost during handshake")
        self.state = ClientState.READY

    async def call_tool(
        self, name: str, arguments: dict[str, Any]
    ) -> types.CallToolResult:
        if self.state is not ClientState.READY or self._session is None:
            raise TransportError(f"Client is {self.state.value}")
        try:
            return await self._session.call_tool(name, arguments)
        except McpError as exc:
            if self.state is ClientState.CLOSED:
                raise TransportError(exc.error.message) from exc
            raise

    async def close(self) -> None:
        self.state = ClientState.CLOSED
        self._incoming_send.close()
        self._stop.set()
        if self._runner is not None:
            if self._session is None:
                self._runner.cancel()
            await asyncio.gather(self._runner, return_exceptions=True)
        await self._transport.close()

    async def _run(self, ready: asyncio.Future[None]) -> None:
        forwarder = asyncio.create_task(self._forward_outgoing())
        try:
            async with CancellingClientSession(
                self._incoming_receive,
                self._outgoing_send,
                client_info=CLIENT_INFO,
                request_timeout=self._request_timeout,
            ) as session:
                try:
                    result = await session.initialize()
                except Exception as exc:
                    if not ready.done():
                        ready.set_exception(exc)
                    return
                self._session = session
                self.server_info = result.serverInfo
                if not ready.done():
                    ready.set_result(None)
                await self._stop.wait()
        finally:
            forwarder.cancel()
            await asyncio.gather(forwarder, return_exceptions=True)
            if not ready.done():
                ready.set_exception(TransportError("Session ended during handshake"))

    async def _forward_outgoing(self) -> None:
        async for session_message in self._outgoing_receive:
            payload = session_message.message.model_dump(
                by_alias=True, mode="json", exclude_none=True
            )
            try:
                await self._transport.send(payload)
            except TransportError as exc:
                logger.warning("send_failed", method=payload.get("method"), error=str(exc))
                self._handle_transport_closed()

    def _handle_message(self, message: dict[str, Any]) -> None:
        if self.state is ClientState.CLOSED:
            return
        try:
            parsed = types.JSONRPCMessage.model_validate(message)
        except ValidationError as exc:
            logger.warning("invalid_server_message", errors=exc.error_count())
            return
        self._incoming_send.send_nowait(SessionMessage(message=parsed))

    def _handle_transport_closed(self) -> None:
        if self.state is ClientState.CLOSED:
            return
        logger.warning("transport_lost")
        self.state = ClientState.CLOSED
        # ends the session's receive loop, which fails every pending request
        self._incoming_send.close()


def client_factory(settings: Settings) -> Callable[[str], Awaitable[McpClient]]:
    async def connect(server_pubkey: str) -> McpClient:
        signer = Signer(settings.ctx_client_private_key)
        transport = NostrClientTransport(signer, settings.relays, server_pubkey)
        client = McpClient(transport, request_timeout=settings.call_timeout)
        try:
            await asyncio.wait_for(client.connect(), timeout=settings.handshake_timeout)
        except BaseException:
            await client.close()
            raise
        return client

    return connect
