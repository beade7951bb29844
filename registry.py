import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from mcp.types import CallToolResult

from errors import ConnectionFailed, RemoteTimeout
from logs import get_logger

logger = get_logger(__name__)


class Client(Protocol):
    @property
    def is_ready(self) -> bool: ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> CallToolResult: ...

    async def close(self) -> None: ...


class ConnectionRegistry:
    """Process-lifetime map from server pubkey to a connected client.

    Concurrent requests for an unknown pubkey share one in-flight handshake
    task, so at most one client is ever established per pubkey. Failed
    handshakes leave nothing behind and the next request starts over.
    """

    def __init__(self, connect: Callable[[str], Awaitable[Client]]) -> None:
        self._connect = connect
        self._clients: dict[str, Client] = {}
        self._pending: dict[str, asyncio.Task[Client]] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, identity: object) -> bool:
        return identity in self._clients

    async def get_or_create(self, identity: str) -> Client:
        client = self._clients.get(identity)
        if client is not None:
            if client.is_ready:
                return client
            logger.info("client_replaced", identity=identity)
            del self._clients[identity]
            try:
                await client.close()
            except Exception as exc:
                logger.warning("client_close_failed", identity=identity, error=str(exc))

        task = self._pending.get(identity)
        if task is None:
            task = asyncio.create_task(self._establish(identity))
            self._pending[identity] = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # the shared handshake was cancelled by close_all, not this caller
            if task.cancelled() and not asyncio.current_task().cancelling():
                raise ConnectionFailed(
                    "Payment server connection is shutting down", identity=identity
                ) from None
            raise

    async def _establish(self, identity: str) -> Client:
        logger.debug("client_connecting", identity=identity)
        try:
            client = await self._connect(identity)
        except TimeoutError as exc:
            logger.warning("client_connect_timeout", identity=identity)
            raise RemoteTimeout(
                "Payment server did not complete the handshake in time",
                identity=identity,
            ) from exc
        except Exception as exc:
            logger.warning("client_connect_failed", identity=identity, error=str(exc))
            raise ConnectionFailed(
                "Could not connect to the payment server", identity=identity
            ) from exc
        finally:
            if self._pending.get(identity) is asyncio.current_task():
                del self._pending[identity]
        self._clients[identity] = client
        logger.info("client_connected", identity=identity)
        return client

    async def close_all(self) -> list[BaseException]:
        pending = list(self._pending.values())
        self._pending.clear()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        clients = list(self._clients.items())
        self._clients.clear()
        results = await asyncio.gather(
            *[client.close() for _, client in clients], return_exceptions=True
        )
        failures: list[BaseException] = []
        for (identity, _), result in zip(clients, results):
            if isinstance(result, BaseException):
                logger.error("client_close_failed", identity=identity, error=str(result))
                failures.append(result)
        if clients:
            logger.info("clients_closed", count=len(clients), failures=len(failures))
        return failures
