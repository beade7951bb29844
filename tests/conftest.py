"""Shared fakes for the payment service tests."""

import asyncio
import json
from typing import Any

import pytest
from mcp.types import CallToolResult

from lnurl import PaymentService
from mcp_client import ClientState
from registry import ConnectionRegistry

SERVER_PUBKEY = "7e7e9c42a91bfef19fa929e5fda1b72e0ebc1a4c1141673e2794234d86addf4e"
SERVER_NPUB = "npub10elfcs4fr0l0r8af98jlmgdh9c8tcxjvz9qkw038js35mp4dma8qzvjptg"
PAYMENT_HASH = "ab" * 32


def text_result(payload: Any) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": json.dumps(payload)}]}


class FakeClient:
    """Stands in for a connected McpClient; replies are keyed by tool name."""

    def __init__(self, responses: dict[str, Any] | None = None):
        self.state = ClientState.READY
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.responses: dict[str, Any] = {
            "get_info": {"content": []},
            "make_invoice": text_result(
                {"result": {"invoice": "lnbc100n1pfake", "payment_hash": PAYMENT_HASH}}
            ),
            "lookup_invoice": text_result(
                {
                    "result": {
                        "invoice": "lnbc100n1pfake",
                        "payment_hash": PAYMENT_HASH,
                        "preimage": "cd" * 32,
                        "settled_at": 1700000000,
                    }
                }
            ),
        }
        self.responses.update(responses or {})
        self.close_error: Exception | None = None

    @property
    def is_ready(self) -> bool:
        return self.state is ClientState.READY

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> CallToolResult:
        self.calls.append((name, arguments))
        response = self.responses[name]
        if isinstance(response, BaseException):
            raise response
        return CallToolResult.model_validate(response)

    async def close(self) -> None:
        self.state = ClientState.CLOSED
        if self.close_error is not None:
            raise self.close_error


class CountingConnector:
    """``connect`` callable for the registry that records each handshake."""

    def __init__(self, client: FakeClient | None = None, delay: float = 0.01):
        self.client = client
        self.delay = delay
        self.handshakes = 0
        self.created: list[FakeClient] = []
        self.failures: list[Exception] = []

    async def __call__(self, identity: str) -> FakeClient:
        self.handshakes += 1
        await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        client = self.client if self.client is not None else FakeClient()
        self.created.append(client)
        return client


@pytest.fixture
def fake_client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def connector(fake_client: FakeClient) -> CountingConnector:
    return CountingConnector(fake_client)


@pytest.fixture
def registry(connector: CountingConnector) -> ConnectionRegistry:
    return ConnectionRegistry(connector)


@pytest.fixture
def payments(registry: ConnectionRegistry) -> PaymentService:
    return PaymentService(registry)
