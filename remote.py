import asyncio
import json
from typing import Any

from mcp.shared.exceptions import McpError
from mcp.types import CallToolResult, TextContent
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from errors import (
    LnurlProxyError,
    MalformedRemoteResponse,
    RemoteTimeout,
    RemoteToolError,
    RemoteUnavailable,
    TransportError,
)
from logs import get_logger
from registry import ConnectionRegistry

GET_INFO = "get_info"
MAKE_INVOICE = "make_invoice"
LOOKUP_INVOICE = "lookup_invoice"

logger = get_logger(__name__)


def first_text(result: CallToolResult) -> str | None:
    return next(
        (block.text for block in result.content if isinstance(block, TextContent)),
        None,
    )

class RemoteServerInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    min_sendable: int | None = Field(default=None, alias="minSendable")
    max_sendable: int | None = Field(default=None, alias="maxSendable")
    description: str | None = None
    long_description: str | None = Field(default=None, alias="longDescription")
    image_data: str | None = Field(default=None, alias="imageData")


class InvoicePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    invoice: str
    payment_hash: str


class InvoiceEnvelope(BaseModel):
    result: InvoicePayload


class LookupPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    invoice: str | None = None
    payment_hash: str | None = None
    preimage: str | None = None
    state: str | None = None
    settled: bool | None = None
    settled_at: int | None = None

    @property
    def is_settled(self) -> bool:
        if self.settled is not None:
            return self.settled
        if self.state is not None:
            return self.state.lower() == "settled"
        return bool(self.settled_at)


class LookupEnvelope(BaseModel):
    result: LookupPayload


class RemoteInvoker:
    """Issues the payment tools on a remote server and parses their replies.

    ``make_invoice`` and ``lookup_invoice`` answer with a single text block
    holding a JSON object whose ``result`` field carries the payload.
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    async def invoke(
        self, identity: str, procedure: str, arguments: dict[str, Any]
    ) -> CallToolResult:
        try:
            client = await self.registry.get_or_create(identity)
        except LnurlProxyError as exc:
            raise type(exc)(exc.reason, procedure=procedure, identity=identity) from exc

        try:
            result = await client.call_tool(procedure, arguments)
        except asyncio.TimeoutError as exc:
            raise RemoteTimeout(procedure=procedure, identity=identity) from exc
        except McpError as exc:
            logger.warning(
                "remote_rpc_error",
                procedure=procedure,
                identity=identity,
                code=exc.error.code,
                error=exc.error.message,
            )
            raise RemoteToolError(procedure=procedure, identity=identity) from exc
        except TransportError as exc:
            logger.warning(
                "remote_transport_error",
                procedure=procedure,
                identity=identity,
                error=str(exc),
            )
            raise RemoteUnavailable(procedure=procedure, identity=identity) from exc
        except ValidationError as exc:
            raise MalformedRemoteResponse(procedure=procedure, identity=identity) from exc

        if result.isError:
            logger.warning(
                "remote_tool_error",
                procedure=procedure,
                identity=identity,
                detail=first_text(result),
            )
            raise RemoteToolError(procedure=procedure, identity=identity)
        return result

    async def get_info(self, identity: str) -> RemoteServerInfo:
        result = await self.invoke(identity, GET_INFO, {})
        payload: Any = result.structuredContent
        if payload is None:
            text = first_text(result)
            if text is None:
                # some servers put the fields on the result itself
                payload = result.model_extra or {}
            else:
                try:
                    payload = json.loads(text)
                except json.JSONDecodeError as exc:
                    raise MalformedRemoteResponse(
                        procedure=GET_INFO, identity=identity
                    ) from exc
        if isinstance(payload, dict) and isinstance(payload.get("result"), dict):
            payload = payload["result"]
        try:
            return RemoteServerInfo.model_validate(payload)
        except ValidationError as exc:
            raise MalformedRemoteResponse(procedure=GET_INFO, identity=identity) from exc

    async def make_invoice(self, identity: str, amount: int) -> InvoicePayload:
        result = await self.invoke(identity, MAKE_INVOICE, {"amount": amount})
        return self._parse_envelope(result, InvoiceEnvelope, MAKE_INVOICE, identity).result

    async def lookup_invoice(self, identity: str, payment_hash: str) -> LookupPayload:
        result = await self.invoke(
            identity, LOOKUP_INVOICE, {"payment_hash": payment_hash}
        )
        return self._parse_envelope(result, LookupEnvelope, LOOKUP_INVOICE, identity).result

    def _parse_envelope(
        self,
        result: CallToolResult,
        model: type[InvoiceEnvelope] | type[LookupEnvelope],
        procedure: str,
        identity: str,
    ) -> Any:
        text = first_text(result)
        if text is None:
            raise MalformedRemoteResponse(
                "Payment server response had no text content",
                procedure=procedure,
                identity=identity,
            )
        try:
            return model.model_validate_json(text)
        except ValidationError as exc:
            logger.warning(
                "malformed_remote_response",
                procedure=procedure,
                identity=identity,
                errors=exc.error_count(),
            )
            raise MalformedRemoteResponse(procedure=procedure, identity=identity) from exc
