import asyncio
import hashlib
import json
import secrets
import time
from collections.abc import Callable
from typing import Any, cast

import httpx
from coincurve import PrivateKey, PublicKeyXOnly
from httpx_ws import aconnect_ws, AsyncWebSocketSession

from errors import TransportError
from logs import get_logger

CTXVM_MESSAGES_KIND = 25910

logger = get_logger(__name__)


def compute_event_id(
    pubkey: str, created_at: int, kind: int, tags: list[list[str]], content: str
) -> str:
    serialized = json.dumps(
        [0, pubkey, created_at, kind, tags, content],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def verify_event(event: dict[str, Any]) -> bool:
    try:
        expected_id = compute_event_id(
            event["pubkey"],
            event["created_at"],
            event["kind"],
            event["tags"],
            event["content"],
        )
        if expected_id != event["id"]:
            return False
        pubkey = PublicKeyXOnly(bytes.fromhex(event["pubkey"]))
        return pubkey.verify(bytes.fromhex(event["sig"]), bytes.fromhex(event["id"]))
    except (KeyError, TypeError, ValueError):
        return False


class Signer:
    def __init__(self, private_key_hex: str | None = None) -> None:
        secret = (
            bytes.fromhex(private_key_hex)
            if private_key_hex
            else secrets.token_bytes(32)
        )
        self._key = PrivateKey(secret)
        self.public_key = self._key.public_key.format(compressed=True)[1:].hex()

    def sign_event(
        self, kind: int, content: str, tags: list[list[str]] | None = None
    ) -> dict[str, Any]:
        tags = tags or []
        created_at = int(time.time())
        event_id = compute_event_id(self.public_key, created_at, kind, tags, content)
        sig = self._key.sign_schnorr(bytes.fromhex(event_id))
        return {
            "id": event_id,
            "pubkey": self.public_key,
            "created_at": created_at,
            "kind": kind,
            "tags": tags,
            "content": content,
            "sig": sig.hex(),
        }


class NostrClientTransport:
    """Carries JSON-RPC messages to one server as kind 25910 events.

    One websocket worker runs per relay. Outbound messages are signed and
    published to every relay that is currently subscribed; inbound events
    from the server are deduplicated, signature-checked and handed to
    ``on_message``. ``on_close`` fires once every relay has dropped.
    """

    def __init__(
        self,
        signer: Signer,
        relays: list[str],
        server_pubkey: str,
        since_skew: int = 60,
    ) -> None:
        self.signer = signer
        self.relays = list(dict.fromkeys(relays))
        self.server_pubkey = server_pubkey
        self.on_message: Callable[[dict[str, Any]], None] | None = None
        self.on_close: Callable[[], None] | None = None
        self._since_skew = since_skew
        self._subscription_id = f"ctxvm_{secrets.token_hex(8)}"
        self._sessions: dict[str, AsyncWebSocketSession] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._seen_event_ids: set[str] = set()
        self._started = False
        self._closed = False

    def subscription_filter(self) -> dict[str, Any]:
        return {
            "kinds": [CTXVM_MESSAGES_KIND],
            "authors": [self.server_pubkey],
            "#p": [self.signer.public_key],
            "since": int(time.time()) - self._since_skew,
        }

    async def start(self) -> None:
        if not self.relays:
            raise TransportError("No relays configured")
        loop = asyncio.get_running_loop()
        pending: set[asyncio.Future[None]] = set()
        for relay_url in self.relays:
            connected: asyncio.Future[None] = loop.create_future()
            connected.add_done_callback(_consume_result)
            pending.add(connected)
            self._tasks.append(
                asyncio.create_task(self._relay_worker(relay_url, connected))
            )

        errors: list[BaseException] = []
        while pending:
            done, pending = await asyncio.wait(
                pending, return_when=asyncio.FIRST_COMPLETED
            )
            for fut in done:
                exc = fut.exception()
                if exc is None:
                    self._started = True
                    return
                errors.append(exc)
        raise TransportError(
            f"Could not connect to any of {len(self.relays)} relays"
        ) from errors[0]

    async def send(self, message: dict[str, Any]) -> str:
        if self._closed:
            raise TransportError("Transport is closed")
        event = self.signer.sign_event(
            CTXVM_MESSAGES_KIND,
            json.dumps(message),
            [["p", self.server_pubkey]],
        )
        sessions = list(self._sessions.items())
        if not sessions:
            raise TransportError("No relay connection available")
        payload = json.dumps(["EVENT", event])
        results = await asyncio.gather(
            *[ws.send_text(payload) for _, ws in sessions], return_exceptions=True
        )
        failures = [r for r in results if isinstance(r, Exception)]
        for (relay_url, _), result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.warning("relay_publish_failed", relay=relay_url, error=str(result))
        if len(failures) == len(sessions):
            raise TransportError("Failed to publish to any relay") from failures[0]
        return event["id"]

    async def close(self) -> None:
        self._closed = True
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._sessions.clear()

    async def _relay_worker(self, relay_url: str, connected: asyncio.Future[None]) -> None:
        client = httpx.AsyncClient(http2=False, timeout=None)
        try:
            async with aconnect_ws(relay_url, client) as ws_raw:  # type: AsyncWebSocketSession
                ws = cast(AsyncWebSocketSession, ws_raw)
                req_message = ["REQ", self._subscription_id, self.subscription_filter()]
                await ws.send_text(json.dumps(req_message))
                self._sessions[relay_url] = ws
                if not connected.done():
                    connected.set_result(None)
                logger.debug("relay_subscribed", relay=relay_url)

                while True:
                    message = await ws.receive_text()
                    self.handle_relay_message(relay_url, message)
        except Exception as exc:
            if not connected.done():
                connected.set_exception(exc)
            logger.warning("relay_disconnected", relay=relay_url, error=str(exc))
        finally:
            self._sessions.pop(relay_url, None)
            await client.aclose()
            if self._started and not self._closed and not self._sessions:
                self._closed = True
                if self.on_close is not None:
                    self.on_close()

    def handle_relay_message(self, relay_url: str, message: str) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            return
        if not isinstance(data, list) or not data:
            return

        if data[0] == "OK" and len(data) >= 3 and data[2] is False:
            reason = data[3] if len(data) > 3 else ""
            logger.warning("relay_rejected_event", relay=relay_url, reason=reason)
            return
        if data[0] in ("NOTICE", "CLOSED"):
            logger.info("relay_notice", relay=relay_url, message=data[1:])
            return
        if not (
            data[0] == "EVENT"
            and len(data) >= 3
            and data[1] == self._subscription_id
            and isinstance(data[2], dict)
        ):
            return

        event = data[2]
        if (
            event.get("kind") != CTXVM_MESSAGES_KIND
            or event.get("pubkey") != self.server_pubkey
        ):
            return
        event_id = event.get("id")
        if not isinstance(event_id, str) or event_id in self._seen_event_ids:
            return
        if not verify_event(event):
            logger.warning("invalid_event_signature", relay=relay_url, event_id=event_id)
            return
        self._seen_event_ids.add(event_id)

        try:
            payload = json.loads(event["content"])
        except json.JSONDecodeError:
            logger.warning("undecodable_event_content", relay=relay_url, event_id=event_id)
            return
        if isinstance(payload, dict) and self.on_message is not None:
            self.on_message(payload)


def _consume_result(fut: asyncio.Future[None]) -> None:
    if not fut.cancelled():
        fut.exception()
