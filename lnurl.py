import json
from dataclasses import dataclass

from errors import AmountOutOfRange, InvalidAmount, InvalidIdentity
from identity import normalize
from logs import get_logger
from registry import ConnectionRegistry
from remote import RemoteInvoker

DEFAULT_MIN_SENDABLE = 1000
DEFAULT_MAX_SENDABLE = 100_000_000
MSAT_PER_SAT = 1000

logger = get_logger(__name__)


@dataclass
class ServerInfo:
    identifier: str
    min_sendable: int
    max_sendable: int
    description: str
    long_description: str | None = None
    image_data: str | None = None
    tag: str | None = None


@dataclass
class InvoiceResult:
    pr: str
    payment_hash: str


@dataclass
class InvoiceStatus:
    settled: bool
    preimage: str | None
    pr: str | None


def to_native_units(minor_units: int) -> int:
    return minor_units // MSAT_PER_SAT


def parse_amount(value: str | int | None) -> int:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidAmount("Missing amount parameter")
    if isinstance(value, str):
        # plain ASCII digits only, no sign, separators or padding
        if not (value.isascii() and value.isdigit()):
            raise InvalidAmount("Invalid amount parameter")
        value = int(value)
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise InvalidAmount("Invalid amount parameter")
    return value


def split_username_tag(username: str) -> tuple[str, str | None]:
    if "+" not in username:
        return username, None
    base, _, tag = username.partition("+")
    if not base or not tag:
        return username, None
    return base, tag


def _image_entry(image_data: str) -> list[str]:
    if image_data.startswith("data:") and ";base64," in image_data:
        mime, _, data = image_data[5:].partition(";base64,")
        return [f"{mime};base64", data]
    return ["image/png;base64", image_data]


def build_metadata(info: ServerInfo, address: str) -> str:
    metadata = [
        ["text/plain", info.description],
        ["text/identifier", address],
    ]
    if info.long_description:
        metadata.append(["text/long-desc", info.long_description])
    if info.image_data:
        metadata.append(_image_entry(info.image_data))
    if info.tag:
        metadata.append(["text/tag", info.tag])
    return json.dumps(metadata)


class PaymentService:
    """Entry points used by the HTTP routes.

    Identifiers are ``npub1...`` or hex pubkeys, optionally with a ``+tag``
    suffix. Amounts arrive in millisatoshis and are forwarded to the remote
    server in whole satoshis.
    """

    def __init__(
        self, registry: ConnectionRegistry, enforce_sendable_range: bool = True
    ) -> None:
        self.registry = registry
        self.invoker = RemoteInvoker(registry)
        self.enforce_sendable_range = enforce_sendable_range

    def _identity(self, identifier: str) -> tuple[str, str, str | None]:
        name, tag = split_username_tag(identifier.strip())
        if not name:
            raise InvalidIdentity("Missing identifier")
        return name, normalize(name), tag

    async def resolve_payment_info(self, identifier: str) -> ServerInfo:
        name, identity, tag = self._identity(identifier)
        remote = await self.invoker.get_info(identity)
        return ServerInfo(
            identifier=name,
            min_sendable=remote.min_sendable or DEFAULT_MIN_SENDABLE,
            max_sendable=remote.max_sendable or DEFAULT_MAX_SENDABLE,
            description=remote.description or f"Payment to {name}",
            long_description=remote.long_description,
            image_data=remote.image_data,
            tag=tag,
        )

    async def create_invoice(
        self, identifier: str, amount: str | int | None
    ) -> InvoiceResult:
        amount_msat = parse_amount(amount)
        amount_sat = to_native_units(amount_msat)
        if amount_sat < 1:
            raise InvalidAmount(
                f"Amount must be at least {MSAT_PER_SAT} millisatoshis"
            )
        _, identity, _ = self._identity(identifier)

        if self.enforce_sendable_range:
            info = await self.resolve_payment_info(identifier)
            if not info.min_sendable <= amount_msat <= info.max_sendable:
                raise AmountOutOfRange(
                    f"Amount out of range: {info.min_sendable}-{info.max_sendable} msat",
                    identity=identity,
                )

        invoice = await self.invoker.make_invoice(identity, amount_sat)
        logger.info("invoice_created", identity=identity, amount_sat=amount_sat)
        return InvoiceResult(pr=invoice.invoice, payment_hash=invoice.payment_hash)

    async def verify_invoice(self, identifier: str, payment_hash: str) -> InvoiceStatus:
        _, identity, _ = self._identity(identifier)
        result = await self.invoker.lookup_invoice(identity, payment_hash)
        return InvoiceStatus(
            settled=result.is_settled,
            preimage=result.preimage,
            pr=result.invoice,
        )

    async def shutdown(self) -> list[BaseException]:
        return await self.registry.close_all()
