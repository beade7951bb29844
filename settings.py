from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from errors import InvalidIdentity
from identity import decode_bech32

DEFAULT_RELAYS = ["wss://relay.contextvm.org"]


class Settings(BaseSettings):
    """Runtime configuration, read from the environment or a ``.env`` file.

    ``RELAYS`` is a comma-separated list of relay URLs and
    ``CTX_CLIENT_PRIVATE_KEY`` accepts either hex or ``nsec``. When no key is
    configured every connection signs with a freshly generated key.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    relays: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_RELAYS)
    )
    ctx_client_private_key: str | None = None
    handshake_timeout: float = Field(default=15.0, gt=0)
    call_timeout: float = Field(default=30.0, gt=0)
    enforce_sendable_range: bool = True
    public_url: str | None = None
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("relays", mode="before")
    @classmethod
    def _split_relays(cls, value: object) -> object:
        if isinstance(value, str):
            return [r.strip() for r in value.split(",") if r.strip()]
        return value

    @field_validator("ctx_client_private_key", mode="before")
    @classmethod
    def _decode_private_key(cls, value: object) -> object:
        if not isinstance(value, str) or not value.strip():
            return None
        value = value.strip()
        if value.startswith("nsec1"):
            try:
                return decode_bech32("nsec", value)
            except InvalidIdentity as exc:
                raise ValueError(exc.reason) from exc
        if len(bytes.fromhex(value)) != 32:
            raise ValueError("private key must be 32 bytes")
        return value.lower()


@lru_cache
def get_settings() -> Settings:
    return Settings()
