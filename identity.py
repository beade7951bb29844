import bech32

from errors import InvalidIdentity

NPUB_PREFIX = "npub1"
KEY_LENGTH = 32


def decode_bech32(hrp: str, value: str) -> str:
    decoded_hrp, data = bech32.bech32_decode(value)
    if decoded_hrp != hrp or data is None:
        raise InvalidIdentity(f"Invalid {hrp} encoding")
    converted = bech32.convertbits(data, 5, 8, False)
    if converted is None or len(converted) != KEY_LENGTH:
        raise InvalidIdentity(f"Invalid {hrp} key length")
    return bytes(converted).hex()


def encode_npub(pubkey_hex: str) -> str:
    data = bech32.convertbits(bytes.fromhex(pubkey_hex), 8, 5, True)
    return bech32.bech32_encode("npub", data)


def normalize(identifier: str) -> str:
    # Raw hex passes through as-is; only the bech32 form is checked.
    if identifier.startswith(NPUB_PREFIX):
        return decode_bech32("npub", identifier)
    return identifier
