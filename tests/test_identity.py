import pytest

from conftest import SERVER_NPUB, SERVER_PUBKEY
from errors import InvalidIdentity
from identity import decode_bech32, encode_npub, normalize


def test_npub_decodes_to_hex():
    assert normalize(SERVER_NPUB) == SERVER_PUBKEY


def test_hex_passes_through():
    assert normalize(SERVER_PUBKEY) == SERVER_PUBKEY


def test_both_encodings_normalize_to_same_identity():
    assert normalize(encode_npub(SERVER_PUBKEY)) == normalize(SERVER_PUBKEY)


def test_encode_npub_matches_known_vector():
    assert encode_npub(SERVER_PUBKEY) == SERVER_NPUB


@pytest.mark.parametrize(
    "identifier",
    [
        "npub1invalid",
        SERVER_NPUB[:-1] + ("q" if SERVER_NPUB[-1] != "q" else "p"),
        "npub1",
    ],
)
def test_malformed_npub_fails(identifier):
    with pytest.raises(InvalidIdentity):
        normalize(identifier)


def test_wrong_prefix_rejected():
    with pytest.raises(InvalidIdentity):
        decode_bech32("nsec", SERVER_NPUB)


def test_unvalidated_raw_input_is_not_rejected():
    assert normalize("alice") == "alice"
