import json

import pytest
from fastapi.testclient import TestClient

from conftest import PAYMENT_HASH, SERVER_NPUB, CountingConnector, FakeClient, text_result
from errors import TransportError
from lnurl import PaymentService
from main import create_app
from registry import ConnectionRegistry
from settings import Settings


def make_client(fake: FakeClient, connector: CountingConnector | None = None, **settings) -> TestClient:
    connector = connector or CountingConnector(fake)
    payments = PaymentService(ConnectionRegistry(connector))
    app = create_app(Settings(relays=["wss://relay.example"], **settings), payments)
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def fake() -> FakeClient:
    return FakeClient(
        {
            "get_info": text_result(
                {
                    "minSendable": 1000,
                    "maxSendable": 50000000,
                    "description": "Coffee",
                    "longDescription": "Bob runs a coffee shop",
                }
            )
        }
    )


@pytest.fixture
def client(fake: FakeClient):
    with make_client(fake) as client:
        yield client


def test_pay_request(client):
    response = client.get(f"/.well-known/lnurlp/{SERVER_NPUB}")

    assert response.status_code == 200
    data = response.json()
    assert data["tag"] == "payRequest"
    assert data["callback"] == f"https://testserver/lnurlp/callback/{SERVER_NPUB}"
    assert (data["minSendable"], data["maxSendable"]) == (1000, 50000000)
    metadata = json.loads(data["metadata"])
    assert ["text/plain", "Coffee"] in metadata
    assert ["text/identifier", f"{SERVER_NPUB}@testserver"] in metadata
    assert ["text/long-desc", "Bob runs a coffee shop"] in metadata


def test_pay_request_with_tag(client):
    data = client.get(f"/.well-known/lnurlp/{SERVER_NPUB}+donation").json()

    metadata = json.loads(data["metadata"])
    assert ["text/tag", "donation"] in metadata
    assert ["text/identifier", f"{SERVER_NPUB}@testserver"] in metadata


def test_pay_request_uses_public_url(fake):
    with make_client(fake, public_url="https://pay.example.com/") as client:
        data = client.get(f"/.well-known/lnurlp/{SERVER_NPUB}").json()

    assert data["callback"] == f"https://pay.example.com/lnurlp/callback/{SERVER_NPUB}"


def test_pay_request_invalid_npub(client):
    response = client.get("/.well-known/lnurlp/npub1notavalidkey")

    assert response.status_code == 400
    assert response.json()["status"] == "ERROR"


def test_pay_request_unreachable_server(fake):
    connector = CountingConnector(fake)
    connector.failures.append(TransportError("Could not connect to any of 1 relays"))
    with make_client(fake, connector) as client:
        response = client.get(f"/.well-known/lnurlp/{SERVER_NPUB}")

    assert response.status_code == 404
    body = response.json()
    assert body == {"status": "ERROR", "reason": "Could not connect to the payment server"}


def test_callback_returns_invoice(client, fake):
    response = client.get(f"/lnurlp/callback/{SERVER_NPUB}", params={"amount": 10000})

    assert response.status_code == 200
    assert response.json() == {
        "pr": "lnbc100n1pfake",
        "routes": [],
        "verify": f"https://testserver/lnurlp/verify/{SERVER_NPUB}/{PAYMENT_HASH}",
    }
    assert ("make_invoice", {"amount": 10}) in fake.calls


@pytest.mark.parametrize(
    "params, reason",
    [
        ({}, "Missing amount parameter"),
        ({"amount": "invalid"}, "Invalid amount parameter"),
        ({"amount": "0"}, "Invalid amount parameter"),
        ({"amount": "500"}, "at least 1000"),
        ({"amount": "200000000"}, "Amount out of range"),
    ],
)
def test_callback_validates_amount(client, params, reason):
    response = client.get(f"/lnurlp/callback/{SERVER_NPUB}", params=params)

    assert response.status_code == 400
    body = response.json()
    assert body["status"] == "ERROR"
    assert reason in body["reason"]


def test_callback_malformed_remote_response():
    fake = FakeClient({"make_invoice": {"content": [{"type": "text", "text": "oops"}]}})
    with make_client(fake) as client:
        response = client.get(f"/lnurlp/callback/{SERVER_NPUB}", params={"amount": 10000})

    assert response.status_code == 502
    assert response.json()["status"] == "ERROR"
    assert response.json()["reason"]


def test_callback_timeout():
    fake = FakeClient({"make_invoice": TimeoutError()})
    with make_client(fake) as client:
        response = client.get(f"/lnurlp/callback/{SERVER_NPUB}", params={"amount": 10000})

    assert response.status_code == 504


def test_unexpected_error_is_not_leaked():
    fake = FakeClient({"make_invoice": RuntimeError("secret internals")})
    with make_client(fake) as client:
        response = client.get(f"/lnurlp/callback/{SERVER_NPUB}", params={"amount": 10000})

    assert response.status_code == 500
    assert response.json() == {"status": "ERROR", "reason": "Internal server error"}


def test_verify(client):
    response = client.get(f"/lnurlp/verify/{SERVER_NPUB}/{PAYMENT_HASH}")

    assert response.status_code == 200
    assert response.json() == {
        "status": "OK",
        "settled": True,
        "preimage": "cd" * 32,
        "pr": "lnbc100n1pfake",
    }


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.text == "OK"


def test_api_info(client):
    data = client.get("/api/info").json()

    assert data["specification"] == "LUD-16"
    assert data["configuration"]["relays"] == ["wss://relay.example"]
    assert "lnurlp" in data["endpoints"]


def test_index_and_wallet_pages(client):
    index = client.get("/")
    wallet = client.get(f"/w/{SERVER_NPUB}")

    assert index.status_code == 200
    assert "text/html" in index.headers["content-type"]
    assert wallet.status_code == 200
    assert f"{SERVER_NPUB}@testserver" in wallet.text


def test_cors_headers(client):
    response = client.get("/health", headers={"Origin": "https://wallet.example"})

    assert response.headers["access-control-allow-origin"] == "*"


def test_shutdown_closes_connections(fake):
    with make_client(fake) as client:
        client.get(f"/.well-known/lnurlp/{SERVER_NPUB}")
        assert fake.is_ready

    assert not fake.is_ready
