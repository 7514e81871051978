"""Unit tests for the ledger node clients."""

import json

import httpx
import pytest

from civic_ledger.ledger.client import (
    LedgerAuthError,
    LedgerClient,
    LedgerClientError,
    LedgerConnectionError,
    LedgerNodeClient,
    LedgerNotFoundError,
    LedgerRateLimitError,
    SimulatedLedgerClient,
    content_digest,
)

pytestmark = pytest.mark.unit


def make_client(handler, **kwargs):
    kwargs.setdefault("retry_backoff", 0.0)
    return LedgerNodeClient(
        "https://ledger.test/", transport=httpx.MockTransport(handler), **kwargs
    )


class TestContentDigest:
    def test_text_digest(self):
        # sha256("abc")
        assert content_digest("abc") == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

    def test_structured_digest_ignores_key_order(self):
        assert content_digest({"a": 1, "b": 2}) == content_digest({"b": 2, "a": 1})


class TestLedgerNodeClientSubmit:
    def test_submit_sends_digest_not_content(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"transactionHash": "0xabc", "status": "pending"})

        with make_client(handler, api_key="secret") as client:
            receipt = client.submit(
                "citizen_request", 7, "create", "Request #7", "Broken light", {"subject": "Light"}
            )

        assert receipt.transaction_hash == "0xabc"
        assert receipt.status == "pending"
        assert seen["path"] == "/transactions"
        assert seen["auth"] == "Bearer secret"
        body = seen["body"]
        assert body["entityType"] == "citizen_request"
        assert body["entityId"] == 7
        assert body["contentHash"] == content_digest("Broken light")
        assert "Broken light" not in json.dumps(body)

    def test_missing_hash_is_an_error(self):
        client = make_client(lambda request: httpx.Response(200, json={"status": "pending"}))
        with pytest.raises(LedgerClientError, match="transaction hash"):
            client.submit("agent", 1, "create", "t", "c")

    def test_no_auth_header_without_key(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"transactionHash": "0x1"})

        make_client(handler).submit("agent", 1, "create", "t", "c")
        assert seen["auth"] is None


class TestLedgerNodeClientErrors:
    @pytest.mark.parametrize("code", [401, 403])
    def test_auth_errors(self, code):
        client = make_client(lambda request: httpx.Response(code))
        with pytest.raises(LedgerAuthError) as exc_info:
            client.submit("agent", 1, "create", "t", "c")
        assert exc_info.value.status_code == code

    def test_not_found(self):
        client = make_client(lambda request: httpx.Response(404))
        with pytest.raises(LedgerNotFoundError):
            client.get_transaction("0xmissing")

    def test_rate_limit_not_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(429, headers={"Retry-After": "2"})

        client = make_client(handler, max_retries=3)
        with pytest.raises(LedgerRateLimitError) as exc_info:
            client.submit("agent", 1, "create", "t", "c")
        assert exc_info.value.retry_after == 2.0
        assert len(calls) == 1

    def test_server_error_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) < 3:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json={"transactionHash": "0xok"})

        receipt = make_client(handler, max_retries=3).submit("agent", 1, "create", "t", "c")
        assert receipt.transaction_hash == "0xok"
        assert len(calls) == 3

    def test_connection_error_after_retries(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = make_client(handler, max_retries=2)
        with pytest.raises(LedgerConnectionError):
            client.submit("agent", 1, "create", "t", "c")

    def test_malformed_json(self):
        client = make_client(lambda request: httpx.Response(200, text="not json"))
        with pytest.raises(LedgerClientError, match="Malformed"):
            client.health()


class TestLedgerNodeClientStatus:
    def test_get_transaction(self):
        def handler(request):
            assert request.url.path == "/transactions/0xabc"
            return httpx.Response(
                200,
                json={
                    "status": "confirmed",
                    "blockHeight": 15000123,
                    "confirmedAt": "2024-01-01T00:00:00+00:00",
                },
            )

        tx = make_client(handler).get_transaction("0xabc")
        assert tx.status == "confirmed"
        assert tx.block_height == 15000123
        assert tx.confirmed_at == "2024-01-01T00:00:00+00:00"


class TestSimulatedLedgerClient:
    def test_satisfies_protocol(self):
        assert isinstance(SimulatedLedgerClient(), LedgerClient)

    def test_submit_then_confirm(self):
        client = SimulatedLedgerClient()
        receipt = client.submit("citizen_request", 1, "create", "t", "c")
        assert receipt.transaction_hash.startswith("0x")
        assert len(receipt.transaction_hash) == 66
        tx = client.get_transaction(receipt.transaction_hash)
        assert tx.status == "confirmed"
        assert tx.block_height > 15_000_000
        # Confirmation is stable across reads
        assert client.get_transaction(receipt.transaction_hash).block_height == tx.block_height

    def test_pending_until_delay(self):
        client = SimulatedLedgerClient(confirm_after=3600)
        receipt = client.submit("citizen_request", 1, "create", "t", "c")
        assert client.get_transaction(receipt.transaction_hash).status == "pending"

    def test_mark_failed(self):
        client = SimulatedLedgerClient()
        receipt = client.submit("citizen_request", 1, "create", "t", "c")
        client.mark_failed(receipt.transaction_hash)
        assert client.get_transaction(receipt.transaction_hash).status == "failed"

    def test_unknown_transaction(self):
        with pytest.raises(LedgerNotFoundError):
            SimulatedLedgerClient().get_transaction("0xdead")

    def test_unavailable(self):
        client = SimulatedLedgerClient(available=False)
        with pytest.raises(LedgerConnectionError):
            client.submit("citizen_request", 1, "create", "t", "c")
        assert client.submissions == []
