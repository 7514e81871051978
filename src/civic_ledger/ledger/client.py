"""Ledger node client with an HTTP implementation and a simulated one.

The client submits content digests to the external tamper-evident ledger
and reads back transaction status. It keeps no state beyond the reused HTTP
connection pool and does not deduplicate; callers decide what to submit.
"""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

import httpx

from ..errors import LedgerSubmissionFailure
from ..service.retry import calculate_backoff

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class LedgerClientError(LedgerSubmissionFailure):
    """Base exception for ledger client errors."""


class LedgerConnectionError(LedgerClientError):
    """Connection to the ledger node failed."""


class LedgerAuthError(LedgerClientError):
    """Authentication failed."""


class LedgerNotFoundError(LedgerClientError):
    """Transaction not found."""


class LedgerRateLimitError(LedgerClientError):
    """Rate limit exceeded."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, 429)
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class SubmitReceipt:
    """Answer of the node to a submission."""

    transaction_hash: str
    status: str = "pending"
    block_height: int | None = None
    timestamp: int = 0


@dataclass(slots=True)
class TransactionStatus:
    """Current state of a transaction on the node."""

    transaction_hash: str
    status: str
    block_height: int | None = None
    confirmed_at: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


def content_digest(content: Any) -> str:
    """SHA-256 hex digest of text or of a JSON-serializable value."""
    if not isinstance(content, str):
        content = json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@runtime_checkable
class LedgerClient(Protocol):
    """Interface of a ledger node client."""

    def submit(
        self,
        entity_type: str,
        entity_id: int,
        action: str,
        title: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> SubmitReceipt: ...

    def get_transaction(self, transaction_hash: str) -> TransactionStatus: ...


def _build_payload(
    entity_type: str,
    entity_id: int,
    action: str,
    title: str,
    content: str,
    metadata: dict[str, Any] | None,
) -> dict[str, Any]:
    return {
        "entityType": entity_type,
        "entityId": entity_id,
        "action": action,
        "title": title,
        "contentHash": content_digest(content),
        "metadata": metadata or {},
        "timestamp": int(time.time()),
    }


# ---------------------------------------------------------------------------
# HTTP Client
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class LedgerClientConfig:
    """Configuration for LedgerNodeClient."""

    base_url: str
    api_key: str | None = None
    timeout: float = 10.0
    max_retries: int = 3
    retry_backoff: float = 0.5
    connection_pool_size: int = 10


class LedgerNodeClient:
    """HTTP client for the ledger node.

    Example:
        >>> with LedgerNodeClient("https://ledger.example", api_key="...") as client:
        ...     receipt = client.submit("citizen_request", 7, "create", "title", "body")
        ...     print(receipt.transaction_hash)
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
        transport: httpx.BaseTransport | None = None,
    ):
        self._config = LedgerClientConfig(
            base_url=base_url.rstrip("/"),
            api_key=api_key,
            timeout=timeout,
            max_retries=max(1, max_retries),
            retry_backoff=retry_backoff,
        )
        self._transport = transport
        self._client: httpx.Client | None = None
        self._client_lock = threading.Lock()

    def __enter__(self) -> LedgerNodeClient:
        self._ensure_client()
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _ensure_client(self) -> httpx.Client:
        with self._client_lock:
            if self._client is None or self._client.is_closed:
                self._client = httpx.Client(
                    base_url=self._config.base_url,
                    timeout=self._config.timeout,
                    transport=self._transport,
                    limits=httpx.Limits(
                        max_connections=self._config.connection_pool_size,
                        max_keepalive_connections=5,
                    ),
                )
            return self._client

    def close(self) -> None:
        """Close the client connection."""
        with self._client_lock:
            if self._client and not self._client.is_closed:
                self._client.close()
            self._client = None

    def _build_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        return headers

    def _send_once(
        self, client: httpx.Client, method: str, path: str, body: dict[str, Any] | None
    ) -> dict[str, Any]:
        try:
            response = client.request(method, path, json=body, headers=self._build_headers())
        except httpx.TimeoutException as e:
            raise LedgerConnectionError(f"{method} {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise LedgerConnectionError(f"{method} {path} could not reach node: {e}") from e

        code = response.status_code
        if code in (401, 403):
            raise LedgerAuthError("Ledger node rejected credentials", code)
        if code == 404:
            raise LedgerNotFoundError(f"Not found: {path}", code)
        if code == 429:
            wait = response.headers.get("Retry-After")
            raise LedgerRateLimitError(
                "Ledger node rate limit exceeded",
                retry_after=float(wait) if wait else None,
            )
        if code >= 400:
            raise LedgerClientError(f"{method} {path} answered {code}: {response.text}", code)

        try:
            return response.json()
        except ValueError as e:
            raise LedgerClientError(f"Malformed response from ledger node: {e}") from e

    @staticmethod
    def _retryable(error: LedgerClientError) -> bool:
        if isinstance(error, LedgerConnectionError):
            return True
        return error.status_code is not None and error.status_code >= 500

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one call, retrying connection failures and 5xx answers."""
        client = self._ensure_client()
        attempts = self._config.max_retries

        for attempt in range(attempts):
            try:
                return self._send_once(client, method, path, json)
            except LedgerClientError as e:
                if not self._retryable(e) or attempt == attempts - 1:
                    raise
                delay = calculate_backoff(attempt, base_delay=self._config.retry_backoff, jitter=False)
                logger.debug(f"{method} {path} failed ({e}), attempt {attempt + 2}/{attempts} in {delay}s")
                time.sleep(delay)

        raise LedgerConnectionError(f"{method} {path} was never attempted")

    def submit(
        self,
        entity_type: str,
        entity_id: int,
        action: str,
        title: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> SubmitReceipt:
        """Submit a content digest to the ledger.

        Only the SHA-256 digest of ``content`` leaves the process.

        Returns:
            SubmitReceipt with the pending transaction hash
        """
        payload = _build_payload(entity_type, entity_id, action, title, content, metadata)
        data = self._request("POST", "/transactions", json=payload)

        transaction_hash = data.get("transactionHash")
        if not transaction_hash:
            raise LedgerClientError("Ledger node answered without a transaction hash")

        logger.info(f"Submitted {entity_type}#{entity_id} {action} to ledger: {transaction_hash}")
        return SubmitReceipt(
            transaction_hash=transaction_hash,
            status=data.get("status", "pending"),
            block_height=data.get("blockHeight"),
            timestamp=data.get("timestamp", payload["timestamp"]),
        )

    def get_transaction(self, transaction_hash: str) -> TransactionStatus:
        """Get the current status of a transaction."""
        data = self._request("GET", f"/transactions/{transaction_hash}")
        return TransactionStatus(
            transaction_hash=transaction_hash,
            status=data.get("status", "pending"),
            block_height=data.get("blockHeight"),
            confirmed_at=data.get("confirmedAt"),
            details=data,
        )

    def health(self) -> dict[str, Any]:
        """Get ledger node health status."""
        return self._request("GET", "/health")


# ---------------------------------------------------------------------------
# Simulated Client
# ---------------------------------------------------------------------------


class SimulatedLedgerClient:
    """In-process stand-in for the ledger node.

    Used when no node is configured, and in tests. Transactions start
    pending and confirm once ``confirm_after`` seconds have passed.
    Setting ``available = False`` makes every call fail with
    LedgerConnectionError.
    """

    def __init__(self, confirm_after: float = 0.0, available: bool = True):
        self.confirm_after = confirm_after
        self.available = available
        self.submissions: list[dict[str, Any]] = []
        self._transactions: dict[str, dict[str, Any]] = {}
        self._failed: set[str] = set()
        self._lock = threading.Lock()
        self._next_block = 15_000_000

    def _check_available(self) -> None:
        if not self.available:
            raise LedgerConnectionError("Simulated ledger node unavailable")

    def submit(
        self,
        entity_type: str,
        entity_id: int,
        action: str,
        title: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> SubmitReceipt:
        self._check_available()
        payload = _build_payload(entity_type, entity_id, action, title, content, metadata)
        transaction_hash = "0x" + secrets.token_hex(32)

        with self._lock:
            self.submissions.append(payload)
            self._transactions[transaction_hash] = {
                "payload": payload,
                "submitted_at": time.time(),
            }

        logger.debug(f"Simulated ledger transaction {transaction_hash} for {entity_type}#{entity_id}")
        return SubmitReceipt(transaction_hash=transaction_hash, timestamp=payload["timestamp"])

    def mark_failed(self, transaction_hash: str) -> None:
        """Make a transaction report ``failed`` on its next status read."""
        with self._lock:
            self._failed.add(transaction_hash)

    def get_transaction(self, transaction_hash: str) -> TransactionStatus:
        self._check_available()
        with self._lock:
            tx = self._transactions.get(transaction_hash)
            if tx is None:
                raise LedgerNotFoundError(f"Unknown transaction {transaction_hash}", 404)

            if transaction_hash in self._failed:
                return TransactionStatus(transaction_hash=transaction_hash, status="failed")

            if time.time() - tx["submitted_at"] < self.confirm_after:
                return TransactionStatus(transaction_hash=transaction_hash, status="pending")

            if "block_height" not in tx:
                self._next_block += 1
                tx["block_height"] = self._next_block
                tx["confirmed_at"] = datetime.now(timezone.utc).isoformat()

        return TransactionStatus(
            transaction_hash=transaction_hash,
            status="confirmed",
            block_height=tx["block_height"],
            confirmed_at=tx["confirmed_at"],
        )


__all__ = [
    "LedgerAuthError",
    "LedgerClient",
    "LedgerClientConfig",
    "LedgerClientError",
    "LedgerConnectionError",
    "LedgerNodeClient",
    "LedgerNotFoundError",
    "LedgerRateLimitError",
    "SimulatedLedgerClient",
    "SubmitReceipt",
    "TransactionStatus",
    "content_digest",
]
