"""HTTP chain client backed by a signing gateway and a Horizon-style feed.

Contract calls (HTLC lock/claim/refund, escrow lock/claim) are sent to a
signing gateway that holds the keys; escrow activity is read by paging the
transaction feed of the escrow account and decoding each transaction's
base64 signatures.
"""

import asyncio
import base64
import binascii
import logging
from typing import AsyncIterator, Optional

import httpx

from fusioncross.chains.base import ChainClient, EscrowReceipt
from fusioncross.errors import (
    AlreadyClaimed,
    ChainError,
    ChainTimeout,
    ChainUnavailable,
    Expired,
    InvalidPreimage,
    RateLimited,
    RefundNotAllowed,
    StateConflict,
)

logger = logging.getLogger(__name__)

# Gateway error codes mapped to engine errors
GATEWAY_ERRORS = {
    "already_claimed": AlreadyClaimed,
    "expired": Expired,
    "invalid_preimage": InvalidPreimage,
    "refund_not_allowed": RefundNotAllowed,
    "already_locked": StateConflict,
}


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def signer_headers(signer: Optional[str]) -> dict[str, str]:
    """Per-request header carrying the sending resolver's credential."""
    return {"X-Signer-Key": signer} if signer else {}


def raise_for_response(response: httpx.Response, operation: str, feed: bool = False) -> None:
    """Translate an HTTP error response into the engine's error taxonomy.

    Args:
        response: Gateway or feed response
        operation: Description for error messages
        feed: 404 from the feed means the account is not visible yet and is
            treated as transient

    Raises:
        RateLimited: HTTP 429
        ChainUnavailable: HTTP 5xx, or 404 on the feed
        SwapError: Gateway error code mapped through GATEWAY_ERRORS
        ChainError: Any other error status
    """
    status = response.status_code
    if status < 400:
        return
    if status == 429:
        raise RateLimited(f"{operation} rate limited", retry_after=_retry_after(response))
    if status >= 500 or (feed and status == 404):
        raise ChainUnavailable(f"{operation} failed with HTTP {status}")

    code, message = None, response.text
    try:
        body = response.json()
        code = body.get("code")
        message = body.get("error") or body.get("detail") or message
    except (ValueError, AttributeError):
        pass

    error_cls = GATEWAY_ERRORS.get(code, ChainError)
    raise error_cls(f"{operation}: {message}")


class GatewayChainClient(ChainClient):
    """Chain client talking to a signing gateway over HTTP."""

    def __init__(
        self,
        name: str,
        gateway_url: str,
        feed_url: str,
        api_key: str = "",
        timeout: float = 20.0,
        poll_interval: float = 5.0,
        page_size: int = 50,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            name: Chain name
            gateway_url: Base URL of the signing gateway
            feed_url: Base URL of the Horizon-style transaction feed
            api_key: Sent as X-API-Key to the gateway
            timeout: Per-request timeout in seconds
            poll_interval: Seconds between feed polls when no new records
            page_size: Records per feed page
            transport: Optional transport override (tests)
        """
        self._name = name
        self.gateway_url = gateway_url.rstrip("/")
        self.feed_url = feed_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.page_size = page_size
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def name(self) -> str:
        return self._name

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["X-API-Key"] = self.api_key
            self._client = httpx.AsyncClient(
                timeout=self.timeout, headers=headers, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        url: str,
        operation: str,
        feed: bool = False,
        **kwargs,
    ) -> dict:
        try:
            response = await self._get_client().request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ChainTimeout(f"{operation} timed out: {e}")
        except httpx.TransportError as e:
            raise ChainUnavailable(f"{operation} transport error: {e}")

        raise_for_response(response, operation, feed=feed)
        try:
            return response.json()
        except ValueError:
            raise ChainError(f"{operation}: invalid JSON from {self._name}")

    async def _gateway_tx(
        self, path: str, payload: dict, operation: str, signer: Optional[str] = None
    ) -> str:
        data = await self._request(
            "POST",
            f"{self.gateway_url}{path}",
            operation,
            json=payload,
            headers=signer_headers(signer),
        )
        tx_ref = data.get("tx_ref")
        if not tx_ref:
            raise ChainError(f"{operation}: gateway returned no tx_ref")
        return tx_ref

    # Lock chain role
    async def lock_funds(
        self,
        swap_id: str,
        recipient: str,
        hash_lock: str,
        timelock: int,
        amount: int,
        slots: Optional[int] = None,
    ) -> str:
        return await self._gateway_tx(
            "/htlc/lock",
            {
                "swap_id": swap_id,
                "recipient": recipient,
                "hash_lock": hash_lock,
                "timelock": timelock,
                "amount": str(amount),
                "slots": slots,
            },
            f"lock_funds({swap_id})",
        )

    async def claim_slot(
        self,
        swap_id: str,
        slot_index: int,
        preimage: bytes,
        sender: Optional[str] = None,
        signer: Optional[str] = None,
    ) -> str:
        return await self._gateway_tx(
            f"/htlc/{swap_id}/slots/{slot_index}/claim",
            {"preimage": preimage.hex(), "sender": sender},
            f"claim_slot({swap_id}, {slot_index})",
            signer=signer,
        )

    async def refund(self, swap_id: str) -> str:
        return await self._gateway_tx(f"/htlc/{swap_id}/refund", {}, f"refund({swap_id})")

    # Settlement chain role
    async def lock_escrow(
        self,
        recipient: str,
        hash_lock: str,
        timelock: int,
        amount: int,
        sender: Optional[str] = None,
        signer: Optional[str] = None,
    ) -> EscrowReceipt:
        data = await self._request(
            "POST",
            f"{self.gateway_url}/escrows",
            "lock_escrow",
            json={
                "recipient": recipient,
                "hash_lock": hash_lock,
                "timelock": timelock,
                "amount": str(amount),
                "sender": sender,
            },
            headers=signer_headers(signer),
        )
        try:
            return EscrowReceipt(ref=data["escrow_ref"], address=data["escrow_address"])
        except KeyError as e:
            raise ChainError(f"lock_escrow: gateway response missing {e}")

    async def claim_escrow(self, escrow_ref: str, preimage: bytes) -> str:
        return await self._gateway_tx(
            f"/escrows/{escrow_ref}/claim",
            {"preimage": preimage.hex()},
            f"claim_escrow({escrow_ref})",
        )

    async def fetch_activity(
        self, escrow_address: str, cursor: Optional[str] = None
    ) -> tuple[list[bytes], Optional[str]]:
        """Fetch one page of an escrow account's transactions.

        Returns:
            (signature payloads, cursor for the next page)
        """
        params = {"order": "asc", "limit": self.page_size}
        if cursor is not None:
            params["cursor"] = cursor
        data = await self._request(
            "GET",
            f"{self.feed_url}/accounts/{escrow_address}/transactions",
            f"feed({escrow_address})",
            feed=True,
            params=params,
        )

        payloads: list[bytes] = []
        records = data.get("_embedded", {}).get("records", [])
        for record in records:
            cursor = record.get("paging_token", cursor)
            for signature in record.get("signatures", []):
                try:
                    payloads.append(base64.b64decode(signature, validate=True))
                except (binascii.Error, ValueError):
                    logger.debug(f"Skipping undecodable signature on {escrow_address}")
        return payloads, cursor

    async def subscribe_activity(
        self, escrow_address: str, cursor: Optional[str] = None
    ) -> AsyncIterator[bytes]:
        while True:
            payloads, next_cursor = await self.fetch_activity(escrow_address, cursor)
            for payload in payloads:
                yield payload
            if next_cursor == cursor:
                await asyncio.sleep(self.poll_interval)
            cursor = next_cursor
