"""JSON-RPC access to the L1 and L2 endpoints.

Every call goes through ``call_with_retry``: transient failures back off and
retry, rejections surface immediately. Errors are classified here so callers
only ever see the stressnet error taxonomy.
"""

import asyncio
import itertools
import logging
import time
from typing import Any

import httpx

from stressnet.constants import CONFIRM_POLL_INTERVAL, RPC_TIMEOUT, Layer, OutcomeKind, ReceiptStatus, RejectReason
from stressnet.errors import DeadlineExceeded, RejectedError, TransientNetworkError
from stressnet.models import Confirmation, Receipt, SignedTx
from stressnet.retry import BackoffPolicy, call_with_retry

log = logging.getLogger("stressnet.rpc")

# JSON-RPC "limit exceeded" (EIP-1474)
LIMIT_EXCEEDED = -32005

# Matched in order against the lower-cased JSON-RPC error message.
_REJECT_PATTERNS: list[tuple[tuple[str, ...], RejectReason]] = [
    (("nonce too low", "nonce has already been used"), RejectReason.NONCE_TOO_LOW),
    (("insufficient funds",), RejectReason.INSUFFICIENT_FUNDS),
    (("invalid sender", "invalid signature", "invalid transaction v, r, s"), RejectReason.INVALID_SIGNATURE),
    (("replacement transaction underpriced",), RejectReason.REPLACEMENT_UNDERPRICED),
    (("less than block base fee", "fee cap less than", "underpriced", "max fee per gas less than"),
     RejectReason.FEE_TOO_LOW),
    (("intrinsic gas too low",), RejectReason.INTRINSIC_GAS),
    (("exceeds block gas limit", "gas limit reached"), RejectReason.GAS_LIMIT),
]
_TRANSIENT_MESSAGES = ("rate limit", "too many requests", "request timed out", "header not found")
_ALREADY_KNOWN = ("already known", "known transaction", "already imported")


def classify_rpc_error(error: dict) -> Exception:
    """Map a JSON-RPC ``error`` object onto the error taxonomy."""
    code = error.get("code")
    message = str(error.get("message", ""))
    lowered = message.lower()
    if code == LIMIT_EXCEEDED or any(m in lowered for m in _TRANSIENT_MESSAGES):
        return TransientNetworkError(f"rpc error {code}: {message}", maybe_sent=True)
    for needles, reason in _REJECT_PATTERNS:
        if any(n in lowered for n in needles):
            return RejectedError(reason, message, code=code)
    return RejectedError(RejectReason.OTHER, message, code=code)


def _is_already_known(error: dict) -> bool:
    return any(m in str(error.get("message", "")).lower() for m in _ALREADY_KNOWN)


class RpcClient:
    """JSON-RPC client for one layer's endpoint."""

    def __init__(
        self,
        layer: Layer,
        url: str,
        *,
        policy: BackoffPolicy | None = None,
        timeout: float = RPC_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.layer = layer
        self.url = url
        self.policy = policy or BackoffPolicy()
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._ids = itertools.count(1)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _post(self, method: str, params: list) -> dict:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await self._http.post(self.url, json=payload)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise TransientNetworkError(f"{self.layer} {method}: {e.__class__.__name__}: {e}", maybe_sent=False) from e
        except httpx.TransportError as e:
            # Read/write timeouts, resets, protocol errors: the request may have landed.
            raise TransientNetworkError(f"{self.layer} {method}: {e.__class__.__name__}: {e}") from e

        if resp.status_code == 429:
            raise TransientNetworkError(f"{self.layer} {method}: HTTP 429", maybe_sent=False)
        if resp.status_code >= 500:
            raise TransientNetworkError(f"{self.layer} {method}: HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise RejectedError(RejectReason.HTTP, f"{self.layer} {method}: HTTP {resp.status_code}",
                                code=resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise TransientNetworkError(f"{self.layer} {method}: malformed response body") from e

    async def _call_once(self, method: str, params: list) -> Any:
        body = await self._post(method, params)
        if "error" in body:
            raise classify_rpc_error(body["error"])
        return body.get("result")

    async def call(self, method: str, params: list | None = None) -> Any:
        params = params or []
        return await call_with_retry(
            lambda: self._call_once(method, params), self.policy, label=f"{self.layer}:{method}"
        )

    async def send_raw_transaction(self, signed: SignedTx) -> str:
        async def attempt() -> str:
            body = await self._post("eth_sendRawTransaction", [signed.raw])
            if "error" in body:
                if _is_already_known(body["error"]):
                    # An earlier attempt reached the node.
                    log.debug("%s: %s already known, treating as accepted", self.layer, signed.tx_hash)
                    return signed.tx_hash
                raise classify_rpc_error(body["error"])
            return body["result"]

        return await call_with_retry(attempt, self.policy, label=f"{self.layer}:eth_sendRawTransaction")


class RpcClientPool:
    """One ``RpcClient`` per layer; safe for concurrent use by many submitters."""

    def __init__(self, clients: dict[Layer, RpcClient], *, poll_interval: float = CONFIRM_POLL_INTERVAL) -> None:
        self.clients = clients
        self.poll_interval = poll_interval

    @classmethod
    def from_urls(
        cls,
        urls: dict[Layer, str],
        *,
        policy: BackoffPolicy | None = None,
        timeout: float = RPC_TIMEOUT,
        poll_interval: float = CONFIRM_POLL_INTERVAL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "RpcClientPool":
        clients = {
            layer: RpcClient(layer, url, policy=policy, timeout=timeout, transport=transport)
            for layer, url in urls.items()
        }
        return cls(clients, poll_interval=poll_interval)

    def client(self, layer: Layer) -> RpcClient:
        try:
            return self.clients[layer]
        except KeyError:
            raise ValueError(f"No RPC endpoint configured for {layer}") from None

    async def aclose(self) -> None:
        for c in self.clients.values():
            await c.aclose()

    async def submit(self, layer: Layer, signed: SignedTx) -> str:
        return await self.client(layer).send_raw_transaction(signed)

    async def get_receipt(self, layer: Layer, tx_hash: str) -> tuple[ReceiptStatus, Receipt | None]:
        c = self.client(layer)
        result = await c.call("eth_getTransactionReceipt", [tx_hash])
        if result:
            return ReceiptStatus.MINED, Receipt.from_rpc(result)
        tx = await c.call("eth_getTransactionByHash", [tx_hash])
        return (ReceiptStatus.PENDING if tx else ReceiptStatus.NOT_FOUND), None

    async def get_balance(self, layer: Layer, address: str) -> int:
        return int(await self.client(layer).call("eth_getBalance", [address, "latest"]), 16)

    async def get_chain_nonce(self, layer: Layer, address: str, block: str = "pending") -> int:
        """Chain's view of the next nonce. Reconciliation only, never authoritative during a run."""
        return int(await self.client(layer).call("eth_getTransactionCount", [address, block]), 16)

    async def chain_id(self, layer: Layer) -> int:
        return int(await self.client(layer).call("eth_chainId"), 16)

    async def gas_price(self, layer: Layer) -> int:
        return int(await self.client(layer).call("eth_gasPrice"), 16)

    async def block_number(self, layer: Layer) -> int:
        return int(await self.client(layer).call("eth_blockNumber"), 16)

    async def wait_for_confirmation(self, layer: Layer, tx_hash: str, timeout: float) -> Confirmation:
        """Poll for a receipt until mined or ``timeout`` seconds pass.

        Returns CONFIRMED, FAILED (reverted) or TIMED_OUT; never blocks past the deadline.
        """
        started = time.monotonic()
        try:
            async with asyncio.timeout(timeout):
                while True:
                    try:
                        status, receipt = await self.get_receipt(layer, tx_hash)
                    except (TransientNetworkError, DeadlineExceeded) as e:
                        log.debug("%s receipt poll for %s failed, still waiting: %s", layer, tx_hash, e)
                        status, receipt = ReceiptStatus.PENDING, None
                    if status == ReceiptStatus.MINED and receipt is not None:
                        kind = OutcomeKind.CONFIRMED if receipt.success else OutcomeKind.FAILED
                        return Confirmation(kind, receipt)
                    await asyncio.sleep(self.poll_interval)
        except TimeoutError:
            log.warning("%s confirmation timeout tx=%s after %.1fs", layer, tx_hash, time.monotonic() - started)
            return Confirmation(OutcomeKind.TIMED_OUT)
