"""Domain records passed between the store, signer, RPC pool and drivers."""

import time
from dataclasses import asdict, dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from stressnet.constants import WEI_PER_ETHER, AccountStatus, BridgePhase, Layer, OutcomeKind


def ether_to_wei(amount: str | int | Decimal) -> int:
    """Exact ether -> wei conversion; rejects fractions of a wei."""
    try:
        wei = Decimal(str(amount)) * WEI_PER_ETHER
    except InvalidOperation:
        raise ValueError(f"not a number: {amount!r}") from None
    if wei != wei.to_integral_value():
        raise ValueError(f"{amount} ether is not a whole number of wei")
    return int(wei)


@dataclass(slots=True)
class Account:
    account_id: str
    address: str
    credential_ref: str
    nonces: dict[Layer, int] = field(default_factory=lambda: {layer: 0 for layer in Layer})
    balances: dict[Layer, int] = field(default_factory=lambda: {layer: 0 for layer in Layer})
    status: AccountStatus = AccountStatus.ACTIVE

    def nonce(self, layer: Layer) -> int:
        return self.nonces.get(layer, 0)

    def balance(self, layer: Layer) -> int:
        return self.balances.get(layer, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "address": self.address,
            "status": self.status.value,
            "nonces": {str(k): v for k, v in self.nonces.items()},
            "balances": {str(k): str(v) for k, v in self.balances.items()},
        }


@dataclass(slots=True, frozen=True)
class TransactionIntent:
    intent_id: str
    account_id: str
    layer: Layer
    recipient: str
    value: int
    payload: str | None = None
    gas_limit: int | None = None


@dataclass(slots=True, frozen=True)
class FeeQuote:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int


@dataclass(slots=True, frozen=True)
class SignedTx:
    layer: Layer
    sender: str
    recipient: str
    nonce: int
    value: int
    gas_limit: int
    raw: str  # 0x-hex
    tx_hash: str


@dataclass(slots=True, frozen=True)
class SubmittedTx:
    intent: TransactionIntent
    signed: SignedTx
    tx_hash: str
    submitted_at: float


@dataclass(slots=True, frozen=True)
class Receipt:
    tx_hash: str
    block_number: int
    success: bool
    gas_used: int
    effective_gas_price: int

    @property
    def fee(self) -> int:
        return self.gas_used * self.effective_gas_price

    @classmethod
    def from_rpc(cls, result: dict) -> "Receipt":
        """Parse an ``eth_getTransactionReceipt`` result."""
        return cls(
            tx_hash=result["transactionHash"],
            block_number=int(result["blockNumber"], 16),
            success=int(result.get("status", "0x1"), 16) == 1,
            gas_used=int(result.get("gasUsed", "0x0"), 16),
            effective_gas_price=int(result.get("effectiveGasPrice", "0x0"), 16),
        )


@dataclass(slots=True, frozen=True)
class Confirmation:
    kind: OutcomeKind
    receipt: Receipt | None = None


@dataclass(slots=True, frozen=True)
class TransactionOutcome:
    intent_id: str
    account_id: str
    layer: Layer
    kind: OutcomeKind
    latency: float
    nonce: int | None = None
    tx_hash: str | None = None
    error: str | None = None
    recorded_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["layer"] = self.layer.value
        d["kind"] = self.kind.value
        return d


@dataclass(slots=True)
class BridgeOperation:
    op_id: str
    account_id: str
    source: Layer
    destination: Layer
    amount: int
    deadline: float  # wall clock, seconds since epoch
    phase: BridgePhase = BridgePhase.INITIATED
    last_phase: BridgePhase | None = None
    tx_hash: str | None = None
    nonce: int | None = None
    baseline: int | None = None
    fee: int = 0
    error: str | None = None
    redrive_of: str | None = None
    source_reverted: bool = False
    history: list[tuple[str, float]] = field(default_factory=list)

    @property
    def expired(self) -> bool:
        return time.time() >= self.deadline

    def to_dict(self) -> dict[str, Any]:
        return {
            "op_id": self.op_id,
            "account_id": self.account_id,
            "source": self.source.value,
            "destination": self.destination.value,
            "amount": str(self.amount),
            "deadline": self.deadline,
            "phase": self.phase.value,
            "last_phase": self.last_phase.value if self.last_phase else None,
            "tx_hash": self.tx_hash,
            "nonce": self.nonce,
            "baseline": str(self.baseline) if self.baseline is not None else None,
            "fee": str(self.fee),
            "error": self.error,
            "redrive_of": self.redrive_of,
            "source_reverted": self.source_reverted,
            "history": [list(h) for h in self.history],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "BridgeOperation":
        return cls(
            op_id=d["op_id"],
            account_id=d["account_id"],
            source=Layer(d["source"]),
            destination=Layer(d["destination"]),
            amount=int(d["amount"]),
            deadline=float(d["deadline"]),
            phase=BridgePhase(d["phase"]),
            last_phase=BridgePhase(d["last_phase"]) if d.get("last_phase") else None,
            tx_hash=d.get("tx_hash"),
            nonce=d.get("nonce"),
            baseline=int(d["baseline"]) if d.get("baseline") is not None else None,
            fee=int(d.get("fee") or 0),
            error=d.get("error"),
            redrive_of=d.get("redrive_of"),
            source_reverted=bool(d.get("source_reverted", False)),
            history=[(p, float(t)) for p, t in d.get("history", [])],
        )
