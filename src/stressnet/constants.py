from typing import Final
from enum import StrEnum


class Layer(StrEnum):
    L1 = "l1"
    L2 = "l2"


class AccountStatus(StrEnum):
    ACTIVE    = "active"
    FUNDING   = "funding"
    SUSPENDED = "suspended"


class OutcomeKind(StrEnum):
    CONFIRMED = "confirmed"
    FAILED    = "failed"
    TIMED_OUT = "timed-out"
    REJECTED  = "rejected"


class ReceiptStatus(StrEnum):
    MINED     = "mined"
    PENDING   = "pending"
    NOT_FOUND = "not-found"


class RejectReason(StrEnum):
    NONCE_TOO_LOW           = "nonce-too-low"
    INSUFFICIENT_FUNDS      = "insufficient-funds"
    INVALID_SIGNATURE       = "invalid-signature"
    REPLACEMENT_UNDERPRICED = "replacement-underpriced"
    FEE_TOO_LOW             = "fee-too-low"
    INTRINSIC_GAS           = "intrinsic-gas"
    GAS_LIMIT               = "gas-limit"
    HTTP                    = "http"
    OTHER                   = "other"


class BridgePhase(StrEnum):
    INITIATED    = "initiated"
    L1_CONFIRMED = "l1-confirmed"
    L2_OBSERVED  = "l2-observed"
    COMPLETE     = "complete"
    FAILED       = "failed"


TERMINAL_PHASES: Final = {BridgePhase.COMPLETE, BridgePhase.FAILED}

# Rejections where the node holds (or already mined) a tx with this nonce.
NONCE_CONSUMED: Final = {RejectReason.NONCE_TOO_LOW, RejectReason.REPLACEMENT_UNDERPRICED}

WEI_PER_ETHER: Final = 10**18
GWEI: Final = 10**9

TRANSFER_GAS: Final = 21_000

# depositEth() on the rollup inbox, withdrawEth(address) on ArbSys.
DEPOSIT_ETH_SELECTOR: Final = "0x439370b1"
WITHDRAW_ETH_SELECTOR: Final = "0x25e16063"
ARBSYS_ADDRESS: Final = "0x0000000000000000000000000000000000000064"

RPC_TIMEOUT = 10.0
CONFIRM_POLL_INTERVAL = 0.5
LATENCY_WINDOW = 5000

__all__ = [
    "ARBSYS_ADDRESS",
    "CONFIRM_POLL_INTERVAL",
    "DEPOSIT_ETH_SELECTOR",
    "GWEI",
    "LATENCY_WINDOW",
    "NONCE_CONSUMED",
    "RPC_TIMEOUT",
    "TERMINAL_PHASES",
    "TRANSFER_GAS",
    "WEI_PER_ETHER",
    "WITHDRAW_ETH_SELECTOR",

    ######
    "AccountStatus",
    "BridgePhase",
    "Layer",
    "OutcomeKind",
    "ReceiptStatus",
    "RejectReason",
]
