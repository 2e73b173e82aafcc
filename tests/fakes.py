"""A simulated two-layer chain implementing the RPC pool contract."""

import asyncio
from collections import defaultdict
from dataclasses import dataclass

from eth_account import Account as EthAccount
from eth_utils import keccak

from stressnet.account_store import InMemoryAccountStore
from stressnet.constants import ARBSYS_ADDRESS, GWEI, TRANSFER_GAS, Layer, OutcomeKind, ReceiptStatus
from stressnet.dispatch import Dispatcher
from stressnet.fees import FeeOracle
from stressnet.models import Account, Confirmation, Receipt, SignedTx
from stressnet.signer import CredentialResolver, LayerParams, Signer

CHAIN_IDS = {Layer.L1: 1337, Layer.L2: 412346}
INBOX = "0x" + "ab" * 20


@dataclass
class Submission:
    layer: Layer
    sender: str
    nonce: int
    tx_hash: str
    recipient: str
    value: int


class FakeChain:
    """Accepts everything instantly unless told otherwise.

    ``submit_hook(layer, signed)`` may raise to simulate a node refusing the
    transaction. ``reverted`` holds hashes that mine with status 0,
    ``never_confirm`` hashes that stay pending.
    """

    def __init__(self, *, confirm_delay: float = 0.0, submit_delay: float = 0.0) -> None:
        self.confirm_delay = confirm_delay
        self.submit_delay = submit_delay
        self.gas_price_wei = GWEI
        self.balances: dict[tuple[Layer, str], int] = defaultdict(int)
        self.submissions: list[Submission] = []
        self.txs: dict[str, SignedTx] = {}
        self.reverted: set[str] = set()
        self.never_confirm: set[str] = set()
        self.submit_hook = None
        # (layer, address) -> [polls left, amount]
        self.pending_credits: dict[tuple[Layer, str], list[int]] = {}
        self.credit_after_polls = 0
        self.balance_polls: dict[tuple[Layer, str], int] = defaultdict(int)
        self.in_submit: dict[str, int] = defaultdict(int)
        self.max_concurrent_submit_per_sender = 0
        self.settled: set[str] = set()
        self.closed = False

    # pool contract -------------------------------------------------------
    async def submit(self, layer: Layer, signed: SignedTx) -> str:
        key = signed.sender.lower()
        self.in_submit[key] += 1
        self.max_concurrent_submit_per_sender = max(self.max_concurrent_submit_per_sender, self.in_submit[key])
        try:
            if self.submit_delay:
                await asyncio.sleep(self.submit_delay)
            if self.submit_hook is not None:
                self.submit_hook(layer, signed)
            self.submissions.append(
                Submission(layer, key, signed.nonce, signed.tx_hash, signed.recipient.lower(), signed.value)
            )
            self.txs[signed.tx_hash] = signed
            return signed.tx_hash
        finally:
            self.in_submit[key] -= 1

    def _receipt(self, signed: SignedTx, success: bool) -> Receipt:
        return Receipt(signed.tx_hash, 1, success, TRANSFER_GAS, self.gas_price_wei)

    async def get_receipt(self, layer: Layer, tx_hash: str) -> tuple[ReceiptStatus, Receipt | None]:
        signed = self.txs.get(tx_hash)
        if signed is None:
            return ReceiptStatus.NOT_FOUND, None
        if tx_hash in self.never_confirm:
            return ReceiptStatus.PENDING, None
        return ReceiptStatus.MINED, self._receipt(signed, tx_hash not in self.reverted)

    async def wait_for_confirmation(self, layer: Layer, tx_hash: str, timeout: float) -> Confirmation:
        if tx_hash in self.never_confirm or tx_hash not in self.txs:
            await asyncio.sleep(timeout)
            return Confirmation(OutcomeKind.TIMED_OUT)
        if self.confirm_delay:
            await asyncio.sleep(min(self.confirm_delay, timeout))
        signed = self.txs[tx_hash]
        success = tx_hash not in self.reverted
        receipt = self._receipt(signed, success)
        self._settle(signed, receipt)
        return Confirmation(OutcomeKind.CONFIRMED if success else OutcomeKind.FAILED, receipt)

    def _settle(self, signed: SignedTx, receipt: Receipt) -> None:
        if signed.tx_hash in self.settled:
            return
        self.settled.add(signed.tx_hash)
        sender = (signed.layer, signed.sender.lower())
        self.balances[sender] -= receipt.fee
        if not receipt.success:
            return
        self.balances[sender] -= signed.value
        recipient = signed.recipient.lower()
        if recipient in (INBOX, ARBSYS_ADDRESS):
            dest = Layer.L2 if signed.layer == Layer.L1 else Layer.L1
            self.pending_credits[(dest, signed.sender.lower())] = [self.credit_after_polls, signed.value]
        else:
            self.balances[(signed.layer, recipient)] += signed.value

    async def get_balance(self, layer: Layer, address: str) -> int:
        key = (layer, address.lower())
        self.balance_polls[key] += 1
        pending = self.pending_credits.get(key)
        if pending is not None:
            if pending[0] <= 0:
                self.balances[key] += pending[1]
                del self.pending_credits[key]
            else:
                pending[0] -= 1
        return self.balances[key]

    async def get_chain_nonce(self, layer: Layer, address: str, block: str = "pending") -> int:
        sent = [s.nonce for s in self.submissions if s.layer == layer and s.sender == address.lower()]
        return max(sent) + 1 if sent else 0

    async def gas_price(self, layer: Layer) -> int:
        return self.gas_price_wei

    async def aclose(self) -> None:
        self.closed = True

    # helpers ---------------------------------------------------------------
    def nonces(self, layer: Layer, address: str) -> list[int]:
        return [s.nonce for s in self.submissions if s.layer == layer and s.sender == address.lower()]


def named_address(name: str) -> str:
    return EthAccount.from_key(keccak(text=name)).address


def make_dispatcher(chain: FakeChain, store=None) -> tuple[InMemoryAccountStore, CredentialResolver, Dispatcher]:
    store = store if store is not None else InMemoryAccountStore()
    resolver = CredentialResolver()
    signer = Signer(resolver, {layer: LayerParams(cid) for layer, cid in CHAIN_IDS.items()})
    fees = FeeOracle(chain, {})
    return store, resolver, Dispatcher(store, chain, signer, fees)


async def add_accounts(store, n: int, *, prefix: str = "acct", balance: int = 10**21, chain: FakeChain | None = None
                       ) -> list[Account]:
    accounts = []
    for i in range(n):
        name = f"{prefix}_{i}"
        acct = Account(name, named_address(name), f"name:{name}",
                       balances={layer: balance for layer in Layer})
        await store.put(acct)
        if chain is not None:
            for layer in Layer:
                chain.balances[(layer, acct.address.lower())] = balance
        accounts.append(acct)
    return accounts
