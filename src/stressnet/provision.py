"""Operator-side account setup and post-run checks.

These are the only places the chain's view of nonces and balances is read
into the store. Nothing here runs during a load run.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from stressnet.account_store import AccountStore
from stressnet.constants import AccountStatus, Layer, OutcomeKind
from stressnet.dispatch import Dispatcher
from stressnet.errors import AccountNotFound, StoreUnavailable, StressError
from stressnet.models import Account, Confirmation, TransactionIntent
from stressnet.signer import CredentialResolver

log = logging.getLogger("stressnet.provision")


class ChainReader(Protocol):
    async def get_balance(self, layer: Layer, address: str) -> int: ...
    async def get_chain_nonce(self, layer: Layer, address: str, block: str = "pending") -> int: ...
    async def wait_for_confirmation(self, layer: Layer, tx_hash: str, timeout: float) -> Confirmation: ...


@dataclass(frozen=True)
class Divergence:
    account_id: str
    layer: Layer
    store_nonce: int
    chain_nonce: int

    @property
    def delta(self) -> int:
        return self.store_nonce - self.chain_nonce

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "layer": self.layer.value,
            "store_nonce": self.store_nonce,
            "chain_nonce": self.chain_nonce,
            "delta": self.delta,
        }


async def register_accounts(
    store: AccountStore,
    rpc: ChainReader,
    resolver: CredentialResolver,
    refs: dict[str, str],
    layers: list[Layer],
) -> list[Account]:
    """Add ``{account_id: credential_ref}`` to the store, seeding nonces and balances from the chain.

    Accounts the store already knows are left untouched: their nonces are the
    store's, not the chain's.
    """
    registered = []
    for account_id, ref in refs.items():
        try:
            registered.append(await store.get(account_id))
            continue
        except AccountNotFound:
            pass
        address = resolver.address_of(ref)
        nonces, balances = {}, {}
        for layer in layers:
            nonces[layer] = await rpc.get_chain_nonce(layer, address)
            balances[layer] = await rpc.get_balance(layer, address)
        acct = Account(account_id, address, ref, nonces=nonces, balances=balances)
        await store.put(acct)
        log.info("Registered %s %s nonces=%s", account_id, address, {str(k): v for k, v in nonces.items()})
        registered.append(await store.get(account_id))
    return registered


async def fund_accounts(
    store: AccountStore,
    dispatcher: Dispatcher,
    rpc: ChainReader,
    root_id: str,
    layer: Layer,
    amount: int,
    *,
    account_ids: list[str] | None = None,
    timeout: float = 60.0,
) -> dict[str, OutcomeKind]:
    """Send ``amount`` wei from the root account to each pool account on ``layer``."""
    root = await store.get(root_id)
    targets = account_ids or [a.account_id for a in await store.list_accounts() if a.account_id != root_id]
    accounts = [await store.get(a) for a in targets]
    results: dict[str, OutcomeKind] = {}

    async def fund_one(acct: Account) -> None:
        account_id = acct.account_id
        intent = TransactionIntent(f"fund:{layer}:{account_id}", root_id, layer, acct.address, amount)
        try:
            submitted = await dispatcher.submit(intent)
        except StoreUnavailable:
            raise
        except StressError as e:
            log.error("Funding %s on %s failed: %s", account_id, layer, e)
            results[account_id] = OutcomeKind.REJECTED
            return
        conf = await rpc.wait_for_confirmation(layer, submitted.tx_hash, timeout)
        results[account_id] = conf.kind
        if conf.kind == OutcomeKind.CONFIRMED:
            fee = conf.receipt.fee if conf.receipt else 0
            await store.apply_balance_delta(root.account_id, layer, -(amount + fee))
            await store.apply_balance_delta(account_id, layer, amount)
            if acct.status == AccountStatus.FUNDING:
                await store.set_status(account_id, AccountStatus.ACTIVE)
        log.info("Funded %s on %s: %s", account_id, layer, conf.kind)

    async with asyncio.TaskGroup() as tg:
        for acct in accounts:
            tg.create_task(fund_one(acct))
    return results


async def reconcile(store: AccountStore, rpc: ChainReader, layers: list[Layer]) -> list[Divergence]:
    """Compare store nonces against the chain. Reports only; never corrects."""
    found = []
    for acct in await store.list_accounts():
        for layer in layers:
            chain_nonce = await rpc.get_chain_nonce(layer, acct.address)
            if chain_nonce != acct.nonce(layer):
                d = Divergence(acct.account_id, layer, acct.nonce(layer), chain_nonce)
                log.warning("Nonce divergence %s on %s: store=%s chain=%s",
                            d.account_id, layer, d.store_nonce, d.chain_nonce)
                found.append(d)
    if not found:
        log.info("Store and chain nonces agree")
    return found


async def sync_balances(store: AccountStore, rpc: ChainReader, layers: list[Layer]) -> dict[str, dict[str, int]]:
    """Overwrite cached balances with the chain's. Operator action, not for use mid-run."""
    synced: dict[str, dict[str, int]] = {}
    for acct in await store.list_accounts():
        synced[acct.account_id] = {}
        for layer in layers:
            bal = await rpc.get_balance(layer, acct.address)
            await store.set_balance(acct.account_id, layer, bal)
            synced[acct.account_id][layer.value] = bal
    return synced
