"""Moving value between layers.

Each operation walks initiated -> l1-confirmed -> l2-observed -> complete, or
ends in failed with the phase it had reached. "l1-confirmed" means the source
layer transaction is mined, whichever direction the operation goes. The store
is credited only once the operation is complete.
"""

import asyncio
import logging
import time
import uuid
from typing import Protocol

from stressnet.account_store import AccountStore
from stressnet.constants import (
    ARBSYS_ADDRESS,
    DEPOSIT_ETH_SELECTOR,
    TERMINAL_PHASES,
    WITHDRAW_ETH_SELECTOR,
    AccountStatus,
    BridgePhase,
    Layer,
    OutcomeKind,
)
from stressnet.dispatch import Dispatcher
from stressnet.errors import (
    DeadlineExceeded,
    InvalidIntent,
    InvalidTransition,
    StoreUnavailable,
    StressError,
    TransientNetworkError,
)
from stressnet.models import BridgeOperation, Confirmation, TransactionIntent

log = logging.getLogger("stressnet.bridge")

_ORDER = {
    BridgePhase.INITIATED: 0,
    BridgePhase.L1_CONFIRMED: 1,
    BridgePhase.L2_OBSERVED: 2,
    BridgePhase.COMPLETE: 3,
}


class BridgeRpc(Protocol):
    async def get_balance(self, layer: Layer, address: str) -> int: ...
    async def wait_for_confirmation(self, layer: Layer, tx_hash: str, timeout: float) -> Confirmation: ...


def other_layer(layer: Layer) -> Layer:
    return Layer.L2 if layer == Layer.L1 else Layer.L1


def withdraw_payload(destination: str) -> str:
    return WITHDRAW_ETH_SELECTOR + destination.lower().removeprefix("0x").rjust(64, "0")


class BridgeCoordinator:
    def __init__(
        self,
        store: AccountStore,
        dispatcher: Dispatcher,
        rpc: BridgeRpc,
        *,
        inbox_address: str | None = None,
        poll_interval: float = 2.0,
        timeout: float = 600.0,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.rpc = rpc
        self.inbox_address = inbox_address
        self.poll_interval = poll_interval
        self.timeout = timeout

    # ============================================================
    # Phase bookkeeping
    # ============================================================
    async def _advance(self, op: BridgeOperation, phase: BridgePhase) -> None:
        if op.phase in TERMINAL_PHASES:
            raise InvalidTransition(f"{op.op_id} is already {op.phase}")
        if phase != BridgePhase.FAILED and _ORDER[phase] <= _ORDER[op.phase]:
            raise InvalidTransition(f"{op.op_id}: {op.phase} -> {phase} would regress")
        log.info("bridge %s %s -> %s", op.op_id, op.phase, phase)
        op.phase = phase
        op.history.append((phase.value, time.time()))
        await self.store.save_bridge_operation(op)

    async def _fail(self, op: BridgeOperation, error: Exception | str) -> None:
        op.last_phase = op.phase
        op.error = str(error)
        log.warning("bridge %s failed in phase %s: %s", op.op_id, op.phase, op.error)
        await self._advance(op, BridgePhase.FAILED)
        await self.store.set_status(op.account_id, AccountStatus.SUSPENDED)

    def _remaining(self, op: BridgeOperation) -> float:
        return op.deadline - time.time()

    # ============================================================
    # Steps
    # ============================================================
    def _intent(self, op: BridgeOperation, address: str) -> TransactionIntent:
        intent_id = f"bridge:{op.op_id}"
        if op.source == Layer.L1:
            if not self.inbox_address:
                raise InvalidIntent("no inbox address configured for deposits")
            return TransactionIntent(intent_id, op.account_id, op.source, self.inbox_address, op.amount,
                                     payload=DEPOSIT_ETH_SELECTOR)
        return TransactionIntent(intent_id, op.account_id, op.source, ARBSYS_ADDRESS, op.amount,
                                 payload=withdraw_payload(address))

    async def _observe(self, op: BridgeOperation, address: str) -> None:
        polls = 0
        while True:
            polls += 1
            try:
                balance = await self.rpc.get_balance(op.destination, address)
            except (TransientNetworkError, DeadlineExceeded) as e:
                log.debug("bridge %s balance poll failed: %s", op.op_id, e)
            else:
                if balance - op.baseline >= op.amount:
                    log.debug("bridge %s credit observed after %d polls", op.op_id, polls)
                    return
            remaining = self._remaining(op)
            if remaining <= 0:
                raise DeadlineExceeded(f"credit of {op.amount} not observed on {op.destination} after {polls} polls")
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def _drive(self, op: BridgeOperation) -> BridgeOperation:
        try:
            account = await self.store.get(op.account_id)
            await self.store.set_status(op.account_id, AccountStatus.FUNDING)

            if op.baseline is None:
                op.baseline = await self.rpc.get_balance(op.destination, account.address)
                await self.store.save_bridge_operation(op)

            if op.tx_hash is None:
                submitted = await self.dispatcher.submit(self._intent(op, account.address))
                op.tx_hash, op.nonce = submitted.tx_hash, submitted.signed.nonce
                await self.store.save_bridge_operation(op)

            conf = await self.rpc.wait_for_confirmation(op.source, op.tx_hash, max(0.0, self._remaining(op)))
            if conf.kind == OutcomeKind.FAILED:
                op.source_reverted = True
                if conf.receipt is not None:
                    await self.store.apply_balance_delta(op.account_id, op.source, -conf.receipt.fee)
                raise StressError(f"source transaction {op.tx_hash} reverted")
            if conf.kind != OutcomeKind.CONFIRMED:
                raise DeadlineExceeded(f"source transaction {op.tx_hash} not confirmed before the deadline")
            if conf.receipt is not None:
                op.fee = conf.receipt.fee
            await self._advance(op, BridgePhase.L1_CONFIRMED)

            await self._observe(op, account.address)
            await self._advance(op, BridgePhase.L2_OBSERVED)

            await self.store.apply_balance_delta(op.account_id, op.destination, op.amount)
            await self.store.apply_balance_delta(op.account_id, op.source, -(op.amount + op.fee))
            await self._advance(op, BridgePhase.COMPLETE)
            await self.store.set_status(op.account_id, AccountStatus.ACTIVE)
        except StoreUnavailable:
            raise
        except StressError as e:
            if op.phase not in TERMINAL_PHASES:
                await self._fail(op, e)
        return op

    # ============================================================
    # Public API
    # ============================================================
    async def initiate(self, account_id: str, source: Layer, amount: int, *, timeout: float | None = None) -> BridgeOperation:
        """Create and persist a new operation without driving it."""
        if amount <= 0:
            raise InvalidIntent(f"bridge amount must be positive, got {amount}")
        op = BridgeOperation(
            op_id=uuid.uuid4().hex[:16],
            account_id=account_id,
            source=source,
            destination=other_layer(source),
            amount=amount,
            deadline=time.time() + (timeout or self.timeout),
        )
        op.history.append((op.phase.value, time.time()))
        await self.store.get(account_id)
        await self.store.save_bridge_operation(op)
        log.info("bridge %s: %s %s wei %s -> %s", op.op_id, account_id, amount, op.source, op.destination)
        return op

    async def drive(self, op: BridgeOperation) -> BridgeOperation:
        """Advance ``op`` until it is complete or failed."""
        if op.phase in TERMINAL_PHASES:
            raise InvalidTransition(f"{op.op_id} is already {op.phase}")
        return await self._drive(op)

    async def bridge(self, account_id: str, source: Layer, amount: int, *, timeout: float | None = None) -> BridgeOperation:
        """Bridge ``amount`` wei of ``account_id``'s funds from ``source`` to the other layer."""
        return await self._drive(await self.initiate(account_id, source, amount, timeout=timeout))

    async def bridge_many(
        self,
        requests: list[tuple[str, Layer, int]],
        *,
        timeout: float | None = None,
    ) -> list[BridgeOperation]:
        for account_id, _, amount in requests:
            if amount <= 0:
                raise InvalidIntent(f"bridge amount must be positive, got {amount}")
            await self.store.get(account_id)
        async with asyncio.TaskGroup() as tg:
            tasks = [tg.create_task(self.bridge(a, src, amt, timeout=timeout)) for a, src, amt in requests]
        return [t.result() for t in tasks]

    async def redrive(self, op_id: str, *, timeout: float | None = None) -> BridgeOperation:
        """Retry a failed operation as a new one.

        The source transaction is reused unless it reverted, in which case a
        fresh one is sent.
        """
        return await self._drive(await self.prepare_redrive(op_id, timeout=timeout))

    async def prepare_redrive(self, op_id: str, *, timeout: float | None = None) -> BridgeOperation:
        old = await self.store.get_bridge_operation(op_id)
        if old is None:
            raise KeyError(op_id)
        if old.phase != BridgePhase.FAILED:
            raise InvalidTransition(f"{op_id} is {old.phase}; only failed operations can be redriven")
        reuse = old.tx_hash is not None and not old.source_reverted
        op = BridgeOperation(
            op_id=uuid.uuid4().hex[:16],
            account_id=old.account_id,
            source=old.source,
            destination=old.destination,
            amount=old.amount,
            deadline=time.time() + (timeout or self.timeout),
            tx_hash=old.tx_hash if reuse else None,
            nonce=old.nonce if reuse else None,
            baseline=old.baseline,
            redrive_of=old.op_id,
        )
        op.history.append((op.phase.value, time.time()))
        await self.store.save_bridge_operation(op)
        log.info("bridge %s redrives %s (tx=%s)", op.op_id, old.op_id, op.tx_hash)
        return op

    async def get_operation(self, op_id: str) -> BridgeOperation | None:
        return await self.store.get_bridge_operation(op_id)

    async def operations(self, phase: BridgePhase | None = None) -> list[BridgeOperation]:
        return await self.store.bridge_operations(phase)
