"""Reserve, sign and submit, in that order, under one lock per (account, layer).

Holding the lock across the submit call means nonce N+1 is never handed to
the endpoint before the call carrying nonce N has returned.
"""

import asyncio
import logging
import time
from typing import Protocol

from stressnet.account_store import AccountStore
from stressnet.constants import NONCE_CONSUMED, Layer, RejectReason
from stressnet.errors import CredentialUnavailable, InvalidIntent, RejectedError, RetryExhausted, StressError
from stressnet.fees import FeeOracle
from stressnet.models import SignedTx, SubmittedTx, TransactionIntent
from stressnet.signer import Signer

log = logging.getLogger("stressnet.dispatch")


class Submitter(Protocol):
    async def submit(self, layer: Layer, signed: SignedTx) -> str: ...


class Dispatcher:
    def __init__(self, store: AccountStore, rpc: Submitter, signer: Signer, fees: FeeOracle) -> None:
        self.store = store
        self.rpc = rpc
        self.signer = signer
        self.fees = fees
        self._locks: dict[tuple[str, Layer], asyncio.Lock] = {}

    def lock_for(self, account_id: str, layer: Layer) -> asyncio.Lock:
        key = (account_id, layer)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _release(self, intent: TransactionIntent, nonce: int, why: str) -> None:
        released = await self.store.rollback_nonce(intent.account_id, intent.layer, nonce)
        if released:
            log.debug("%s released nonce %s on %s (%s)", intent.account_id, nonce, intent.layer, why)

    async def submit(self, intent: TransactionIntent) -> SubmittedTx:
        """Submit one intent. Errors carry the reserved nonce in ``.nonce`` when there was one."""
        async with self.lock_for(intent.account_id, intent.layer):
            account = await self.store.get(intent.account_id)
            fees = await self.fees.quote(intent.layer)
            nonce = await self.store.reserve_nonce(intent.account_id, intent.layer)

            try:
                signed = self.signer.sign(account, intent, nonce, fees)
            except (CredentialUnavailable, InvalidIntent) as e:
                await self._release(intent, nonce, "signing failed")
                e.nonce = nonce
                raise

            try:
                tx_hash = await self.rpc.submit(intent.layer, signed)
            except RejectedError as e:
                e.nonce = nonce
                if e.reason in (RejectReason.FEE_TOO_LOW, RejectReason.REPLACEMENT_UNDERPRICED):
                    self.fees.invalidate(intent.layer)
                if e.reason == RejectReason.NONCE_TOO_LOW:
                    log.warning(
                        "Store/chain nonce divergence: %s on %s reserved %s but the node reports nonce too low",
                        intent.account_id, intent.layer, nonce,
                    )
                elif e.reason not in NONCE_CONSUMED:
                    await self._release(intent, nonce, e.reason)
                raise
            except RetryExhausted as e:
                e.nonce = nonce
                if not e.maybe_sent:
                    await self._release(intent, nonce, "never reached the node")
                else:
                    log.warning("%s nonce %s on %s may have been sent; keeping it", intent.account_id, nonce, intent.layer)
                raise
            except StressError as e:
                e.nonce = nonce
                raise

            log.debug("%s %s nonce=%s tx=%s", intent.layer, intent.account_id, nonce, tx_hash)
            return SubmittedTx(intent=intent, signed=signed, tx_hash=tx_hash, submitted_at=time.monotonic())
