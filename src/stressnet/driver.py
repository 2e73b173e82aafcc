"""Sustained load against both layers.

One dispatch loop paced by a ``RateScheduler``; every intent then runs in its
own task bounded by a semaphore. When the loop ends (target met, cancelled or
aborted) in-flight work gets ``grace_period`` seconds before whatever is left
is cancelled and recorded as timed-out.
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

from pydantic import BaseModel, Field, NonNegativeFloat, NonNegativeInt, PositiveFloat, PositiveInt, model_validator

from stressnet.account_store import AccountStore
from stressnet.constants import AccountStatus, Layer, OutcomeKind, RejectReason
from stressnet.dispatch import Dispatcher
from stressnet.errors import (
    CredentialUnavailable,
    DeadlineExceeded,
    InvalidIntent,
    RejectedError,
    StoreUnavailable,
    StressError,
)
from stressnet.models import Confirmation, TransactionIntent, TransactionOutcome
from stressnet.scheduler import AccountSelector, RateScheduler
from stressnet.stats import StatsAggregator

log = logging.getLogger("stressnet.driver")


class ConfirmationSource(Protocol):
    async def wait_for_confirmation(self, layer: Layer, tx_hash: str, timeout: float) -> Confirmation: ...


class LoadConfig(BaseModel):
    rate: PositiveFloat
    duration: PositiveFloat | None = None
    volume: PositiveInt | None = None
    max_in_flight: PositiveInt = 100
    layers: list[Layer] = Field(default_factory=lambda: [Layer.L1, Layer.L2], min_length=1)
    account_ids: list[str] | None = None
    weights: dict[str, float] | None = None
    recipient: str | None = None
    value_wei: NonNegativeInt = 1
    payload: str | None = None
    confirmation_timeout: PositiveFloat = 30.0
    grace_period: NonNegativeFloat = 10.0
    failure_threshold: float = Field(0.5, gt=0, le=1)
    failure_window: PositiveInt = 50
    min_failure_samples: PositiveInt = 20
    persist_outcomes: bool = True

    @model_validator(mode="after")
    def _needs_a_target(self) -> "LoadConfig":
        if self.duration is None and self.volume is None:
            raise ValueError("set duration, volume or both")
        return self


@dataclass
class RunSummary:
    run_id: str
    target_rate: float
    achieved_rate: float
    dispatched: int
    elapsed: float
    stats: dict[str, Any]
    aborted: bool = False
    abort_reason: str | None = None
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _InFlight:
    intent: TransactionIntent
    started: float
    nonce: int | None = None
    tx_hash: str | None = None


@dataclass
class _RunState:
    config: LoadConfig
    run_id: str
    selector: AccountSelector
    addresses: dict[str, str]
    by_address: dict[str, str]
    window: deque = field(default_factory=deque)
    inflight: dict[str, _InFlight] = field(default_factory=dict)
    dispatching: bool = True


class LoadDriver:
    def __init__(self, store: AccountStore, dispatcher: Dispatcher, rpc: ConfirmationSource) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.rpc = rpc
        self.stats = StatsAggregator()
        self._stop = asyncio.Event()
        self._cancelled = False
        self._abort_reason: str | None = None
        self._run: _RunState | None = None

    @property
    def running(self) -> bool:
        return self._run is not None

    def cancel(self) -> None:
        """Stop dispatching now; in-flight work drains under the grace period."""
        if not self._stop.is_set():
            log.info("Load run cancelled")
        self._cancelled = True
        self._stop.set()

    def _abort(self, reason: str) -> None:
        if self._abort_reason is None:
            log.error("Aborting load run: %s", reason)
            self._abort_reason = reason
        self._stop.set()

    def snapshot(self) -> dict[str, Any]:
        snap = self.stats.snapshot()
        snap["running"] = self.running
        if self._run is not None:
            snap["run_id"] = self._run.run_id
            snap["in_flight"] = len(self._run.inflight)
        return snap

    # ============================================================
    # Outcomes
    # ============================================================
    async def _record(
        self,
        run: _RunState,
        rec: _InFlight,
        kind: OutcomeKind,
        error: Exception | str | None = None,
    ) -> None:
        intent = rec.intent
        outcome = TransactionOutcome(
            intent_id=intent.intent_id,
            account_id=intent.account_id,
            layer=intent.layer,
            kind=kind,
            latency=time.monotonic() - rec.started,
            nonce=rec.nonce,
            tx_hash=rec.tx_hash,
            error=str(error) if error is not None else None,
        )
        if isinstance(error, Exception):
            self.stats.record_error(outcome, error)
        else:
            self.stats.record(outcome, error if isinstance(error, str) else None)

        cfg = run.config
        # the failure window only guards dispatch; drain outcomes never abort
        if run.dispatching:
            self._check_failure_rate(run, kind != OutcomeKind.CONFIRMED)

        if cfg.persist_outcomes:
            try:
                await self.store.record_outcome(outcome)
            except StoreUnavailable as e:
                self._abort(f"store unavailable: {e}")

    def _check_failure_rate(self, run: _RunState, failed: bool) -> None:
        cfg = run.config
        run.window.append(failed)
        while len(run.window) > cfg.failure_window:
            run.window.popleft()
        if len(run.window) >= cfg.min_failure_samples:
            ratio = sum(run.window) / len(run.window)
            if ratio > cfg.failure_threshold:
                self._abort(f"failure rate {ratio:.0%} over the last {len(run.window)} outcomes "
                            f"exceeds {cfg.failure_threshold:.0%}")

    async def _settle_balances(self, run: _RunState, rec: _InFlight, conf: Confirmation) -> None:
        receipt = conf.receipt
        if receipt is None:
            return
        intent = rec.intent
        if conf.kind == OutcomeKind.CONFIRMED:
            await self.store.apply_balance_delta(intent.account_id, intent.layer, -(intent.value + receipt.fee))
            dest = run.by_address.get(intent.recipient.lower())
            if dest is not None and intent.value:
                await self.store.apply_balance_delta(dest, intent.layer, intent.value)
        elif receipt.fee:
            await self.store.apply_balance_delta(intent.account_id, intent.layer, -receipt.fee)
        self.dispatcher.fees.observe(intent.layer, receipt.gas_used)

    async def _suspend(self, run: _RunState, account_id: str) -> None:
        if run.selector.remove(account_id):
            await self.store.set_status(account_id, AccountStatus.SUSPENDED)
            log.warning("%s suspended: insufficient funds", account_id)

    # ============================================================
    # One intent
    # ============================================================
    async def _execute(self, run: _RunState, rec: _InFlight, slot: asyncio.Semaphore) -> None:
        intent = rec.intent
        try:
            try:
                submitted = await self.dispatcher.submit(intent)
            except StoreUnavailable:
                raise
            except (RejectedError, CredentialUnavailable, InvalidIntent) as e:
                rec.nonce = e.nonce
                await self._record(run, rec, OutcomeKind.REJECTED, e)
                if isinstance(e, RejectedError) and e.reason == RejectReason.INSUFFICIENT_FUNDS:
                    await self._suspend(run, intent.account_id)
                return
            except DeadlineExceeded as e:
                rec.nonce = e.nonce
                await self._record(run, rec, OutcomeKind.TIMED_OUT, e)
                return

            rec.nonce = submitted.signed.nonce
            rec.tx_hash = submitted.tx_hash
            conf = await self.rpc.wait_for_confirmation(intent.layer, submitted.tx_hash, run.config.confirmation_timeout)
            await self._settle_balances(run, rec, conf)
            await self._record(run, rec, conf.kind)
        except StoreUnavailable as e:
            self._abort(f"store unavailable: {e}")
        except StressError as e:
            log.error("%s failed: %s", intent.intent_id, e)
            await self._record(run, rec, OutcomeKind.FAILED, e)
        except Exception as e:
            log.exception("%s failed unexpectedly", intent.intent_id)
            await self._record(run, rec, OutcomeKind.FAILED, e)
        finally:
            run.inflight.pop(intent.intent_id, None)
            slot.release()

    # ============================================================
    # Dispatch loop
    # ============================================================
    async def _stopped_within(self, delay: float) -> bool:
        try:
            async with asyncio.timeout(delay):
                await self._stop.wait()
            return True
        except TimeoutError:
            return False

    async def _acquire_slot(self, slot: asyncio.Semaphore) -> bool:
        """Wait for a free in-flight slot unless the run stops first."""
        if not slot.locked():
            await slot.acquire()
            return True
        acquire = asyncio.ensure_future(slot.acquire())
        stopper = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({acquire, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
        if acquire.done() and not acquire.cancelled() and not self._stop.is_set():
            return True
        acquire.cancel()
        try:
            await acquire
        except asyncio.CancelledError:
            return False
        slot.release()
        return False

    async def _resolve_pool(self, cfg: LoadConfig) -> tuple[list[str], dict[str, str]]:
        accounts = await self.store.list_accounts()
        addresses = {a.account_id: a.address for a in accounts}
        active = [a.account_id for a in accounts if a.status == AccountStatus.ACTIVE]
        if cfg.account_ids is not None:
            unknown = [a for a in cfg.account_ids if a not in addresses]
            if unknown:
                log.warning("Ignoring unknown accounts: %s", ", ".join(unknown))
            active = [a for a in cfg.account_ids if a in active]
        return active, addresses

    def _recipient(self, run: _RunState, account_id: str) -> str:
        if run.config.recipient:
            return run.config.recipient
        nxt = run.selector.recipient_for(account_id)
        return run.addresses[nxt or account_id]

    async def run(self, cfg: LoadConfig) -> RunSummary:
        if self._run is not None:
            raise RuntimeError("a load run is already in progress")
        self._stop = asyncio.Event()
        self._cancelled = False
        self._abort_reason = None
        self.stats = StatsAggregator()

        run_id = uuid.uuid4().hex[:12]
        pool, addresses = await self._resolve_pool(cfg)
        run = _RunState(
            config=cfg,
            run_id=run_id,
            selector=AccountSelector(pool, cfg.layers, cfg.weights),
            addresses=addresses,
            by_address={addr.lower(): acct for acct, addr in addresses.items()},
        )
        log.info("Load run %s: %s tx/s, duration=%s volume=%s, %d accounts on %s",
                 run_id, cfg.rate, cfg.duration, cfg.volume, len(pool), "/".join(cfg.layers))

        scheduler = RateScheduler(cfg.rate)
        slot = asyncio.Semaphore(cfg.max_in_flight)
        tasks: set[asyncio.Task] = set()
        started = time.monotonic()
        ends_at = started + cfg.duration if cfg.duration is not None else None
        dispatched = 0
        self._run = run
        try:
            if not pool:
                self._abort("no active accounts in the pool")
            while not self._stop.is_set():
                if cfg.volume is not None and dispatched >= cfg.volume:
                    break
                delay = scheduler.reserve()
                if ends_at is not None and time.monotonic() + delay >= ends_at:
                    break
                if delay > 0 and await self._stopped_within(delay):
                    break
                if not await self._acquire_slot(slot):
                    break
                if ends_at is not None and time.monotonic() >= ends_at:
                    slot.release()
                    break
                pick = run.selector.next()
                if pick is None:
                    slot.release()
                    self._abort("every account in the pool is suspended")
                    break
                account_id, layer = pick
                dispatched += 1
                intent = TransactionIntent(
                    intent_id=f"{run_id}:{dispatched}",
                    account_id=account_id,
                    layer=layer,
                    recipient=self._recipient(run, account_id),
                    value=cfg.value_wei,
                    payload=cfg.payload,
                )
                rec = _InFlight(intent, time.monotonic())
                run.inflight[intent.intent_id] = rec
                task = asyncio.create_task(self._execute(run, rec, slot), name=intent.intent_id)
                tasks.add(task)
                task.add_done_callback(tasks.discard)

            dispatch_elapsed = time.monotonic() - started
            run.dispatching = False
            await self._drain(run, tasks)
        except BaseException:
            for t in tasks:
                t.cancel()
            raise
        finally:
            self._run = None

        elapsed = time.monotonic() - started
        summary = RunSummary(
            run_id=run_id,
            target_rate=cfg.rate,
            achieved_rate=round(dispatched / dispatch_elapsed, 3) if dispatch_elapsed > 0 else 0.0,
            dispatched=dispatched,
            elapsed=round(elapsed, 3),
            stats=self.stats.snapshot(),
            aborted=self._abort_reason is not None,
            abort_reason=self._abort_reason,
            cancelled=self._cancelled,
        )
        log.info("Load run %s finished: %d dispatched, %s", run_id, dispatched, summary.stats["by_kind"])
        return summary

    async def _drain(self, run: _RunState, tasks: set[asyncio.Task]) -> None:
        pending = set(tasks)
        if not pending:
            return
        log.info("Draining %d in-flight transactions (grace %.1fs)", len(pending), run.config.grace_period)
        _, still_pending = await asyncio.wait(pending, timeout=run.config.grace_period)
        if not still_pending:
            return
        stranded = list(run.inflight.values())
        for t in still_pending:
            t.cancel()
        await asyncio.gather(*still_pending, return_exceptions=True)
        log.warning("%d transactions still pending after the grace period", len(stranded))
        for rec in stranded:
            await self._record(run, rec, OutcomeKind.TIMED_OUT, "grace period elapsed")
