"""Fee caps for submitted transactions.

L1 quotes follow ``eth_gasPrice``. L2 quotes are additionally floored by a local
copy of the rollup's backlog-driven base fee so that caps rise with our own
load before the sequencer starts rejecting underpriced transactions.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Protocol

from stressnet.constants import GWEI, Layer
from stressnet.models import FeeQuote

log = logging.getLogger("stressnet.fees")

ONE_IN_BIPS = 10_000


def natural_to_bips(n: int) -> int:
    return n * ONE_IN_BIPS


def mul_by_bips(value: int, bips: int) -> int:
    return value * bips // ONE_IN_BIPS


def approx_exp_bips(value: int, accuracy: int = 4) -> int:
    """e**(value/10000) in basis points, truncated Taylor series in Horner form."""
    negative = value < 0
    x = -value if negative else value
    res = ONE_IN_BIPS + x // accuracy
    for i in range(accuracy - 1, 0, -1):
        res = ONE_IN_BIPS + mul_by_bips(res, x) // i
    if negative:
        return ONE_IN_BIPS * ONE_IN_BIPS // res
    return res


@dataclass
class L2PricingModel:
    """Gas backlog drained at ``speed_limit`` gas/s; base fee grows exponentially past the tolerance."""

    speed_limit_per_second: int = 7_000_000
    min_base_fee_wei: int = GWEI // 10
    pricing_inertia: int = 102
    backlog_tolerance: int = 10
    backlog: int = 0
    base_fee_wei: int = GWEI // 10
    last_update: float | None = None

    def grow_backlog(self, gas: int) -> None:
        self.backlog += max(0, gas)

    def drain(self, gas: int) -> None:
        self.backlog = max(0, self.backlog - gas)

    def update(self, time_passed: float) -> int:
        """Advance the model by ``time_passed`` seconds and return the new base fee."""
        speed = self.speed_limit_per_second
        self.drain(int(time_passed * speed))
        base_fee = self.min_base_fee_wei
        if self.backlog > self.backlog_tolerance * speed:
            excess = self.backlog - self.backlog_tolerance * speed
            exponent = natural_to_bips(excess) // (self.pricing_inertia * speed)
            base_fee = mul_by_bips(self.min_base_fee_wei, approx_exp_bips(exponent))
        self.base_fee_wei = base_fee
        return base_fee

    def current_base_fee(self, now: float | None = None) -> int:
        now = time.monotonic() if now is None else now
        passed = 0.0 if self.last_update is None else max(0.0, now - self.last_update)
        self.last_update = now
        return self.update(passed)


@dataclass(frozen=True)
class FeeParams:
    multiplier: float = 2.0
    priority_fee_wei: int = GWEI
    refresh: float = 5.0


class GasPriceSource(Protocol):
    async def gas_price(self, layer: Layer) -> int: ...


class FeeOracle:
    def __init__(
        self,
        rpc: GasPriceSource,
        params: dict[Layer, FeeParams],
        l2_model: L2PricingModel | None = None,
    ) -> None:
        self.rpc = rpc
        self.params = params
        self.l2_model = l2_model
        self._cache: dict[Layer, tuple[float, int]] = {}
        self._locks: dict[Layer, asyncio.Lock] = {}

    async def _gas_price(self, layer: Layer) -> int:
        p = self.params.get(layer, FeeParams())
        cached = self._cache.get(layer)
        if cached and time.monotonic() < cached[0]:
            return cached[1]
        lock = self._locks.setdefault(layer, asyncio.Lock())
        async with lock:
            cached = self._cache.get(layer)
            if cached and time.monotonic() < cached[0]:
                return cached[1]
            price = await self.rpc.gas_price(layer)
            self._cache[layer] = (time.monotonic() + p.refresh, price)
            log.debug("%s gas price refreshed: %s wei", layer, price)
            return price

    async def quote(self, layer: Layer) -> FeeQuote:
        p = self.params.get(layer, FeeParams())
        base = await self._gas_price(layer)
        if layer == Layer.L2 and self.l2_model is not None:
            base = max(base, self.l2_model.current_base_fee())
        max_fee = max(int(base * p.multiplier), p.priority_fee_wei)
        return FeeQuote(max_fee_per_gas=max_fee, max_priority_fee_per_gas=p.priority_fee_wei)

    def observe(self, layer: Layer, gas_used: int) -> None:
        """Feed gas used by a confirmed transaction into the L2 model."""
        if layer == Layer.L2 and self.l2_model is not None:
            self.l2_model.grow_backlog(gas_used)

    def invalidate(self, layer: Layer | None = None) -> None:
        if layer is None:
            self._cache.clear()
        else:
            self._cache.pop(layer, None)
