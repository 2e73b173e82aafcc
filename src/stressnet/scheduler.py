import asyncio
import logging
import random
import time

from stressnet.constants import Layer

log = logging.getLogger("stressnet.scheduler")


class RateScheduler:
    """Leaky bucket emitting one tick every ``1/rate`` seconds.

    Ticks that arrive late are not made up with a burst: the clock restarts
    from the late tick, so a stalled dispatcher lowers the achieved rate rather
    than overshooting the target afterwards.
    """

    def __init__(self, rate: float, *, clock=time.monotonic) -> None:
        if rate <= 0:
            raise ValueError(f"rate must be positive, got {rate}")
        self.rate = rate
        self.interval = 1.0 / rate
        self._clock = clock
        self._next: float | None = None
        self.ticks = 0

    def reserve(self) -> float:
        """Claim the next slot; returns how long to wait before using it."""
        now = self._clock()
        slot = now if self._next is None else max(self._next, now)
        self._next = slot + self.interval
        self.ticks += 1
        return slot - now

    async def tick(self) -> None:
        delay = self.reserve()
        if delay > 0:
            await asyncio.sleep(delay)


class AccountSelector:
    """Round-robin (or weighted random) choice over (account, layer) pairs."""

    def __init__(
        self,
        account_ids: list[str],
        layers: list[Layer],
        weights: dict[str, float] | None = None,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self.layers = list(layers)
        self.weights = weights or None
        self._rng = rng or random.Random()
        self._accounts = list(account_ids)
        self._i = 0
        self._rebuild()

    def _rebuild(self) -> None:
        self._pairs = [(a, layer) for a in self._accounts for layer in self.layers]

    def __len__(self) -> int:
        return len(self._accounts)

    @property
    def accounts(self) -> list[str]:
        return list(self._accounts)

    def next(self) -> tuple[str, Layer] | None:
        if not self._pairs:
            return None
        if self.weights:
            w = [self.weights.get(a, 0.0) for a, _ in self._pairs]
            if sum(w) > 0:
                return self._rng.choices(self._pairs, weights=w, k=1)[0]
        pair = self._pairs[self._i % len(self._pairs)]
        self._i += 1
        return pair

    def remove(self, account_id: str) -> bool:
        if account_id not in self._accounts:
            return False
        self._accounts.remove(account_id)
        self._rebuild()
        log.info("%s removed from the selection pool (%d left)", account_id, len(self._accounts))
        return True

    def recipient_for(self, account_id: str) -> str | None:
        """Next pool member after ``account_id``, wrapping around."""
        if len(self._accounts) < 2 or account_id not in self._accounts:
            return None
        i = self._accounts.index(account_id)
        return self._accounts[(i + 1) % len(self._accounts)]
