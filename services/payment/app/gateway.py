"""
Payment Service: simulated gateway

Stands in for a real card processor. The interface is the same whatever
the outcome: an artificial processing delay, then a uniform draw in
[0, 100) compared against the configured success rate.
"""

import asyncio
import random
from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class GatewayDecision:
    approved: bool
    draw: float
    threshold: float


class PaymentSimulator:
    def __init__(
        self,
        success_rate: float = 95.0,
        delay_min: float = 0.5,
        delay_max: float = 1.0,
        rng: random.Random | None = None,
    ) -> None:
        self.success_rate = min(max(success_rate, 0.0), 100.0)
        self.delay_min = max(delay_min, 0.0)
        self.delay_max = max(delay_max, self.delay_min)
        self._rng = rng or random.Random()

    async def authorize(self, amount: Decimal) -> GatewayDecision:
        if self.delay_max > 0:
            await asyncio.sleep(self._rng.uniform(self.delay_min, self.delay_max))
        draw = self._rng.random() * 100
        return GatewayDecision(
            approved=draw < self.success_rate,
            draw=draw,
            threshold=self.success_rate,
        )
