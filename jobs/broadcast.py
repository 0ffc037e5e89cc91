from __future__ import annotations

import asyncio
import math
import random
from pathlib import Path
from typing import Any, Callable

import yaml

from bottles.delivery import describe_error
from bottles.errors import DeliveryFailure


IDLE = "idle"
COUNTING_DOWN = "counting_down"
DISPATCHING = "dispatching"


def load_broadcast_targets(path: str) -> dict[str, list[str] | None]:
    """platform -> guild/channel ids. A missing platform (or null) means every visible guild; [] skips it."""
    p = Path(path)
    if not path or not p.exists():
        return {}
    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise RuntimeError("Broadcast targets file must contain a top-level mapping")
    targets: dict[str, list[str] | None] = {}
    for platform, value in raw.items():
        if value is None:
            targets[str(platform)] = None
        elif isinstance(value, list):
            targets[str(platform)] = [str(v).strip() for v in value if str(v).strip()]
        else:
            raise RuntimeError(f"Broadcast targets for {platform} must be a list")
    return targets


class CancellableTimer:
    def __init__(self) -> None:
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    async def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; False means the timer was cancelled."""
        if self.cancelled:
            return False
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=max(0.0, float(seconds)))
        except asyncio.TimeoutError:
            return True
        return False


class BroadcastScheduler:
    def __init__(
        self,
        *,
        transports: list[Any],
        service,
        min_interval: float,
        max_interval: float,
        targets: dict[str, list[str] | None],
        timer: CancellableTimer | None = None,
        status_sink: Callable[[int], Any] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        lo, hi = float(min_interval), float(max_interval)
        if lo < 0 or hi < lo:
            raise ValueError(f"Invalid broadcast interval [{min_interval}, {max_interval}]")
        self.transports = list(transports)
        self.service = service
        self.min_interval = lo
        self.max_interval = hi
        self.targets = dict(targets or {})
        self.timer = timer or CancellableTimer()
        self.status_sink = status_sink
        self.rng = rng or random.Random()
        self.state = IDLE
        self.seconds_remaining = 0

    def stop(self) -> None:
        self.timer.cancel()

    async def targets_for(self, transport) -> list[str]:
        configured = self.targets.get(transport.platform)
        if configured is None:
            return [str(g.id) async for g in transport.iter_guilds()]
        return list(configured)

    def _publish(self, remaining: int) -> None:
        self.seconds_remaining = remaining
        if self.status_sink is not None:
            self.status_sink(remaining)

    async def countdown(self, seconds: float) -> bool:
        remaining = float(seconds)
        while remaining > 0:
            self._publish(math.ceil(remaining))
            step = min(1.0, remaining)
            if not await self.timer.wait(step):
                return False
            remaining -= step
        self._publish(0)
        return not self.timer.cancelled

    async def dispatch_once(self) -> int:
        sent = 0
        for transport in self.transports:
            for target in await self.targets_for(transport):
                if self.timer.cancelled:
                    return sent
                try:
                    bottle = await self.service.broadcast_random(transport, target, sleep=self.timer.wait)
                except DeliveryFailure as e:
                    if self.timer.cancelled:
                        return sent
                    print(f"[Broadcast] {transport.platform}:{target} gave up: {e}")
                    continue
                if bottle is None:
                    print("[Broadcast] no bottles to send")
                    return sent
                sent += 1
        return sent

    async def run(self) -> None:
        print(f"[Broadcast] scheduler started interval=[{self.min_interval}, {self.max_interval}]s")
        while not self.timer.cancelled:
            try:
                self.state = COUNTING_DOWN
                if not await self.countdown(self.rng.uniform(self.min_interval, self.max_interval)):
                    break
                self.state = DISPATCHING
                sent = await self.dispatch_once()
                print(f"[Broadcast] dispatched {sent} bottles")
            except Exception as e:
                print(f"[Broadcast] loop error: {describe_error(e, False)}")
                if not await self.timer.wait(1):
                    break
            finally:
                self.state = IDLE
        print("[Broadcast] scheduler stopped")
