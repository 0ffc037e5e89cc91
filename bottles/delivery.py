from __future__ import annotations

import asyncio
import random
import traceback
from dataclasses import dataclass
from dataclasses import field
from typing import Any, Awaitable, Callable

from bottles.content import has_av
from bottles.errors import DeliveryFailure


PRIVATE_PREFIX = "private:"


@dataclass(frozen=True)
class RetryPolicy:
    max_retry: int = 5
    interval_ms: int = 500
    debug: bool = False

    @property
    def interval_seconds(self) -> float:
        return max(0, int(self.interval_ms)) / 1000.0


def describe_error(exc: BaseException, debug: bool) -> str:
    if debug:
        return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip()
    return f"{type(exc).__name__}: {exc}"


@dataclass(frozen=True)
class TargetStrategy:
    """One way of turning a delivery into an address. resolve() may return None to skip."""

    name: str
    resolve: Callable[[], Awaitable[str | None]]


@dataclass
class DeliveryReceipt:
    address: str
    strategy: str
    handles: list[Any] = field(default_factory=list)
    attempts: int = 1


class TargetChainExhausted(Exception):
    def __init__(self, errors: list[tuple[str, BaseException]]) -> None:
        self.errors = errors
        if errors:
            detail = "; ".join(f"{name}: {type(e).__name__}: {e}" for name, e in errors)
        else:
            detail = "no strategy produced an address"
        super().__init__(detail)


def split_envelopes(caption: str, body: str, tail: str = "") -> list[str]:
    """Audio/video bodies travel alone; everything else is one message."""
    if has_av(body):
        envelopes = [caption, body + tail] if caption else [body + tail]
        return [e for e in envelopes if e]
    return [caption + body + tail]


Resample = Callable[[], Awaitable[tuple[list[str], list[TargetStrategy], str]]]


class DeliveryEngine:
    def __init__(self, *, policy: RetryPolicy, sleep: Callable[[float], Awaitable[Any]] | None = None) -> None:
        self.policy = policy
        self._sleep = sleep or asyncio.sleep

    async def _send_all(self, transport, address: str, envelopes: list[str]) -> list[Any]:
        handles: list[Any] = []
        for envelope in envelopes:
            handles.append(await transport.send_message(address, envelope))
        return handles

    async def _try_chain(self, transport, envelopes: list[str], strategies: list[TargetStrategy]) -> DeliveryReceipt:
        errors: list[tuple[str, BaseException]] = []
        for strategy in strategies:
            try:
                address = await strategy.resolve()
                if not address:
                    continue
                handles = await self._send_all(transport, address, envelopes)
                return DeliveryReceipt(address=address, strategy=strategy.name, handles=handles)
            except Exception as e:
                errors.append((strategy.name, e))
        if len(errors) == 1:
            raise errors[0][1]
        raise TargetChainExhausted(errors)

    async def deliver(
        self,
        transport,
        envelopes: list[str],
        strategies: list[TargetStrategy],
        *,
        label: str,
        resample: Resample | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> DeliveryReceipt:
        """Walk the strategy chain, retrying the whole chain up to policy.max_retry times.

        ``resample`` replaces the envelopes, chain and label before each retry
        (used when any bottle will do). ``sleep`` returning False aborts.
        """
        wait = sleep or self._sleep
        max_retry = max(0, int(self.policy.max_retry))
        retry = 0
        while True:
            try:
                receipt = await self._try_chain(transport, envelopes, strategies)
                receipt.attempts = retry + 1
                return receipt
            except Exception as e:
                retry += 1
                if retry > max_retry:
                    print(
                        f"[Delivery] {label} failed (retried {max_retry}/{max_retry} times): "
                        f"{describe_error(e, self.policy.debug)}"
                    )
                    raise DeliveryFailure(label, max_retry, e) from e
                print(
                    f"[Delivery] {label} failed (retried {retry - 1}/{max_retry}, "
                    f"next attempt in {self.policy.interval_ms}ms"
                    f"{' with a fresh bottle' if resample else ''}): "
                    f"{describe_error(e, self.policy.debug)}"
                )
                if await wait(self.policy.interval_seconds) is False:
                    raise DeliveryFailure(label, retry - 1, e) from e
                if resample is not None:
                    envelopes, strategies, label = await resample()


# =========================
# STRATEGY CHAINS
# =========================
def reply_chain(address: str) -> list[TargetStrategy]:
    async def _direct() -> str | None:
        return address

    return [TargetStrategy("reply", _direct)]


def owner_notification_chain(transport, *, guild_id: str, channel_id: str) -> list[TargetStrategy]:
    """stored channel -> a channel of the stored guild -> friend lookup for direct-message owners."""
    guild_id = str(guild_id or "")
    channel_id = str(channel_id or "")

    async def _stored_channel() -> str | None:
        if not channel_id or channel_id.startswith(PRIVATE_PREFIX):
            return None
        return channel_id

    async def _guild_channel() -> str | None:
        first: str | None = None
        async for channel in transport.iter_channels(guild_id, text_only=True):
            cid = str(channel.id)
            if cid == channel_id:
                return cid
            if first is None:
                first = cid
        if first is None:
            raise LookupError(f"guild {guild_id} has no text channel")
        return first

    async def _friend() -> str | None:
        wanted = channel_id[len(PRIVATE_PREFIX):] if channel_id.startswith(PRIVATE_PREFIX) else channel_id
        async for friend in transport.iter_friends():
            if str(friend.id) == wanted:
                return f"{PRIVATE_PREFIX}{wanted}"
        raise LookupError(f"user {wanted} is not reachable by direct message")

    if guild_id:
        return [TargetStrategy("channel", _stored_channel), TargetStrategy("guild", _guild_channel)]
    if channel_id:
        return [TargetStrategy("friend", _friend)]
    return []


def broadcast_chain(transport, target: str) -> list[TargetStrategy]:
    """target as a channel -> a random text channel of the target guild."""
    target = str(target)

    async def _direct() -> str | None:
        return target

    async def _random_channel() -> str | None:
        channels = [str(ch.id) async for ch in transport.iter_channels(target, text_only=True)]
        if not channels:
            raise LookupError(f"guild {target} has no text channel")
        return random.choice(channels)

    return [TargetStrategy("target", _direct), TargetStrategy("guild-channel", _random_channel)]
