import unittest

from bottles.delivery import DeliveryEngine
from bottles.delivery import RetryPolicy
from bottles.delivery import TargetChainExhausted
from bottles.delivery import TargetStrategy
from bottles.delivery import broadcast_chain
from bottles.delivery import owner_notification_chain
from bottles.delivery import reply_chain
from bottles.delivery import split_envelopes
from bottles.errors import DeliveryFailure


class _FakeChannel:
    def __init__(self, channel_id):
        self.id = channel_id


class _FakeUser:
    def __init__(self, user_id):
        self.id = user_id


class _FakeTransport:
    platform = "fake"

    def __init__(self, *, failing=(), fail_times=0, channels=None, friends=()):
        self.failing = set(failing)
        self.fail_times = fail_times
        self.channels = channels or {}
        self.friends = [_FakeUser(f) for f in friends]
        self.sent: list[tuple[str, str]] = []
        self.attempts = 0

    async def send_message(self, address, text):
        self.attempts += 1
        if address in self.failing or self.attempts <= self.fail_times:
            raise RuntimeError(f"cannot send to {address}")
        self.sent.append((address, text))
        return f"msg-{len(self.sent)}"

    async def iter_guilds(self):
        for gid in self.channels:
            yield _FakeChannel(gid)

    async def iter_channels(self, guild_id, *, text_only=True):
        for cid in self.channels.get(guild_id, []):
            yield _FakeChannel(cid)

    async def iter_friends(self):
        for friend in self.friends:
            yield friend


class _RecordingSleep:
    def __init__(self, result=True):
        self.result = result
        self.calls: list[float] = []

    async def __call__(self, seconds):
        self.calls.append(seconds)
        return self.result


def _engine(max_retry=3, sleep=None):
    return DeliveryEngine(policy=RetryPolicy(max_retry=max_retry, interval_ms=250), sleep=sleep or _RecordingSleep())


class DeliveryEngineTests(unittest.IsolatedAsyncioTestCase):
    async def test_first_attempt_success(self):
        transport = _FakeTransport()
        receipt = await _engine().deliver(transport, ["a", "b"], reply_chain("c1"), label="x")
        self.assertEqual(transport.sent, [("c1", "a"), ("c1", "b")])
        self.assertEqual(receipt.handles, ["msg-1", "msg-2"])
        self.assertEqual(receipt.attempts, 1)
        self.assertEqual(receipt.strategy, "reply")

    async def test_retries_with_interval_then_succeeds(self):
        sleep = _RecordingSleep()
        transport = _FakeTransport(fail_times=2)
        receipt = await _engine(sleep=sleep).deliver(transport, ["a"], reply_chain("c1"), label="x")
        self.assertEqual(receipt.attempts, 3)
        self.assertEqual(sleep.calls, [0.25, 0.25])

    async def test_exhaustion_raises_delivery_failure(self):
        sleep = _RecordingSleep()
        transport = _FakeTransport(failing={"c1"})
        with self.assertRaises(DeliveryFailure) as caught:
            await _engine(max_retry=2, sleep=sleep).deliver(transport, ["a"], reply_chain("c1"), label="bottle 1")
        self.assertEqual(caught.exception.attempts, 2)
        self.assertEqual(transport.attempts, 3)
        self.assertEqual(len(sleep.calls), 2)
        self.assertIn("bottle 1", str(caught.exception))

    async def test_zero_retry_means_single_attempt(self):
        transport = _FakeTransport(failing={"c1"})
        with self.assertRaises(DeliveryFailure):
            await _engine(max_retry=0).deliver(transport, ["a"], reply_chain("c1"), label="x")
        self.assertEqual(transport.attempts, 1)

    async def test_falls_through_strategy_chain(self):
        transport = _FakeTransport(failing={"bad"})

        async def _bad():
            return "bad"

        async def _skip():
            return None

        async def _good():
            return "good"

        chain = [TargetStrategy("bad", _bad), TargetStrategy("skip", _skip), TargetStrategy("good", _good)]
        receipt = await _engine().deliver(transport, ["a"], chain, label="x")
        self.assertEqual(receipt.address, "good")
        self.assertEqual(receipt.strategy, "good")
        self.assertEqual(receipt.attempts, 1)

    async def test_chain_exhaustion_carries_every_error(self):
        transport = _FakeTransport(failing={"a", "b"})

        async def _a():
            return "a"

        async def _b():
            return "b"

        with self.assertRaises(DeliveryFailure) as caught:
            await _engine(max_retry=0).deliver(
                transport, ["x"], [TargetStrategy("a", _a), TargetStrategy("b", _b)], label="x"
            )
        cause = caught.exception.cause
        self.assertIsInstance(cause, TargetChainExhausted)
        self.assertEqual([name for name, _ in cause.errors], ["a", "b"])

    async def test_resample_replaces_payload_before_retry(self):
        transport = _FakeTransport(failing={"c1"})
        resampled = []

        async def _resample():
            resampled.append(True)
            return (["fresh"], reply_chain("c2"), "bottle 2")

        receipt = await _engine().deliver(transport, ["stale"], reply_chain("c1"), label="bottle 1", resample=_resample)
        self.assertEqual(transport.sent, [("c2", "fresh")])
        self.assertEqual(len(resampled), 1)
        self.assertEqual(receipt.attempts, 2)

    async def test_sleep_returning_false_aborts(self):
        transport = _FakeTransport(failing={"c1"})
        with self.assertRaises(DeliveryFailure):
            await _engine(max_retry=5).deliver(
                transport, ["a"], reply_chain("c1"), label="x", sleep=_RecordingSleep(result=False)
            )
        self.assertEqual(transport.attempts, 1)


class StrategyChainTests(unittest.IsolatedAsyncioTestCase):
    async def test_owner_chain_prefers_stored_channel(self):
        transport = _FakeTransport(channels={"g1": ["c9", "c1"]})
        chain = owner_notification_chain(transport, guild_id="g1", channel_id="c1")
        receipt = await _engine().deliver(transport, ["n"], chain, label="x")
        self.assertEqual(receipt.address, "c1")
        self.assertEqual(receipt.strategy, "channel")

    async def test_owner_chain_falls_back_to_guild_channel(self):
        transport = _FakeTransport(failing={"gone"}, channels={"g1": ["c9", "c8"]})
        chain = owner_notification_chain(transport, guild_id="g1", channel_id="gone")
        receipt = await _engine(max_retry=0).deliver(transport, ["n"], chain, label="x")
        self.assertEqual(receipt.address, "c9")
        self.assertEqual(receipt.strategy, "guild")

    async def test_owner_chain_uses_friend_lookup_for_private_origin(self):
        transport = _FakeTransport(friends=["42"])
        chain = owner_notification_chain(transport, guild_id="", channel_id="private:42")
        self.assertEqual([s.name for s in chain], ["friend"])
        receipt = await _engine().deliver(transport, ["n"], chain, label="x")
        self.assertEqual(receipt.address, "private:42")

    async def test_owner_chain_unknown_friend_fails(self):
        transport = _FakeTransport(friends=["7"])
        chain = owner_notification_chain(transport, guild_id="", channel_id="private:42")
        with self.assertRaises(DeliveryFailure) as caught:
            await _engine(max_retry=0).deliver(transport, ["n"], chain, label="x")
        self.assertIsInstance(caught.exception.cause, LookupError)

    def test_owner_chain_empty_without_location(self):
        self.assertEqual(owner_notification_chain(_FakeTransport(), guild_id="", channel_id=""), [])

    async def test_broadcast_chain_falls_back_to_random_channel(self):
        transport = _FakeTransport(failing={"g1"}, channels={"g1": ["c5"]})
        receipt = await _engine(max_retry=0).deliver(transport, ["b"], broadcast_chain(transport, "g1"), label="x")
        self.assertEqual(receipt.address, "c5")


class SplitEnvelopeTests(unittest.TestCase):
    def test_av_body_travels_alone(self):
        body = '<audio src="https://x/a.mp3"/>'
        self.assertEqual(split_envelopes("cap", body, "tail"), ["cap", body + "tail"])

    def test_other_bodies_stay_together(self):
        self.assertEqual(split_envelopes("cap ", "body", " tail"), ["cap body tail"])


if __name__ == "__main__":
    unittest.main()
