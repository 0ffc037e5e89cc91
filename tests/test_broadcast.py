import asyncio
import tempfile
import unittest
from pathlib import Path

import yaml

from bottles.errors import DeliveryFailure
from jobs.broadcast import IDLE
from jobs.broadcast import BroadcastScheduler
from jobs.broadcast import CancellableTimer
from jobs.broadcast import load_broadcast_targets


class _FakeGuild:
    def __init__(self, guild_id):
        self.id = guild_id


class _FakeTransport:
    def __init__(self, platform, guilds=()):
        self.platform = platform
        self.guilds = list(guilds)

    async def iter_guilds(self):
        for gid in self.guilds:
            yield _FakeGuild(gid)


class _FakeService:
    def __init__(self, *, fail_targets=(), empty=False):
        self.fail_targets = set(fail_targets)
        self.empty = empty
        self.calls: list[tuple[str, str]] = []

    async def broadcast_random(self, transport, target, *, sleep=None):
        self.calls.append((transport.platform, target))
        if self.empty:
            return None
        if target in self.fail_targets:
            raise DeliveryFailure(f"broadcast to {target}", 0, RuntimeError("missing access"))
        return object()


class BroadcastTargetsTests(unittest.TestCase):
    def test_missing_file_means_everything(self):
        self.assertEqual(load_broadcast_targets("/nonexistent/targets.yml"), {})

    def test_null_and_lists(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "targets.yml"
            path.write_text(yaml.safe_dump({"discord": None, "other": [123, " 456 "], "quiet": []}), encoding="utf-8")
            targets = load_broadcast_targets(str(path))
        self.assertEqual(targets, {"discord": None, "other": ["123", "456"], "quiet": []})

    def test_non_mapping_rejected(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "targets.yml"
            path.write_text("- 1\n- 2\n", encoding="utf-8")
            with self.assertRaises(RuntimeError):
                load_broadcast_targets(str(path))


class CancellableTimerTests(unittest.IsolatedAsyncioTestCase):
    async def test_wait_elapses(self):
        timer = CancellableTimer()
        self.assertTrue(await timer.wait(0))

    async def test_cancel_wakes_waiter(self):
        timer = CancellableTimer()
        waiter = asyncio.create_task(timer.wait(30))
        await asyncio.sleep(0)
        timer.cancel()
        self.assertFalse(await asyncio.wait_for(waiter, timeout=1))
        self.assertFalse(await timer.wait(0))


class BroadcastSchedulerTests(unittest.IsolatedAsyncioTestCase):
    async def test_targets_omitted_means_every_guild(self):
        transport = _FakeTransport("discord", guilds=["g1", "g2"])
        service = _FakeService()
        scheduler = BroadcastScheduler(
            transports=[transport], service=service, min_interval=0, max_interval=0, targets={}
        )
        self.assertEqual(await scheduler.dispatch_once(), 2)
        self.assertEqual(service.calls, [("discord", "g1"), ("discord", "g2")])

    async def test_empty_list_skips_platform(self):
        transport = _FakeTransport("discord", guilds=["g1"])
        service = _FakeService()
        scheduler = BroadcastScheduler(
            transports=[transport], service=service, min_interval=0, max_interval=0, targets={"discord": []}
        )
        self.assertEqual(await scheduler.dispatch_once(), 0)
        self.assertEqual(service.calls, [])

    async def test_failed_target_does_not_stop_others(self):
        transport = _FakeTransport("discord")
        service = _FakeService(fail_targets={"c1"})
        scheduler = BroadcastScheduler(
            transports=[transport], service=service, min_interval=0, max_interval=0, targets={"discord": ["c1", "c2"]}
        )
        self.assertEqual(await scheduler.dispatch_once(), 1)
        self.assertEqual(len(service.calls), 2)

    async def test_no_bottles_stops_dispatch(self):
        transport = _FakeTransport("discord")
        service = _FakeService(empty=True)
        scheduler = BroadcastScheduler(
            transports=[transport], service=service, min_interval=0, max_interval=0, targets={"discord": ["c1", "c2"]}
        )
        self.assertEqual(await scheduler.dispatch_once(), 0)
        self.assertEqual(len(service.calls), 1)

    async def test_countdown_publishes_remaining_seconds(self):
        published: list[int] = []

        class _InstantTimer(CancellableTimer):
            async def wait(self, seconds):
                return not self.cancelled

        scheduler = BroadcastScheduler(
            transports=[],
            service=_FakeService(),
            min_interval=0,
            max_interval=0,
            targets={},
            timer=_InstantTimer(),
            status_sink=published.append,
        )
        self.assertTrue(await scheduler.countdown(2.5))
        self.assertEqual(published, [3, 2, 1, 0])

    async def test_stop_during_countdown_ends_run(self):
        service = _FakeService()
        scheduler = BroadcastScheduler(
            transports=[_FakeTransport("discord", guilds=["g1"])],
            service=service,
            min_interval=60,
            max_interval=60,
            targets={},
        )
        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        self.assertGreater(scheduler.seconds_remaining, 0)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=2)
        self.assertEqual(service.calls, [])
        self.assertEqual(scheduler.state, IDLE)

    def test_invalid_interval_rejected(self):
        with self.assertRaises(ValueError):
            BroadcastScheduler(transports=[], service=None, min_interval=10, max_interval=5, targets={})


if __name__ == "__main__":
    unittest.main()
