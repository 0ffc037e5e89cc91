from __future__ import annotations

import unittest

try:
    import discord
    from discord.ext import commands
except ModuleNotFoundError:
    discord = None
    commands = None

if commands is not None:
    from bottles.errors import DeliveryFailure
    from bottles.errors import ValidationError
    from bottles.models import Bottle
    from bottles.service import BottleSettings
    from misc.commands.command_deps import CommandDeps
    from misc.commands.command_deps import CommandGates
    from misc.commands.commands_bottles import parse_flags
    from misc.commands.commands_bottles import register as register_bottles


class FakeAuthor:
    def __init__(self, user_id=1, name="alice"):
        self.id = user_id
        self.name = name
        self.display_name = name


class FakeGuild:
    id = 7


class FakeChannel:
    id = 123

    def __init__(self):
        self.sent: list[str] = []

    async def send(self, text):
        self.sent.append(text)


class FakeMessage:
    def __init__(self, author, channel, content=""):
        self.author = author
        self.channel = channel
        self.guild = FakeGuild()
        self.content = content
        self.attachments = []
        self.reference = None


class FakeCtx:
    def __init__(self, user_id=1):
        self.author = FakeAuthor(user_id)
        self.channel = FakeChannel()
        self.guild = FakeGuild()
        self.message = FakeMessage(self.author, self.channel)
        self.sent: list[str] = []

    async def send(self, text):
        self.sent.append(text)


def _bottle(bottle_id=5, name=""):
    return Bottle(
        id=bottle_id,
        name=name,
        author_id="1",
        guild_id="7",
        channel_id="123",
        author_name="alice",
        content="hello",
        is_featured=False,
        comment_count=0,
        created_day=100,
    )


class StubBottleService:
    def __init__(self, *, preview=True, fail_with=None):
        self.settings = BottleSettings(preview=preview)
        self.fail_with = fail_with
        self.calls: list[tuple[str, dict]] = []

    def _record(self, name, **kwargs):
        self.calls.append((name, kwargs))
        if self.fail_with is not None:
            raise self.fail_with

    async def post_bottle(self, actor, **kwargs):
        self._record("post_bottle", actor=actor, **kwargs)
        return _bottle(name=kwargs.get("title") or "")

    async def draw_bottle(self, **kwargs):
        self._record("draw_bottle", **kwargs)
        return _bottle()

    async def post_comment(self, actor, **kwargs):
        self._record("post_comment", actor=actor, **kwargs)
        return None, []

    async def set_featured(self, actor, bottle_id, featured=True):
        self._record("set_featured", bottle_id=bottle_id, featured=featured)
        return _bottle(bottle_id)

    async def expire_bottles(self, actor, days):
        self._record("expire_bottles", days=days)
        return 0, 0

    async def audit(self, actor, **kwargs):
        self._record("audit", **kwargs)

    async def migrate_assets(self, actor, target, **kwargs):
        self._record("migrate_assets", target=target)

    async def list_mine(self, actor, **kwargs):
        self._record("list_mine", **kwargs)
        return "Your bottles:\n(no bottles)"


def _register(service, *, operator=False):
    bot = commands.Bot(command_prefix="!", intents=discord.Intents.none())
    listings: list[str] = []

    async def send_chunked(channel, text):
        listings.append(text)

    def make_confirm(bot, ctx, *, timeout=30):
        async def confirm(text):
            return "yes"

        return confirm

    register_bottles(
        bot,
        deps=CommandDeps(
            send_chunked=send_chunked,
            command_prefix="!",
            bottle_service=service,
            make_confirm=make_confirm,
        ),
        gates=CommandGates(user_is_operator=lambda user: operator),
    )
    return bot, listings


@unittest.skipIf(commands is None, "discord.py not installed")
class ParseFlagsTests(unittest.TestCase):
    def test_leading_valued_flag(self):
        flags, rest = parse_flags("-t sea  hello there", valued={"--title"})
        self.assertEqual(flags, {"--title": "sea"})
        self.assertEqual(rest, "hello there")

    def test_unknown_flag_stops_parsing(self):
        flags, rest = parse_flags("--loud hi", valued={"--title"})
        self.assertEqual(flags, {})
        self.assertEqual(rest, "--loud hi")

    def test_trailing_switch(self):
        flags, rest = parse_flags("2 -i", valued=set(), switches={"--ids-only"})
        self.assertEqual(flags, {"--ids-only": True})
        self.assertEqual(rest, "2")

    def test_missing_value(self):
        with self.assertRaises(ValidationError):
            parse_flags("--reply-to", valued={"--reply-to"})


@unittest.skipIf(commands is None, "discord.py not installed")
class BottleCommandsTests(unittest.IsolatedAsyncioTestCase):
    async def test_operator_commands_gated(self):
        service = StubBottleService()
        bot, _ = _register(service, operator=False)

        calls = {
            "bottle.user": {"raw": "<@5>"},
            "bottle.feature": {"bottle_id": "5"},
            "bottle.expire": {"days": "30"},
            "bottle.audit": {"raw": ""},
            "bottle.audit_comments": {"raw": ""},
            "bottle.migrate_local": {},
            "bottle.migrate_inline": {},
        }
        for name, kwargs in calls.items():
            cmd = bot.get_command(name)
            self.assertIsNotNone(cmd, name)
            ctx = FakeCtx()
            await cmd.callback(ctx, **kwargs)
            self.assertTrue(any("operator-only" in s.lower() for s in ctx.sent), f"missing operator gate for {name}")
        self.assertEqual(service.calls, [])

    async def test_post_passes_title_and_text(self):
        service = StubBottleService(preview=False)
        bot, _ = _register(service)
        ctx = FakeCtx()

        await bot.get_command("bottle.post").callback(ctx, raw="--title diary  dear sea")

        name, kwargs = service.calls[0]
        self.assertEqual(name, "post_bottle")
        self.assertEqual(kwargs["title"], "diary")
        self.assertEqual(kwargs["content"], "dear sea")
        self.assertEqual(kwargs["reply_address"], "123")
        self.assertEqual(kwargs["actor"].guild_id, "7")
        self.assertTrue(any("#5" in s for s in ctx.sent))

    async def test_draw_splits_trailing_page(self):
        service = StubBottleService()
        bot, _ = _register(service)

        await bot.get_command("bottle.draw").callback(FakeCtx(), raw="sea letter 3")

        _, kwargs = service.calls[0]
        self.assertEqual((kwargs["query"], kwargs["page"]), ("sea letter", 3))

    async def test_comment_rejects_non_numeric_bottle(self):
        service = StubBottleService()
        bot, _ = _register(service)
        ctx = FakeCtx()

        await bot.get_command("bottle.comment").callback(ctx, raw="abc nice")

        self.assertEqual(service.calls, [])
        self.assertTrue(ctx.sent[0].startswith("Error: bottle id must be a number"))

    async def test_comment_reply_flag(self):
        service = StubBottleService()
        bot, _ = _register(service)

        await bot.get_command("bottle.comment").callback(FakeCtx(), raw="-r 2 5 thanks")

        _, kwargs = service.calls[0]
        self.assertEqual((kwargs["bottle_id"], kwargs["reply_cid"], kwargs["content"]), (5, 2, "thanks"))

    async def test_delivery_failure_reports_remediation(self):
        service = StubBottleService(fail_with=DeliveryFailure("preview of bottle 5", 3, RuntimeError("403")))
        bot, _ = _register(service)
        ctx = FakeCtx()

        await bot.get_command("bottle.post").callback(ctx, raw="hello")

        self.assertIn("Error:", ctx.sent[0])
        self.assertIn("It was removed.", ctx.sent[0])

    async def test_draw_failure_does_not_claim_removal(self):
        service = StubBottleService(fail_with=DeliveryFailure("bottle 5", 3, RuntimeError("403")))
        bot, _ = _register(service)
        ctx = FakeCtx()

        await bot.get_command("bottle.draw").callback(ctx, raw="5")

        self.assertTrue(ctx.sent[0].startswith("Error:"))
        self.assertNotIn("removed", ctx.sent[0])

    async def test_audit_rejects_half_or_reversed_range(self):
        service = StubBottleService()
        bot, _ = _register(service, operator=True)

        for raw in ("5", "9 3"):
            ctx = FakeCtx(user_id=99)
            await bot.get_command("bottle.audit").callback(ctx, raw=raw)
            self.assertTrue(ctx.sent[0].startswith("Error:"), raw)
        self.assertEqual(service.calls, [])

    async def test_feature_off(self):
        service = StubBottleService()
        bot, _ = _register(service, operator=True)
        ctx = FakeCtx(user_id=99)

        await bot.get_command("bottle.feature").callback(ctx, bottle_id="5", mode="off")

        _, kwargs = service.calls[0]
        self.assertFalse(kwargs["featured"])

    async def test_mine_uses_chunked_listing(self):
        service = StubBottleService()
        bot, listings = _register(service)

        await bot.get_command("bottle.mine").callback(FakeCtx(), raw="2 --ids-only")

        _, kwargs = service.calls[0]
        self.assertEqual((kwargs["page"], kwargs["ids_only"]), (2, True))
        self.assertEqual(listings, ["Your bottles:\n(no bottles)"])


if __name__ == "__main__":
    unittest.main()
