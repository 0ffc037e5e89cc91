from __future__ import annotations

import asyncio
import unittest

try:
    import discord
    from discord.ext import commands
except ModuleNotFoundError:
    discord = None
    commands = None

if commands is not None:
    from bottles.service import BottleSettings
    from misc.events_runtime import redirect_quoted_reply
    from misc.runtime_deps import RuntimeDeps


class _FakePrompt:
    def __init__(self):
        self.deleted = False

    async def delete(self):
        self.deleted = True


class _FakeChannel:
    id = 55

    def __init__(self):
        self.sent: list[str] = []
        self.prompts: list[_FakePrompt] = []

    async def send(self, text):
        self.sent.append(text)
        prompt = _FakePrompt()
        self.prompts.append(prompt)
        return prompt


class _FakeAuthor:
    id = 2
    name = "bob"
    display_name = "bob"


class _FakeReference:
    def __init__(self, message_id):
        self.message_id = message_id


class _FakeMessage:
    def __init__(self, *, reference_id, content="lovely"):
        self.author = _FakeAuthor()
        self.channel = _FakeChannel()
        self.guild = None
        self.content = content
        self.attachments = []
        self.reference = _FakeReference(reference_id)


class _FakeBot:
    def __init__(self, *, cancel: bool):
        self.cancel = cancel

    async def wait_for(self, event, *, check=None, timeout=None):
        if self.cancel:
            return object()
        raise asyncio.TimeoutError()


class _StubService:
    def __init__(self):
        self.settings = BottleSettings(preview=True)
        self.cache = {900: 4}
        self.comments: list[dict] = []

    def bottle_for_message(self, handle):
        return self.cache.get(handle)

    async def post_comment(self, actor, **kwargs):
        self.comments.append({"actor": actor, **kwargs})
        return None, ["The owner could not be notified (no known location)."]


def _deps(service):
    return RuntimeDeps(bottle_service=service, command_prefix="!", prompt_timeout_seconds=1)


@unittest.skipIf(commands is None, "discord.py not installed")
class RedirectQuotedReplyTests(unittest.IsolatedAsyncioTestCase):
    async def test_reply_to_unknown_message_is_ignored(self):
        service = _StubService()
        message = _FakeMessage(reference_id=1)
        handled = await redirect_quoted_reply(_FakeBot(cancel=False), message, deps=_deps(service))
        self.assertFalse(handled)
        self.assertEqual(message.channel.sent, [])

    async def test_reply_becomes_comment_after_timeout(self):
        service = _StubService()
        message = _FakeMessage(reference_id=900)

        handled = await redirect_quoted_reply(_FakeBot(cancel=False), message, deps=_deps(service))

        self.assertTrue(handled)
        self.assertEqual(len(service.comments), 1)
        posted = service.comments[0]
        self.assertEqual(posted["bottle_id"], 4)
        self.assertEqual(posted["content"], "lovely")
        self.assertEqual(posted["reply_address"], "private:2")
        self.assertIn("bottle #4", message.channel.sent[0])
        self.assertIn("could not be notified", message.channel.sent[-1])
        self.assertTrue(message.channel.prompts[0].deleted)

    async def test_cancel_skips_comment(self):
        service = _StubService()
        message = _FakeMessage(reference_id=900)

        handled = await redirect_quoted_reply(_FakeBot(cancel=True), message, deps=_deps(service))

        self.assertTrue(handled)
        self.assertEqual(service.comments, [])
        self.assertIn("Comment cancelled.", message.channel.sent)
        self.assertTrue(message.channel.prompts[0].deleted)


if __name__ == "__main__":
    unittest.main()
