import asyncio
import unittest

from rideway_chat.typing_indicator import IDLE, TYPING, TypingController

from tests.chat_fakes import FakeChannel


class TypingControllerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.channel = FakeChannel()
        self.editing = False
        self.typing = TypingController(self.channel, "c1", timeout_s=0.05, is_editing=lambda: self.editing)

    async def test_burst_of_keystrokes_emits_one_start_and_one_stop(self):
        for _ in range(5):
            await self.typing.keystroke()
            await asyncio.sleep(0.01)

        self.assertEqual(self.channel.count("start_typing"), 1)
        self.assertEqual(self.typing.state, TYPING)

        await asyncio.sleep(0.1)

        self.assertEqual(self.channel.count("stop_typing"), 1)
        self.assertEqual(self.typing.state, IDLE)

    async def test_keystrokes_restart_the_timer(self):
        await self.typing.keystroke()
        await asyncio.sleep(0.03)
        await self.typing.keystroke()
        await asyncio.sleep(0.03)

        self.assertEqual(self.channel.count("stop_typing"), 0)

    async def test_typing_resumes_after_timeout(self):
        await self.typing.keystroke()
        await asyncio.sleep(0.1)
        await self.typing.keystroke()

        self.assertEqual(self.channel.count("start_typing"), 2)

    async def test_stop_when_idle_emits_nothing(self):
        await self.typing.stop()

        self.assertEqual(self.channel.calls, [])

    async def test_edit_draft_suppresses_typing(self):
        self.editing = True

        await self.typing.keystroke()

        self.assertEqual(self.channel.calls, [])

    async def test_disconnect_mid_typing_then_leave_emits_exactly_one_stop(self):
        await self.typing.keystroke()
        self.channel.connected = False

        await self.typing.leave()
        await asyncio.sleep(0.1)

        self.assertEqual(self.channel.count("stop_typing"), 1)

    async def test_leave_ignores_later_keystrokes(self):
        await self.typing.leave()
        await self.typing.keystroke()

        self.assertEqual(self.channel.count("start_typing"), 0)
        self.assertEqual(self.channel.count("stop_typing"), 1)
