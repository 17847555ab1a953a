import asyncio
import io
import json
import unittest

from rideway_chat import cli

from tests.chat_fakes import make_conversation, message_payload
from tests.fake_chat_server import FakeChatServer


class CliTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.backend = FakeChatServer()
        self.backend.conversations = [make_conversation("c1", unread_count=2).to_dict()]
        self.backend.messages["c1"] = [message_payload(f"m{n}", n) for n in range(4, 0, -1)]
        await self.backend.start()

    async def asyncTearDown(self):
        await self.backend.close()

    def _args(self, *command):
        return cli.build_parser().parse_args(
            [
                "--api-url",
                self.backend.api_url,
                "--socket-url",
                self.backend.socket_url,
                "--access-token",
                "access-1",
                "--refresh-token",
                "refresh-1",
                "--user-id",
                "me",
                *command,
            ]
        )

    async def _run(self, *command):
        output = io.StringIO()
        code = await cli._run(self._args(*command), output)
        lines = [json.loads(line) for line in output.getvalue().splitlines() if line.startswith("{")]
        return code, lines, output.getvalue()

    async def test_conversations_prints_one_line_each(self):
        code, lines, _ = await self._run("conversations")

        self.assertEqual(code, 0)
        self.assertEqual([line["id"] for line in lines], ["c1"])
        self.assertEqual(lines[0]["unreadCount"], 2)

    async def test_history_prints_oldest_first(self):
        code, lines, _ = await self._run("history", "c1")

        self.assertEqual(code, 0)
        self.assertEqual([line["id"] for line in lines], ["m1", "m2", "m3", "m4"])

    async def test_send_goes_over_the_event_channel(self):
        code, lines, _ = await self._run("send", "c1", "  hi there ")

        self.assertEqual(code, 0)
        self.assertEqual(lines[0]["content"], "hi there")
        self.assertEqual(self.backend.received("chat:sendMessage")[0]["content"], "hi there")

    async def test_send_falls_back_to_rest_without_channel(self):
        args = self._args("send", "c1", "hi")
        args.socket_url = str(self.backend.server.make_url("/missing"))
        output = io.StringIO()

        code = await cli._run(args, output)

        self.assertEqual(code, 0)
        self.assertEqual(json.loads(output.getvalue())["content"], "hi")
        self.assertEqual(self.backend.rest_calls("/api/v1/chat/conversations/c1/messages"), 1)

    async def test_send_retries_over_rest_when_channel_drops_mid_send(self):
        def drop_instead_of_ack(body):
            asyncio.ensure_future(self.backend.drop_connections())
            return None

        self.backend.ack_handlers["chat:sendMessage"] = drop_instead_of_ack

        code, lines, _ = await self._run("send", "c1", "hi")

        self.assertEqual(code, 0)
        self.assertEqual(lines[0]["content"], "hi")
        self.assertEqual(len(self.backend.received("chat:sendMessage")), 1)
        self.assertEqual(self.backend.rest_calls("/api/v1/chat/conversations/c1/messages"), 1)

    async def test_expired_session_prints_error(self):
        self.backend.valid_tokens = set()
        self.backend.refresh_grants = {}

        code, _, text = await self._run("conversations")

        self.assertEqual(code, 1)
        self.assertIn("error: Your session has expired", text)


def test_parser_requires_a_command():
    parser = cli.build_parser()
    try:
        parser.parse_args([])
    except SystemExit as exc:
        assert exc.code == 2
    else:
        raise AssertionError("expected argparse to exit")


def test_parser_collects_repeated_joins():
    args = cli.build_parser().parse_args(["watch", "--join", "c1", "--join", "c2", "--seconds", "0.5"])

    assert args.join == ["c1", "c2"]
    assert args.seconds == 0.5
