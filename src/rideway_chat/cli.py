"""Command line access to the chat client."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import replace
from typing import Any, Dict, Optional, TextIO

from . import connection as events
from .config import ClientConfig
from .errors import ChatError, describe_error
from .models import TokenPair
from .session import ChatSession

logger = logging.getLogger(__name__)

WATCHED_EVENTS = (
    events.NEW_MESSAGE,
    events.MESSAGE_EDITED,
    events.MESSAGE_DELETED,
    events.TYPING_START,
    events.TYPING_STOP,
    events.MESSAGES_READ,
    events.REACTION_ADDED,
    events.REACTION_REMOVED,
    events.USER_ONLINE,
    events.USER_OFFLINE,
    events.DISCONNECT_EVENT,
)


def _write(output: TextIO, payload: Dict[str, Any]) -> None:
    output.write(json.dumps(payload, sort_keys=True, ensure_ascii=False) + "\n")
    output.flush()


def _build_session(args: argparse.Namespace) -> ChatSession:
    config = ClientConfig.from_env()
    if args.api_url:
        config = replace(config, api_url=args.api_url)
    if args.socket_url:
        config = replace(config, socket_url=args.socket_url)
    tokens = TokenPair(args.access_token, args.refresh_token) if args.access_token else None
    return ChatSession(config, tokens, args.user_id or "")


async def _run_conversations(session: ChatSession, args: argparse.Namespace, output: TextIO) -> int:
    page = await session.load_conversations(args.page)
    for conversation in page.items:
        _write(output, conversation.to_dict())
    return 0


async def _run_history(session: ChatSession, args: argparse.Namespace, output: TextIO) -> int:
    view = await session.open_conversation(args.conversation_id)
    for _ in range(max(args.pages, 1) - 1):
        if not view.pagination.has_next_page:
            break
        await view.load_older()
    for message in view.messages:
        _write(output, message.to_dict())
    return 0


async def _run_send(session: ChatSession, args: argparse.Namespace, output: TextIO) -> int:
    if await session.start():
        result = await session.mutations.send(args.conversation_id, args.text)
        if result.ok and result.message is not None:
            _write(output, result.message.to_dict())
            return 0
        if result.cancelled or session.connection.connected:
            return 1
        logger.info("event channel dropped during send, retrying over REST")
    else:
        logger.info("event channel unavailable, sending over REST")
    message = await session.api.send_message(args.conversation_id, args.text.strip())
    _write(output, message.to_dict())
    return 0


async def _run_watch(session: ChatSession, args: argparse.Namespace, output: TextIO) -> int:
    for event in WATCHED_EVENTS:
        session.connection.on(event, lambda payload, event=event: _write(output, {"t": event, "body": payload}))
    if not await session.start():
        output.write("could not connect to the event channel\n")
        return 1
    for conversation_id in args.join:
        await session.connection.join_conversation(conversation_id)
    try:
        if args.seconds is None:
            while session.connection.connected or session.connection.reconnecting:
                await asyncio.sleep(1.0)
        else:
            await asyncio.sleep(args.seconds)
    except asyncio.CancelledError:
        pass
    return 0


_COMMANDS = {
    "conversations": _run_conversations,
    "history": _run_history,
    "send": _run_send,
    "watch": _run_watch,
}


async def _run(args: argparse.Namespace, output: TextIO) -> int:
    session = _build_session(args)
    try:
        return await _COMMANDS[args.command](session, args, output)
    except ChatError as exc:
        output.write(f"error: {describe_error(exc)}\n")
        return 1
    finally:
        await session.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rideway-chat", description="Rideway chat client")
    parser.add_argument("--api-url", default=None, help="REST base URL (default: $RIDEWAY_API_URL)")
    parser.add_argument("--socket-url", default=None, help="Event channel URL (default: $RIDEWAY_SOCKET_URL)")
    parser.add_argument("--access-token", default=os.environ.get("RIDEWAY_ACCESS_TOKEN"))
    parser.add_argument("--refresh-token", default=os.environ.get("RIDEWAY_REFRESH_TOKEN"))
    parser.add_argument("--user-id", default=os.environ.get("RIDEWAY_USER_ID"), help="Signed-in user id")
    parser.add_argument("--log-level", default="warning", choices=["debug", "info", "warning", "error"])
    subparsers = parser.add_subparsers(dest="command", required=True)

    conversations = subparsers.add_parser("conversations", help="List conversations")
    conversations.add_argument("--page", type=int, default=1)

    history = subparsers.add_parser("history", help="Print a conversation's messages, oldest first")
    history.add_argument("conversation_id")
    history.add_argument("--pages", type=int, default=1, help="How many history pages to load")

    send = subparsers.add_parser("send", help="Send a text message")
    send.add_argument("conversation_id")
    send.add_argument("text")

    watch = subparsers.add_parser("watch", help="Print live events as JSON lines")
    watch.add_argument("--join", action="append", default=[], help="Conversation room to join (repeatable)")
    watch.add_argument("--seconds", type=float, default=None, help="Stop after this many seconds")
    return parser


def main(argv: Optional[list[str]] = None, output: Optional[TextIO] = None) -> int:
    """Entry point for CLI commands."""

    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args, output or sys.stdout))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
