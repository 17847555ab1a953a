"""Event channel: one websocket per manager, typed push events and ack futures."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import aiohttp

from .config import ClientConfig
from .errors import AckFailedError, AckTimeoutError, TransportUnavailableError
from .models import Message

logger = logging.getLogger(__name__)

CONNECT_EVENT = "connect"
DISCONNECT_EVENT = "disconnect"

# Client -> server
JOIN = "chat:join"
LEAVE = "chat:leave"
SEND_MESSAGE = "chat:sendMessage"
EDIT_MESSAGE = "chat:editMessage"
DELETE_MESSAGE = "chat:deleteMessage"
ADD_REACTION = "chat:addReaction"
REMOVE_REACTION = "chat:removeReaction"
TYPING = "chat:typing"
STOP_TYPING = "chat:stopTyping"
MARK_READ = "chat:markRead"
GET_ONLINE = "users:getOnline"

# Server -> client
NEW_MESSAGE = "chat:newMessage"
MESSAGE_EDITED = "chat:messageEdited"
MESSAGE_DELETED = "chat:messageDeleted"
TYPING_START = "chat:typingStart"
TYPING_STOP = "chat:typingStop"
MESSAGES_READ = "chat:messagesRead"
REACTION_ADDED = "chat:reactionAdded"
REACTION_REMOVED = "chat:reactionRemoved"
USER_ONLINE = "user:online"
USER_OFFLINE = "user:offline"

NOT_CONNECTED = "not_connected"
DISCONNECTED = "disconnected"
TIMEOUT = "timeout"
REJECTED = "rejected"

Handler = Callable[[Dict[str, Any]], object]
TokenProvider = Callable[[], Optional[str]]


@dataclass(frozen=True)
class AckResult:
    success: bool
    body: Dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "AckResult":
        if body.get("success"):
            return cls(True, body)
        return cls(False, body, REJECTED, body.get("error") or body.get("message"))

    @classmethod
    def failure(cls, error_code: str, error: Optional[str] = None) -> "AckResult":
        return cls(False, {}, error_code, error or error_code)

    def message(self, conversation_id: Optional[str] = None) -> Optional[Message]:
        raw = self.body.get("message")
        if not isinstance(raw, dict):
            return None
        return Message.from_dict(raw, conversation_id)

    def raise_for_status(self, event: str, timeout_s: float = 0.0) -> "AckResult":
        if self.success:
            return self
        if self.error_code == TIMEOUT:
            raise AckTimeoutError(event, timeout_s)
        if self.error_code in (NOT_CONNECTED, DISCONNECTED):
            raise TransportUnavailableError(f"{event}: {self.error}")
        raise AckFailedError(event, self.error)


class EventHub:
    """Registers handlers per event name and dispatches payloads to them."""

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = {}
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def unsubscribe(self, event: str, handler: Optional[Handler] = None) -> None:
        if handler is None:
            self._handlers.pop(event, None)
            return
        handlers = self._handlers.get(event)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            self._handlers.pop(event, None)

    def broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
            except Exception:
                logger.exception("handler for %s failed", event)
                continue
            if inspect.isawaitable(result):
                # Async handlers run as tasks so they can await acks the reader must deliver.
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("async event handler failed", exc_info=task.exception())

    def cancel_pending(self) -> None:
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()


class ConnectionManager:
    """Owns the single live event channel.

    Lifecycle is explicit: construct, ``connect()``, use, ``disconnect()``.
    Calls made while disconnected fail immediately instead of queueing, and
    every acknowledged call is bounded by ``config.ack_timeout_s``.
    """

    def __init__(
        self,
        config: ClientConfig,
        token_provider: TokenProvider,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config
        self._token_provider = token_provider
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._events = EventHub()
        self._connect_lock = asyncio.Lock()
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def on(self, event: str, handler: Handler) -> None:
        self._events.subscribe(event, handler)

    def off(self, event: str, handler: Optional[Handler] = None) -> None:
        self._events.unsubscribe(event, handler)

    async def connect(self) -> bool:
        if self.connected:
            return True
        token = self._token_provider()
        if not token:
            logger.warning("cannot connect event channel: no access token")
            return False
        self._closing = False
        self._cancel_reconnect()
        return await self._open(token)

    async def disconnect(self) -> None:
        self._closing = True
        self._cancel_reconnect()
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        was_connected = self.connected
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        self._fail_pending(DISCONNECTED)
        self._events.cancel_pending()
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
        if was_connected:
            logger.info("event channel disconnected")
            self._events.broadcast(DISCONNECT_EVENT, {"reason": "client disconnect"})

    async def reconnect(self) -> bool:
        """Restart the channel so the handshake uses the current access token."""

        await self.disconnect()
        return await self.connect()

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _open(self, token: str) -> bool:
        async with self._connect_lock:
            if self.connected:
                return True
            try:
                ws = await self._http().ws_connect(self.config.socket_url, heartbeat=self.config.heartbeat_s)
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
                logger.warning("event channel connection error: %s", exc)
                return False
            try:
                ready = await asyncio.wait_for(self._handshake(ws, token), self.config.handshake_timeout_s)
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
                logger.warning("event channel handshake failed: %s", exc)
                ready = False
            if not ready:
                await ws.close()
                return False
            self._ws = ws
            self._reader = asyncio.create_task(self._read_loop(ws))
        logger.info("event channel connected")
        self._events.broadcast(CONNECT_EVENT, {})
        return True

    async def _handshake(self, ws: aiohttp.ClientWebSocketResponse, token: str) -> bool:
        await ws.send_json({"v": 1, "t": "session.start", "id": "start", "body": {"token": token}})
        async for msg in ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                if msg.type == aiohttp.WSMsgType.ERROR:
                    return False
                continue
            try:
                frame = json.loads(msg.data)
            except json.JSONDecodeError:
                continue
            if not isinstance(frame, dict):
                continue
            if frame.get("t") == "session.ready":
                return True
            if frame.get("t") == "error":
                body = frame.get("body") or {}
                logger.warning("event channel refused: %s", body.get("message") or body.get("code"))
                return False
        return False

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                await self._handle_frame(ws, msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("event channel error: %s", ws.exception())
                break
        self._handle_transport_lost(ws)

    async def _handle_frame(self, ws: aiohttp.ClientWebSocketResponse, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("dropping malformed frame")
            return
        if not isinstance(frame, dict):
            return
        frame_type = frame.get("t")
        body = frame.get("body") if isinstance(frame.get("body"), dict) else {}
        if frame_type == "ack":
            self._resolve(frame.get("id"), body)
            return
        if frame_type == "error":
            if frame.get("id") is not None:
                self._resolve(frame.get("id"), {"success": False, "error": body.get("message") or body.get("code")})
            else:
                logger.warning("event channel error frame: %s", body)
            return
        if frame_type == "ping":
            await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
            return
        if isinstance(frame_type, str):
            self._events.broadcast(frame_type, body)

    def _resolve(self, request_id: Any, body: Dict[str, Any]) -> None:
        future = self._pending.pop(str(request_id), None)
        if future is None:
            logger.debug("ack for unknown request %s", request_id)
            return
        if not future.done():
            future.set_result(AckResult.from_body(body))

    def _handle_transport_lost(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        if ws is not self._ws:
            return
        self._ws = None
        self._reader = None
        self._fail_pending(DISCONNECTED)
        logger.warning("event channel lost (close code %s)", ws.close_code)
        self._events.broadcast(DISCONNECT_EVENT, {"reason": "transport closed"})
        if not self._closing:
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        delay = self.config.reconnect_delay_s
        attempts = self.config.reconnect_attempts
        for attempt in range(1, attempts + 1):
            await asyncio.sleep(delay)
            token = self._token_provider()
            logger.info("event channel reconnect attempt %d/%d", attempt, attempts)
            if token and await self._open(token):
                return
            delay = min(delay * 2, self.config.reconnect_delay_max_s)
        logger.warning("event channel gave up after %d reconnect attempts", attempts)

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _fail_pending(self, error_code: str) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_result(AckResult.failure(error_code))

    async def call(self, event: str, body: Dict[str, Any], timeout_s: Optional[float] = None) -> AckResult:
        """Emit ``event`` and wait for its acknowledgement.

        Never waits longer than ``timeout_s`` (``config.ack_timeout_s`` by
        default). Cancelling the awaiting task drops the pending request.
        """

        ws = self._ws
        if ws is None or ws.closed:
            return AckResult.failure(NOT_CONNECTED)
        request_id = f"req-{next(self._ids)}"
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        timeout = self.config.ack_timeout_s if timeout_s is None else timeout_s
        try:
            await ws.send_json({"v": 1, "t": event, "id": request_id, "body": body})
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logger.warning("no ack for %s within %ss", event, timeout)
            return AckResult.failure(TIMEOUT)
        except (ConnectionError, aiohttp.ClientError) as exc:
            logger.debug("emit %s failed: %s", event, exc)
            return AckResult.failure(DISCONNECTED, str(exc))
        finally:
            self._pending.pop(request_id, None)

    async def emit(self, event: str, body: Dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None or ws.closed:
            return False
        try:
            await ws.send_json({"v": 1, "t": event, "id": None, "body": body})
        except (ConnectionError, aiohttp.ClientError) as exc:
            logger.debug("emit %s failed: %s", event, exc)
            return False
        return True

    async def join_conversation(self, conversation_id: str) -> bool:
        return (await self.call(JOIN, {"conversationId": conversation_id})).success

    async def leave_conversation(self, conversation_id: str) -> bool:
        return (await self.call(LEAVE, {"conversationId": conversation_id})).success

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        *,
        reply_to_id: Optional[str] = None,
        image_urls: Sequence[str] = (),
    ) -> AckResult:
        body: Dict[str, Any] = {"conversationId": conversation_id, "content": content}
        if reply_to_id:
            body["replyToId"] = reply_to_id
        if image_urls:
            body["imageUrls"] = list(image_urls)
        return await self.call(SEND_MESSAGE, body)

    async def edit_message(
        self,
        conversation_id: str,
        message_id: str,
        content: str,
        *,
        removed_image_ids: Sequence[str] = (),
        new_image_urls: Sequence[str] = (),
    ) -> AckResult:
        return await self.call(
            EDIT_MESSAGE,
            {
                "conversationId": conversation_id,
                "messageId": message_id,
                "content": content,
                "removedImageIds": list(removed_image_ids),
                "newImageUrls": list(new_image_urls),
            },
        )

    async def delete_message(self, conversation_id: str, message_id: str) -> AckResult:
        return await self.call(DELETE_MESSAGE, {"conversationId": conversation_id, "messageId": message_id})

    async def add_reaction(self, conversation_id: str, message_id: str, emoji: str) -> AckResult:
        return await self.call(
            ADD_REACTION, {"conversationId": conversation_id, "messageId": message_id, "emoji": emoji}
        )

    async def remove_reaction(self, conversation_id: str, message_id: str, emoji: str) -> AckResult:
        return await self.call(
            REMOVE_REACTION, {"conversationId": conversation_id, "messageId": message_id, "emoji": emoji}
        )

    async def mark_read(self, conversation_id: str) -> bool:
        return (await self.call(MARK_READ, {"conversationId": conversation_id})).success

    async def get_online_users(self, user_ids: Sequence[str]) -> Optional[List[str]]:
        """Online subset of ``user_ids``, or ``None`` when the server did not answer."""
        if not user_ids:
            return []
        result = await self.call(GET_ONLINE, {"userIds": list(user_ids)})
        if not result.success:
            logger.debug("online query failed: %s", result.error)
            return None
        return [str(user_id) for user_id in result.body.get("onlineUsers") or []]

    async def start_typing(self, conversation_id: str) -> bool:
        return await self.emit(TYPING, {"conversationId": conversation_id})

    async def stop_typing(self, conversation_id: str) -> bool:
        return await self.emit(STOP_TYPING, {"conversationId": conversation_id})
