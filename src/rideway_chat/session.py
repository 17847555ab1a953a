"""Application root: owns the store and wires the channel, REST and controllers to it."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from . import connection as events
from .api import ChatApi
from .config import ClientConfig
from .connection import ConnectionManager
from .models import LocalImage, Message, Page, TokenPair
from .mutations import Confirm, ImageProcessor, MutationPipeline, MutationResult, Notifier
from .pagination import PaginationController, ScrollAction, Viewport
from .presence import PresenceController
from .store import ChatStore
from .typing_indicator import TypingController

logger = logging.getLogger(__name__)


class EventRouter:
    """Turns push events from the channel into store mutations."""

    def __init__(self, store: ChatStore) -> None:
        self._store = store

    def _handlers(self) -> Sequence[Tuple[str, Callable[[Dict[str, Any]], None]]]:
        return (
            (events.NEW_MESSAGE, self.on_new_message),
            (events.MESSAGE_EDITED, self.on_message_edited),
            (events.MESSAGE_DELETED, self.on_message_deleted),
            (events.TYPING_START, self.on_typing_start),
            (events.TYPING_STOP, self.on_typing_stop),
            (events.MESSAGES_READ, self.on_messages_read),
            (events.REACTION_ADDED, self.on_reaction_added),
            (events.REACTION_REMOVED, self.on_reaction_removed),
        )

    def attach(self, channel: ConnectionManager) -> None:
        for event, handler in self._handlers():
            channel.on(event, handler)

    def detach(self, channel: ConnectionManager) -> None:
        for event, handler in self._handlers():
            channel.off(event, handler)

    def _is_viewer(self, user_id: Any) -> bool:
        return user_id is not None and user_id == self._store.viewer_id

    def on_new_message(self, payload: Dict[str, Any]) -> None:
        conversation_id = str(payload["conversationId"])
        message = Message.from_dict(payload["message"], conversation_id)
        if not self._store.add_message(conversation_id, message):
            # already delivered (ack or duplicate push); counted once
            return
        self._store.update_conversation(conversation_id, last_message=message, updated_at=message.created_at)
        if conversation_id != self._store.active_conversation_id and not self._is_viewer(message.sender_id):
            self._store.increment_unread(conversation_id)

    def on_message_edited(self, payload: Dict[str, Any]) -> None:
        conversation_id = str(payload["conversationId"])
        self._store.update_message(conversation_id, Message.from_dict(payload["message"], conversation_id))

    def on_message_deleted(self, payload: Dict[str, Any]) -> None:
        self._store.mark_message_deleted(str(payload["conversationId"]), str(payload["messageId"]))

    def on_typing_start(self, payload: Dict[str, Any]) -> None:
        if not self._is_viewer(payload.get("userId")):
            self._store.set_typing(str(payload["conversationId"]), str(payload["userId"]), True)

    def on_typing_stop(self, payload: Dict[str, Any]) -> None:
        if not self._is_viewer(payload.get("userId")):
            self._store.set_typing(str(payload["conversationId"]), str(payload["userId"]), False)

    def on_messages_read(self, payload: Dict[str, Any]) -> None:
        self._store.mark_messages_read(str(payload["conversationId"]), str(payload["readBy"]))

    def on_reaction_added(self, payload: Dict[str, Any]) -> None:
        self._apply_reaction(payload, added=True)

    def on_reaction_removed(self, payload: Dict[str, Any]) -> None:
        self._apply_reaction(payload, added=False)

    def _apply_reaction(self, payload: Dict[str, Any], *, added: bool) -> None:
        self._store.apply_reaction(
            str(payload["conversationId"]),
            str(payload["messageId"]),
            str(payload["emoji"]),
            payload.get("userId"),
            added,
        )


class ConversationView:
    """One open conversation: history, typing signal and the user's actions."""

    def __init__(self, session: "ChatSession", conversation_id: str) -> None:
        self._session = session
        self.conversation_id = conversation_id
        store = session.store
        self.pagination = PaginationController(
            session.api,
            store,
            conversation_id,
            page_size=session.config.page_size,
            near_bottom_threshold_px=session.config.near_bottom_threshold_px,
        )
        self.typing = TypingController(
            session.connection,
            conversation_id,
            timeout_s=session.config.typing_timeout_s,
            is_editing=lambda: store.editing_message(conversation_id) is not None,
        )
        self.closed = False

    @property
    def messages(self) -> Sequence[Message]:
        return self._session.store.messages_for(self.conversation_id)

    async def open(self) -> ScrollAction:
        session = self._session
        session.store.set_active_conversation(self.conversation_id)
        await session.connection.join_conversation(self.conversation_id)
        action = await self.pagination.load_initial()
        await session.mutations.mark_read(self.conversation_id)
        return action

    async def close(self) -> None:
        """Stop typing, leave the room and drop the active marker."""

        if self.closed:
            return
        self.closed = True
        session = self._session
        await self.typing.leave()
        await session.connection.leave_conversation(self.conversation_id)
        if session.store.active_conversation_id == self.conversation_id:
            session.store.set_active_conversation(None)
        session._views.pop(self.conversation_id, None)

    async def load_older(self) -> ScrollAction:
        return await self.pagination.on_sentinel_visible()

    def scroll_action_for_new_message(self, viewport: Viewport) -> ScrollAction:
        return self.pagination.scroll_action_for_new_message(viewport)

    async def keystroke(self) -> None:
        await self.typing.keystroke()

    async def send(self, content: str, files: Sequence[LocalImage] = ()) -> MutationResult:
        return await self._session.mutations.send(self.conversation_id, content, files, typing=self.typing)

    async def edit(
        self,
        new_content: str,
        *,
        removed_image_ids: Sequence[str] = (),
        new_files: Sequence[LocalImage] = (),
    ) -> MutationResult:
        draft = self._session.store.editing_message(self.conversation_id)
        if draft is None:
            return MutationResult(False, error="no message is being edited")
        return await self._session.mutations.edit(
            self.conversation_id,
            draft,
            new_content,
            removed_image_ids=removed_image_ids,
            new_files=new_files,
        )

    async def delete(self, message_id: str, confirm: Confirm) -> MutationResult:
        return await self._session.mutations.delete(self.conversation_id, message_id, confirm)

    async def toggle_reaction(self, message_id: str, emoji: str) -> MutationResult:
        return await self._session.mutations.toggle_reaction(self.conversation_id, message_id, emoji)

    def reply_to(self, message: Message) -> None:
        self._session.store.set_reply_to(self.conversation_id, message)

    def start_editing(self, message: Message) -> None:
        self._session.store.set_editing_message(self.conversation_id, message)


class ChatSession:
    """Owns one signed-in user's chat state and its collaborators."""

    def __init__(
        self,
        config: ClientConfig,
        tokens: Optional[TokenPair],
        viewer_id: str,
        *,
        api: Optional[ChatApi] = None,
        connection: Optional[ConnectionManager] = None,
        store: Optional[ChatStore] = None,
        image_processor: Optional[ImageProcessor] = None,
        notifier: Optional[Notifier] = None,
        on_session_end: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.config = config
        self.store = store or ChatStore(viewer_id)
        self.session_end_reason: Optional[str] = None
        self._on_session_end = on_session_end
        self.api = api or ChatApi(config, tokens, on_session_end=self._session_ended)
        self.authority = self.api.authority
        self.connection = connection or ConnectionManager(config, lambda: self.authority.access_token)
        self.presence = PresenceController(self.connection, self.store)
        self.mutations = MutationPipeline(
            self.connection,
            self.api,
            self.store,
            image_processor=image_processor,
            notifier=notifier,
            ack_timeout_s=config.ack_timeout_s,
        )
        self.router = EventRouter(self.store)
        self._views: Dict[str, ConversationView] = {}
        self._shutdown: Optional["asyncio.Future[None]"] = None
        self.router.attach(self.connection)
        self.connection.on(events.USER_ONLINE, self.presence.on_user_online)
        self.connection.on(events.USER_OFFLINE, self.presence.on_user_offline)
        self.connection.on(events.DISCONNECT_EVENT, self._on_disconnect)
        self.connection.on(events.CONNECT_EVENT, self._on_connect)
        self.authority.add_refresh_listener(self._on_token_refreshed)

    async def start(self) -> bool:
        return await self.connection.connect()

    async def close(self) -> None:
        if self._shutdown is not None:
            await self._shutdown
        for view in list(self._views.values()):
            await view.close()
        await self.connection.disconnect()
        await self.api.close()

    async def load_conversations(self, page: int = 1) -> Page:
        self.store.set_loading_conversations(True)
        try:
            result = await self.api.get_conversations(page)
        finally:
            self.store.set_loading_conversations(False)
        if page == 1:
            self.store.set_conversations(result.items)
            self.store.set_unread_count(sum(conversation.unread_count for conversation in result.items))
        else:
            for conversation in result.items:
                if self.store.get_conversation(conversation.id) is None:
                    self.store.set_conversations(self.store.conversations + (conversation,))
        return result

    async def open_conversation(self, conversation_id: str) -> ConversationView:
        view = self._views.get(conversation_id)
        if view is None:
            view = ConversationView(self, conversation_id)
            self._views[conversation_id] = view
        await view.open()
        return view

    def view(self, conversation_id: str) -> Optional[ConversationView]:
        return self._views.get(conversation_id)

    async def close_conversation(self, conversation_id: str) -> None:
        view = self._views.get(conversation_id)
        if view is not None:
            await view.close()

    def _session_ended(self, reason: str) -> None:
        self.session_end_reason = reason
        logger.warning("chat session ended: %s", reason)
        # nothing may write into the store once it is reset
        self.router.detach(self.connection)
        self.connection.off(events.USER_ONLINE, self.presence.on_user_online)
        self.connection.off(events.USER_OFFLINE, self.presence.on_user_offline)
        self.store.reset()
        self._shutdown = asyncio.ensure_future(self.connection.disconnect())
        if self._on_session_end is not None:
            self._on_session_end(reason)

    async def _on_token_refreshed(self, _access_token: str) -> None:
        # the channel handshake carries the token, so it has to restart
        if self.connection.connected or self.connection.reconnecting:
            await self.connection.reconnect()

    def _on_disconnect(self, _payload: Dict[str, Any]) -> None:
        self.presence.on_disconnect()
        self.store.clear_typing()

    async def _on_connect(self, _payload: Dict[str, Any]) -> None:
        # a new socket starts without room memberships
        for conversation_id in list(self._views):
            await self.connection.join_conversation(conversation_id)
        if self.store.conversations:
            await self.presence.refresh_conversation_peers()
