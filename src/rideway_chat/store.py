"""Normalized client-side chat state. The store is the only writer of it."""

from __future__ import annotations

import bisect
import logging
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .models import Conversation, Message, MessageReaction

logger = logging.getLogger(__name__)

Listener = Callable[[str, Optional[str]], None]


def _sorted_unique(messages: Iterable[Message]) -> List[Message]:
    seen: Set[str] = set()
    unique: List[Message] = []
    for message in messages:
        if message.id in seen:
            continue
        seen.add(message.id)
        unique.append(message)
    # sort is stable, so equal timestamps keep arrival order
    unique.sort(key=lambda message: message.created_at)
    return unique


class ChatStore:
    """Conversations, per-conversation timelines, typing/presence sets and drafts.

    Every timeline is kept sorted ascending by ``created_at`` with unique ids,
    whatever the order in which history pages, push events and acknowledgements
    arrive.
    """

    def __init__(self, viewer_id: Optional[str] = None) -> None:
        self.viewer_id = viewer_id
        self._listeners: List[Listener] = []
        self._init_state()

    def _init_state(self) -> None:
        self._conversations: List[Conversation] = []
        self.active_conversation_id: Optional[str] = None
        self._messages: Dict[str, List[Message]] = {}
        self._typing: Dict[str, Set[str]] = {}
        self._online: Set[str] = set()
        self.presence_stale = False
        self.unread_count = 0
        self._reply_to: Dict[str, Message] = {}
        self._editing: Dict[str, Message] = {}
        self.is_loading_conversations = False
        self.is_loading_messages = False

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener(change, conversation_id)``; returns an unsubscribe function."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _changed(self, change: str, conversation_id: Optional[str] = None) -> None:
        for listener in list(self._listeners):
            listener(change, conversation_id)

    # Conversations

    @property
    def conversations(self) -> Tuple[Conversation, ...]:
        return tuple(self._conversations)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def active_conversation(self) -> Optional[Conversation]:
        if self.active_conversation_id is None:
            return None
        return self.get_conversation(self.active_conversation_id)

    def set_conversations(self, conversations: Sequence[Conversation]) -> None:
        self._conversations = list(conversations)
        self._changed("conversations")

    def add_conversation(self, conversation: Conversation) -> None:
        for index, existing in enumerate(self._conversations):
            if existing.id == conversation.id:
                self._conversations[index] = conversation
                break
        else:
            self._conversations.insert(0, conversation)
        self._changed("conversations", conversation.id)

    def update_conversation(self, conversation_id: str, **changes: object) -> bool:
        for index, existing in enumerate(self._conversations):
            if existing.id == conversation_id:
                self._conversations[index] = replace(existing, **changes)
                self._changed("conversations", conversation_id)
                return True
        return False

    def set_active_conversation(self, conversation_id: Optional[str]) -> None:
        self.active_conversation_id = conversation_id
        self._changed("active", conversation_id)

    def set_unread_count(self, count: int) -> None:
        self.unread_count = max(count, 0)
        self._changed("unread")

    def increment_unread(self, conversation_id: str) -> None:
        """Count an arrived message in a conversation the viewer is not looking at."""

        conversation = self.get_conversation(conversation_id)
        if conversation is not None:
            self.update_conversation(conversation_id, unread_count=conversation.unread_count + 1)
        self.unread_count += 1
        self._changed("unread", conversation_id)

    def mark_conversation_as_read(self, conversation_id: str) -> int:
        """Reset the conversation's unread count; returns how many were cleared."""

        conversation = self.get_conversation(conversation_id)
        if conversation is None or conversation.unread_count == 0:
            return 0
        cleared = conversation.unread_count
        self.update_conversation(conversation_id, unread_count=0)
        self.unread_count = max(0, self.unread_count - cleared)
        self._changed("unread", conversation_id)
        return cleared

    # Messages

    def messages_for(self, conversation_id: str) -> Tuple[Message, ...]:
        return tuple(self._messages.get(conversation_id, ()))

    def get_message(self, conversation_id: str, message_id: str) -> Optional[Message]:
        for message in self._messages.get(conversation_id, ()):
            if message.id == message_id:
                return message
        return None

    def set_messages(self, conversation_id: str, messages: Sequence[Message]) -> None:
        """Replace a timeline with a chronological history page.

        Messages already in the store that are newer than everything in the
        page were pushed live after the page was produced; they are kept.
        """

        incoming = _sorted_unique(messages)
        ids = {message.id for message in incoming}
        newest = incoming[-1].created_at if incoming else None
        live = [
            message
            for message in self._messages.get(conversation_id, ())
            if message.id not in ids and (newest is None or message.created_at > newest)
        ]
        self._messages[conversation_id] = _sorted_unique(incoming + live)
        self._changed("messages", conversation_id)

    def prepend_messages(self, conversation_id: str, older: Sequence[Message]) -> int:
        """Insert an older chronological page in front of the timeline.

        Only messages strictly older than the current earliest one and not
        already present are inserted. Returns the number inserted.
        """

        existing = self._messages.get(conversation_id, [])
        ids = {message.id for message in existing}
        earliest = existing[0].created_at if existing else None
        accepted = [
            message
            for message in older
            if message.id not in ids and (earliest is None or message.created_at < earliest)
        ]
        accepted = _sorted_unique(accepted)
        if len(accepted) != len(older):
            logger.debug("prepend to %s skipped %d messages", conversation_id, len(older) - len(accepted))
        if not accepted:
            return 0
        self._messages[conversation_id] = accepted + existing
        self._changed("messages", conversation_id)
        return len(accepted)

    def add_message(self, conversation_id: str, message: Message) -> bool:
        """Insert one message at its chronological position; ``False`` if the id is known."""

        timeline = self._messages.setdefault(conversation_id, [])
        if any(existing.id == message.id for existing in timeline):
            return False
        keys = [existing.created_at for existing in timeline]
        timeline.insert(bisect.bisect_right(keys, message.created_at), message)
        self._changed("messages", conversation_id)
        return True

    def _replace_message(self, conversation_id: str, message_id: str, updated: Message) -> bool:
        timeline = self._messages.get(conversation_id)
        if not timeline:
            return False
        for index, existing in enumerate(timeline):
            if existing.id == message_id:
                timeline[index] = updated
                if updated.created_at != existing.created_at:
                    timeline.sort(key=lambda message: message.created_at)
                conversation = self.get_conversation(conversation_id)
                if conversation is not None and conversation.last_message is not None:
                    if conversation.last_message.id == message_id:
                        self.update_conversation(conversation_id, last_message=updated)
                self._changed("messages", conversation_id)
                return True
        return False

    def update_message(self, conversation_id: str, message: Message) -> bool:
        return self._replace_message(conversation_id, message.id, message)

    def mark_message_deleted(self, conversation_id: str, message_id: str) -> bool:
        existing = self.get_message(conversation_id, message_id)
        if existing is None:
            return False
        if existing.is_deleted:
            return True
        deleted = replace(existing, is_deleted=True, content="", images=(), reactions=())
        return self._replace_message(conversation_id, message_id, deleted)

    def mark_messages_read(self, conversation_id: str, read_by: str) -> int:
        """Apply a read receipt: messages not sent by ``read_by`` become read."""

        timeline = self._messages.get(conversation_id)
        if not timeline:
            return 0
        updated = 0
        for index, message in enumerate(timeline):
            if message.sender_id != read_by and not message.is_read:
                timeline[index] = replace(message, is_read=True)
                updated += 1
        if updated:
            self._changed("messages", conversation_id)
        return updated

    def apply_reaction(
        self,
        conversation_id: str,
        message_id: str,
        emoji: str,
        user_id: Optional[str],
        added: bool,
    ) -> bool:
        """Apply one reaction change. Repeating a change for the viewer is a no-op."""

        message = self.get_message(conversation_id, message_id)
        if message is None:
            return False
        is_viewer = user_id is None or user_id == self.viewer_id
        current = message.reaction(emoji)
        if added:
            if is_viewer and current is not None and current.has_reacted:
                return False
            reaction = MessageReaction(
                emoji=emoji,
                count=(current.count if current else 0) + 1,
                has_reacted=is_viewer or (current.has_reacted if current else False),
            )
        else:
            if current is None or (is_viewer and not current.has_reacted):
                return False
            reaction = MessageReaction(
                emoji=emoji,
                count=current.count - 1,
                has_reacted=False if is_viewer else current.has_reacted,
            )
        reactions = [r for r in message.reactions if r.emoji != emoji]
        if reaction.count > 0:
            if current is None:
                reactions.append(reaction)
            else:
                reactions.insert(message.reactions.index(current), reaction)
        return self._replace_message(conversation_id, message_id, replace(message, reactions=tuple(reactions)))

    # Drafts

    def reply_to(self, conversation_id: str) -> Optional[Message]:
        return self._reply_to.get(conversation_id)

    def set_reply_to(self, conversation_id: str, message: Message) -> None:
        self._editing.pop(conversation_id, None)
        self._reply_to[conversation_id] = message
        self._changed("draft", conversation_id)

    def clear_reply_to(self, conversation_id: str) -> None:
        if self._reply_to.pop(conversation_id, None) is not None:
            self._changed("draft", conversation_id)

    def editing_message(self, conversation_id: str) -> Optional[Message]:
        return self._editing.get(conversation_id)

    def set_editing_message(self, conversation_id: str, message: Message) -> None:
        self._reply_to.pop(conversation_id, None)
        self._editing[conversation_id] = message
        self._changed("draft", conversation_id)

    def clear_editing_message(self, conversation_id: str) -> None:
        if self._editing.pop(conversation_id, None) is not None:
            self._changed("draft", conversation_id)

    # Typing and presence

    def typing_in(self, conversation_id: str) -> Tuple[str, ...]:
        return tuple(sorted(self._typing.get(conversation_id, ())))

    def set_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        users = self._typing.setdefault(conversation_id, set())
        if is_typing == (user_id in users):
            return
        if is_typing:
            users.add(user_id)
        else:
            users.discard(user_id)
            if not users:
                self._typing.pop(conversation_id, None)
        self._changed("typing", conversation_id)

    def clear_typing(self) -> None:
        if self._typing:
            self._typing = {}
            self._changed("typing")

    @property
    def online_users(self) -> frozenset:
        return frozenset(self._online)

    def is_user_online(self, user_id: str) -> bool:
        return user_id in self._online

    def set_user_online(self, user_id: str, is_online: bool) -> None:
        if is_online:
            self._online.add(user_id)
        else:
            self._online.discard(user_id)
        self._changed("presence")

    def set_online_users(self, user_ids: Iterable[str], *, scope: Optional[Iterable[str]] = None) -> None:
        """Record a presence query result.

        With ``scope`` only the queried ids are refreshed; other cached
        entries are left alone.
        """

        online = set(user_ids)
        if scope is None:
            self._online = online
        else:
            self._online.difference_update(scope)
            self._online.update(online)
        self.presence_stale = False
        self._changed("presence")

    def mark_presence_stale(self) -> None:
        """Forget cached presence; nobody is assumed online without a channel."""

        self._online = set()
        self.presence_stale = True
        self._changed("presence")

    def set_loading_conversations(self, is_loading: bool) -> None:
        self.is_loading_conversations = is_loading
        self._changed("loading")

    def set_loading_messages(self, is_loading: bool) -> None:
        self.is_loading_messages = is_loading
        self._changed("loading")

    def reset(self) -> None:
        self._init_state()
        self._changed("reset")
