from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Protocol, Sequence, Set

from .store import ChatStore

logger = logging.getLogger(__name__)


class PresenceChannel(Protocol):
    @property
    def connected(self) -> bool: ...

    async def get_online_users(self, user_ids: Sequence[str]) -> Optional[List[str]]: ...


class PresenceController:
    """Pull-based presence: ask the channel which of some users are online."""

    def __init__(self, channel: PresenceChannel, store: ChatStore) -> None:
        self._channel = channel
        self._store = store

    async def query(self, user_ids: Iterable[str]) -> Set[str]:
        ids = list(dict.fromkeys(user_ids))
        if not ids or not self._channel.connected:
            return set()
        answer = await self._channel.get_online_users(ids)
        if answer is None:
            logger.info("presence query for %d users failed, keeping cached presence", len(ids))
            return set()
        online = set(answer) & set(ids)
        if self._channel.connected:
            self._store.set_online_users(online, scope=ids)
        return online

    async def refresh_conversation_peers(self) -> Set[str]:
        return await self.query(conversation.participant.id for conversation in self._store.conversations)

    def on_disconnect(self, _payload: object = None) -> None:
        self._store.mark_presence_stale()

    def on_user_online(self, payload: dict) -> None:
        user_id = payload.get("userId")
        if isinstance(user_id, str):
            self._store.set_user_online(user_id, True)

    def on_user_offline(self, payload: dict) -> None:
        user_id = payload.get("userId")
        if isinstance(user_id, str):
            self._store.set_user_online(user_id, False)
