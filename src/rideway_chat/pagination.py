from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from .models import Page
from .store import ChatStore

logger = logging.getLogger(__name__)


class MessagePages(Protocol):
    async def get_messages(self, conversation_id: str, page: int = 1, limit: Optional[int] = None) -> Page: ...


class ScrollAction(enum.Enum):
    NONE = "none"
    JUMP_TO_BOTTOM = "jump_to_bottom"
    SMOOTH_TO_BOTTOM = "smooth_to_bottom"
    PRESERVE = "preserve"


@dataclass(frozen=True)
class Viewport:
    scroll_height: float
    scroll_top: float
    client_height: float

    @property
    def distance_from_bottom(self) -> float:
        return self.scroll_height - self.scroll_top - self.client_height

    def is_near_bottom(self, threshold_px: float) -> bool:
        return self.distance_from_bottom < threshold_px


class PaginationController:
    """Loads a conversation's history page by page into the store.

    Pages arrive newest first and are reversed before merging. The first page
    replaces the timeline; later pages are prepended. Only one page request
    is in flight at a time.
    """

    def __init__(
        self,
        api: MessagePages,
        store: ChatStore,
        conversation_id: str,
        *,
        page_size: int = 50,
        near_bottom_threshold_px: float = 100,
    ) -> None:
        self._api = api
        self._store = store
        self.conversation_id = conversation_id
        self.page_size = page_size
        self.near_bottom_threshold_px = near_bottom_threshold_px
        self.loaded = False
        self.has_next_page = False
        self.is_fetching = False
        self._next_page = 1

    async def load_initial(self) -> ScrollAction:
        if self.is_fetching:
            return ScrollAction.NONE
        page = await self._fetch(1, initial=True)
        self._store.set_messages(self.conversation_id, list(reversed(page.items)))
        self.loaded = True
        if not self._store.messages_for(self.conversation_id):
            return ScrollAction.NONE
        return ScrollAction.JUMP_TO_BOTTOM

    async def load_older(self) -> ScrollAction:
        if not self.loaded or not self.has_next_page or self.is_fetching:
            return ScrollAction.NONE
        page = await self._fetch(self._next_page, initial=False)
        inserted = self._store.prepend_messages(self.conversation_id, list(reversed(page.items)))
        logger.debug("prepended %d messages to %s", inserted, self.conversation_id)
        # The reader scrolled up to get here; keep them where they are.
        return ScrollAction.PRESERVE

    async def on_sentinel_visible(self) -> ScrollAction:
        """The top-of-list sentinel scrolled into view."""

        return await self.load_older()

    def scroll_action_for_new_message(self, viewport: Viewport) -> ScrollAction:
        if viewport.is_near_bottom(self.near_bottom_threshold_px):
            return ScrollAction.SMOOTH_TO_BOTTOM
        return ScrollAction.PRESERVE

    async def _fetch(self, page_number: int, *, initial: bool) -> Page:
        self.is_fetching = True
        if initial:
            self._store.set_loading_messages(True)
        try:
            page = await self._api.get_messages(self.conversation_id, page_number, self.page_size)
        finally:
            self.is_fetching = False
            if initial:
                self._store.set_loading_messages(False)
        self.has_next_page = page.meta.has_next_page
        self._next_page = page.meta.page + 1 if page.meta.has_next_page else page_number
        return page
