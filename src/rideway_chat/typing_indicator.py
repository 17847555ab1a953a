from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)

IDLE = "idle"
TYPING = "typing"


class TypingChannel(Protocol):
    async def start_typing(self, conversation_id: str) -> bool: ...

    async def stop_typing(self, conversation_id: str) -> bool: ...


class TypingController:
    """Debounced typing signal for one conversation.

    The first keystroke emits ``chat:typing``; each keystroke restarts the
    inactivity timer, and its expiry emits ``chat:stopTyping``. Keystrokes are
    ignored while an edit draft is active.
    """

    def __init__(
        self,
        channel: TypingChannel,
        conversation_id: str,
        *,
        timeout_s: float = 2.0,
        is_editing: Optional[Callable[[], bool]] = None,
    ) -> None:
        self._channel = channel
        self.conversation_id = conversation_id
        self.timeout_s = timeout_s
        self._is_editing = is_editing or (lambda: False)
        self.state = IDLE
        self._timer: Optional[asyncio.Task] = None
        self._closed = False

    async def keystroke(self) -> None:
        if self._closed or self._is_editing():
            return
        if self.state == IDLE:
            self.state = TYPING
            await self._channel.start_typing(self.conversation_id)
        self._restart_timer()

    async def stop(self) -> None:
        """Go idle now, emitting the stop signal only if we were typing."""

        self._cancel_timer()
        if self.state == TYPING:
            self.state = IDLE
            await self._channel.stop_typing(self.conversation_id)

    async def leave(self) -> None:
        """Conversation closed: stop the timer and always tell peers we stopped."""

        self._cancel_timer()
        self._closed = True
        self.state = IDLE
        await self._channel.stop_typing(self.conversation_id)

    def _restart_timer(self) -> None:
        self._cancel_timer()
        self._timer = asyncio.create_task(self._expire())

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _expire(self) -> None:
        await asyncio.sleep(self.timeout_s)
        self._timer = None
        if self.state == TYPING:
            self.state = IDLE
            logger.debug("typing timeout in %s", self.conversation_id)
            await self._channel.stop_typing(self.conversation_id)
