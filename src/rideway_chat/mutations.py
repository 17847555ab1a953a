"""Send/edit/delete/react flows.

State changes are applied only after the server acknowledged them; nothing
is inserted optimistically before the ack, and a failed flow leaves the
store exactly as it was.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence, Union

from .connection import (
    ADD_REACTION,
    DELETE_MESSAGE,
    EDIT_MESSAGE,
    REMOVE_REACTION,
    SEND_MESSAGE,
    AckResult,
)
from .errors import ApiError, ChatError, SessionExpiredError, UploadError, describe_error
from .models import LocalImage, Message
from .store import ChatStore
from .typing_indicator import TypingController

logger = logging.getLogger(__name__)

Confirm = Callable[[], Union[bool, Awaitable[bool]]]


class ImageProcessor(Protocol):
    async def prepare(self, image: LocalImage) -> LocalImage: ...


class Notifier(Protocol):
    def error(self, message: str) -> None: ...


class ChatRest(Protocol):
    async def upload_chat_images(self, files: Sequence[LocalImage]) -> List[str]: ...

    async def mark_as_read(self, conversation_id: str) -> None: ...


class MutationChannel(Protocol):
    async def send_message(
        self,
        conversation_id: str,
        content: str,
        *,
        reply_to_id: Optional[str] = None,
        image_urls: Sequence[str] = (),
    ) -> AckResult: ...

    async def edit_message(
        self,
        conversation_id: str,
        message_id: str,
        content: str,
        *,
        removed_image_ids: Sequence[str] = (),
        new_image_urls: Sequence[str] = (),
    ) -> AckResult: ...

    async def delete_message(self, conversation_id: str, message_id: str) -> AckResult: ...

    async def add_reaction(self, conversation_id: str, message_id: str, emoji: str) -> AckResult: ...

    async def remove_reaction(self, conversation_id: str, message_id: str, emoji: str) -> AckResult: ...

    async def mark_read(self, conversation_id: str) -> bool: ...


class PassthroughImageProcessor:
    async def prepare(self, image: LocalImage) -> LocalImage:
        return image


class LoggingNotifier:
    def error(self, message: str) -> None:
        logger.warning("chat error: %s", message)


@dataclass(frozen=True)
class MutationResult:
    ok: bool
    message: Optional[Message] = None
    error: Optional[str] = None
    cancelled: bool = False


class MutationPipeline:
    def __init__(
        self,
        channel: MutationChannel,
        rest: ChatRest,
        store: ChatStore,
        *,
        image_processor: Optional[ImageProcessor] = None,
        notifier: Optional[Notifier] = None,
        ack_timeout_s: float = 10.0,
    ) -> None:
        self._channel = channel
        self._rest = rest
        self._store = store
        self._images = image_processor or PassthroughImageProcessor()
        self._notifier = notifier or LoggingNotifier()
        self._ack_timeout_s = ack_timeout_s

    def _failed(self, error: ChatError) -> MutationResult:
        message = describe_error(error)
        logger.info("chat mutation failed: %s", error)
        self._notifier.error(message)
        return MutationResult(False, error=message)

    async def _upload(self, files: Sequence[LocalImage]) -> List[str]:
        if not files:
            return []
        prepared = []
        for image in files:
            try:
                prepared.append(await self._images.prepare(image))
            except ValueError as exc:
                raise UploadError(f"{image.filename}: {exc}") from exc
        return await self._rest.upload_chat_images(prepared)

    async def send(
        self,
        conversation_id: str,
        content: str,
        files: Sequence[LocalImage] = (),
        *,
        reply_to: Optional[Message] = None,
        typing: Optional[TypingController] = None,
    ) -> MutationResult:
        text = content.strip()
        if not text and not files:
            return MutationResult(False, cancelled=True)
        reply = reply_to if reply_to is not None else self._store.reply_to(conversation_id)
        try:
            urls = await self._upload(files)
            if typing is not None:
                await typing.stop()
            ack = await self._channel.send_message(
                conversation_id,
                text,
                reply_to_id=reply.id if reply else None,
                image_urls=urls,
            )
            ack.raise_for_status(SEND_MESSAGE, self._ack_timeout_s)
            message = ack.message(conversation_id)
            if message is None:
                raise ChatError("send acknowledgement did not include the message")
        except SessionExpiredError:
            raise
        except ChatError as exc:
            return self._failed(exc)

        # A push for the same message may already have landed; add_message dedupes.
        self._store.add_message(conversation_id, message)
        self._store.update_conversation(conversation_id, last_message=message, updated_at=message.created_at)
        self._store.clear_reply_to(conversation_id)
        return MutationResult(True, message)

    async def edit(
        self,
        conversation_id: str,
        message: Message,
        new_content: str,
        *,
        removed_image_ids: Sequence[str] = (),
        new_files: Sequence[LocalImage] = (),
    ) -> MutationResult:
        text = new_content.strip()
        current_ids = {image.id for image in message.images}
        removed = [image_id for image_id in dict.fromkeys(removed_image_ids) if image_id in current_ids]
        if text == message.content.strip() and not removed and not new_files:
            self._store.clear_editing_message(conversation_id)
            return MutationResult(True, message, cancelled=True)
        if not text and len(current_ids) - len(removed) + len(new_files) == 0:
            self._notifier.error("A message needs text or at least one image")
            return MutationResult(False, error="empty message")
        try:
            urls = await self._upload(new_files)
            ack = await self._channel.edit_message(
                conversation_id,
                message.id,
                text,
                removed_image_ids=removed,
                new_image_urls=urls,
            )
            ack.raise_for_status(EDIT_MESSAGE, self._ack_timeout_s)
        except SessionExpiredError:
            raise
        except ChatError as exc:
            # the edit draft stays so the user can retry
            return self._failed(exc)

        updated = ack.message(conversation_id)
        if updated is not None:
            self._store.update_message(conversation_id, updated)
        self._store.clear_editing_message(conversation_id)
        return MutationResult(True, updated or message)

    async def delete(self, conversation_id: str, message_id: str, confirm: Confirm) -> MutationResult:
        decision = confirm()
        if inspect.isawaitable(decision):
            decision = await decision
        if not decision:
            return MutationResult(False, cancelled=True)
        try:
            ack = await self._channel.delete_message(conversation_id, message_id)
            ack.raise_for_status(DELETE_MESSAGE, self._ack_timeout_s)
        except SessionExpiredError:
            raise
        except ChatError as exc:
            return self._failed(exc)
        self._store.mark_message_deleted(conversation_id, message_id)
        return MutationResult(True, self._store.get_message(conversation_id, message_id))

    async def toggle_reaction(self, conversation_id: str, message_id: str, emoji: str) -> MutationResult:
        message = self._store.get_message(conversation_id, message_id)
        if message is None:
            return MutationResult(False, error="message not found")
        current = message.reaction(emoji)
        reacted = current is not None and current.has_reacted
        try:
            if reacted:
                ack = await self._channel.remove_reaction(conversation_id, message_id, emoji)
                ack.raise_for_status(REMOVE_REACTION, self._ack_timeout_s)
            else:
                ack = await self._channel.add_reaction(conversation_id, message_id, emoji)
                ack.raise_for_status(ADD_REACTION, self._ack_timeout_s)
        except SessionExpiredError:
            raise
        except ChatError as exc:
            return self._failed(exc)
        self._store.apply_reaction(conversation_id, message_id, emoji, self._store.viewer_id, added=not reacted)
        return MutationResult(True, self._store.get_message(conversation_id, message_id))

    async def mark_read(self, conversation_id: str) -> bool:
        """Clear the unread count locally, over REST and with a live read receipt."""

        conversation = self._store.get_conversation(conversation_id)
        if conversation is None or conversation.unread_count == 0:
            return False
        self._store.mark_conversation_as_read(conversation_id)
        try:
            await self._rest.mark_as_read(conversation_id)
        except ApiError as exc:
            logger.warning("mark-as-read request for %s failed: %s", conversation_id, exc)
        await self._channel.mark_read(conversation_id)
        return True
