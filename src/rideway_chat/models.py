"""Immutable chat entities and their JSON (camelCase) converters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed) into an aware datetime."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _optional_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return parse_timestamp(value)


@dataclass(frozen=True)
class UserCard:
    id: str
    username: str = ""
    display_name: str = ""
    avatar_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UserCard":
        return cls(
            id=str(data["id"]),
            username=str(data.get("username") or ""),
            display_name=str(data.get("displayName") or data.get("fullName") or ""),
            avatar_url=data.get("avatarUrl") or data.get("avatar"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "displayName": self.display_name,
            "avatarUrl": self.avatar_url,
        }


@dataclass(frozen=True)
class MessageImage:
    id: str
    url: str
    order: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MessageImage":
        return cls(id=str(data["id"]), url=str(data["url"]), order=int(data.get("order", 0)))

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "url": self.url, "order": self.order}


@dataclass(frozen=True)
class LocalImage:
    """A file picked by the user that has not been uploaded yet."""

    filename: str
    data: bytes
    content_type: str = "image/jpeg"


@dataclass(frozen=True)
class MessageReaction:
    emoji: str
    count: int
    has_reacted: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MessageReaction":
        return cls(
            emoji=str(data["emoji"]),
            count=max(int(data.get("count", 0)), 0),
            has_reacted=bool(data.get("hasReacted", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"emoji": self.emoji, "count": self.count, "hasReacted": self.has_reacted}


@dataclass(frozen=True)
class ReplyPreview:
    """Denormalized snapshot of the message being replied to."""

    id: str
    content: str
    sender_id: str
    has_images: bool = False
    is_deleted: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ReplyPreview":
        images = data.get("images") or []
        return cls(
            id=str(data["id"]),
            content=str(data.get("content") or ""),
            sender_id=str(data.get("senderId") or ""),
            has_images=bool(data.get("hasImages", bool(images))),
            is_deleted=bool(data.get("isDeleted", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "senderId": self.sender_id,
            "hasImages": self.has_images,
            "isDeleted": self.is_deleted,
        }


@dataclass(frozen=True)
class Message:
    id: str
    conversation_id: str
    sender_id: str
    created_at: datetime
    content: str = ""
    images: Tuple[MessageImage, ...] = ()
    reply_to: Optional[ReplyPreview] = None
    reactions: Tuple[MessageReaction, ...] = ()
    is_read: bool = False
    is_deleted: bool = False
    edited_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], conversation_id: Optional[str] = None) -> "Message":
        images = sorted(
            (MessageImage.from_dict(item) for item in data.get("images") or []),
            key=lambda image: image.order,
        )
        reply = data.get("replyTo")
        return cls(
            id=str(data["id"]),
            conversation_id=str(data.get("conversationId") or conversation_id or ""),
            sender_id=str(data.get("senderId") or ""),
            created_at=parse_timestamp(data["createdAt"]),
            content=str(data.get("content") or ""),
            images=tuple(images),
            reply_to=ReplyPreview.from_dict(reply) if isinstance(reply, Mapping) else None,
            reactions=tuple(MessageReaction.from_dict(item) for item in data.get("reactions") or []),
            is_read=bool(data.get("isRead", False)),
            is_deleted=bool(data.get("isDeleted", False)),
            edited_at=_optional_timestamp(data.get("editedAt")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "senderId": self.sender_id,
            "content": self.content,
            "images": [image.to_dict() for image in self.images],
            "replyTo": self.reply_to.to_dict() if self.reply_to else None,
            "reactions": [reaction.to_dict() for reaction in self.reactions],
            "isRead": self.is_read,
            "isDeleted": self.is_deleted,
            "editedAt": format_timestamp(self.edited_at) if self.edited_at else None,
            "createdAt": format_timestamp(self.created_at),
        }

    def reaction(self, emoji: str) -> Optional[MessageReaction]:
        for reaction in self.reactions:
            if reaction.emoji == emoji:
                return reaction
        return None

    def reply_preview(self) -> ReplyPreview:
        return ReplyPreview(
            id=self.id,
            content=self.content,
            sender_id=self.sender_id,
            has_images=bool(self.images),
            is_deleted=self.is_deleted,
        )


@dataclass(frozen=True)
class Conversation:
    id: str
    participant: UserCard
    updated_at: datetime
    last_message: Optional[Message] = None
    unread_count: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Conversation":
        last = data.get("lastMessage")
        conv_id = str(data["id"])
        return cls(
            id=conv_id,
            participant=UserCard.from_dict(data["participant"]),
            updated_at=parse_timestamp(data["updatedAt"]),
            last_message=Message.from_dict(last, conv_id) if isinstance(last, Mapping) else None,
            unread_count=max(int(data.get("unreadCount", 0)), 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "participant": self.participant.to_dict(),
            "lastMessage": self.last_message.to_dict() if self.last_message else None,
            "unreadCount": self.unread_count,
            "updatedAt": format_timestamp(self.updated_at),
        }


@dataclass(frozen=True)
class PaginationMeta:
    page: int = 1
    limit: int = 0
    total: int = 0
    total_pages: int = 1

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "PaginationMeta":
        if not data:
            return cls()
        return cls(
            page=int(data.get("page", 1)),
            limit=int(data.get("limit", 0)),
            total=int(data.get("total", 0)),
            total_pages=int(data.get("totalPages", 1)),
        )

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages


@dataclass(frozen=True)
class Page:
    """One REST page. ``items`` keep the server order (newest first for messages)."""

    items: Tuple[Any, ...]
    meta: PaginationMeta = field(default_factory=PaginationMeta)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: Optional[str] = None
