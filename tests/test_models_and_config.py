from datetime import datetime, timezone

import pytest

from rideway_chat.config import ClientConfig
from rideway_chat.errors import (
    AckTimeoutError,
    ApiError,
    SessionExpiredError,
    TransportUnavailableError,
    describe_error,
    is_auth_error,
    is_retryable_error,
    is_validation_error,
)
from rideway_chat.models import Conversation, Message, PaginationMeta, parse_timestamp


def test_parse_timestamp_accepts_z_suffix_and_epoch_millis():
    expected = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    assert parse_timestamp("2024-05-01T12:00:00Z") == expected
    assert parse_timestamp("2024-05-01T12:00:00.000Z") == expected
    assert parse_timestamp(1714564800000) == expected


def test_parse_timestamp_rejects_empty_values():
    with pytest.raises(ValueError):
        parse_timestamp("")


def test_message_from_wire_orders_images_and_reads_reply():
    message = Message.from_dict(
        {
            "id": "m1",
            "senderId": "u1",
            "content": "hi",
            "createdAt": "2024-05-01T12:00:00Z",
            "images": [{"id": "b", "url": "https://cdn.test/b", "order": 1}, {"id": "a", "url": "https://cdn.test/a", "order": 0}],
            "replyTo": {"id": "m0", "content": "", "senderId": "u2", "images": [{"id": "x"}]},
            "reactions": [{"emoji": "👍", "count": 2, "hasReacted": True}],
        },
        "c1",
    )

    assert message.conversation_id == "c1"
    assert [image.id for image in message.images] == ["a", "b"]
    assert message.reply_to.has_images
    assert message.reaction("👍").has_reacted
    assert message.edited_at is None


def test_conversation_from_wire():
    conversation = Conversation.from_dict(
        {
            "id": "c1",
            "participant": {"id": "u2", "username": "sam", "fullName": "Sam Doe"},
            "lastMessage": {"id": "m1", "senderId": "u2", "createdAt": "2024-05-01T12:00:00Z"},
            "unreadCount": 3,
            "updatedAt": "2024-05-01T12:00:00Z",
        }
    )

    assert conversation.participant.display_name == "Sam Doe"
    assert conversation.last_message.conversation_id == "c1"
    assert conversation.unread_count == 3


def test_pagination_meta_next_page():
    assert PaginationMeta(page=1, total_pages=2).has_next_page
    assert not PaginationMeta(page=2, total_pages=2).has_next_page
    assert not PaginationMeta.from_dict(None).has_next_page


def test_config_reads_environment_overrides():
    config = ClientConfig.from_env(
        {
            "RIDEWAY_API_URL": "https://api.test/v1/",
            "RIDEWAY_SOCKET_URL": "wss://api.test/ws",
            "RIDEWAY_ACK_TIMEOUT": "3.5",
        }
    )

    assert config.api_endpoint("/chat/unread") == "https://api.test/v1/chat/unread"
    assert config.socket_url == "wss://api.test/ws"
    assert config.ack_timeout_s == 3.5
    assert config.request_timeout_s == 30.0


@pytest.mark.parametrize("raw", ["soon", "0", "-1"])
def test_config_rejects_bad_timeouts(raw):
    with pytest.raises(ValueError):
        ClientConfig.from_env({"RIDEWAY_REQUEST_TIMEOUT": raw})


def test_error_descriptions():
    assert describe_error(ApiError("nope", 403)) == "You do not have permission to perform this action"
    assert describe_error(ApiError("slow", 0, "TIMEOUT")) == "The request timed out. Please try again."
    assert describe_error(ApiError("dup", 409)) == "dup"
    assert describe_error(ApiError("bad", 503)).startswith("The server is temporarily unavailable")
    assert describe_error(
        ApiError("invalid", 400, "VALIDATION_ERROR", [{"message": "Content is too long"}])
    ) == "Content is too long"


def test_error_classification():
    assert is_auth_error(SessionExpiredError())
    assert is_auth_error(ApiError("expired", 401))
    assert is_validation_error(ApiError("bad", 422))
    assert is_retryable_error(AckTimeoutError("chat:sendMessage", 10))
    assert is_retryable_error(TransportUnavailableError("offline"))
    assert not is_retryable_error(ApiError("bad", 400))
