"""REST collaborators for the chat subsystem (aiohttp)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from .config import ClientConfig
from .errors import ApiError, UploadError
from .models import Conversation, LocalImage, Message, Page, PaginationMeta, TokenPair
from .tokens import SessionEndCallback, TokenAuthority

logger = logging.getLogger(__name__)

REFRESH_PATH = "/auth/refresh"


def _auth_headers(token: Optional[str]) -> Dict[str, str]:
    if not token:
        return {}
    return {"Authorization": f"Bearer {token}"}


async def _error_from_response(response: aiohttp.ClientResponse) -> ApiError:
    try:
        payload = await response.json(content_type=None)
    except (aiohttp.ContentTypeError, ValueError):
        payload = None
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return ApiError(
            str(error.get("message") or response.reason or "request failed"),
            response.status,
            error.get("code"),
            error.get("details"),
        )
    return ApiError(response.reason or "request failed", response.status)


class ChatApi:
    """Thin client over the chat REST endpoints.

    Every call except the token refresh goes through ``self.authority`` so a
    401 triggers the shared single-flight refresh.
    """

    def __init__(
        self,
        config: ClientConfig,
        tokens: Optional[TokenPair] = None,
        *,
        on_session_end: Optional[SessionEndCallback] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config
        self.authority = TokenAuthority(self.refresh_tokens, tokens, on_session_end=on_session_end)
        self._session = session
        self._owns_session = session is None

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        data: Optional[aiohttp.FormData] = None,
        timeout_s: Optional[float] = None,
    ) -> Dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=timeout_s or self.config.request_timeout_s)
        url = self.config.api_endpoint(path)
        try:
            async with self._http().request(
                method,
                url,
                params=params,
                json=json,
                data=data,
                headers=_auth_headers(token),
                timeout=timeout,
            ) as response:
                if response.status >= 400:
                    raise await _error_from_response(response)
                if response.status == 204:
                    return {}
                payload = await response.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise ApiError("request timed out", 0, "TIMEOUT") from exc
        except aiohttp.ClientError as exc:
            raise ApiError(str(exc) or "network error", 0, "NETWORK_ERROR") from exc
        return payload if isinstance(payload, dict) else {"data": payload}

    async def _authorized(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        async def call(token: Optional[str]) -> Dict[str, Any]:
            return await self._request(method, path, token=token, **kwargs)

        return await self.authority.authorized_request(call)

    async def refresh_tokens(self, refresh_token: str) -> TokenPair:
        payload = await self._request("POST", REFRESH_PATH, json={"refreshToken": refresh_token})
        data = payload.get("data") or {}
        tokens = data.get("tokens", data) if isinstance(data, dict) else {}
        access = tokens.get("accessToken")
        if not isinstance(access, str) or not access:
            raise ApiError("refresh response missing accessToken", 500, "INVALID_RESPONSE")
        return TokenPair(access, tokens.get("refreshToken"))

    async def get_conversations(self, page: int = 1, limit: Optional[int] = None) -> Page:
        payload = await self._authorized(
            "GET",
            "/chat/conversations",
            params={"page": page, "limit": limit or self.config.conversations_page_size},
        )
        items = tuple(Conversation.from_dict(item) for item in payload.get("data") or [])
        return Page(items, PaginationMeta.from_dict(payload.get("meta")))

    async def get_or_create_conversation(self, participant_id: str) -> Conversation:
        payload = await self._authorized("POST", "/chat/conversations", json={"participantId": participant_id})
        return Conversation.from_dict(payload["data"])

    async def get_unread_count(self) -> int:
        payload = await self._authorized("GET", "/chat/unread")
        return int((payload.get("data") or {}).get("count", 0))

    async def get_messages(self, conversation_id: str, page: int = 1, limit: Optional[int] = None) -> Page:
        """Fetch one page of history; items are newest first, as the server returns them."""

        payload = await self._authorized(
            "GET",
            f"/chat/conversations/{conversation_id}/messages",
            params={"page": page, "limit": limit or self.config.page_size},
        )
        items = tuple(Message.from_dict(item, conversation_id) for item in payload.get("data") or [])
        return Page(items, PaginationMeta.from_dict(payload.get("meta")))

    async def send_message(self, conversation_id: str, content: str) -> Message:
        payload = await self._authorized(
            "POST",
            f"/chat/conversations/{conversation_id}/messages",
            json={"content": content},
        )
        return Message.from_dict(payload["data"], conversation_id)

    async def mark_as_read(self, conversation_id: str) -> None:
        await self._authorized("POST", f"/chat/conversations/{conversation_id}/read")

    async def upload_chat_images(self, files: Sequence[LocalImage]) -> List[str]:
        if not files:
            return []

        async def upload(token: Optional[str]) -> Dict[str, Any]:
            # FormData is single-use, so a replay after refresh builds a new one.
            form = aiohttp.FormData()
            for image in files:
                form.add_field("images", image.data, filename=image.filename, content_type=image.content_type)
            return await self._request(
                "POST",
                "/chat/upload",
                token=token,
                data=form,
                timeout_s=self.config.upload_timeout_s,
            )

        try:
            payload = await self.authority.authorized_request(upload)
        except ApiError as exc:
            if exc.status == 401:
                raise
            raise UploadError(exc.message) from exc
        data = payload.get("data") or {}
        raw = data.get("urls") if isinstance(data, dict) else data
        urls = [item["url"] if isinstance(item, dict) else item for item in raw or []]
        if len(urls) != len(files) or not all(isinstance(url, str) and url for url in urls):
            raise UploadError("upload response did not include a URL for every image")
        logger.debug("uploaded %d chat images", len(urls))
        return urls
