"""Single-flight access-token refresh shared by REST calls and the event channel."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, TypeVar

from .errors import SESSION_EXPIRED_REASON, ApiError, SessionExpiredError
from .models import TokenPair

logger = logging.getLogger(__name__)

T = TypeVar("T")

RefreshFunc = Callable[[str], Awaitable[TokenPair]]
SessionEndCallback = Callable[[str], None]
RefreshListener = Callable[[str], object]


@dataclass
class RefreshState:
    """Exists only while one refresh call is in flight."""

    waiters: List["asyncio.Future[str]"] = field(default_factory=list)


class TokenAuthority:
    """Executes authorized requests and collapses concurrent 401s into one refresh.

    The first caller that observes a 401 performs the refresh; callers that
    observe a 401 while it is running wait for its outcome and replay with the
    new token. A failed refresh clears the tokens, fails every waiter with
    :class:`SessionExpiredError` and reports the reason to ``on_session_end``.
    """

    def __init__(
        self,
        refresh_func: RefreshFunc,
        tokens: Optional[TokenPair] = None,
        *,
        on_session_end: Optional[SessionEndCallback] = None,
    ) -> None:
        self._refresh_func = refresh_func
        self._tokens = tokens
        self._on_session_end = on_session_end
        self._state: Optional[RefreshState] = None
        self._ended = False
        self._listeners: List[RefreshListener] = []

    @property
    def access_token(self) -> Optional[str]:
        return self._tokens.access_token if self._tokens else None

    @property
    def is_refreshing(self) -> bool:
        return self._state is not None

    def set_tokens(self, tokens: TokenPair) -> None:
        self._tokens = tokens
        self._ended = False

    def clear_tokens(self) -> None:
        self._tokens = None

    def add_refresh_listener(self, listener: RefreshListener) -> None:
        """Register ``listener(new_access_token)``; may return an awaitable."""

        self._listeners.append(listener)

    async def authorized_request(self, fn: Callable[[Optional[str]], Awaitable[T]]) -> T:
        token = self.access_token
        try:
            return await fn(token)
        except ApiError as exc:
            if exc.status != 401:
                raise
            logger.debug("request rejected with 401, refreshing access token")
        new_token = await self._token_after_401(token)
        # A replay that is rejected again propagates; only one refresh per request.
        return await fn(new_token)

    async def _token_after_401(self, stale_token: Optional[str]) -> str:
        if self._ended:
            # The session already ended; only set_tokens() starts a new one.
            raise SessionExpiredError(SESSION_EXPIRED_REASON)
        current = self.access_token
        if self._state is None and current != stale_token and current is not None:
            # Another caller refreshed after this request was issued.
            return current
        return await self.refresh()

    async def refresh(self) -> str:
        """Refresh the access token, joining an in-flight refresh if there is one."""

        if self._state is not None:
            waiter: asyncio.Future[str] = asyncio.get_running_loop().create_future()
            self._state.waiters.append(waiter)
            return await waiter

        state = self._state = RefreshState()
        try:
            tokens = await self._perform_refresh()
        except asyncio.CancelledError:
            self._state = None
            for waiter in state.waiters:
                waiter.cancel()
            raise
        except SessionExpiredError as exc:
            self._state = None
            for waiter in state.waiters:
                if not waiter.done():
                    waiter.set_exception(SessionExpiredError(exc.reason))
            self._end_session(exc.reason)
            raise

        self._tokens = tokens
        self._state = None
        for waiter in state.waiters:
            if not waiter.done():
                waiter.set_result(tokens.access_token)
        await self._notify_listeners(tokens.access_token)
        return tokens.access_token

    async def _perform_refresh(self) -> TokenPair:
        refresh_token = self._tokens.refresh_token if self._tokens else None
        if not refresh_token:
            logger.warning("cannot refresh access token: no refresh token")
            raise SessionExpiredError(SESSION_EXPIRED_REASON)
        try:
            tokens = await self._refresh_func(refresh_token)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("access token refresh failed: %s", exc)
            raise SessionExpiredError(SESSION_EXPIRED_REASON) from exc
        if tokens.refresh_token is None:
            tokens = TokenPair(tokens.access_token, refresh_token)
        logger.info("access token refreshed")
        return tokens

    def _end_session(self, reason: str) -> None:
        self._tokens = None
        if self._ended:
            return
        self._ended = True
        if self._on_session_end is not None:
            self._on_session_end(reason)

    async def _notify_listeners(self, access_token: str) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(access_token)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("token refresh listener failed")
