import asyncio
import unittest

from rideway_chat.errors import ApiError, SessionExpiredError
from rideway_chat.models import TokenPair
from rideway_chat.tokens import TokenAuthority


class FakeBackend:
    """Accepts only ``valid`` tokens; refresh swaps in the next pair after a short delay."""

    def __init__(self, *, fail_refresh: bool = False) -> None:
        self.valid = {"fresh"}
        self.fail_refresh = fail_refresh
        self.refresh_calls = 0
        self.seen_tokens = []

    async def refresh(self, refresh_token):
        self.refresh_calls += 1
        await asyncio.sleep(0.02)
        if self.fail_refresh:
            raise ApiError("refresh token revoked", 401, "INVALID_TOKEN")
        return TokenPair("fresh", "refresh-2")

    async def request(self, token):
        self.seen_tokens.append(token)
        await asyncio.sleep(0)
        if token not in self.valid:
            raise ApiError("token expired", 401, "INVALID_TOKEN")
        return {"ok": token}


class SingleFlightRefreshTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.ended = []
        self.backend = FakeBackend()
        self.authority = TokenAuthority(
            self.backend.refresh,
            TokenPair("stale", "refresh-1"),
            on_session_end=self.ended.append,
        )

    async def test_concurrent_401s_share_one_refresh(self):
        results = await asyncio.gather(
            *(self.authority.authorized_request(self.backend.request) for _ in range(5))
        )

        self.assertEqual(self.backend.refresh_calls, 1)
        self.assertEqual(results, [{"ok": "fresh"}] * 5)
        self.assertEqual(self.authority.access_token, "fresh")
        self.assertFalse(self.authority.is_refreshing)

    async def test_request_issued_before_a_finished_refresh_replays_without_refreshing(self):
        async def slow_request(token):
            await asyncio.sleep(0.05)
            return await self.backend.request(token)

        slow = asyncio.create_task(self.authority.authorized_request(slow_request))
        await asyncio.sleep(0)
        await self.authority.authorized_request(self.backend.request)
        result = await slow

        self.assertEqual(result, {"ok": "fresh"})
        self.assertEqual(self.backend.refresh_calls, 1)

    async def test_refresh_failure_fails_every_waiter_and_ends_session(self):
        self.backend.fail_refresh = True

        results = await asyncio.gather(
            *(self.authority.authorized_request(self.backend.request) for _ in range(3)),
            return_exceptions=True,
        )

        self.assertEqual(self.backend.refresh_calls, 1)
        self.assertTrue(all(isinstance(result, SessionExpiredError) for result in results))
        self.assertEqual(self.ended, ["SessionExpired"])
        self.assertIsNone(self.authority.access_token)

    async def test_requests_after_session_end_do_not_end_it_again(self):
        self.backend.fail_refresh = True

        for _ in range(2):
            with self.assertRaises(SessionExpiredError):
                await self.authority.authorized_request(self.backend.request)

        self.assertEqual(self.ended, ["SessionExpired"])
        self.assertEqual(self.backend.refresh_calls, 1)
        self.assertEqual(self.backend.seen_tokens, ["stale", None])

    async def test_new_tokens_start_a_new_session(self):
        self.backend.fail_refresh = True
        with self.assertRaises(SessionExpiredError):
            await self.authority.authorized_request(self.backend.request)

        self.authority.set_tokens(TokenPair("stale-again", "refresh-3"))
        with self.assertRaises(SessionExpiredError):
            await self.authority.authorized_request(self.backend.request)

        self.assertEqual(self.ended, ["SessionExpired", "SessionExpired"])
        self.assertEqual(self.backend.refresh_calls, 2)

    async def test_missing_refresh_token_ends_session_without_calling_refresh(self):
        self.authority.set_tokens(TokenPair("stale"))

        with self.assertRaises(SessionExpiredError):
            await self.authority.authorized_request(self.backend.request)

        self.assertEqual(self.backend.refresh_calls, 0)
        self.assertEqual(self.ended, ["SessionExpired"])

    async def test_replay_rejected_again_propagates(self):
        self.backend.valid = set()

        with self.assertRaises(ApiError) as ctx:
            await self.authority.authorized_request(self.backend.request)

        self.assertEqual(ctx.exception.status, 401)
        self.assertEqual(self.backend.refresh_calls, 1)
        self.assertEqual(self.backend.seen_tokens, ["stale", "fresh"])

    async def test_non_auth_errors_are_not_retried(self):
        async def broken(token):
            raise ApiError("boom", 500)

        with self.assertRaises(ApiError):
            await self.authority.authorized_request(broken)

        self.assertEqual(self.backend.refresh_calls, 0)

    async def test_listeners_get_the_new_token(self):
        seen = []

        async def listener(token):
            seen.append(token)

        def broken_listener(token):
            raise RuntimeError("listener bug")

        self.authority.add_refresh_listener(broken_listener)
        self.authority.add_refresh_listener(listener)

        await self.authority.refresh()

        self.assertEqual(seen, ["fresh"])


def test_refresh_keeps_old_refresh_token_when_server_omits_it():
    async def refresh(refresh_token):
        return TokenPair("fresh")

    async def scenario():
        authority = TokenAuthority(refresh, TokenPair("stale", "keep-me"))
        await authority.refresh()
        return authority

    authority = asyncio.run(scenario())

    assert authority.access_token == "fresh"
    assert authority._tokens.refresh_token == "keep-me"
