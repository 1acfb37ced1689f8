"""Tests for magpie.integrations.retry — classification, backoff, and token refresh."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from magpie.integrations.gmail import GmailClient, OAuthTokenRefresher
from magpie.integrations.retry import (
    MailProviderError,
    ProviderErrorKind,
    ReconnectRequiredError,
    RetryPolicy,
    classify_error,
    user_message,
)

# --- Helpers ---


def _message_payload(message_id: str = "m1") -> dict:
    return {
        "id": message_id,
        "threadId": "t1",
        "internalDate": "1717408800000",
        "payload": {"mimeType": "text/plain", "headers": [{"name": "Subject", "value": "Hello"}]},
    }


def _policy(**overrides) -> RetryPolicy:
    defaults = dict(sleep=AsyncMock(), jitter=False)
    defaults.update(overrides)
    return RetryPolicy(**defaults)


def _error(status: int, reason: str = "", retry_after: float | None = None) -> MailProviderError:
    return MailProviderError(f"HTTP {status}", status=status, reason=reason, retry_after=retry_after)


class TestClassifyError:
    @pytest.mark.parametrize(
        "status, reason, kind, retryable",
        [
            (400, "", ProviderErrorKind.BAD_REQUEST, False),
            (401, "", ProviderErrorKind.AUTH_EXPIRED, True),
            (401, "invalid_grant: Token has been expired or revoked.", ProviderErrorKind.AUTH_EXPIRED, False),
            (403, "Insufficient Permission", ProviderErrorKind.PERMISSION_DENIED, False),
            (403, "Quota exceeded for quota metric", ProviderErrorKind.RATE_LIMITED, True),
            (403, "User-rate limit exceeded rateLimitExceeded", ProviderErrorKind.RATE_LIMITED, True),
            (404, "", ProviderErrorKind.NOT_FOUND, False),
            (408, "", ProviderErrorKind.TIMEOUT, True),
            (429, "", ProviderErrorKind.RATE_LIMITED, True),
            (500, "", ProviderErrorKind.SERVER_ERROR, True),
            (503, "", ProviderErrorKind.SERVER_ERROR, True),
            (418, "", ProviderErrorKind.UNKNOWN, False),
        ],
    )
    def test_status_mapping(self, status, reason, kind, retryable):
        error = classify_error(_error(status, reason))
        assert error.kind == kind
        assert error.retryable is retryable
        assert error.status == status

    def test_retry_after_carried(self):
        assert classify_error(_error(429, retry_after=7)).retry_after == 7

    def test_timeouts(self):
        assert classify_error(httpx.ReadTimeout("slow")).kind == ProviderErrorKind.TIMEOUT
        assert classify_error(asyncio.TimeoutError()).kind == ProviderErrorKind.TIMEOUT

    def test_network(self):
        assert classify_error(httpx.ConnectError("refused")).kind == ProviderErrorKind.NETWORK
        assert classify_error(ConnectionResetError()).kind == ProviderErrorKind.NETWORK

    def test_unknown(self):
        error = classify_error(RuntimeError("weird"))
        assert error.kind == ProviderErrorKind.UNKNOWN
        assert error.retryable is False

    def test_user_messages(self):
        assert "reconnect" in user_message(classify_error(_error(401, "invalid_grant")))
        assert user_message(classify_error(_error(429))) == "Mail provider rate limit reached. Retrying shortly."


class TestComputeDelay:
    def test_exponential_without_jitter(self):
        policy = _policy()
        assert [policy.compute_delay(i) for i in range(7)] == [1, 2, 4, 8, 16, 30, 30]

    def test_jitter_stays_in_bounds(self):
        for r in (0.0, 0.25, 0.5, 0.999):
            policy = RetryPolicy(random_fn=lambda r=r: r)
            for attempt in range(10):
                delay = policy.compute_delay(attempt)
                assert 0 <= delay <= policy.max_delay
                assert delay >= min(policy.base_delay * 2**attempt, policy.max_delay) * 0.5 - 1e-9

    def test_retry_after_takes_precedence(self):
        policy = _policy()
        assert policy.compute_delay(0, retry_after=5) == 5.0
        assert policy.compute_delay(0, retry_after=120) == 30.0


class TestExecute:
    async def test_success_first_try(self):
        policy = _policy()
        op = AsyncMock(return_value="ok")
        assert await policy.execute(op, "op") == "ok"
        policy.sleep.assert_not_called()

    async def test_retries_then_succeeds(self):
        policy = _policy()
        op = AsyncMock(side_effect=[_error(503), _error(503), "ok"])
        assert await policy.execute(op, "op") == "ok"
        assert op.await_count == 3
        assert [c.args[0] for c in policy.sleep.await_args_list] == [1.0, 2.0]

    async def test_exhausted_raises_last_error(self):
        policy = _policy(max_retries=2)
        op = AsyncMock(side_effect=_error(500))
        with pytest.raises(MailProviderError):
            await policy.execute(op, "op")
        assert op.await_count == 3

    async def test_not_found_not_retried(self):
        policy = _policy()
        op = AsyncMock(side_effect=_error(404))
        with pytest.raises(MailProviderError):
            await policy.execute(op, "op")
        assert op.await_count == 1
        policy.sleep.assert_not_called()

    async def test_auth_expired_without_refresher_requires_reconnect(self):
        op = AsyncMock(side_effect=_error(401))
        with pytest.raises(ReconnectRequiredError):
            await _policy().execute(op, "op")
        assert op.await_count == 1

    async def test_auth_expired_refreshes_before_retry(self):
        refresh = AsyncMock()
        op = AsyncMock(side_effect=[_error(401), "ok"])
        assert await _policy().execute(op, "op", refresh_token=refresh) == "ok"
        refresh.assert_awaited_once()

    async def test_refresh_failure_requires_reconnect(self):
        refresh = AsyncMock(side_effect=_error(400, "invalid_grant"))
        op = AsyncMock(side_effect=_error(401))
        with pytest.raises(ReconnectRequiredError):
            await _policy().execute(op, "op", refresh_token=refresh)
        assert op.await_count == 1

    async def test_error_hook_called_per_attempt(self):
        hook = MagicMock()
        op = AsyncMock(side_effect=[_error(503), "ok"])
        await _policy().execute(op, "list_messages", context={"user_id": "u1"}, on_error=hook)
        hook.assert_called_once()
        name, error, context = hook.call_args.args
        assert name == "list_messages"
        assert error.kind == ProviderErrorKind.SERVER_ERROR
        assert context == {"user_id": "u1", "attempt": 1}

    async def test_error_hook_failure_ignored(self):
        hook = MagicMock(side_effect=RuntimeError("audit disk full"))
        op = AsyncMock(side_effect=[_error(503), "ok"])
        assert await _policy().execute(op, "op", on_error=hook) == "ok"


class TestGmailRetry:
    """End-to-end through GmailClient with a mock HTTP transport."""

    async def test_rate_limit_retry_after_honored(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(429, headers={"retry-after": "5"}, json={"error": {"message": "slow down"}})
            return httpx.Response(200, json=_message_payload())

        sleep = AsyncMock()
        async with GmailClient(
            "token",
            retry_policy=RetryPolicy(sleep=sleep),
            transport=httpx.MockTransport(handler),
        ) as gmail:
            message = await gmail.get_message("m1")

        assert message.id == "m1"
        assert len(calls) == 2
        sleep.assert_awaited_once_with(5.0)

    async def test_expired_token_refreshed(self):
        seen_tokens = []

        def api(request: httpx.Request) -> httpx.Response:
            seen_tokens.append(request.headers["authorization"])
            if request.headers["authorization"] == "Bearer old":
                return httpx.Response(401, json={"error": {"code": 401, "message": "Invalid Credentials"}})
            return httpx.Response(200, json=_message_payload())

        def token_endpoint(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"access_token": "new", "expires_in": 3599})

        async with OAuthTokenRefresher(
            "cid", "secret", "refresh", transport=httpx.MockTransport(token_endpoint)
        ) as refresher, GmailClient(
            "old",
            token_refresher=refresher,
            retry_policy=_policy(),
            transport=httpx.MockTransport(api),
        ) as gmail:
            message = await gmail.get_message("m1")

        assert message.subject == "Hello"
        assert seen_tokens == ["Bearer old", "Bearer new"]

    async def test_revoked_refresh_token_requires_reconnect(self):
        def api(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"code": 401, "message": "Invalid Credentials"}})

        def token_endpoint(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "Token has been expired or revoked."}
            )

        hook = MagicMock()
        async with OAuthTokenRefresher(
            "cid", "secret", "refresh", transport=httpx.MockTransport(token_endpoint)
        ) as refresher, GmailClient(
            "old",
            token_refresher=refresher,
            retry_policy=_policy(),
            on_error=hook,
            transport=httpx.MockTransport(api),
        ) as gmail:
            with pytest.raises(ReconnectRequiredError):
                await gmail.get_message("m1")

        hook.assert_called()
        assert hook.call_args_list[0].args[0] == "get_message"
        assert hook.call_args_list[0].args[2]["message_id"] == "m1"
