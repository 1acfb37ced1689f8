"""Centralized retry/backoff policy for mail provider calls.

Every outbound mail provider call goes through ``RetryPolicy.execute``.
Errors are classified once (``classify_error``) and the classification
drives everything else: whether to retry, how long to wait, whether to
refresh the OAuth token first, and what to tell the user.

Delays follow a capped exponential curve with multiplicative jitter
(uniform 50-100% of the computed delay). A provider ``retry-after`` value
takes precedence over the computed backoff.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MailProviderError(Exception):
    """A failed mail provider HTTP call.

    Attributes:
        status: HTTP status code, if the provider answered at all.
        retry_after: Provider-supplied ``retry-after`` in seconds.
        reason: Provider error message from the response body.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        retry_after: float | None = None,
        reason: str = "",
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after
        self.reason = reason


class ReconnectRequiredError(Exception):
    """Authentication cannot be recovered automatically; the user must reconnect."""


class ProviderErrorKind(StrEnum):
    AUTH_EXPIRED = "auth_expired"
    PERMISSION_DENIED = "permission_denied"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    NETWORK = "network"
    NOT_FOUND = "not_found"
    BAD_REQUEST = "bad_request"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({
    ProviderErrorKind.AUTH_EXPIRED,
    ProviderErrorKind.RATE_LIMITED,
    ProviderErrorKind.SERVER_ERROR,
    ProviderErrorKind.TIMEOUT,
    ProviderErrorKind.NETWORK,
})

USER_MESSAGES = {
    ProviderErrorKind.AUTH_EXPIRED: "Mailbox connection expired. Re-authentication required.",
    ProviderErrorKind.PERMISSION_DENIED: "Mailbox permissions are insufficient. Check the account's granted access.",
    ProviderErrorKind.RATE_LIMITED: "Mail provider rate limit reached. Retrying shortly.",
    ProviderErrorKind.SERVER_ERROR: "Mail provider is temporarily unavailable, retrying.",
    ProviderErrorKind.TIMEOUT: "Mail provider did not respond in time, retrying.",
    ProviderErrorKind.NETWORK: "Could not reach the mail provider, retrying.",
    ProviderErrorKind.NOT_FOUND: "The requested message no longer exists.",
    ProviderErrorKind.BAD_REQUEST: "The mail provider rejected the request.",
    ProviderErrorKind.UNKNOWN: "Mail integration encountered an error. Please try again.",
}


class ProviderError(BaseModel):
    """Classification of one provider failure."""

    kind: ProviderErrorKind
    status: int | None = None
    message: str
    retryable: bool
    retry_after: float | None = None


def _error(kind: ProviderErrorKind, message: str, **kwargs: Any) -> ProviderError:
    return ProviderError(kind=kind, message=message, retryable=kind in RETRYABLE_KINDS, **kwargs)


def classify_error(exc: BaseException) -> ProviderError:
    """Map any exception raised by a provider call to a ProviderError."""
    if isinstance(exc, ReconnectRequiredError):
        return ProviderError(
            kind=ProviderErrorKind.AUTH_EXPIRED, message=str(exc), retryable=False
        )

    if isinstance(exc, MailProviderError) and exc.status is not None:
        status = exc.status
        reason = (exc.reason or str(exc)).lower()
        if status == 400:
            return _error(ProviderErrorKind.BAD_REQUEST, exc.reason or "Invalid request parameters", status=400)
        if status == 401:
            if "invalid_grant" in reason:
                return ProviderError(
                    kind=ProviderErrorKind.AUTH_EXPIRED,
                    status=401,
                    message="Refresh token rejected",
                    retryable=False,
                )
            return _error(ProviderErrorKind.AUTH_EXPIRED, "Authentication failed - token may be expired", status=401)
        if status == 403:
            if "quota" in reason or "rate" in reason:
                return _error(
                    ProviderErrorKind.RATE_LIMITED, "Rate limit exceeded", status=403, retry_after=exc.retry_after
                )
            return _error(ProviderErrorKind.PERMISSION_DENIED, "Insufficient permissions", status=403)
        if status == 404:
            return _error(ProviderErrorKind.NOT_FOUND, "Resource not found", status=404)
        if status == 408:
            return _error(ProviderErrorKind.TIMEOUT, "Request timeout", status=408)
        if status == 429:
            return _error(
                ProviderErrorKind.RATE_LIMITED, "Rate limit exceeded", status=429, retry_after=exc.retry_after
            )
        if status >= 500:
            return _error(
                ProviderErrorKind.SERVER_ERROR, "Mail provider server error", status=status, retry_after=exc.retry_after
            )
        return _error(ProviderErrorKind.UNKNOWN, exc.reason or f"HTTP {status} error", status=status)

    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return _error(ProviderErrorKind.TIMEOUT, "Request timeout")
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return _error(ProviderErrorKind.NETWORK, "Network connectivity issue")

    message = str(exc) or type(exc).__name__
    if "invalid_grant" in message:
        return ProviderError(
            kind=ProviderErrorKind.AUTH_EXPIRED, message="Token refresh failed", retryable=False
        )
    return _error(ProviderErrorKind.UNKNOWN, message)


def user_message(error: ProviderError) -> str:
    """Provider-agnostic text suitable for showing to the mailbox owner."""
    if error.kind == ProviderErrorKind.AUTH_EXPIRED and not error.retryable:
        return "Mailbox connection lost. Please reconnect your account."
    return USER_MESSAGES[error.kind]


ErrorHook = Callable[[str, ProviderError, dict[str, Any]], None]


@dataclass
class RetryPolicy:
    """Retry/backoff policy shared by every mail provider call.

    ``sleep`` and ``random_fn`` are injectable so tests can observe delays
    without waiting for them.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    random_fn: Callable[[], float] = field(default=random.random)

    def compute_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait before retry number ``attempt + 1`` (attempt is 0-based).

        Always within [0, max_delay].
        """
        if retry_after is not None and retry_after > 0:
            return min(retry_after, self.max_delay)

        delay = self.base_delay * self.backoff_multiplier ** attempt
        if self.jitter:
            delay *= 0.5 + self.random_fn() * 0.5
        return max(0.0, min(delay, self.max_delay))

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
        *,
        context: dict[str, Any] | None = None,
        refresh_token: Callable[[], Awaitable[None]] | None = None,
        on_error: ErrorHook | None = None,
    ) -> T:
        """Run *operation* with classification-driven retries.

        Args:
            operation: Zero-argument coroutine factory for the provider call.
            name: Operation name for logs and audit entries.
            context: Extra fields for logs and audit entries (user id, message id).
            refresh_token: Called before the next attempt after an auth-expired
                failure. Without it, auth-expired is not retried.
            on_error: Called for every failed attempt. Its own failures are
                logged and ignored.

        Returns:
            The operation's result.

        Raises:
            ReconnectRequiredError: Authentication could not be recovered.
            Exception: The last error, once it is non-retryable or attempts
                are exhausted.
        """
        context = dict(context or {})
        needs_refresh = False

        def _retryable(exc: BaseException) -> bool:
            error = classify_error(exc)
            if error.kind == ProviderErrorKind.AUTH_EXPIRED:
                return error.retryable and refresh_token is not None
            return error.retryable

        def _wait(retry_state: RetryCallState) -> float:
            error = classify_error(retry_state.outcome.exception())
            return self.compute_delay(retry_state.attempt_number - 1, error.retry_after)

        def _before_sleep(retry_state: RetryCallState) -> None:
            nonlocal needs_refresh
            error = classify_error(retry_state.outcome.exception())
            if error.kind == ProviderErrorKind.AUTH_EXPIRED:
                needs_refresh = True
            logger.info(
                "Retrying %s in %.2fs (attempt %d/%d, %s)",
                name,
                retry_state.next_action.sleep if retry_state.next_action else 0.0,
                retry_state.attempt_number,
                self.max_retries,
                error.kind.value,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=_wait,
            retry=retry_if_exception(_retryable),
            before_sleep=_before_sleep,
            sleep=self.sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    if needs_refresh:
                        needs_refresh = False
                        await self._refresh(refresh_token, name)
                    try:
                        result = await operation()
                    except Exception as exc:
                        self._report(name, exc, context, attempt.retry_state.attempt_number, on_error)
                        raise
                    if attempt.retry_state.attempt_number > 1:
                        logger.info(
                            "%s succeeded on attempt %d", name, attempt.retry_state.attempt_number
                        )
        except ReconnectRequiredError:
            raise
        except Exception as exc:
            error = classify_error(exc)
            if error.kind == ProviderErrorKind.AUTH_EXPIRED:
                raise ReconnectRequiredError(user_message(error)) from exc
            raise

        return result

    async def _refresh(self, refresh_token: Callable[[], Awaitable[None]], name: str) -> None:
        try:
            await refresh_token()
        except Exception as exc:
            logger.error("Token refresh failed during %s: %s", name, exc)
            raise ReconnectRequiredError(
                "Mailbox connection lost. Please reconnect your account."
            ) from exc
        logger.info("Refreshed access token for %s", name)

    def _report(
        self,
        name: str,
        exc: Exception,
        context: dict[str, Any],
        attempt_number: int,
        on_error: ErrorHook | None,
    ) -> None:
        error = classify_error(exc)
        logger.warning(
            "Mail provider error in %s: kind=%s status=%s retryable=%s attempt=%d context=%s",
            name,
            error.kind.value,
            error.status,
            error.retryable,
            attempt_number,
            context,
        )
        if on_error is None:
            return
        try:
            on_error(name, error, {**context, "attempt": attempt_number})
        except Exception:
            logger.warning("Error hook failed for %s", name, exc_info=True)
