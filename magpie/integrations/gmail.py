"""Async client for the Gmail REST API (read-only message access over OAuth)."""

import base64
import binascii
import logging
from datetime import UTC, datetime
from email.utils import parseaddr
from typing import Any

import httpx

from magpie.integrations.retry import ErrorHook, MailProviderError, RetryPolicy
from magpie.schemas.email import InboundMessage

logger = logging.getLogger(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"

# Gmail caps maxResults per page at 500.
MAX_PAGE_SIZE = 500


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None  # HTTP-date form is not used by Google APIs
    return seconds if seconds >= 0 else None


def _error_reason(response: httpx.Response) -> str:
    """Pull a human-readable reason out of a Google API error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, str):
        # OAuth endpoint: {"error": "invalid_grant", "error_description": "..."}
        return f"{error}: {body.get('error_description', '')}".strip(": ")
    if isinstance(error, dict):
        parts = [str(error.get("message", ""))]
        parts += [str(e.get("reason", "")) for e in error.get("errors", []) if isinstance(e, dict)]
        return " ".join(p for p in parts if p)
    return ""


def raise_for_provider_status(response: httpx.Response) -> None:
    """Raise MailProviderError for any non-2xx response."""
    if response.is_success:
        return
    raise MailProviderError(
        f"Gmail API {response.request.method} {response.request.url.path} -> {response.status_code}",
        status=response.status_code,
        retry_after=_parse_retry_after(response.headers.get("retry-after")),
        reason=_error_reason(response),
    )


def decode_base64url(data: str) -> str:
    """Decode Gmail's base64url body data (padding optional). Bad input yields ''."""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        logger.warning("Could not decode base64url body data")
        return ""


def _headers(payload: dict) -> dict[str, str]:
    return {h.get("name", "").lower(): h.get("value", "") for h in payload.get("headers", [])}


def _walk_parts(part: dict, text: list[str], html: list[str]) -> int:
    """Collect text/plain and text/html bodies; return the attachment count."""
    attachments = 0
    mime = part.get("mimeType", "")
    body = part.get("body", {}) or {}

    if part.get("filename") and (body.get("attachmentId") or body.get("size")):
        attachments += 1
    elif mime == "text/plain" and body.get("data"):
        text.append(decode_base64url(body["data"]))
    elif mime == "text/html" and body.get("data"):
        html.append(decode_base64url(body["data"]))

    for child in part.get("parts", []) or []:
        attachments += _walk_parts(child, text, html)
    return attachments


def parse_message(data: dict[str, Any]) -> InboundMessage:
    """Convert a Gmail ``messages.get(format=full)`` payload to an InboundMessage."""
    payload = data.get("payload", {}) or {}
    headers = _headers(payload)

    from_name, from_address = parseaddr(headers.get("from", ""))
    _, to_address = parseaddr(headers.get("to", ""))

    text_parts: list[str] = []
    html_parts: list[str] = []
    attachments = _walk_parts(payload, text_parts, html_parts)

    internal_date = data.get("internalDate")
    if internal_date:
        received_at = datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)
    else:
        received_at = datetime.now(UTC)

    return InboundMessage(
        id=data["id"],
        thread_id=data.get("threadId", ""),
        subject=headers.get("subject", ""),
        from_address=from_address,
        from_name=from_name,
        to_address=to_address,
        body_text="\n".join(text_parts),
        body_html="\n".join(html_parts),
        snippet=data.get("snippet", ""),
        received_at=received_at,
        labels=list(data.get("labelIds", [])),
        attachment_count=attachments,
    )


class OAuthTokenRefresher:
    """Exchanges a long-lived refresh token for a new access token.

    Usage::

        async with OAuthTokenRefresher(client_id, client_secret, refresh_token) as refresher:
            access_token = await refresher.refresh()
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        *,
        token_url: str = OAUTH_TOKEN_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._token_url = token_url
        self._client = httpx.AsyncClient(timeout=30.0, transport=transport)

    async def __aenter__(self) -> "OAuthTokenRefresher":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def refresh(self) -> str:
        """Return a fresh access token.

        Raises:
            MailProviderError: If the token endpoint rejects the refresh
                (an ``invalid_grant`` reason means the user must reconnect).
        """
        response = await self._client.post(
            self._token_url,
            data={
                "grant_type": "refresh_token",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": self._refresh_token,
            },
        )
        raise_for_provider_status(response)
        token = response.json().get("access_token")
        if not token:
            raise MailProviderError("Token endpoint returned no access_token", status=response.status_code)
        logger.info("Obtained new Gmail access token")
        return token


class GmailClient:
    """Async HTTP client for the Gmail API.

    Every call runs through the shared RetryPolicy. On an auth-expired
    failure the client asks its token refresher for a new access token
    before the next attempt.

    Usage::

        async with GmailClient(token, token_refresher=refresher) as gmail:
            ids = await gmail.list_messages("is:unread newer_than:1d", max_results=50)
            message = await gmail.get_message(ids[0])
    """

    def __init__(
        self,
        access_token: str,
        *,
        token_refresher: OAuthTokenRefresher | None = None,
        retry_policy: RetryPolicy | None = None,
        on_error: ErrorHook | None = None,
        base_url: str = GMAIL_API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._refresher = token_refresher
        self._retry = retry_policy or RetryPolicy()
        self._on_error = on_error
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            timeout=30.0,
            transport=transport,
        )

    async def __aenter__(self) -> "GmailClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def refresh_access_token(self) -> None:
        if self._refresher is None:
            raise MailProviderError("No token refresher configured", status=401)
        token = await self._refresher.refresh()
        self._client.headers["Authorization"] = f"Bearer {token}"

    async def _get_raw(self, path: str, params: dict | None = None) -> dict:
        response = await self._client.get(path, params=params)
        raise_for_provider_status(response)
        return response.json()

    async def _get(self, name: str, path: str, params: dict | None = None, **context: Any) -> dict:
        return await self._retry.execute(
            lambda: self._get_raw(path, params),
            name,
            context=context,
            refresh_token=self.refresh_access_token if self._refresher else None,
            on_error=self._on_error,
        )

    async def list_messages(self, query: str = "", max_results: int = 50) -> list[str]:
        """List message ids matching a Gmail search query, newest first."""
        ids: list[str] = []
        page_token: str | None = None
        while len(ids) < max_results:
            params: dict[str, Any] = {"maxResults": min(max_results - len(ids), MAX_PAGE_SIZE)}
            if query:
                params["q"] = query
            if page_token:
                params["pageToken"] = page_token
            data = await self._get("list_messages", "/messages", params, query=query)
            ids.extend(m["id"] for m in data.get("messages", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        logger.debug("Listed %d message id(s) for query %r", len(ids), query)
        return ids[:max_results]

    async def get_message(self, message_id: str) -> InboundMessage:
        """Fetch and parse one full message."""
        data = await self._get(
            "get_message", f"/messages/{message_id}", {"format": "full"}, message_id=message_id
        )
        return parse_message(data)
