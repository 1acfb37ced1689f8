"""Tests for the Gmail client: payload parsing, pagination, and error mapping."""

import base64
from datetime import UTC, datetime

import httpx
import pytest

from magpie.integrations.gmail import (
    GmailClient,
    decode_base64url,
    parse_message,
    raise_for_provider_status,
)
from magpie.integrations.retry import MailProviderError, RetryPolicy


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def _multipart_payload() -> dict:
    return {
        "id": "18f0a",
        "threadId": "18f00",
        "labelIds": ["INBOX", "IMPORTANT"],
        "snippet": "Can we meet on Thursday?",
        "internalDate": "1717408800000",
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [
                {"name": "From", "value": "Alice Smith <alice@example.com>"},
                {"name": "To", "value": "me@example.com"},
                {"name": "Subject", "value": "Thursday planning"},
            ],
            "parts": [
                {
                    "mimeType": "multipart/alternative",
                    "parts": [
                        {"mimeType": "text/plain", "body": {"data": _b64("Can we meet on Thursday at 3pm?")}},
                        {"mimeType": "text/html", "body": {"data": _b64("<p>Can we meet on Thursday?</p>")}},
                    ],
                },
                {
                    "mimeType": "application/pdf",
                    "filename": "agenda.pdf",
                    "body": {"attachmentId": "att-1", "size": 2048},
                },
            ],
        },
    }


class TestParseMessage:
    def test_multipart(self):
        msg = parse_message(_multipart_payload())
        assert msg.id == "18f0a"
        assert msg.thread_id == "18f00"
        assert msg.subject == "Thursday planning"
        assert msg.from_address == "alice@example.com"
        assert msg.from_name == "Alice Smith"
        assert msg.to_address == "me@example.com"
        assert msg.body_text == "Can we meet on Thursday at 3pm?"
        assert msg.body_html == "<p>Can we meet on Thursday?</p>"
        assert msg.attachment_count == 1
        assert msg.labels == ["INBOX", "IMPORTANT"]
        assert msg.received_at == datetime(2024, 6, 3, 10, 0, tzinfo=UTC)

    def test_single_part_body(self):
        data = {
            "id": "m2",
            "internalDate": "1717408800000",
            "payload": {
                "mimeType": "text/plain",
                "headers": [{"name": "subject", "value": "Hi"}],
                "body": {"data": _b64("Plain body")},
            },
        }
        msg = parse_message(data)
        assert msg.subject == "Hi"
        assert msg.body_text == "Plain body"
        assert msg.attachment_count == 0

    def test_decode_base64url_without_padding(self):
        assert decode_base64url(_b64("ab?>")) == "ab?>"

    def test_decode_garbage(self):
        assert decode_base64url("abcde") == ""


class TestRaiseForStatus:
    def _response(self, status: int, **kwargs) -> httpx.Response:
        request = httpx.Request("GET", "https://gmail.googleapis.com/gmail/v1/users/me/messages")
        return httpx.Response(status, request=request, **kwargs)

    def test_success_passes(self):
        raise_for_provider_status(self._response(200, json={}))

    def test_google_error_reason(self):
        body = {
            "error": {
                "code": 403,
                "message": "User-rate limit exceeded.",
                "errors": [{"reason": "userRateLimitExceeded"}],
            }
        }
        with pytest.raises(MailProviderError) as exc_info:
            raise_for_provider_status(self._response(403, json=body, headers={"Retry-After": "12"}))
        assert exc_info.value.status == 403
        assert exc_info.value.retry_after == 12.0
        assert "userRateLimitExceeded" in exc_info.value.reason

    def test_oauth_error_reason(self):
        with pytest.raises(MailProviderError) as exc_info:
            raise_for_provider_status(self._response(400, json={"error": "invalid_grant"}))
        assert exc_info.value.reason == "invalid_grant"


class TestListMessages:
    async def test_paginates(self):
        pages = {
            None: {"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "p2"},
            "p2": {"messages": [{"id": "c"}]},
        }
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=pages[request.url.params.get("pageToken")])

        async with GmailClient("token", transport=httpx.MockTransport(handler)) as gmail:
            ids = await gmail.list_messages("in:inbox", max_results=10)

        assert ids == ["a", "b", "c"]
        assert len(requests) == 2
        assert requests[0].url.params["q"] == "in:inbox"
        assert requests[0].url.path.endswith("/users/me/messages")

    async def test_respects_max_results(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"messages": [{"id": str(i)} for i in range(5)], "nextPageToken": "more"}
            )

        async with GmailClient("token", transport=httpx.MockTransport(handler)) as gmail:
            ids = await gmail.list_messages(max_results=3)

        assert ids == ["0", "1", "2"]

    async def test_get_message_requests_full_format(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith("/messages/18f0a")
            assert request.url.params["format"] == "full"
            return httpx.Response(200, json=_multipart_payload())

        async with GmailClient(
            "token", retry_policy=RetryPolicy(max_retries=0), transport=httpx.MockTransport(handler)
        ) as gmail:
            msg = await gmail.get_message("18f0a")

        assert msg.subject == "Thursday planning"
