"""Tests for the ingestion pipeline (provider -> relevance filter -> work queue)."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from magpie.integrations.retry import MailProviderError, ReconnectRequiredError
from magpie.orchestrator.ingest import run_ingest
from magpie.orchestrator.work_queue import WorkQueue
from magpie.queue.store import PipelineStore
from magpie.schemas.email import InboundMessage
from magpie.schemas.settings import AutomationSettings
from magpie.settings import SettingsManager


def _make_message(message_id: str, **overrides) -> InboundMessage:
    defaults = dict(
        id=message_id,
        subject="Schedule review meeting",
        from_address="lead@example.com",
        body_text="Can we schedule the review for Thursday?",
        received_at=datetime(2024, 6, 3, 10, 0, tzinfo=UTC),
    )
    defaults.update(overrides)
    return InboundMessage(**defaults)


def _make_gmail(messages: dict[str, InboundMessage | Exception]) -> MagicMock:
    gmail = MagicMock()
    gmail.list_messages = AsyncMock(return_value=list(messages))

    async def get_message(message_id):
        value = messages[message_id]
        if isinstance(value, Exception):
            raise value
        return value

    gmail.get_message = AsyncMock(side_effect=get_message)
    return gmail


@pytest.fixture()
def queue(tmp_path):
    with PipelineStore(tmp_path / "pipeline.db") as store:
        yield WorkQueue(store, analyzer=AsyncMock(), settings=SettingsManager(store))


class TestRunIngest:
    async def test_enqueues_relevant_messages(self, queue):
        gmail = _make_gmail(
            {
                "a": _make_message("a"),
                "b": _make_message("b", from_address="noreply@shop.example"),
                "c": _make_message("c", subject="Photos", body_text="Pictures from the trip."),
            }
        )
        progress = []

        result = await run_ingest(
            "u1", gmail=gmail, queue=queue, settings=AutomationSettings(), on_progress=progress.append
        )

        assert result.fetched == 3
        assert result.enqueued == 1
        assert result.filtered == 2
        assert queue.is_queued("a", "u1")
        assert not queue.is_queued("b", "u1")
        assert any("Queued" in line for line in progress)

    async def test_already_queued_not_refetched(self, queue):
        queue.enqueue(_make_message("a"), "u1")
        gmail = _make_gmail({"a": _make_message("a"), "b": _make_message("b")})

        result = await run_ingest("u1", gmail=gmail, queue=queue, settings=AutomationSettings())

        assert result.duplicates == 1
        assert result.enqueued == 1
        gmail.get_message.assert_awaited_once_with("b")

    async def test_fetch_error_counted_per_message(self, queue):
        gmail = _make_gmail({"a": MailProviderError("gone", status=404), "b": _make_message("b")})

        result = await run_ingest("u1", gmail=gmail, queue=queue, settings=AutomationSettings())

        assert result.errors == 1
        assert result.enqueued == 1

    async def test_reconnect_aborts(self, queue):
        gmail = _make_gmail({"a": ReconnectRequiredError("reconnect"), "b": _make_message("b")})

        with pytest.raises(ReconnectRequiredError):
            await run_ingest("u1", gmail=gmail, queue=queue, settings=AutomationSettings())

    async def test_cap(self, queue):
        gmail = _make_gmail({})

        await run_ingest("u1", gmail=gmail, queue=queue, settings=AutomationSettings(max_emails_per_day=20), limit=5)

        gmail.list_messages.assert_awaited_once()
        assert gmail.list_messages.call_args.kwargs["max_results"] == 5

    async def test_disabled(self, queue):
        gmail = _make_gmail({"a": _make_message("a")})

        result = await run_ingest("u1", gmail=gmail, queue=queue, settings=AutomationSettings(enabled=False))

        assert result.fetched == 0
        gmail.list_messages.assert_not_called()
