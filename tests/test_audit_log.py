"""Tests for the JSONL pipeline audit log."""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

from magpie.audit.logger import PipelineAuditLog
from magpie.integrations.retry import ProviderError, ProviderErrorKind
from magpie.schemas.queue import WorkItem, WorkItemStatus
from magpie.schemas.tasks import (
    ExtractionType,
    Suggestion,
    SuggestionStatus,
    Task,
    TaskExtraction,
    TaskPriority,
)

NOW = datetime(2024, 6, 3, 9, 0, tzinfo=UTC)


def _make_suggestion(**overrides) -> Suggestion:
    defaults = dict(
        id="s1",
        user_id="u1",
        work_item_id="w1",
        message_id="m1",
        type=ExtractionType.MEETING,
        title="Project sync",
        confidence=0.85,
        priority=TaskPriority.HIGH,
        extraction=TaskExtraction(title="Project sync", confidence=0.85),
        created_at=NOW,
    )
    defaults.update(overrides)
    return Suggestion(**defaults)


def _make_task(**overrides) -> Task:
    defaults = dict(
        id="t1",
        user_id="u1",
        title="Project sync",
        priority=TaskPriority.HIGH,
        priority_score=72,
        scheduled_start=NOW + timedelta(hours=24),
        ai_generated=True,
        created_at=NOW,
    )
    defaults.update(overrides)
    return Task(**defaults)


class TestLogActions:
    def test_log_task_auto_created(self, tmp_path):
        audit = PipelineAuditLog(tmp_path / "audit.jsonl")
        entry = audit.log_task_auto_created(_make_task(), _make_suggestion(status=SuggestionStatus.AUTO_CONVERTED))

        assert entry.action == "task_auto_created"
        assert entry.task_id == "t1"
        assert entry.suggestion_id == "s1"
        assert entry.work_item_id == "w1"
        assert entry.context["scheduled"] is True
        assert entry.context["priority_score"] == 72

    def test_log_suggestion_queued(self, tmp_path):
        audit = PipelineAuditLog(tmp_path / "audit.jsonl")
        entry = audit.log_suggestion_queued(_make_suggestion())

        assert entry.action == "suggestion_queued"
        assert entry.task_id is None

    def test_log_review_actions(self, tmp_path):
        audit = PipelineAuditLog(tmp_path / "audit.jsonl")
        approved = audit.log_suggestion_approved(_make_suggestion(), _make_task())
        rejected = audit.log_suggestion_rejected(_make_suggestion(id="s2"))

        assert approved.action == "suggestion_approved"
        assert approved.task_id == "t1"
        assert rejected.action == "suggestion_rejected"
        assert rejected.suggestion_id == "s2"

    def test_log_work_item_failed(self, tmp_path):
        audit = PipelineAuditLog(tmp_path / "audit.jsonl")
        item = WorkItem(
            id="w1", user_id="u1", message_id="m1", status=WorkItemStatus.FAILED, retry_count=2, created_at=NOW
        )
        entry = audit.log_work_item_failed(item, "fatal", "Message m1 not found")

        assert entry.action == "work_item_failed"
        assert entry.error_kind == "fatal"
        assert entry.detail == "Message m1 not found"
        assert entry.context == {"retry_count": 2}

    def test_log_provider_error(self, tmp_path):
        audit = PipelineAuditLog(tmp_path / "audit.jsonl")
        error = ProviderError(
            kind=ProviderErrorKind.RATE_LIMITED, status=429, message="Rate limit exceeded", retryable=True, retry_after=5
        )
        entry = audit.log_provider_error("list_messages", error, {"user_id": "u1", "attempt": 1})

        assert entry.action == "provider_error"
        assert entry.operation == "list_messages"
        assert entry.user_id == "u1"
        assert entry.error_kind == "rate_limited"
        assert entry.context["retry_after"] == 5
        assert entry.context["attempt"] == 1


class TestReadEntries:
    def test_roundtrip_jsonl(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        audit = PipelineAuditLog(path)
        audit.log_suggestion_queued(_make_suggestion())
        audit.log_suggestion_rejected(_make_suggestion())

        lines = path.read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[0])["action"] == "suggestion_queued"

        entries = audit.read_entries()
        assert [e.action for e in entries] == ["suggestion_queued", "suggestion_rejected"]

    def test_since_and_limit(self, tmp_path):
        audit = PipelineAuditLog(tmp_path / "audit.jsonl")
        for i in range(5):
            audit.log_suggestion_queued(_make_suggestion(id=f"s{i}"))

        assert len(audit.read_entries(since=datetime.now(UTC) + timedelta(minutes=1))) == 0
        assert [e.suggestion_id for e in audit.read_entries(limit=2)] == ["s3", "s4"]

    def test_missing_file(self, tmp_path):
        assert PipelineAuditLog(tmp_path / "nothing.jsonl").read_entries() == []

    def test_creates_parent_dirs(self, tmp_path):
        audit = PipelineAuditLog(tmp_path / "nested" / "dir" / "audit.jsonl")
        audit.log_suggestion_queued(_make_suggestion())
        assert (tmp_path / "nested" / "dir" / "audit.jsonl").exists()


class TestWriteFailure:
    def test_write_failure_is_swallowed(self, tmp_path):
        audit = PipelineAuditLog(tmp_path / "audit.jsonl")
        with patch("pathlib.Path.open", side_effect=OSError("disk full")):
            entry = audit.log_suggestion_queued(_make_suggestion())
            assert audit.log(entry) is False
        assert entry.action == "suggestion_queued"
