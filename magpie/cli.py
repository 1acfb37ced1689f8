"""CLI entry point for the Magpie email-to-task pipeline.

Commands:
    magpie ingest       — pull recent Gmail messages into the work queue
    magpie drain        — process pending work items (classify, analyze, create tasks)
    magpie retry        — reclaim abandoned items and reset eligible failed ones to pending
    magpie status       — queue, suggestion, and recent audit counters
    magpie suggestions  — list / approve / reject AI suggestions
    magpie settings     — show / set per-user automation settings
"""

import asyncio
import json
import logging
import sys
from functools import partial

import click
from pydantic import ValidationError

from magpie.config import (
    ANALYZER_TIMEOUT_SECONDS,
    AUDIT_LOG_PATH,
    DEFAULT_USER_ID,
    DRAIN_BATCH_SIZE,
    GMAIL_ACCESS_TOKEN,
    GMAIL_CLIENT_ID,
    GMAIL_CLIENT_SECRET,
    GMAIL_REFRESH_TOKEN,
    MAX_RETRIES,
    OLLAMA_BASE_URL,
    OLLAMA_MODEL,
    OWNER_EMAIL,
    PIPELINE_DB_PATH,
)

logger = logging.getLogger("magpie")

user_option = click.option(
    "--user", "-u", "user_id", default=None, help="User id (defaults to DEFAULT_USER_ID)."
)


def _user(user_id: str | None) -> str:
    return user_id or DEFAULT_USER_ID


def _validate_gmail_config() -> None:
    """Fail loudly if Gmail credentials are missing."""
    has_refresh = GMAIL_CLIENT_ID and GMAIL_CLIENT_SECRET and GMAIL_REFRESH_TOKEN
    if not (GMAIL_ACCESS_TOKEN or has_refresh):
        click.echo(
            "Error: Missing Gmail credentials. Set GMAIL_ACCESS_TOKEN or "
            "GMAIL_CLIENT_ID, GMAIL_CLIENT_SECRET and GMAIL_REFRESH_TOKEN.",
            err=True,
        )
        click.echo("Set these in secrets/internal.env or via SOPS.", err=True)
        sys.exit(1)


def _parse_value(raw: str):
    """Parse a KEY=VALUE right-hand side as JSON, falling back to a plain string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _nest(dotted_key: str, value) -> dict:
    """Turn ``a.b.c`` and a value into ``{"a": {"b": {"c": value}}}``."""
    result = value
    for part in reversed(dotted_key.split(".")):
        result = {part: result}
    return result


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Magpie — turn inbox email into scored, scheduled tasks."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


# ------------------------------------------------------------------
# magpie ingest
# ------------------------------------------------------------------


@cli.command()
@user_option
@click.option("--query", "-q", default="in:inbox newer_than:1d", show_default=True, help="Gmail search query.")
@click.option("--limit", "-n", default=None, type=int, help="Max messages to fetch (capped by max_emails_per_day).")
def ingest(user_id: str | None, query: str, limit: int | None) -> None:
    """Pull recent Gmail messages into the work queue."""
    _validate_gmail_config()
    asyncio.run(_ingest_async(_user(user_id), query, limit))


async def _ingest_async(user_id: str, query: str, limit: int | None) -> None:
    from magpie.audit.logger import PipelineAuditLog
    from magpie.integrations.gmail import GmailClient, OAuthTokenRefresher
    from magpie.integrations.retry import ReconnectRequiredError, RetryPolicy
    from magpie.orchestrator.ingest import run_ingest
    from magpie.orchestrator.work_queue import WorkQueue
    from magpie.queue.store import PipelineStore
    from magpie.settings import SettingsManager

    audit_log = PipelineAuditLog(AUDIT_LOG_PATH)
    refresher = None
    if GMAIL_CLIENT_ID and GMAIL_CLIENT_SECRET and GMAIL_REFRESH_TOKEN:
        refresher = OAuthTokenRefresher(GMAIL_CLIENT_ID, GMAIL_CLIENT_SECRET, GMAIL_REFRESH_TOKEN)

    def _on_error(operation, error, context):
        audit_log.log_provider_error(operation, error, {**context, "user_id": user_id})

    try:
        async with GmailClient(
            GMAIL_ACCESS_TOKEN,
            token_refresher=refresher,
            retry_policy=RetryPolicy(max_retries=MAX_RETRIES),
            on_error=_on_error,
        ) as gmail:
            if not GMAIL_ACCESS_TOKEN and refresher is not None:
                await gmail.refresh_access_token()

            with PipelineStore(PIPELINE_DB_PATH) as store:
                settings = SettingsManager(store)
                queue = WorkQueue(
                    store,
                    analyzer=_no_analyzer,
                    settings=settings,
                    audit_log=audit_log,
                    max_retries=MAX_RETRIES,
                )
                result = await run_ingest(
                    user_id,
                    gmail=gmail,
                    queue=queue,
                    settings=settings.get(user_id),
                    query=query,
                    limit=limit,
                    on_progress=click.echo,
                )
    except ReconnectRequiredError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(2)
    finally:
        if refresher is not None:
            await refresher.close()

    click.echo(
        f"\nIngest complete: fetched={result.fetched} enqueued={result.enqueued} "
        f"duplicates={result.duplicates} filtered={result.filtered} errors={result.errors}"
    )


async def _no_analyzer(message):
    raise RuntimeError("Analyzer is not available during ingest")


# ------------------------------------------------------------------
# magpie drain
# ------------------------------------------------------------------


@cli.command()
@user_option
@click.option("--limit", "-n", default=DRAIN_BATCH_SIZE, show_default=True, help="Max work items to process.")
@click.option("--model", "-m", default=None, help="Ollama model name (auto-detected if omitted).")
@click.option("--keep-alive", default="5m", show_default=True, help="Ollama keep_alive duration.")
def drain(user_id: str | None, limit: int, model: str | None, keep_alive: str) -> None:
    """Process pending work items: classify, analyze, score, create tasks."""
    asyncio.run(_drain_async(_user(user_id), limit, model or OLLAMA_MODEL or None, keep_alive))


async def _drain_async(user_id: str, limit: int, model: str | None, keep_alive: str) -> None:
    from magpie.audit.logger import PipelineAuditLog
    from magpie.executors.task_extractor import extract_tasks
    from magpie.integrations.ollama import OllamaClient
    from magpie.orchestrator.work_queue import WorkQueue
    from magpie.queue.store import PipelineStore
    from magpie.settings import SettingsManager

    audit_log = PipelineAuditLog(AUDIT_LOG_PATH)

    async with OllamaClient(OLLAMA_BASE_URL, default_keep_alive=keep_alive) as ollama:
        if model is None:
            model = await ollama.pick_instruct_model()
            if model is None:
                click.echo("Error: No models available on Ollama server.", err=True)
                sys.exit(1)
            click.echo(f"Auto-selected model: {model}")

        with PipelineStore(PIPELINE_DB_PATH) as store:
            queue = WorkQueue(
                store,
                analyzer=partial(extract_tasks, ollama=ollama, model=model, keep_alive=keep_alive),
                settings=SettingsManager(store),
                audit_log=audit_log,
                owner_address=OWNER_EMAIL or None,
                analyzer_timeout=ANALYZER_TIMEOUT_SECONDS,
                max_retries=MAX_RETRIES,
            )
            result = await queue.drain_pending(user_id, max_items=limit, on_progress=click.echo)

    click.echo(
        f"\nDrain complete: processed={result.processed} suggestions={result.suggestions_created} "
        f"tasks={result.tasks_created} errors={result.errors} skipped_ai={result.skipped_ai} "
        f"conflicts={result.conflicts}"
    )


# ------------------------------------------------------------------
# magpie retry
# ------------------------------------------------------------------


@cli.command()
@user_option
@click.option("--max-retries", default=MAX_RETRIES, show_default=True, help="Retry ceiling per work item.")
def retry(user_id: str | None, max_retries: int) -> None:
    """Reset eligible failed work items back to pending."""
    from magpie.queue.store import PipelineStore

    user_id = _user(user_id)
    with PipelineStore(PIPELINE_DB_PATH) as store:
        reclaimed = store.reclaim_stale(user_id)
        count = store.reset_failed(user_id, max_retries)
    if reclaimed:
        click.echo(f"Reclaimed {reclaimed} abandoned work item(s).")
    click.echo(f"Reset {count} failed work item(s) to pending.")


# ------------------------------------------------------------------
# magpie status
# ------------------------------------------------------------------


@cli.command()
@user_option
def status(user_id: str | None) -> None:
    """Quick overview of the queue, suggestions, and recent activity."""
    from datetime import UTC, datetime, timedelta

    from magpie.audit.logger import PipelineAuditLog
    from magpie.queue.store import PipelineStore

    user_id = _user(user_id)
    audit_log = PipelineAuditLog(AUDIT_LOG_PATH)
    with PipelineStore(PIPELINE_DB_PATH) as store:
        stats = store.stats(user_id)

    since = datetime.now(UTC) - timedelta(hours=24)
    entries = [e for e in audit_log.read_entries(since=since) if e.user_id in (None, user_id)]
    auto_created = sum(1 for e in entries if e.action == "task_auto_created")
    failures = sum(1 for e in entries if e.action in ("work_item_failed", "provider_error"))

    click.echo(f"Magpie Status ({user_id})")
    click.echo(f"  Pending items:        {stats.queue_pending}")
    click.echo(f"  Failed items:         {stats.queue_failed}")
    click.echo(f"  Completed items:      {stats.queue.get('completed', 0)}")
    click.echo(f"  Pending suggestions:  {stats.suggestions.get('pending', 0)}")
    click.echo(f"  AI-generated tasks:   {stats.ai_tasks}")
    click.echo(f"  Auto-created (24h):   {auto_created}")
    click.echo(f"  Errors (24h):         {failures}")


# ------------------------------------------------------------------
# magpie suggestions
# ------------------------------------------------------------------


@cli.group()
def suggestions() -> None:
    """Review AI task suggestions."""


def _review_queue(store):
    from magpie.audit.logger import PipelineAuditLog
    from magpie.orchestrator.work_queue import WorkQueue
    from magpie.settings import SettingsManager

    return WorkQueue(
        store,
        analyzer=_no_analyzer,
        settings=SettingsManager(store),
        audit_log=PipelineAuditLog(AUDIT_LOG_PATH),
        max_retries=MAX_RETRIES,
    )


@suggestions.command("list")
@user_option
@click.option("--all", "show_all", is_flag=True, help="Include reviewed and auto-converted suggestions.")
@click.option("--limit", "-n", default=20, show_default=True)
def suggestions_list(user_id: str | None, show_all: bool, limit: int) -> None:
    """List suggestions (pending only by default)."""
    from magpie.queue.store import PipelineStore
    from magpie.schemas.tasks import SuggestionStatus

    status_filter = None if show_all else SuggestionStatus.PENDING
    with PipelineStore(PIPELINE_DB_PATH) as store:
        items = store.list_suggestions(_user(user_id), status=status_filter, limit=limit)

    if not items:
        click.echo("No suggestions.")
        return

    for s in items:
        when = s.suggested_time.strftime("%Y-%m-%d %H:%M") if s.suggested_time else "-"
        click.echo(
            f"{s.id}  [{s.status.value}] {s.title}  "
            f"priority={s.priority.value} confidence={s.confidence:.0%} when={when}"
        )


@suggestions.command("approve")
@click.argument("suggestion_id")
def suggestions_approve(suggestion_id: str) -> None:
    """Convert a pending suggestion into a task."""
    from magpie.queue.store import PipelineStore

    with PipelineStore(PIPELINE_DB_PATH) as store:
        try:
            task = _review_queue(store).approve_suggestion(suggestion_id)
        except ValueError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)

    scheduled = task.scheduled_start.strftime("%Y-%m-%d %H:%M") if task.scheduled_start else "unscheduled"
    click.echo(f"Created task {task.id}: {task.title} ({task.priority.value}, {scheduled})")


@suggestions.command("reject")
@click.argument("suggestion_id")
def suggestions_reject(suggestion_id: str) -> None:
    """Reject a pending suggestion."""
    from magpie.queue.store import PipelineStore

    with PipelineStore(PIPELINE_DB_PATH) as store:
        try:
            suggestion = _review_queue(store).reject_suggestion(suggestion_id)
        except ValueError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)

    click.echo(f"Rejected: {suggestion.title}")


# ------------------------------------------------------------------
# magpie settings
# ------------------------------------------------------------------


@cli.group()
def settings() -> None:
    """Show or change per-user automation settings."""


@settings.command("show")
@user_option
def settings_show(user_id: str | None) -> None:
    """Print the effective settings (defaults merged with overrides)."""
    from magpie.queue.store import PipelineStore
    from magpie.settings import SettingsManager

    with PipelineStore(PIPELINE_DB_PATH) as store:
        effective = SettingsManager(store).get(_user(user_id))
    click.echo(effective.model_dump_json(indent=2))


@settings.command("set")
@user_option
@click.argument("assignments", nargs=-1, required=True)
def settings_set(user_id: str | None, assignments: tuple[str, ...]) -> None:
    """Update settings with KEY=VALUE pairs (dotted keys, JSON values).

    Example: magpie settings set confidence_threshold=0.7 task_defaults.scheduling_window.urgent_hours=1
    """
    from magpie.queue.store import PipelineStore
    from magpie.settings import SettingsManager, deep_merge

    partial_update: dict = {}
    for assignment in assignments:
        key, sep, raw = assignment.partition("=")
        if not sep or not key:
            click.echo(f"Error: expected KEY=VALUE, got {assignment!r}", err=True)
            sys.exit(1)
        partial_update = deep_merge(partial_update, _nest(key.strip(), _parse_value(raw)))

    with PipelineStore(PIPELINE_DB_PATH) as store:
        try:
            SettingsManager(store).update(_user(user_id), partial_update)
        except ValidationError as exc:
            click.echo(f"Error: invalid settings: {exc}", err=True)
            sys.exit(1)

    click.echo(f"Updated: {', '.join(sorted(partial_update))}")


@settings.command("reset")
@user_option
def settings_reset(user_id: str | None) -> None:
    """Drop all stored overrides and return to defaults."""
    from magpie.queue.store import PipelineStore
    from magpie.settings import SettingsManager

    with PipelineStore(PIPELINE_DB_PATH) as store:
        SettingsManager(store).reset(_user(user_id))
    click.echo("Settings reset to defaults.")


if __name__ == "__main__":
    cli()
