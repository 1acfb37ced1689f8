"""Ingestion pipeline: mail provider -> relevance filter -> work queue.

Handlers return a typed result; the CLI prints it.
"""

import logging
from collections.abc import Callable

from magpie.integrations.gmail import GmailClient
from magpie.integrations.retry import ReconnectRequiredError
from magpie.orchestrator.work_queue import WorkQueue
from magpie.router.relevance import should_process
from magpie.schemas.queue import IngestResult
from magpie.schemas.settings import AutomationSettings

logger = logging.getLogger(__name__)

DEFAULT_QUERY = "in:inbox newer_than:1d"


async def run_ingest(
    user_id: str,
    *,
    gmail: GmailClient,
    queue: WorkQueue,
    settings: AutomationSettings,
    query: str = DEFAULT_QUERY,
    limit: int | None = None,
    on_progress: Callable[[str], None] | None = None,
) -> IngestResult:
    """Fetch recent messages and enqueue the relevant ones.

    Flow:
    1. List message ids for the query (capped by ``max_emails_per_day``).
    2. Skip ids that already have a work item (no fetch).
    3. Fetch each remaining message and apply the relevance filter.
    4. Enqueue survivors.

    A failed fetch counts as an error for that message only. A
    ReconnectRequiredError aborts the run, since every later call would
    fail the same way.

    Raises:
        ReconnectRequiredError: If mailbox authentication cannot be recovered.
    """

    def _emit(msg: str) -> None:
        if on_progress:
            on_progress(msg)

    result = IngestResult()
    if not settings.enabled:
        _emit("Automation is disabled; nothing to ingest.")
        return result

    cap = settings.max_emails_per_day
    if limit is not None:
        cap = min(cap, limit)
    if cap <= 0:
        return result

    _emit(f"Listing messages for {query!r} (max {cap})...")
    ids = await gmail.list_messages(query, max_results=cap)
    result.fetched = len(ids)

    for message_id in ids:
        if queue.is_queued(message_id, user_id):
            result.duplicates += 1
            continue

        try:
            message = await gmail.get_message(message_id)
        except ReconnectRequiredError:
            raise
        except Exception:
            result.errors += 1
            logger.exception("Failed to fetch message %s", message_id)
            _emit(f"  ERROR: could not fetch {message_id}")
            continue

        decision = should_process(message, settings)
        if not decision.should_process:
            result.filtered += 1
            logger.debug("Filtered %s: %s", message_id, "; ".join(decision.reasons))
            continue

        if queue.enqueue(message, user_id) is None:
            result.duplicates += 1
        else:
            result.enqueued += 1
            _emit(f"  Queued: {message.subject}")

    logger.info(
        "Ingest for %s: fetched=%d enqueued=%d duplicates=%d filtered=%d errors=%d",
        user_id,
        result.fetched,
        result.enqueued,
        result.duplicates,
        result.filtered,
        result.errors,
    )
    return result
