"""AI task extractor executor — extracts candidate tasks from an email via LLM.

Stateless: receives a message, returns a TaskAnalysis. The LLM output is
treated as untrusted. Each extraction is validated on its own: fields are
coerced into closed enums and clamped ranges, and an item that still cannot
be parsed is dropped without failing its siblings.
"""

import logging
import re
from typing import Any

import httpx
from pydantic import ValidationError

from magpie.executors.email_classifier import html_to_text
from magpie.integrations.ollama import OllamaClient
from magpie.schemas.email import InboundMessage
from magpie.schemas.tasks import AnalysisInsights, TaskAnalysis, TaskExtraction

logger = logging.getLogger(__name__)

# Truncate email body to stay within context limits.
MAX_BODY_CHARS = 4000


class AnalyzerError(Exception):
    """The analyzer call failed or returned something that isn't an analysis."""


SYSTEM_PROMPT = """\
You extract actionable tasks from emails for a personal task manager.

Extract items that require the recipient's attention, time, or completion.
Be conservative: it is better to miss a vague item than to invent a task.

## Output

Respond with one JSON object:

- **has_task_content**: true if the email contains any actionable item
- **extractions**: list of items, each with
  - type: meeting, task, deadline, or reminder
  - title: short imperative title
  - description: one or two sentences of detail
  - suggested_datetime: ISO-8601 start time if one is stated
  - duration: meeting length in minutes if stated
  - location, participants (list of names or addresses)
  - priority: low, medium, high, or urgent
  - confidence: 0.0-1.0
  - reasoning: why this is a task
  - category: work, personal, health, finance, education, social,
    household, travel, project, or other
  - estimated_duration: minutes, 5-480
  - suggested_due_date: ISO-8601 date if a deadline is stated
  - energy_level: 1 (filing, quick replies) to 5 (complex, creative work)
  - suggested_tags: up to 10 short tags
  - context: people, project, or constraints that matter for scheduling
  - recurring: {is_recurring, pattern, frequency: daily|weekly|monthly|yearly}
  - dependencies: other work this item waits on
- **summary**: one-sentence summary of the email
- **overall_confidence**: 0.0-1.0
- **insights**: {email_type: request|notification|reminder|information|other,
  urgency: low|medium|high|urgent, complexity: simple|moderate|complex,
  stakeholders: list, follow_up_required: bool}

## Priority

- urgent: action needed today or tomorrow
- high: important deadline within a week
- medium: standard priority, flexible timing
- low: nice to have, no deadline

## Confidence

- 0.9-1.0: explicit task language ("please complete", "due by", "schedule")
- 0.7-0.8: strong implied task ("need to", specific dates)
- 0.5-0.6: moderate hints (collaborative language, future references)
- 0.3-0.4: weak signals
- 0.0-0.2: no clear task intent

Only use dates that are stated or unambiguous relative to the email date.
"""

USER_PROMPT = """\
Extract actionable tasks from this email.

**Subject:** {subject}
**From:** {from_address}
**To:** {to_address}
**Date:** {date}

**Body:**
{body}
"""

# Loose shape for Ollama's format constraint. Field-level validation
# happens afterwards, per item.
RAW_ANALYSIS_SCHEMA = {
    "type": "object",
    "properties": {
        "has_task_content": {"type": "boolean"},
        "extractions": {"type": "array", "items": {"type": "object"}},
        "summary": {"type": "string"},
        "overall_confidence": {"type": "number"},
        "insights": {"type": "object"},
    },
    "required": ["has_task_content", "extractions"],
}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")

# Alternate top-level keys seen from models that drift from the prompt.
_TOP_LEVEL_ALIASES = {
    "task_extractions": "extractions",
    "tasks": "extractions",
    "email_summary": "summary",
    "processing_insights": "insights",
}

_ITEM_ALIASES = {
    "suggested_date_time": "suggested_datetime",
    "energy": "energy_level",
    "tags": "suggested_tags",
}


def _snake_keys(value: Any) -> Any:
    """Recursively convert camelCase dict keys to snake_case."""
    if isinstance(value, dict):
        return {_CAMEL_RE.sub("_", str(k)).lower(): _snake_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_snake_keys(v) for v in value]
    return value


def _message_body(message: InboundMessage) -> str:
    body = message.body_text or html_to_text(message.body_html) or message.snippet or "(no body)"
    if len(body) > MAX_BODY_CHARS:
        body = body[:MAX_BODY_CHARS] + "\n\n[... content truncated ...]"
    return body


def parse_analysis(data: dict[str, Any]) -> TaskAnalysis:
    """Validate raw analyzer JSON into a TaskAnalysis.

    Never raises for malformed items: each extraction that fails validation
    is dropped and counted in ``dropped``.
    """
    data = _snake_keys(data)
    for alias, key in _TOP_LEVEL_ALIASES.items():
        if alias in data and key not in data:
            data[key] = data.pop(alias)

    raw_items = data.get("extractions")
    if not isinstance(raw_items, list):
        raw_items = []

    extractions: list[TaskExtraction] = []
    dropped = 0
    for i, item in enumerate(raw_items):
        if not isinstance(item, dict):
            dropped += 1
            logger.warning("Dropping extraction %d: not an object (%s)", i, type(item).__name__)
            continue
        for alias, key in _ITEM_ALIASES.items():
            if alias in item and key not in item:
                item[key] = item.pop(alias)
        try:
            extractions.append(TaskExtraction.model_validate(item))
        except ValidationError as exc:
            dropped += 1
            logger.warning("Dropping extraction %d: %s", i, exc.errors()[:3])

    insights_raw = data.get("insights")
    try:
        insights = AnalysisInsights.model_validate(insights_raw if isinstance(insights_raw, dict) else {})
    except ValidationError:
        logger.warning("Discarding malformed analysis insights")
        insights = AnalysisInsights()

    summary = data.get("summary")
    return TaskAnalysis(
        has_task_content=bool(data.get("has_task_content")) or bool(extractions),
        extractions=extractions,
        summary=str(summary).strip() if summary else "No summary available",
        overall_confidence=data.get("overall_confidence", 0.0),
        insights=insights,
        dropped=dropped,
    )


async def extract_tasks(
    message: InboundMessage,
    *,
    ollama: OllamaClient,
    model: str,
    keep_alive: str | None = None,
) -> TaskAnalysis:
    """Ask the LLM for candidate tasks in a message.

    Args:
        message: The inbound message.
        ollama: An open OllamaClient instance.
        model: Ollama model name to use for inference.
        keep_alive: Ollama keep_alive parameter.

    Returns:
        TaskAnalysis; may contain zero extractions.

    Raises:
        AnalyzerError: If the LLM call fails or returns non-JSON.
    """
    prompt = USER_PROMPT.format(
        subject=message.subject,
        from_address=message.from_address,
        to_address=message.to_address,
        date=message.received_at.isoformat(),
        body=_message_body(message),
    )

    logger.info("Extracting tasks from message %s", message.id)

    try:
        data, _raw = await ollama.generate_json(
            model=model,
            system=SYSTEM_PROMPT,
            prompt=prompt,
            schema=RAW_ANALYSIS_SCHEMA,
            temperature=0.1,
            keep_alive=keep_alive,
        )
    except (httpx.HTTPError, ValueError) as exc:
        raise AnalyzerError(f"Task extraction failed for {message.id}: {exc}") from exc

    analysis = parse_analysis(data)

    logger.info(
        "Extraction for %s: %d item(s), %d dropped, confidence=%.2f",
        message.id,
        len(analysis.extractions),
        analysis.dropped,
        analysis.overall_confidence,
    )
    return analysis
