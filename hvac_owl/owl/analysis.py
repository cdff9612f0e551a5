"""Project Owl channel analysis.

Turns raw Slack messages into summaries, decisions, progress updates,
open questions, action items and risks using the completion model.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from hvac_owl.completion_client import CompletionClient, CompletionError, load_json
from hvac_owl.owl.prompts import (
    ACTION_ITEMS_PROMPT,
    DAILY_SUMMARY_PROMPT,
    OWL_MODEL,
    PROJECT_UPDATE_TEMPLATE,
    RISKS_PROMPT,
)
from hvac_owl.owl.schemas import (
    ChannelRecap,
    DailyHighlight,
    MessageInsights,
    ProcessedMessage,
    TaskCreate,
)
from hvac_owl.thermostat.response_parser import as_list, parse_string_list

logger = logging.getLogger(__name__)

_MENTION_RE = re.compile(r"<@([A-Z0-9]+)>")
_TASK_RE = re.compile(r"^(.+?)\s*\(@([\w.-]+)(?:,\s*due:\s*(.+?))?\)\s*$", re.IGNORECASE)
_DUE_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%B %d, %Y", "%b %d, %Y", "%B %d %Y", "%b %d %Y")


def _message_time(message: dict) -> datetime:
    return datetime.fromtimestamp(float(message["ts"]), tz=timezone.utc)


def group_messages_by_day(messages: List[dict]) -> Dict[str, List[dict]]:
    """Group messages by their UTC calendar date (YYYY-MM-DD)."""
    grouped: Dict[str, List[dict]] = defaultdict(list)
    for message in messages:
        if not message.get("ts"):
            continue
        grouped[_message_time(message).date().isoformat()].append(message)
    logger.info(f"Grouped messages by day: {sorted(grouped)}")
    return dict(grouped)


def preprocess_messages(messages: List[dict]) -> List[ProcessedMessage]:
    """Drop empty messages and replace ``<@USERID>`` mentions with usernames."""
    usernames = {m["user"]: m["username"] for m in messages if m.get("user") and m.get("username")}

    processed = []
    for message in messages:
        text = (message.get("text") or "").strip()
        if not text or not message.get("ts"):
            continue
        text = _MENTION_RE.sub(lambda m: f"@{usernames.get(m.group(1), m.group(1))}", text)
        processed.append(
            ProcessedMessage(
                text=text,
                username=message.get("username") or "unknown",
                timestamp=_message_time(message).isoformat(),
            )
        )
    return processed


def _to_prompt(messages: List[ProcessedMessage]) -> str:
    return json.dumps([m.model_dump() for m in messages], ensure_ascii=False)


async def _complete(client: CompletionClient, prompt, **variables) -> str:
    return await client.complete(prompt.format_messages(**variables), model=OWL_MODEL)


async def summarize_messages(
    client: CompletionClient, messages: List[ProcessedMessage], period: str
) -> MessageInsights:
    """Summary, decisions, progress and questions for a batch of messages.

    Raises:
        ValueError: The model reply could not be parsed as JSON.
    """
    content = await _complete(client, DAILY_SUMMARY_PROMPT, period=period, messages=_to_prompt(messages))
    data = load_json(content)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return MessageInsights(
        summary=str(data.get("summary") or ""),
        decisions=as_list(data.get("decisions")),
        progress=as_list(data.get("progress")),
        questions=as_list(data.get("questions")),
    )


async def extract_action_items(client: CompletionClient, messages: List[ProcessedMessage]) -> List[str]:
    """Action items mentioned in the messages; empty on any failure."""
    try:
        content = await _complete(client, ACTION_ITEMS_PROMPT, messages=_to_prompt(messages))
    except CompletionError as e:
        logger.error(f"Error extracting action items: {e}")
        return []
    return parse_string_list(content)


async def detect_risks(client: CompletionClient, messages: List[ProcessedMessage]) -> List[str]:
    """Risks, blockers or concerns raised in the messages; empty on any failure."""
    try:
        content = await _complete(client, RISKS_PROMPT, messages=_to_prompt(messages))
    except CompletionError as e:
        logger.error(f"Error detecting risks: {e}")
        return []
    return parse_string_list(content)


async def generate_daily_recap(client: CompletionClient, messages: List[dict]) -> ChannelRecap:
    """One highlight per day, newest first.

    Days whose summary cannot be parsed are skipped. A failing summary call
    ends the recap with an ``error`` instead of raising.
    """
    logger.info(f"Starting daily recap generation with {len(messages)} messages")
    grouped = group_messages_by_day(messages)
    highlights: List[DailyHighlight] = []

    try:
        for date in sorted(grouped, reverse=True):
            processed = preprocess_messages(grouped[date])
            if not processed:
                continue
            logger.info(f"Processing {len(processed)} messages for {date}")

            try:
                insights = await summarize_messages(client, processed, period=date)
            except ValueError as e:
                logger.error(f"Error parsing summary for {date}: {e}")
                continue

            action_items, risks = await asyncio.gather(
                extract_action_items(client, processed),
                detect_risks(client, processed),
            )
            highlights.append(
                DailyHighlight(
                    date=date,
                    **insights.model_dump(exclude={"action_items", "risks"}),
                    action_items=action_items,
                    risks=risks,
                )
            )
    except CompletionError as e:
        logger.error(f"Error generating daily recap: {e}")
        return ChannelRecap(highlights=highlights, error="Failed to generate daily recap")

    logger.info(f"Generated {len(highlights)} daily highlights")
    return ChannelRecap(highlights=highlights)


async def analyze_channel_messages(client: CompletionClient, messages: List[dict]) -> MessageInsights:
    """Analyze a whole channel history in one pass.

    If the summary is not valid JSON, the raw reply is kept as the summary.
    Completion errors propagate to the caller.
    """
    processed = preprocess_messages(messages)
    if not processed:
        return MessageInsights()

    period = "the recent channel history"
    summary_task = _complete(client, DAILY_SUMMARY_PROMPT, period=period, messages=_to_prompt(processed))
    content, action_items, risks = await asyncio.gather(
        summary_task,
        extract_action_items(client, processed),
        detect_risks(client, processed),
    )

    try:
        data = load_json(content)
    except ValueError:
        data = None
    if not isinstance(data, dict):
        logger.warning("Channel summary was not valid JSON, keeping raw text")
        data = {"summary": content.strip()}

    return MessageInsights(
        summary=str(data.get("summary") or ""),
        decisions=as_list(data.get("decisions")),
        progress=as_list(data.get("progress")),
        questions=as_list(data.get("questions")),
        action_items=action_items,
        risks=risks,
    )


def parse_due_date(value: Optional[str]) -> Optional[str]:
    """ISO date (YYYY-MM-DD) for a model-written due date, or None."""
    text = (value or "").strip().rstrip(".")
    for fmt in _DUE_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    if text:
        logger.warning(f"Could not parse due date: {text!r}")
    return None


def parse_action_item(item: str) -> Optional[TaskCreate]:
    """Turn ``"Ship v2 (@bob, due: 2024-05-01)"`` into a task.

    Items without an @assignee are not tasks and give None.
    """
    match = _TASK_RE.match(item.strip().lstrip("-*• "))
    if not match:
        return None
    description, assignee, due = match.groups()
    return TaskCreate(description=description.strip(), assignee=assignee, due_date=parse_due_date(due))


def newest_message_ts(messages: List[dict]) -> Optional[str]:
    """Slack ts of the newest message, kept as the original string."""
    stamped = [m["ts"] for m in messages if m.get("ts")]
    return max(stamped, key=float) if stamped else None


def format_project_update(insights: MessageInsights) -> str:
    """Slack mrkdwn text for the daily project update post."""

    def bullets(items: List[str], empty: str) -> str:
        return "\n".join(f"• {item}" for item in items) if items else empty

    return PROJECT_UPDATE_TEMPLATE.format(
        summary=insights.summary or "No summary available",
        risks=bullets(insights.risks, "No risks identified"),
        action_items=bullets(insights.action_items, "No action items identified"),
    )
