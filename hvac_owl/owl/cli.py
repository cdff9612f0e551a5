from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv

from hvac_owl.completion_client import CompletionClient
from hvac_owl.owl.analysis import (
    analyze_channel_messages,
    format_project_update,
    newest_message_ts,
    parse_action_item,
)
from hvac_owl.owl.slack_client import SlackClient, SlackError
from hvac_owl.owl.store import AnalysisStore

logger = logging.getLogger(__name__)


async def check_slack(slack: SlackClient) -> None:
    auth = await slack.auth_test()
    print("Successfully connected to Slack!")
    print(f"Bot name: {auth.get('user')}")
    print(f"Team: {auth.get('team')}")

    print("\nAvailable channels:")
    for channel in await slack.list_channels(types="public_channel", limit=10):
        print(f"- {channel['name']} (ID: {channel['id']})")


async def join_channel(slack: SlackClient, channel_id: str) -> None:
    channel = await slack.join_channel(channel_id)
    print(f"Successfully joined channel: {channel.get('name', channel_id)}")


async def channel_summary(slack: SlackClient, channel_id: str) -> None:
    channel = await slack.channel_info(channel_id)
    print(f"Channel: {channel.get('name')}")
    print(f"Purpose: {(channel.get('purpose') or {}).get('value') or 'No purpose set'}")
    print(f"Members: {channel.get('num_members', 'unknown')} members")

    summary = await slack.get_channel_summary(channel_id)
    print("\nRecent Messages:")
    print("----------------")
    for msg in summary["messages"]:
        ts = datetime.fromtimestamp(float(msg["ts"]), tz=timezone.utc)
        print("\nMessage:")
        print(f"Timestamp: {ts.isoformat()}")
        print(f"Sender: {msg.get('username')} ({msg.get('real_name')})")
        if msg.get("thread_ts") and msg["thread_ts"] != msg["ts"]:
            print(f"Parent Message: {msg['thread_ts']}")
        if msg.get("reply_count"):
            print(f"Reply Count: {msg['reply_count']}")
        print(f"Content: {msg.get('text', '')}")


async def sync_insights(slack: SlackClient, completion: CompletionClient, store: AnalysisStore) -> int:
    """Analyze new messages of every project channel, store the result and post an update.

    Only messages newer than the last synced one are fetched; a project that was
    never synced starts with the last day. Action items with an assignee become
    tasks. Returns the number of projects that were updated.
    """
    updated = 0
    for project in store.list_projects():
        print(f"Processing project: {project.name}")
        if project.last_message_ts:
            messages = await slack.get_channel_messages(
                project.channel_id, oldest=float(project.last_message_ts)
            )
        else:
            messages = await slack.get_channel_messages(project.channel_id, days=1)
        if not messages:
            print("No new messages to process")
            continue

        insights = await analyze_channel_messages(completion, messages)
        channel = await slack.channel_info(project.channel_id)
        store.upsert_channel(project.channel_id, channel.get("name"))
        store.upsert_analysis(project.channel_id, insights)

        tasks = [task for task in map(parse_action_item, insights.action_items) if task]
        for task in tasks:
            store.create_task(project.id, task)
        store.record_last_message(project.id, newest_message_ts(messages))

        await slack.post_message(project.channel_id, format_project_update(insights))
        print(f"Processed {len(messages)} messages for {project.name} ({len(tasks)} new tasks)")
        updated += 1
    return updated


async def _run(args: argparse.Namespace) -> None:
    async with SlackClient() as slack:
        if args.command == "test-slack":
            await check_slack(slack)
        elif args.command == "join":
            await join_channel(slack, args.channel_id)
        elif args.command == "channel-summary":
            await channel_summary(slack, args.channel_id)
        elif args.command == "sync":
            with AnalysisStore(args.database) as store:
                await sync_insights(slack, CompletionClient(), store)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="owl",
        description="Project Owl maintenance commands for Slack channel analysis.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("test-slack", help="Check the bot token and list some public channels.")

    join = sub.add_parser("join", help="Join a channel so the bot can read it.")
    join.add_argument("channel_id")

    summary = sub.add_parser("channel-summary", help="Print the last 24h of a channel.")
    summary.add_argument("channel_id")

    sync = sub.add_parser("sync", help="Analyze every project channel and post an update.")
    sync.add_argument("--database", default=None, help="SQLite path (else DATABASE_PATH).")

    args = parser.parse_args(argv)

    load_dotenv(override=True)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(_run(args))
        return 0
    except SlackError as e:
        print(f"[owl] Slack error: {e}", file=sys.stderr)
        return 2
    except Exception as e:
        print(f"[owl] Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
