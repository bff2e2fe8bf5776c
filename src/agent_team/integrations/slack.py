"""Slack Web API integration."""

import asyncio
import logging
from dataclasses import dataclass

from slack_sdk.errors import SlackApiError

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


@dataclass
class SlackChannel:
    id: str
    name: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"chat.postMessage failed: {e.response['error']}") from e

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def create_channel(token: str | None, name: str, is_private: bool = False) -> SlackChannel:
    """Create a channel, or return the existing one with that name."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    try:
        response = client.conversations_create(name=name, is_private=is_private)
    except SlackApiError as e:
        if e.response["error"] != "name_taken":
            raise SlackError(f"conversations.create failed: {e.response['error']}") from e
        return _find_channel(client, name)

    channel = response["channel"]
    return SlackChannel(id=channel["id"], name=channel["name"])


def _find_channel(client, name: str) -> SlackChannel:
    cursor = None
    while True:
        response = client.conversations_list(cursor=cursor, limit=200, exclude_archived=True)
        for channel in response["channels"]:
            if channel["name"] == name:
                return SlackChannel(id=channel["id"], name=channel["name"])
        cursor = (response.get("response_metadata") or {}).get("next_cursor")
        if not cursor:
            raise SlackError(f"Channel '{name}' exists but is not visible to this bot")


def format_task_notification(task_id: str, title: str, status: str, owner: str | None = None) -> list[dict]:
    """Format a task notification as Slack blocks."""
    status_emoji = {
        "backlog": ":white_circle:",
        "ready": ":large_yellow_circle:",
        "in_progress": ":large_blue_circle:",
        "pr_created": ":eyes:",
        "done": ":white_check_mark:",
    }
    emoji = status_emoji.get(status, ":grey_question:")
    owner_text = f" | Owner: {owner}" if owner else ""

    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *Task Update*\n*{title}* (`{task_id}`)\nStatus: *{status}*{owner_text}",
            },
        }
    ]


def format_status_update(project: str, by_status: dict[str, int]) -> list[dict]:
    """Format a task board summary as Slack blocks."""
    counts = {s: by_status.get(s, 0) for s in ("backlog", "ready", "in_progress", "pr_created", "done")}
    total = sum(by_status.values())
    progress = counts["done"] / total * 100 if total > 0 else 0

    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":bar_chart: *Project Status: {project}*\n"
                    f":white_check_mark: Done: {counts['done']} | "
                    f":eyes: PR: {counts['pr_created']} | "
                    f":large_blue_circle: In Progress: {counts['in_progress']} | "
                    f":large_yellow_circle: Ready: {counts['ready']} | "
                    f":white_circle: Backlog: {counts['backlog']}\n"
                    f"Progress: {progress:.0f}% ({counts['done']}/{total})"
                ),
            },
        }
    ]


class SlackNotifier:
    """Async notification sink that posts to one channel."""

    def __init__(self, token: str | None, channel: str):
        self.token = token
        self.channel = channel

    async def __call__(self, text: str):
        try:
            await asyncio.to_thread(send_message, self.token, self.channel, text)
        except SlackError:
            logger.exception("Failed to post notification to %s", self.channel)
