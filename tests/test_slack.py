"""Tests for the Slack integration."""

import asyncio
import logging
from unittest.mock import MagicMock, patch

import pytest
from slack_sdk.errors import SlackApiError

from agent_team.integrations import slack as slack_mod
from agent_team.integrations.slack import (
    SlackError,
    SlackNotifier,
    create_channel,
    format_status_update,
    format_task_notification,
    send_message,
)


def _api_error(code: str) -> SlackApiError:
    return SlackApiError(code, {"ok": False, "error": code})


class TestFormatting:
    def test_task_notification(self):
        blocks = format_task_notification("build-api", "Build API", "in_progress", "backend")
        text = blocks[0]["text"]["text"]
        assert text.startswith(":large_blue_circle: *Task Update*")
        assert "*Build API* (`build-api`)" in text
        assert text.endswith("Status: *in_progress* | Owner: backend")

    def test_unknown_status_emoji(self):
        text = format_task_notification("x", "X", "weird")[0]["text"]["text"]
        assert text.startswith(":grey_question:")
        assert "Owner" not in text

    def test_status_update(self):
        text = format_status_update("shop", {"done": 1, "backlog": 2, "ready": 1})[0]["text"]["text"]
        assert "*Project Status: shop*" in text
        assert "Done: 1" in text
        assert "Backlog: 2" in text
        assert "Progress: 25% (1/4)" in text

    def test_status_update_empty_board(self):
        text = format_status_update("shop", {})[0]["text"]["text"]
        assert "Progress: 0% (0/0)" in text


class TestSendMessage:
    def test_requires_token(self):
        with pytest.raises(SlackError, match="SLACK_BOT_TOKEN"):
            send_message(None, "#general", "hello")

    def test_posts_message(self):
        client = MagicMock()
        client.chat_postMessage.return_value = {"channel": "C1", "ts": "123.4"}
        with patch.object(slack_mod, "get_client", return_value=client):
            result = send_message("xoxb-test", "#general", "hello")
        assert (result.channel, result.ts, result.text) == ("C1", "123.4", "hello")
        client.chat_postMessage.assert_called_once_with(channel="#general", text="hello", blocks=None)

    def test_api_error(self):
        client = MagicMock()
        client.chat_postMessage.side_effect = _api_error("channel_not_found")
        with patch.object(slack_mod, "get_client", return_value=client):
            with pytest.raises(SlackError, match="channel_not_found"):
                send_message("xoxb-test", "#nope", "hello")


class TestCreateChannel:
    def test_creates(self):
        client = MagicMock()
        client.conversations_create.return_value = {"channel": {"id": "C9", "name": "team"}}
        with patch.object(slack_mod, "get_client", return_value=client):
            channel = create_channel("xoxb-test", "team", is_private=True)
        assert (channel.id, channel.name) == ("C9", "team")
        client.conversations_create.assert_called_once_with(name="team", is_private=True)

    def test_name_taken_finds_existing(self):
        client = MagicMock()
        client.conversations_create.side_effect = _api_error("name_taken")
        client.conversations_list.side_effect = [
            {"channels": [{"id": "C1", "name": "general"}], "response_metadata": {"next_cursor": "abc"}},
            {"channels": [{"id": "C7", "name": "team"}], "response_metadata": {"next_cursor": ""}},
        ]
        with patch.object(slack_mod, "get_client", return_value=client):
            channel = create_channel("xoxb-test", "team")
        assert channel.id == "C7"
        assert client.conversations_list.call_args.kwargs["cursor"] == "abc"

    def test_name_taken_but_invisible(self):
        client = MagicMock()
        client.conversations_create.side_effect = _api_error("name_taken")
        client.conversations_list.return_value = {"channels": [], "response_metadata": {}}
        with patch.object(slack_mod, "get_client", return_value=client):
            with pytest.raises(SlackError, match="not visible"):
                create_channel("xoxb-test", "team")

    def test_other_error(self):
        client = MagicMock()
        client.conversations_create.side_effect = _api_error("restricted_action")
        with patch.object(slack_mod, "get_client", return_value=client):
            with pytest.raises(SlackError, match="restricted_action"):
                create_channel("xoxb-test", "team")


class TestSlackNotifier:
    def test_posts_to_channel(self):
        sent = []
        with patch.object(slack_mod, "send_message", side_effect=lambda *args: sent.append(args)):
            asyncio.run(SlackNotifier("xoxb-test", "C1")("done"))
        assert sent == [("xoxb-test", "C1", "done")]

    def test_failure_is_logged(self, caplog):
        with caplog.at_level(logging.ERROR, logger="agent_team.integrations.slack"):
            asyncio.run(SlackNotifier(None, "C1")("done"))
        assert "Failed to post notification to C1" in caplog.text
