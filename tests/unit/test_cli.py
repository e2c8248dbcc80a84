"""Unit tests for CLI commands."""

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from echostream.cli.main import app
from echostream.exceptions import PersistenceError
from echostream.models import Conversation, Message, SenderType


@pytest.fixture
def runner():
    """CLI test runner."""
    return CliRunner()


@pytest.fixture
def mock_mux():
    """Mock SessionMultiplexer."""
    mux = MagicMock()
    mux.load_conversations = AsyncMock(return_value=[])
    mux.fetch_messages = AsyncMock(return_value=[])
    mux.select_conversation = AsyncMock(return_value=None)
    mux.rename_conversation = AsyncMock()
    mux.delete_conversation = AsyncMock()
    mux.aclose = AsyncMock()
    mux.current_conversation_id = None
    mux.current_messages = ()
    return mux


class TestConversationsCommand:
    def test_lists_conversations(self, runner, mock_mux):
        mock_mux.load_conversations.return_value = [
            Conversation(id=12, title="Library hours", message_count=4, updated_at=datetime(2024, 5, 1, 10, 5)),
            Conversation(id=13, title="", message_count=0),
        ]
        with patch("echostream.cli.commands.conversations.SessionMultiplexer", return_value=mock_mux):
            result = runner.invoke(app, ["conversations", "--page", "2"])

        assert result.exit_code == 0
        assert "Library hours" in result.stdout
        assert "(untitled)" in result.stdout
        mock_mux.load_conversations.assert_awaited_once_with(page=2, size=None)
        mock_mux.aclose.assert_awaited_once()

    def test_empty(self, runner, mock_mux):
        with patch("echostream.cli.commands.conversations.SessionMultiplexer", return_value=mock_mux):
            result = runner.invoke(app, ["conversations"])

        assert result.exit_code == 0
        assert "No conversations yet" in result.stdout

    def test_backend_error_exits_nonzero(self, runner, mock_mux):
        mock_mux.load_conversations.side_effect = PersistenceError("GET failed")
        with patch("echostream.cli.commands.conversations.SessionMultiplexer", return_value=mock_mux):
            result = runner.invoke(app, ["conversations"])

        assert result.exit_code == 1
        assert "Could not list conversations" in result.stdout
        mock_mux.aclose.assert_awaited_once()


class TestHistoryCommand:
    def test_shows_rounds(self, runner, mock_mux):
        mock_mux.fetch_messages.return_value = [
            Message(id=1, sender_type=SenderType.USER, content="When?", round_id=1),
            Message(id=2, sender_type=SenderType.BOT, content="Part one", round_id=1),
            Message(id=3, sender_type=SenderType.BOT, content="Part two", round_id=1, is_last_in_round=True),
        ]
        with patch("echostream.cli.commands.conversations.SessionMultiplexer", return_value=mock_mux):
            result = runner.invoke(app, ["history", "12"])

        assert result.exit_code == 0
        assert "When?" in result.stdout
        assert "Part one" in result.stdout
        assert "(continued)" in result.stdout
        mock_mux.fetch_messages.assert_awaited_once_with(12)


class TestManageCommands:
    def test_rename(self, runner, mock_mux):
        with patch("echostream.cli.commands.conversations.SessionMultiplexer", return_value=mock_mux):
            result = runner.invoke(app, ["rename", "12", "New title"])

        assert result.exit_code == 0
        mock_mux.rename_conversation.assert_awaited_once_with(12, "New title")

    def test_delete_with_yes(self, runner, mock_mux):
        with patch("echostream.cli.commands.conversations.SessionMultiplexer", return_value=mock_mux):
            result = runner.invoke(app, ["delete", "12", "--yes"])

        assert result.exit_code == 0
        mock_mux.delete_conversation.assert_awaited_once_with(12)

    def test_delete_aborted_without_confirmation(self, runner, mock_mux):
        with patch("echostream.cli.commands.conversations.SessionMultiplexer", return_value=mock_mux):
            result = runner.invoke(app, ["delete", "12"], input="n\n")

        assert result.exit_code != 0
        mock_mux.delete_conversation.assert_not_awaited()


class TestChatCommand:
    def test_single_message(self, runner, mock_mux):
        session = MagicMock()
        session.wait = AsyncMock()
        session.cancel = MagicMock()
        mock_mux.start_stream.return_value = session

        with patch("echostream.cli.commands.chat.SessionMultiplexer", return_value=mock_mux):
            result = runner.invoke(app, ["chat", "When does the library open?"])

        assert result.exit_code == 0
        text, conversation_id, handlers = mock_mux.start_stream.call_args.args
        assert text == "When does the library open?"
        assert conversation_id is None
        assert handlers.on_content is not None
        session.wait.assert_awaited_once()
        mock_mux.aclose.assert_awaited_once()

    def test_no_stream(self, runner, mock_mux):
        mock_mux.send_message = AsyncMock(
            return_value=Message(id=50, sender_type=SenderType.BOT, content="Opens at 8:00")
        )

        with patch("echostream.cli.commands.chat.SessionMultiplexer", return_value=mock_mux):
            result = runner.invoke(app, ["chat", "--no-stream", "When does the library open?"])

        assert result.exit_code == 0
        assert "Opens at 8:00" in result.stdout
        mock_mux.send_message.assert_awaited_once_with("When does the library open?", None)
        mock_mux.start_stream.assert_not_called()

    def test_no_stream_failure(self, runner, mock_mux):
        mock_mux.send_message = AsyncMock(side_effect=PersistenceError("POST /v1/chat/message: HTTP 500"))

        with patch("echostream.cli.commands.chat.SessionMultiplexer", return_value=mock_mux):
            result = runner.invoke(app, ["chat", "--no-stream", "hi"])

        assert result.exit_code == 0
        assert "Send failed" in result.stdout
        mock_mux.aclose.assert_awaited_once()

    def test_unknown_conversation(self, runner, mock_mux):
        mock_mux.select_conversation.side_effect = PersistenceError("HTTP 404")

        with patch("echostream.cli.commands.chat.SessionMultiplexer", return_value=mock_mux):
            result = runner.invoke(app, ["chat", "hi", "--conversation", "99"])

        assert "Could not load conversation 99" in result.stdout
        mock_mux.start_stream.assert_not_called()


class TestVersion:
    def test_version(self, runner):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "echostream" in result.stdout
