"""Tests for command parsing and error types."""

import pytest

from teleshell.models import BotCommand, ExecError, StartError, TeleshellError, parse_command


class TestParseCommand:

    @pytest.mark.parametrize(
        "text,command,args",
        [
            ("/cmd ls -la", BotCommand.SINGLE_COMMAND, "ls -la"),
            ("/shell", BotCommand.START_SESSION, ""),
            ("/exit", BotCommand.STOP_SESSION, ""),
            ("/help", BotCommand.HELP, ""),
            ("/cmd@teleshell_bot uname -a", BotCommand.SINGLE_COMMAND, "uname -a"),
            ("/cmd    echo   spaced", BotCommand.SINGLE_COMMAND, "echo   spaced"),
        ],
    )
    def test_known_commands(self, text, command, args):
        parsed = parse_command(text)

        assert parsed.command == command
        assert parsed.args == args
        assert parsed.text == text

    def test_raw_text(self):
        parsed = parse_command("ls -la")

        assert parsed.name is None
        assert parsed.command is None
        assert parsed.args == "ls -la"

    def test_unknown_command_has_name_but_no_command(self):
        parsed = parse_command("/start")

        assert parsed.name == "start"
        assert parsed.command is None

    def test_slash_must_lead(self):
        assert parse_command("echo /cmd").command is None

    def test_exit_without_slash_is_raw_text(self):
        """`exit` is shell input; only `/exit` force-stops."""
        assert parse_command("exit").command is None


class TestErrors:

    def test_exec_error_message(self):
        err = ExecError("ls", "error writing to pty: broken")

        assert str(err) == "error running 'ls': error writing to pty: broken"
        assert err.command == "ls"
        assert isinstance(err, TeleshellError)

    def test_start_error_is_teleshell_error(self):
        assert issubclass(StartError, TeleshellError)
