"""Data models for teleshell."""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


# A command is "/word" at the start of a message, optionally addressed as "/word@botname"
BOT_COMMAND_RE = re.compile(r'^/(\w+)(?:@\w+)? *')


class BotCommand(Enum):
    """Commands understood by the bot."""
    SINGLE_COMMAND = "cmd"   # Run one command without a shell session
    START_SESSION = "shell"  # Start the interactive shell
    STOP_SESSION = "exit"    # Force-stop the interactive shell
    HELP = "help"


class SessionState(Enum):
    """Session manager state."""
    IDLE = "idle"      # No shell running
    ACTIVE = "active"  # One shell running, output relayed to chat


class StopReason(Enum):
    """Why a shell session stopped."""
    EXITED = "exited"      # Shell quit on its own (end of stream)
    IO_ERROR = "io_error"  # Reading the pty failed
    STOPPED = "stopped"    # Stopped by us


class TeleshellError(Exception):
    """Base class for teleshell errors."""


class StartError(TeleshellError):
    """The shell could not be started."""


class ExecError(TeleshellError):
    """Input could not be written to a running shell."""

    def __init__(self, command: str, cause: object):
        self.command = command
        self.cause = cause
        super().__init__(f"error running '{command}': {cause}")


@dataclass
class ParsedCommand:
    """An inbound chat message split into command name and arguments."""
    text: str
    name: Optional[str] = None  # Command word without the slash, None for raw text
    args: str = ""              # Everything after the command word

    @property
    def command(self) -> Optional[BotCommand]:
        """Recognized command, or None for raw text and unknown commands."""
        if self.name is None:
            return None
        try:
            return BotCommand(self.name)
        except ValueError:
            return None


def parse_command(text: str) -> ParsedCommand:
    """Parse message text into a ParsedCommand.

    Examples:
        "/cmd ls -la"       -> name="cmd", args="ls -la"
        "/shell@my_bot"     -> name="shell", args=""
        "ls -la"            -> name=None, args="ls -la"
    """
    match = BOT_COMMAND_RE.match(text)
    if not match:
        return ParsedCommand(text=text, args=text)
    return ParsedCommand(text=text, name=match.group(1), args=text[match.end():])
