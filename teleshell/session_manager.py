"""Single shell session lifecycle and chat command dispatch."""

import asyncio
import logging
import shlex
from typing import Any, Awaitable, Callable, Optional

from .models import BotCommand, SessionState, StartError, ExecError, parse_command
from .pty_process import SpawnConfig
from .shell_session import ShellSession

logger = logging.getLogger(__name__)

MSG_SESSION_STARTED = "Shell started. You can talk to your machine now. Say 'exit' to stop the shell."
MSG_ERR_STARTING_SESSION = "Could not start shell."
MSG_SESSION_STOPPED = "Shell stopped. You are no longer talking to your machine."
MSG_SESSION_IN_PROGRESS = "Your shell session is in progress. Say 'exit' to stop it."
MSG_SESSION_NOT_IN_PROGRESS = "There are no active shell sessions."

MSG_HELP = (
    "Welcome to teleshell!\n"
    "Use the following commands:\n"
    f"/{BotCommand.SINGLE_COMMAND.value} <command> to run a single command on your machine\n"
    "    without launching shell.\n"
    f"/{BotCommand.START_SESSION.value} to start bash shell on your machine and redirect\n"
    "    input from this chat to the shell. Avoid launching\n"
    "    interactive programs. sudo is OK, but vim is NOT.\n"
    "    Also colored output of programs appears as\n"
    "    garbage in chat.\n"
    f"/{BotCommand.STOP_SESSION.value} to force-kill running shell\n"
    f"/{BotCommand.HELP.value} to see this message again."
)

SessionFactory = Callable[..., Awaitable[ShellSession]]


class SessionManager:
    """
    Owns at most one shell session and routes operator messages.

    States: idle (no session) and active (one session, whose output a relay
    task forwards to the chat it was started from). The in-progress flag and
    the session reference only change together, under one lock, so the
    dispatch path and the relay task always agree on them.
    """

    def __init__(
        self,
        send: Callable[[int, str], Awaitable[Any]],
        spawn_config: Optional[SpawnConfig] = None,
        startup_script: Optional[str] = None,
        config: Optional[dict] = None,
        session_factory: Optional[SessionFactory] = None,
    ):
        """
        Args:
            send: Transport send, receives (chat_id, text)
            spawn_config: How to launch the shell
            startup_script: File sourced when a shell starts
            config: Full app config (for timeout settings)
            session_factory: Creates sessions (defaults to ShellSession.create)
        """
        self._send_fn = send
        self.spawn_config = spawn_config or SpawnConfig()
        self.startup_script = startup_script
        self.config = config or {}
        self._session_factory = session_factory or ShellSession.create

        # Load timeout configuration with fallbacks
        timeouts = self.config.get("timeouts", {})
        shell_timeouts = timeouts.get("shell", {})
        self.echo_settle_seconds = shell_timeouts.get("echo_settle_seconds", 1.0)
        self.stop_grace_seconds = shell_timeouts.get("stop_grace_seconds", 1.0)
        self.single_command_timeout = timeouts.get("single_command_seconds", 300)

        self._lock = asyncio.Lock()
        self._in_progress = False
        self._session: Optional[ShellSession] = None
        self._relay_task: Optional[asyncio.Task] = None

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    @property
    def session(self) -> Optional[ShellSession]:
        return self._session

    @property
    def state(self) -> SessionState:
        return SessionState.ACTIVE if self._in_progress else SessionState.IDLE

    async def handle_message(self, chat_id: int, text: str):
        """Dispatch one message from the (already authorized) operator."""
        parsed = parse_command(text)
        command = parsed.command

        if command == BotCommand.SINGLE_COMMAND:
            await self.run_single_command(chat_id, parsed.args)
        elif command == BotCommand.START_SESSION:
            await self.start_session(chat_id)
        elif command == BotCommand.STOP_SESSION:
            await self.stop_session(chat_id)
        elif command == BotCommand.HELP:
            await self.send_help(chat_id)
        elif await self._current_session() is not None:
            await self.execute(chat_id, text)
        else:
            await self.send_help(chat_id)

    async def start_session(self, chat_id: int) -> bool:
        """
        Start a shell and relay its output to chat_id.

        Returns:
            True if a new session was started
        """
        async with self._lock:
            if self._in_progress:
                busy = True
            else:
                busy = False
                try:
                    session = await self._session_factory(
                        self.spawn_config,
                        self.startup_script,
                        echo_settle_seconds=self.echo_settle_seconds,
                    )
                except StartError as e:
                    logger.error(f"Error starting shell: {e}")
                    session = None

                if session is not None:
                    self._session = session
                    self._in_progress = True

        if busy:
            await self._send(chat_id, MSG_SESSION_IN_PROGRESS)
            return False
        if session is None:
            await self._send(chat_id, MSG_ERR_STARTING_SESSION)
            return False

        logger.info(f"Shell session started (pid={session.pid}) for chat {chat_id}")
        await self._send(chat_id, MSG_SESSION_STARTED)
        self._relay_task = asyncio.create_task(self._relay_output(chat_id, session))
        return True

    async def stop_session(self, chat_id: int) -> bool:
        """
        Force-stop the active shell.

        The flag is cleared before the shell is stopped, so the relay task
        leaves its loop on its next wake instead of reading from a
        half-closed session.

        Returns:
            True if a session was stopped
        """
        session = await self._detach_session()
        if session is None:
            await self._send(chat_id, MSG_SESSION_NOT_IN_PROGRESS)
            return False

        await self._stop_and_wait(session)
        return True

    async def execute(self, chat_id: int, text: str) -> bool:
        """Send raw operator input to the active shell."""
        session = await self._current_session()
        if session is None:
            await self._send(chat_id, MSG_SESSION_NOT_IN_PROGRESS)
            return False

        try:
            session.execute(text)
        except ExecError as e:
            logger.warning(f"Shell input failed: {e}")
            await self._send(chat_id, str(e))
            return False
        return True

    async def run_single_command(self, chat_id: int, command: str):
        """Run one command outside the shell session and report its output."""
        output, error = await self._run_command(command)
        await self._send(chat_id, output)
        if error:
            await self._send(chat_id, error)

    async def send_help(self, chat_id: int):
        await self._send(chat_id, MSG_HELP)

    async def shutdown(self):
        """Best-effort stop of the active session (called on exit)."""
        session = await self._detach_session()
        if session is not None:
            logger.info(f"Stopping shell session (pid={session.pid}) on shutdown")
            await self._stop_and_wait(session)

    async def _current_session(self) -> Optional[ShellSession]:
        async with self._lock:
            return self._session if self._in_progress else None

    async def _detach_session(self) -> Optional[ShellSession]:
        """Clear the flag and the session reference together."""
        async with self._lock:
            session = self._session if self._in_progress else None
            self._in_progress = False
            self._session = None
            return session

    async def _is_current(self, session: ShellSession) -> bool:
        async with self._lock:
            return self._in_progress and self._session is session

    async def _stop_and_wait(self, session: ShellSession):
        session.stop()
        # Stopping cannot interrupt every blocked read; give the reader
        # and the relay a bounded grace period, then move on.
        await session.wait_stopped(self.stop_grace_seconds)
        relay = self._relay_task
        if relay is not None and not relay.done():
            await asyncio.wait({relay}, timeout=self.stop_grace_seconds)

    async def _relay_output(self, chat_id: int, session: ShellSession):
        """Forward session output to the chat until the session ends."""
        while await self._is_current(session):
            output = await session.next_output()
            if output is None:
                # Shell exited (or its pty failed) on its own
                async with self._lock:
                    if self._session is session:
                        self._in_progress = False
                        self._session = None
                reason = session.stop_reason.value if session.stop_reason else "unknown"
                logger.info(f"Shell session (pid={session.pid}) ended: {reason}")
                # Release the pty and reap the shell; the stop reason is kept
                session.stop()
                await session.wait_stopped(self.stop_grace_seconds)
                break
            await self._send(chat_id, output)

        await self._send(chat_id, MSG_SESSION_STOPPED)

    async def _run_command(self, command: str) -> tuple[str, Optional[str]]:
        """
        Run a command to completion without a shell.

        Returns:
            (combined stdout/stderr, error message or None)
        """
        try:
            argv = shlex.split(command)
        except ValueError as e:
            return "", f"could not parse command: {e}"
        if not argv:
            return "", "no command given"

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError:
            return "", f"command not found: {argv[0]}"
        except OSError as e:
            return "", f"error starting '{command}': {e}"

        try:
            stdout, _ = await asyncio.wait_for(
                proc.communicate(), timeout=self.single_command_timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning(f"Command timed out after {self.single_command_timeout}s: {command}")
            return "", f"timed out after {self.single_command_timeout}s"

        output = stdout.decode("utf-8", errors="replace")
        if proc.returncode < 0:
            return output, f"signal: {-proc.returncode}"
        if proc.returncode != 0:
            return output, f"exit status {proc.returncode}"
        return output, None

    async def _send(self, chat_id: int, text: str):
        try:
            await self._send_fn(chat_id, text)
        except Exception as e:
            logger.error(f"Failed to send message to chat {chat_id}: {e}")
