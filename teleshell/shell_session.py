"""Interactive shell session streaming pty output to an async channel."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from .models import ExecError, StartError, StopReason
from .paginator import OutputDecoder
from .pty_process import PseudoTerminalProcess, SpawnConfig

logger = logging.getLogger(__name__)

ECHO_OFF_COMMAND = "stty -echo"


class ShellSession:
    """
    One shell on a pty, from spawn to termination.

    The background reader task is the only producer of output items. The
    stopped signal fires at most once: when the reader sees end of stream
    or a read error, or when stop() is called, whichever happens first.
    Nothing is published after it has fired.
    """

    def __init__(self, process: PseudoTerminalProcess, read_size: int = 16384):
        self._process = process
        self._read_size = read_size
        self._output: asyncio.Queue[str] = asyncio.Queue()
        self._stopped = asyncio.Event()
        self._stop_reason: Optional[StopReason] = None
        self._output_closed = False
        self._decoder = OutputDecoder()
        self._reader_task: Optional[asyncio.Task] = None
        self._reaper: Optional[asyncio.Future] = None

    @classmethod
    async def create(
        cls,
        spawn_config: Optional[SpawnConfig] = None,
        startup_script: Optional[str] = None,
        *,
        echo_settle_seconds: float = 1.0,
        read_size: int = 16384,
        scratch_size: int = 4096,
    ) -> "ShellSession":
        """
        Start a shell with input echo turned off.

        When this returns the shell is writable and readable, and every
        line it prints from now on is output, not an echo of our input.

        Args:
            spawn_config: How to launch the shell (defaults to bash on vt220)
            startup_script: File sourced by the shell once it is up
            echo_settle_seconds: Time given to the shell to process `stty -echo`
            read_size: Max bytes per output item
            scratch_size: Bytes read (and discarded) after `stty -echo`

        Raises:
            StartError: if the shell cannot be launched or written to
        """
        process = PseudoTerminalProcess.spawn(spawn_config or SpawnConfig())
        session = cls(process, read_size=read_size)

        try:
            session._write_line(ECHO_OFF_COMMAND)
        except OSError as e:
            # A non-writable pty means the shell is unusable
            process.terminate()
            process.close()
            await asyncio.get_running_loop().run_in_executor(None, process.reap)
            raise StartError(f"could not disable echo: {e}") from e

        # If we read immediately the shell may still print something after
        # the read returns. Assume whatever it has to say fits the scratch buffer.
        await asyncio.sleep(echo_settle_seconds)
        try:
            process.read(scratch_size, timeout=0)
        except OSError as e:
            logger.debug(f"Discarding echo-off output failed: {e}")

        session._reader_task = asyncio.create_task(session._read_loop(startup_script))
        return session

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    @property
    def stop_reason(self) -> Optional[StopReason]:
        return self._stop_reason

    def execute(self, command: str) -> None:
        """
        Send a line of input to the shell.

        Output is not consumed here; it shows up through next_output().

        Raises:
            ExecError: if the session has stopped or the write fails
        """
        if self.stopped:
            raise ExecError(command, "shell is not running")
        try:
            self._write_line(command)
        except OSError as e:
            raise ExecError(command, f"error writing to pty: {e}") from e

    async def next_output(self) -> Optional[str]:
        """
        Wait for the next output item or the stopped signal.

        Items published before the stop are always returned first.

        Returns:
            Next output text, or None once stopped and drained
        """
        while True:
            if not self._output.empty():
                return self._output.get_nowait()
            if self._stopped.is_set():
                return None

            getter = asyncio.create_task(self._output.get())
            stopper = asyncio.create_task(self._stopped.wait())
            try:
                await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                # Cancelling a pending get leaves the item in the queue
                getter.cancel()
                stopper.cancel()

            if getter.done() and not getter.cancelled():
                return getter.result()
            # Stopped: loop around to drain what is still queued

    def stop(self) -> None:
        """
        Kill the shell, close the pty and fire the stopped signal.

        Best-effort: the reader may be blocked in a read that closing the
        pty does not interrupt on every platform. Use wait_stopped() for a
        bounded wait; a reader that outlives it is left behind, harmless.
        The killed shell is reaped in the executor, never on the event loop.
        """
        self._output_closed = True
        self._process.terminate()
        self._process.close()
        if self._reaper is None and self._process.returncode is None:
            loop = asyncio.get_running_loop()
            self._reaper = loop.run_in_executor(None, self._process.reap)
        self._fire_stopped(StopReason.STOPPED)

    async def wait_stopped(self, timeout: float) -> bool:
        """Wait up to `timeout` seconds for the reader task and the reaper to finish.

        Returns:
            True if both finished, False if either is still running
        """
        pending = {f for f in (self._reader_task, self._reaper) if f is not None}
        if not pending:
            return True
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            logger.warning(f"Shell (pid={self.pid}) reader or reaper still running after {timeout}s, leaving it")
            return False
        return True

    def _write_line(self, command: str) -> None:
        self._process.write((command + "\n").encode("utf-8"))

    def _publish(self, text: str) -> None:
        if self._output_closed or self._stopped.is_set():
            return
        self._output.put_nowait(text)

    def _fire_stopped(self, reason: StopReason) -> None:
        """Set the stopped signal; only the first call has any effect."""
        if self._stopped.is_set():
            return
        self._stop_reason = reason
        self._stopped.set()
        logger.info(f"Shell session (pid={self.pid}) stopped: {reason.value}")

    async def _read_loop(self, startup_script: Optional[str]) -> None:
        """Continuously read output from the pty until it ends."""
        loop = asyncio.get_running_loop()
        reason = StopReason.EXITED
        try:
            if startup_script:
                self._source_startup_script(startup_script)

            while not self._stopped.is_set():
                try:
                    # This read returns when the shell quits on 'exit'
                    data = await loop.run_in_executor(
                        None, self._process.read, self._read_size
                    )
                except OSError as e:
                    logger.warning(f"Shell reader (pid={self.pid}) stopping on error: {e}")
                    reason = StopReason.IO_ERROR
                    break

                if not data:
                    break

                text = self._decoder.feed(data)
                if text:
                    self._publish(text)
        finally:
            tail = self._decoder.flush()
            if tail:
                self._publish(tail)
            self._output_closed = True
            self._fire_stopped(reason)
            logger.debug(f"Shell reader (pid={self.pid}) finished")

    def _source_startup_script(self, startup_script: str) -> None:
        path = Path(startup_script).expanduser()
        if not path.is_file():
            logger.info(f"Startup script not found, skipping: {path}")
            return
        self._publish(f"sourcing {path}")
        try:
            self.execute(f"source {path}")
        except ExecError as e:
            logger.warning(f"Could not source startup script: {e}")
