"""Shell process attached to a pseudo-terminal."""

import errno
import logging
import os
import pty
import select
import signal
import subprocess
from dataclasses import dataclass, field
from typing import Optional

from .models import StartError

logger = logging.getLogger(__name__)


@dataclass
class SpawnConfig:
    """How to launch the shell.

    The terminal type goes into the child's environment only; the
    environment of this process is left alone.
    """
    command: list[str] = field(default_factory=lambda: ["bash"])
    term: str = "vt220"  # Basic terminal, keeps programs from emitting color codes
    env: dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None

    def build_env(self) -> dict[str, str]:
        """Environment for the child process."""
        env = {**os.environ, **self.env}
        env["TERM"] = self.term
        env.pop("PROMPT_COMMAND", None)
        return env


class PseudoTerminalProcess:
    """A child process whose stdin/stdout/stderr is a pty slave.

    Writing to the master fd is typing into the terminal; reading from it
    receives what the process prints.
    """

    def __init__(self, master_fd: int, proc: subprocess.Popen):
        self._master_fd = master_fd
        self._proc = proc
        self._closed = False

    @classmethod
    def spawn(cls, config: SpawnConfig) -> "PseudoTerminalProcess":
        """
        Start the configured command on a new pty.

        Raises:
            StartError: if the pty cannot be opened or the process fails to launch
        """
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise StartError(f"could not open pty: {e}") from e

        try:
            # Own process group so the whole tree can be killed on stop
            proc = subprocess.Popen(
                config.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                env=config.build_env(),
                cwd=config.cwd,
            )
        except OSError as e:
            os.close(master_fd)
            raise StartError(f"could not start {' '.join(config.command)}: {e}") from e
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        logger.info(f"Started {' '.join(config.command)} on pty (pid={proc.pid}, TERM={config.term})")
        return cls(master_fd, proc)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.poll()

    def write(self, data: bytes) -> int:
        """Write the whole payload to the terminal. Raises OSError on failure."""
        if self._closed:
            raise OSError(errno.EBADF, "pty is closed")
        view = memoryview(data)
        while view:
            written = os.write(self._master_fd, view)
            view = view[written:]
        return len(data)

    def read(self, size: int, timeout: Optional[float] = None) -> bytes:
        """
        Read up to `size` bytes of terminal output.

        Blocks until output is available unless `timeout` is given.

        Returns:
            The bytes read; b"" at end of stream, or when nothing arrived
            within `timeout`

        Raises:
            OSError: on read errors other than end of stream
        """
        if self._closed:
            return b""
        if timeout is not None:
            readable, _, _ = select.select([self._master_fd], [], [], timeout)
            if not readable:
                return b""
        try:
            return os.read(self._master_fd, size)
        except OSError as e:
            # Linux reports EIO once the slave side has no more writers
            if e.errno == errno.EIO:
                return b""
            raise

    def terminate(self) -> None:
        """Kill the entire process tree. Does not block; see reap().

        The shell leads its own session, so its pid is also the group id.
        """
        try:
            os.killpg(self._proc.pid, signal.SIGKILL)
            logger.info(f"Killed shell process group (pid={self._proc.pid})")
        except ProcessLookupError:
            logger.debug(f"Process group already gone (pid={self._proc.pid})")
        except OSError as e:
            logger.warning(f"Error killing shell (pid={self._proc.pid}): {e}")

    def reap(self, timeout: float = 2) -> Optional[int]:
        """Wait for the shell to exit so it does not linger as a zombie.

        Blocks for up to `timeout` seconds; run it in an executor from async code.

        Returns:
            The exit code, or None if the shell is still running
        """
        try:
            return self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Shell (pid={self._proc.pid}) did not exit after {timeout}s")
            return None

    def close(self) -> None:
        """Close the master fd. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            os.close(self._master_fd)
        except OSError as e:
            logger.debug(f"Closing pty returned: {e}")
