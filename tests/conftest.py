"""Shared pytest fixtures for teleshell tests."""

import asyncio
import errno
import queue
import threading
import time
from typing import Callable, Generator, Optional
from unittest.mock import AsyncMock, patch

import pytest

from teleshell.session_manager import SessionManager


class FakePty:
    """
    Stand-in for PseudoTerminalProcess.

    Tests feed output with feed() and end the stream with eof(). Reads
    block (in the reader's executor thread) until something is fed.
    """

    def __init__(self, pid: int = 4242):
        self.pid = pid
        self.writes: list[bytes] = []
        self.closed = False
        self.terminated = False
        self.write_error: Optional[OSError] = None
        self.read_error: Optional[OSError] = None
        # None while running; set by terminate() unless reap_delay makes death slow
        self.returncode: Optional[int] = None
        self.reap_delay = 0.0
        self.reap_threads: list[threading.Thread] = []
        self._chunks: "queue.Queue[bytes]" = queue.Queue()

    def feed(self, data: bytes):
        self._chunks.put(data)

    def eof(self):
        self._chunks.put(b"")

    def write(self, data: bytes) -> int:
        if self.write_error:
            raise self.write_error
        if self.closed:
            raise OSError(errno.EBADF, "pty is closed")
        self.writes.append(data)
        return len(data)

    def read(self, size: int, timeout: Optional[float] = None) -> bytes:
        while True:
            if self.read_error:
                raise self.read_error
            if self.closed and self._chunks.empty():
                return b""
            try:
                return self._chunks.get(timeout=0.05 if timeout is None else timeout)
            except queue.Empty:
                if timeout is not None:
                    return b""

    def terminate(self):
        # Killing the shell ends the stream
        self.terminated = True
        if not self.reap_delay:
            self.returncode = -9
        self.eof()

    def reap(self, timeout: float = 2) -> Optional[int]:
        self.reap_threads.append(threading.current_thread())
        time.sleep(self.reap_delay)
        self.returncode = -9
        return self.returncode

    def close(self):
        self.closed = True

    @property
    def written_text(self) -> str:
        return b"".join(self.writes).decode()


class FakePtys(list):
    """FakePty instances in spawn order.

    Set `on_spawn` to prepare each new FakePty before the session sees it.
    """
    on_spawn: Optional[Callable[[FakePty], None]] = None


@pytest.fixture
def fake_ptys() -> Generator[FakePtys, None, None]:
    """
    Patch pty spawning so every new shell gets a FakePty.

    Yields:
        FakePtys list, in spawn order
    """
    created = FakePtys()

    def spawn(config):
        fake = FakePty(pid=4242 + len(created))
        if created.on_spawn:
            created.on_spawn(fake)
        created.append(fake)
        return fake

    with patch("teleshell.shell_session.PseudoTerminalProcess.spawn", side_effect=spawn):
        yield created

    # Unblock any reader thread still waiting so the loop can shut down
    for fake in created:
        fake.close()
        fake.eof()


@pytest.fixture
def fast_config() -> dict:
    """Config with short timeouts for tests."""
    return {
        "timeouts": {
            "shell": {
                "echo_settle_seconds": 0,
                "stop_grace_seconds": 1.0,
            },
            "single_command_seconds": 10,
        }
    }


@pytest.fixture
def mock_send() -> AsyncMock:
    """Transport send recording (chat_id, text) calls."""
    return AsyncMock(return_value=1)


@pytest.fixture
def manager(mock_send: AsyncMock, fast_config: dict, fake_ptys: FakePtys) -> SessionManager:
    """SessionManager wired to a mock transport and fake ptys."""
    return SessionManager(send=mock_send, config=fast_config)


@pytest.fixture
def sent_texts(mock_send: AsyncMock) -> Callable[[], list[str]]:
    """Return a function listing the texts sent so far."""
    def texts() -> list[str]:
        return [c.args[1] for c in mock_send.call_args_list]
    return texts


@pytest.fixture
def wait_for_sent(sent_texts) -> Callable:
    """Return a coroutine function that waits until `text` has been sent."""
    async def wait(text: str, timeout: float = 3.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while text not in sent_texts():
            if loop.time() > deadline:
                raise AssertionError(f"{text!r} not sent; sent: {sent_texts()!r}")
            await asyncio.sleep(0.01)
    return wait
