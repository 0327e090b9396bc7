"""Integration tests against a real bash on a real pty."""

import asyncio
import os
import shutil
import sys
from unittest.mock import AsyncMock

import pytest

from teleshell.models import StartError, StopReason
from teleshell.pty_process import PseudoTerminalProcess, SpawnConfig
from teleshell.session_manager import MSG_SESSION_STARTED, MSG_SESSION_STOPPED, SessionManager
from teleshell.shell_session import ShellSession

pytestmark = pytest.mark.skipif(
    sys.platform == "win32" or shutil.which("bash") is None,
    reason="needs bash and a POSIX pty",
)


async def collect_until(session: ShellSession, marker: str, timeout: float = 10.0) -> str:
    """Gather session output until `marker` appears."""
    collected = ""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while marker not in collected:
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise AssertionError(f"{marker!r} not seen in output: {collected!r}")
        output = await asyncio.wait_for(session.next_output(), remaining)
        if output is None:
            break
        collected += output
    return collected


def test_child_gets_term_without_touching_our_env():
    before = os.environ.get("TERM")
    process = PseudoTerminalProcess.spawn(SpawnConfig(command=["sh", "-c", "echo TERM=$TERM"]))
    try:
        output = b""
        while True:
            chunk = process.read(1024, timeout=5)
            if not chunk:
                break
            output += chunk
    finally:
        process.terminate()
        process.close()
        process.reap()

    assert b"TERM=vt220" in output
    assert os.environ.get("TERM") == before


def test_spawn_unknown_command_raises_start_error():
    with pytest.raises(StartError):
        PseudoTerminalProcess.spawn(SpawnConfig(command=["definitely-not-a-shell-xyz"]))


@pytest.mark.asyncio
async def test_shell_runs_commands_and_exits():
    session = await ShellSession.create(echo_settle_seconds=0.5)
    try:
        session.execute("echo teleshell-$((40+2))")
        output = await collect_until(session, "teleshell-42")
        assert "teleshell-42" in output

        session.execute("exit")
        while await asyncio.wait_for(session.next_output(), 10) is not None:
            pass

        assert session.stop_reason == StopReason.EXITED
    finally:
        session.stop()
        await session.wait_stopped(timeout=5)


@pytest.mark.asyncio
async def test_stop_kills_running_shell():
    session = await ShellSession.create(echo_settle_seconds=0.5)
    pid = session.pid

    session.stop()
    assert await session.wait_stopped(timeout=5)

    assert session.stop_reason == StopReason.STOPPED
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


@pytest.mark.asyncio
async def test_operator_scenario():
    """/shell, a command, `exit`, then /shell again."""
    send = AsyncMock()
    manager = SessionManager(send=send, config={"timeouts": {"shell": {"echo_settle_seconds": 0.5}}})

    def texts():
        return [c.args[1] for c in send.call_args_list]

    async def wait_for(predicate, timeout=10.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError(f"timed out; sent: {texts()!r}")
            await asyncio.sleep(0.05)

    await manager.handle_message(1, "/shell")
    assert texts() == [MSG_SESSION_STARTED]

    await manager.handle_message(1, "echo marker-$((6*7))")
    await wait_for(lambda: any("marker-42" in t for t in texts()))

    await manager.handle_message(1, "exit")
    await wait_for(lambda: MSG_SESSION_STOPPED in texts())
    assert manager.session is None

    await manager.handle_message(1, "/shell")
    assert texts()[-1] == MSG_SESSION_STARTED
    await manager.shutdown()
