"""Main entry point - orchestrates all components."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import yaml

from .paginator import MAX_MESSAGE_BYTES
from .pty_process import SpawnConfig
from .session_manager import SessionManager
from .telegram_bot import TelegramBot

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "~/.teleshell.yaml"
DEFAULT_STARTUP_SCRIPT = "~/.teleshell_setup.sh"

ENV_TOKEN = "TELESHELL_TOKEN"
ENV_USERNAME = "TELESHELL_USERNAME"

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


def resolve_credentials(config: dict) -> tuple[str, str]:
    """Get (token, username), environment variables taking precedence over the config file."""
    telegram_config = config.get("telegram", {})
    token = os.environ.get(ENV_TOKEN) or telegram_config.get("token") or ""
    username = os.environ.get(ENV_USERNAME) or telegram_config.get("username") or ""
    return str(token), str(username)


def build_spawn_config(config: dict) -> SpawnConfig:
    """Shell launch settings from the `shell` config section."""
    shell_config = config.get("shell", {})
    command = shell_config.get("command", ["bash"])
    if isinstance(command, str):
        command = [command]
    return SpawnConfig(
        command=list(command),
        term=shell_config.get("term", "vt220"),
        env={str(k): str(v) for k, v in (shell_config.get("env") or {}).items()},
        cwd=shell_config.get("cwd"),
    )


class TeleshellApp:
    """Main application orchestrator."""

    def __init__(self, config: dict, startup_script: Optional[str] = None):
        self.config = config

        token, username = resolve_credentials(config)
        telegram_config = config.get("telegram", {})

        self.telegram_bot = TelegramBot(
            token=token,
            operator_username=username,
            message_limit=telegram_config.get("message_limit", MAX_MESSAGE_BYTES),
        )

        shell_config = config.get("shell", {})
        if startup_script is None:
            startup_script = shell_config.get("startup_script", DEFAULT_STARTUP_SCRIPT)

        self.session_manager = SessionManager(
            send=self.telegram_bot.send_message,
            spawn_config=build_spawn_config(config),
            startup_script=startup_script,
            config=config,
        )

        self.telegram_bot.set_message_handler(self.session_manager.handle_message)

        self._shutdown_event = asyncio.Event()

    def request_shutdown(self):
        """Ask start() to return; safe to call from a signal handler."""
        self._shutdown_event.set()

    async def start(self):
        """Start the bot and run until shutdown is requested."""
        logger.info("Starting teleshell...")
        await self.telegram_bot.start()
        await self._shutdown_event.wait()

    async def stop(self):
        """Stop all components."""
        logger.info("Stopping teleshell...")

        # Stop the shell before the bot so the stop notice can still go out
        await self.session_manager.shutdown()
        await self.telegram_bot.stop()

        logger.info("Shutdown complete")


def setup_signal_handlers(app: TeleshellApp):
    """Set up signal handlers for graceful shutdown."""
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals):
        logger.info(f"teleshell exiting on signal: {sig.name}")
        app.request_shutdown()

    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, signal_handler, sig)


def remove_signal_handlers():
    loop = asyncio.get_running_loop()
    for sig in SHUTDOWN_SIGNALS:
        loop.remove_signal_handler(sig)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="teleshell",
        description="Talk to your machine's shell from a Telegram chat",
    )
    parser.add_argument(
        "-c", "--config",
        default=DEFAULT_CONFIG_PATH,
        help=f"configuration file to use (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--onstart",
        default=None,
        help=f"script file to source when shell starts (default: {DEFAULT_STARTUP_SCRIPT})",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="enable debug logging",
    )
    return parser.parse_args(argv)


async def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    # Setup logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Load config
    config = load_config(args.config)

    token, username = resolve_credentials(config)
    if not token or not username:
        logger.error("teleshell: can not proceed without username and token. exiting...")
        return 1

    app = TeleshellApp(config, startup_script=args.onstart)
    setup_signal_handlers(app)

    try:
        try:
            await app.start()
        except Exception as e:
            logger.error(f"teleshell: error starting bot: {e}")
            await app.session_manager.shutdown()
            return 2
        await app.stop()
        return 0
    finally:
        remove_signal_handlers()


def run():
    """Entry point for console script."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
