"""Telegram bot bridging the operator's chat to the session manager."""

import logging
from typing import Awaitable, Callable, Optional

from telegram import Bot, Update
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from .auth import is_authorized, normalize_username
from .paginator import MAX_MESSAGE_BYTES, paginate

logger = logging.getLogger(__name__)

MSG_NOT_AUTHORIZED = "Sorry, you are not permitted to issue commands."


class TelegramBot:
    """Telegram transport for teleshell."""

    def __init__(
        self,
        token: str,
        operator_username: str,
        message_limit: int = MAX_MESSAGE_BYTES,
    ):
        """
        Initialize the Telegram bot.

        Args:
            token: Telegram bot token from BotFather
            operator_username: The only Telegram username allowed to issue commands
            message_limit: Max bytes per outgoing message; longer text is paginated
        """
        self.token = token
        self.operator_username = normalize_username(operator_username)
        self.message_limit = message_limit
        self.application: Optional[Application] = None
        self.bot: Optional[Bot] = None

        # Receives (chat_id, text) for every message from the operator
        self._on_message: Optional[Callable[[int, str], Awaitable[None]]] = None

    def set_message_handler(self, handler: Callable[[int, str], Awaitable[None]]):
        """Set handler for operator messages. Handler receives (chat_id, text)."""
        self._on_message = handler

    async def _handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle every text message, commands included.

        All text goes through one handler because anything that is not a
        known command is shell input while a session is active.
        """
        message = update.effective_message
        if message is None or message.text is None:
            return

        chat_id = update.effective_chat.id
        user = update.effective_user

        if not is_authorized(user, self.operator_username):
            username = user.username if user else None
            logger.info(f"Refusing message from unauthorized user: chat_id={chat_id}, username={username}")
            await self.send_message(chat_id, MSG_NOT_AUTHORIZED)
            return

        if not self._on_message:
            logger.warning("Message handler not configured")
            return

        await self._on_message(chat_id, message.text)

    async def send_message(self, chat_id: int, text: str) -> Optional[int]:
        """
        Send text to a chat, split into several messages if too long.

        Args:
            chat_id: Chat to send to
            text: Message text

        Returns:
            Message ID of the last message sent, or None on failure
        """
        if not self.bot:
            logger.error("Bot not initialized")
            return None

        if not text or not text.strip():
            logger.debug(f"Skipping empty message to chat {chat_id}")
            return None

        if len(text.encode("utf-8")) > self.message_limit:
            pages = paginate(text, self.message_limit)
        else:
            pages = [text]

        last_id = None
        for page in pages:
            if not page.strip():
                continue
            try:
                msg = await self.bot.send_message(chat_id=chat_id, text=page)
                last_id = msg.message_id
            except Exception as e:
                logger.error(f"Failed to send Telegram message: {e}")
                return None
        return last_id

    async def start(self):
        """Start the bot."""
        self.application = (
            Application.builder()
            .token(self.token)
            .get_updates_read_timeout(15)
            .get_updates_write_timeout(5)
            .get_updates_connect_timeout(5)
            .get_updates_pool_timeout(5)
            .build()
        )

        self.bot = self.application.bot

        # Handle all text, including commands like /cmd, /shell, /exit
        self.application.add_handler(MessageHandler(filters.TEXT, self._handle_message))

        await self.application.initialize()
        await self.application.start()
        await self._start_polling()

        logger.info("Telegram bot started")

    async def _start_polling(self):
        """Start long polling (network timeouts are set on the builder)."""
        await self.application.updater.start_polling(
            poll_interval=0.0,
            timeout=10,
            drop_pending_updates=False,
        )

    async def stop(self):
        """Stop the bot."""
        if self.application:
            await self.application.updater.stop()
            await self.application.stop()
            await self.application.shutdown()
            logger.info("Telegram bot stopped")
