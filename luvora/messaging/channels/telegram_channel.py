"""
Telegram Channel Adapter: one user-owned bot (token from @BotFather).

Uses python-telegram-bot's ``Application``:
- Token validated through ``Application.initialize()`` (calls ``getMe``)
- Long-polling by default, webhook mode when ``webhook_url`` is configured
- /start links the chat that receives deliveries

Token bots need no pairing: the handle is linked as soon as the token
validates.
"""

import logging
from typing import Any, Callable, Optional

from telegram import Update
from telegram.error import (
    BadRequest,
    Forbidden,
    InvalidToken,
    NetworkError,
    RetryAfter,
    TelegramError,
    TimedOut,
)
from telegram.ext import Application, CommandHandler, ContextTypes

from luvora.messaging.channels.base import BaseChannel, split_message
from luvora.messaging.errors import ConfigurationInvalid, ConnectionFailed, NotReady, SendFailed
from luvora.messaging.types import ChannelState, Platform

logger = logging.getLogger(__name__)

# Max message length for Telegram (4096 chars)
TELEGRAM_MAX_LENGTH = 4096

WELCOME_MESSAGE = (
    "✅ *Connected to Luvora!*\n\n"
    "Hi {name}! You will now receive:\n"
    "• ✨ Daily Spark messages\n"
    "• 🔔 Automation notifications\n"
    "• ⚠️ Important alerts\n\n"
    "_Your love journey just got automated!_ ❤️"
)


def _build_application(token: str) -> Application:
    return Application.builder().token(token).build()


class TelegramChannel(BaseChannel):
    """
    Telegram channel adapter.

    ``application_factory`` builds the PTB application from the token; tests
    pass a fake.
    """

    platform = Platform.TELEGRAM
    max_message_length = TELEGRAM_MAX_LENGTH

    def __init__(self, identity, config, events, settings,
                 application_factory: Optional[Callable[[str], Any]] = None):
        super().__init__(identity, config, events, settings)
        self._application_factory = application_factory or _build_application
        self.app: Optional[Any] = None
        self.bot_username: Optional[str] = config.bot_username

    @property
    def webhook_mode(self) -> bool:
        return bool(self.config.webhook_url)

    # ── Capabilities ──────────────────────────────────────────

    def is_linked(self) -> bool:
        return self.linked and self.state is ChannelState.CONNECTED

    def has_session(self) -> bool:
        return False

    # ── Lifecycle hooks ───────────────────────────────────────

    async def _validate(self) -> None:
        token = (self.config.bot_token or "").strip()
        if not token:
            raise ConfigurationInvalid("Bot token is required", self.platform, "MISSING_TOKEN")

        try:
            self.app = self._application_factory(token)
        except InvalidToken as exc:
            raise ConfigurationInvalid(f"Invalid bot token: {exc}", self.platform) from exc

        self.app.add_handler(CommandHandler("start", self._cmd_start))
        self.app.add_error_handler(self._error_handler)

        try:
            # initialize() calls getMe and fails on a revoked / malformed token
            await self.app.initialize()
        except InvalidToken as exc:
            raise ConfigurationInvalid("Bot token validation failed", self.platform, "INVALID_TOKEN") from exc
        except (TimedOut, NetworkError) as exc:
            raise ConnectionFailed(f"Telegram API unreachable: {exc}", self.platform) from exc

        username = getattr(self.app.bot, "username", None)
        if isinstance(username, str):
            self.bot_username = username

    async def _connect(self) -> bool:
        try:
            await self.app.start()
            if self.webhook_mode:
                await self.app.bot.set_webhook(
                    url=self.config.webhook_url,
                    secret_token=self.config.webhook_secret,
                    drop_pending_updates=True,
                )
            else:
                await self.app.bot.delete_webhook(drop_pending_updates=True)
                await self.app.updater.start_polling(
                    drop_pending_updates=True,
                    error_callback=self._on_polling_error,
                )
        except TelegramError as exc:
            raise ConnectionFailed(f"Failed to start: {exc}", self.platform) from exc

        logger.info("[TELEGRAM] Bot @%s started (%s mode)", self.bot_username,
                    "webhook" if self.webhook_mode else "polling")
        return True

    async def _disconnect(self) -> None:
        app, self.app = self.app, None
        if not app:
            return
        try:
            if app.updater and app.updater.running:
                await app.updater.stop()
            if app.running:
                await app.stop()
            await app.shutdown()
        except Exception as e:
            logger.warning(f"[TELEGRAM] Bot shutdown error: {e}")

    # ── Outbound ──────────────────────────────────────────────

    async def _deliver(self, target: Optional[str], body: str) -> None:
        chat_id = target or self.recipient_id
        if not chat_id:
            raise SendFailed(
                "Telegram user ID not set. User must send /start to the bot first.",
                self.platform,
                "no_recipient",
            )
        for chunk in split_message(body, self.max_message_length):
            await self.app.bot.send_message(
                chat_id=chat_id,
                text=chunk,
                parse_mode=self.settings.telegram_parse_mode,
            )

    def _categorize(self, exc: BaseException) -> str:
        # BadRequest and TimedOut both subclass NetworkError; order matters.
        if isinstance(exc, Forbidden):
            return "forbidden"
        if isinstance(exc, BadRequest):
            return "bad_request"
        if isinstance(exc, RetryAfter):
            return "rate_limited"
        if isinstance(exc, TimedOut):
            return "timeout"
        if isinstance(exc, NetworkError):
            return "network"
        if isinstance(exc, InvalidToken):
            return "invalid_token"
        return super()._categorize(exc)

    # ── Inbound ───────────────────────────────────────────────

    async def process_update(self, payload: dict) -> None:
        """Feed one webhook payload into the application."""
        if not self.app or self.state is not ChannelState.CONNECTED:
            raise NotReady("Telegram channel is not connected", self.platform)
        update = Update.de_json(payload, self.app.bot)
        await self.app.process_update(update)

    async def _cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat = update.effective_chat
        sender = update.effective_user
        chat_id = str(chat.id)
        username = sender.username if sender else None
        sender_key = f"{sender.id}|{username}" if sender and username else chat_id

        logger.info("[TELEGRAM] /start received from %s (@%s)", chat_id, username)
        if not self.is_allowed(sender_key):
            logger.warning("[TELEGRAM] /start from %s rejected by allow-list", chat_id)
            return

        if self.recipient_id != chat_id:
            self.link_recipient(chat_id, username)

        first_name = (sender.first_name if sender else None) or "there"
        try:
            await update.message.reply_text(WELCOME_MESSAGE.format(name=first_name), parse_mode="Markdown")
        except TelegramError:
            logger.exception("[TELEGRAM] Error replying to /start")

    def _on_polling_error(self, error: TelegramError) -> None:
        # The updater keeps retrying on its own; just surface the last error.
        logger.warning("[TELEGRAM] Polling error for %s: %s", self.identity, error)
        self.last_error = ConnectionFailed(f"Polling error: {error}", self.platform)

    async def _error_handler(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Global error handler for uncaught handler exceptions."""
        logger.exception(f"[TELEGRAM] Unhandled exception: {context.error}", exc_info=context.error)
