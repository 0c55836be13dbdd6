"""
Discord Channel Adapter: one user-owned bot (token from the Developer Portal).

Uses discord.py to:
- Validate the token with ``Client.login``
- Hold the gateway connection in a background task
- Link the receiving user when they DM ``!start`` to the bot
- Deliver messages as DMs

Bot setup for users:
1. https://discord.com/developers/applications → New Application
2. Bot section → copy token
3. Enable "Message Content Intent" under Privileged Gateway Intents
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from luvora.messaging.channels.base import BaseChannel, split_message
from luvora.messaging.errors import ConfigurationInvalid, ConnectionFailed, SendFailed
from luvora.messaging.types import ChannelState, Platform

logger = logging.getLogger(__name__)

# Max message length for Discord (2000 chars)
DISCORD_MAX_LENGTH = 2000

LINK_COMMANDS = ("!start", "/start")


def _build_client() -> Any:
    import discord

    intents = discord.Intents.default()
    intents.message_content = True
    intents.dm_messages = True
    return discord.Client(intents=intents)


class DiscordChannel(BaseChannel):
    """
    Discord channel adapter using discord.py.

    ``client_factory`` builds the ``discord.Client``; tests pass a fake.
    """

    platform = Platform.DISCORD
    max_message_length = DISCORD_MAX_LENGTH

    def __init__(self, identity, config, events, settings,
                 client_factory: Optional[Callable[[], Any]] = None):
        super().__init__(identity, config, events, settings)
        self._client_factory = client_factory or _build_client
        self._client: Optional[Any] = None
        self._task: Optional[asyncio.Task] = None
        self.bot_username: Optional[str] = config.bot_username

    def is_linked(self) -> bool:
        return self.linked and self.state is ChannelState.CONNECTED

    def has_session(self) -> bool:
        return False

    # ── Lifecycle hooks ───────────────────────────────────────

    async def _validate(self) -> None:
        import discord

        token = (self.config.bot_token or "").strip()
        if not token:
            raise ConfigurationInvalid("Bot token is required", self.platform, "MISSING_TOKEN")

        self._client = self._client_factory()
        try:
            await self._client.login(token)
        except discord.LoginFailure as exc:
            raise ConfigurationInvalid("Bot token validation failed", self.platform, "INVALID_TOKEN") from exc
        except (discord.DiscordException, OSError) as exc:
            raise ConnectionFailed(f"Discord API unreachable: {exc}", self.platform) from exc

        user = getattr(self._client, "user", None)
        if user is not None and isinstance(getattr(user, "name", None), str):
            self.bot_username = user.name

    async def _connect(self) -> bool:
        client = self._client

        @client.event
        async def on_message(message):
            await self._handle_message(message)

        self._task = asyncio.create_task(self._run_gateway())
        logger.info("[DISCORD] Channel starting for user %s...", self.identity.user_id)
        return True

    async def _run_gateway(self):
        """Run the gateway connection until closed."""
        try:
            await self._client.connect(reconnect=True)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("[DISCORD] Client crashed")
            self._fail(ConnectionFailed(f"Gateway connection lost: {exc}", self.platform))

    async def _disconnect(self) -> None:
        client, self._client = self._client, None
        task, self._task = self._task, None
        if client is not None:
            try:
                await client.close()
            except Exception:
                logger.warning("[DISCORD] Error closing client", exc_info=True)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("[DISCORD] Channel stopped")

    # ── Outbound ──────────────────────────────────────────────

    async def _deliver(self, target: Optional[str], body: str) -> None:
        user_id = target or self.recipient_id
        if not user_id:
            raise SendFailed(
                "Discord user ID not set. User must DM !start to the bot first.",
                self.platform,
                "no_recipient",
            )
        try:
            snowflake = int(user_id)
        except ValueError as exc:
            raise SendFailed(f"Invalid Discord user ID: {user_id}", self.platform, "bad_target") from exc

        user = self._client.get_user(snowflake) or await self._client.fetch_user(snowflake)
        channel = user.dm_channel or await user.create_dm()
        for chunk in split_message(body, self.max_message_length):
            await channel.send(chunk)

    def _categorize(self, exc: BaseException) -> str:
        import discord

        if isinstance(exc, discord.Forbidden):
            return "forbidden"
        if isinstance(exc, discord.NotFound):
            return "not_found"
        if isinstance(exc, discord.HTTPException):
            return "rate_limited" if exc.status == 429 else "http_error"
        return super()._categorize(exc)

    # ── Inbound ───────────────────────────────────────────────

    async def _handle_message(self, message) -> None:
        client = self._client
        if client is None:
            return
        # Ignore own and other bots' messages
        if message.author == client.user or getattr(message.author, "bot", False):
            return
        # Only DMs link a recipient
        if message.guild is not None:
            return
        if (message.content or "").strip().lower() not in LINK_COMMANDS:
            return

        author_id = str(message.author.id)
        if not self.is_allowed(f"{author_id}|{message.author.name}"):
            logger.warning("[DISCORD] !start from %s rejected by allow-list", author_id)
            return

        if self.recipient_id != author_id:
            self.link_recipient(author_id, message.author.name)
        try:
            await message.channel.send(
                "✅ **Connected to Luvora!** You will now receive your daily sparks here. ❤️"
            )
        except Exception:
            logger.exception("[DISCORD] Error replying to !start")
