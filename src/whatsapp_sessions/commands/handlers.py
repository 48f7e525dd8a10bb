"""Built-in commands and status/presence/deletion handlers."""

import logging
import random
import time
from typing import Any, Awaitable, Callable, List

from ..async_utils import linear_backoff, retry
from ..config import SessionConfig
from ..exceptions import RetryExhaustedError, TransportError
from ..hooks import Throttle, local_timestamp
from ..models import InboundMessage, MessageKey
from ..registry import SessionRegistry
from ..storage import CredentialStore
from .router import CommandContext, CommandRouter

logger = logging.getLogger(__name__)


def format_duration(seconds: float) -> str:
    seconds = int(max(seconds, 0))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours}h {minutes}m {secs}s"


class BuiltinHandlers:
    """
    Default commands (``alive``, ``ping``, ``uptime``, ``menu``, ``deleteme``,
    ``confirm``) and automatic reactions to statuses, chats, channel posts
    and deletions.

    Each automatic behaviour has its own per-session cool-down.
    """

    def __init__(
        self,
        config: SessionConfig,
        registry: SessionRegistry,
        credentials: CredentialStore,
        delete_session: Callable[[str], Awaitable[Any]],
    ) -> None:
        self.config = config
        self.registry = registry
        self.credentials = credentials
        self.delete_session = delete_session
        self.status_throttle = Throttle(config.status_cooldown_seconds)
        self.presence_throttle = Throttle(config.presence_cooldown_seconds)
        self.deletion_throttle = Throttle(config.deletion_notice_cooldown_seconds)
        self.newsletter_throttle = Throttle(config.newsletter_cooldown_seconds)

    def install(self, router: CommandRouter) -> CommandRouter:
        router.register("alive", self.alive, "Show bot status")
        router.register("menu", self.menu, "See bot commands")
        router.register("ping", self.ping, "Check bot speed")
        router.register("uptime", self.uptime, "Bot uptime")
        router.register("deleteme", self.deleteme, "Remove your bot")
        router.register("confirm", self.confirm, "Confirm session deletion")
        router.on_status(self.handle_status)
        router.on_message(self.handle_presence)
        router.on_newsletter(self.handle_newsletter)
        router.on_delete(self.handle_deletion)
        return router

    def forget(self, key: str) -> None:
        """Drop the cool-downs of session ``key``."""
        for throttle in (
            self.status_throttle,
            self.presence_throttle,
            self.deletion_throttle,
            self.newsletter_throttle,
        ):
            throttle.reset(key)

    async def _retry_action(self, action: Callable[[], Awaitable[Any]], description: str) -> Any:
        return await retry(
            action,
            self.config.action_max_retries,
            linear_backoff(self.config.action_retry_delay_seconds),
            retry_on=(TransportError,),
            description=description,
        )

    # ===== Commands =====

    async def alive(self, ctx: CommandContext) -> None:
        await ctx.reply(
            "BOT ACTIVE\n"
            f"Uptime: {format_duration(ctx.session.uptime)}\n"
            f"Active sessions: {self.registry.count()}\n"
            f"Your number: {ctx.session.key}"
        )

    async def menu(self, ctx: CommandContext) -> None:
        prefix = ctx.router.prefix if ctx.router else self.config.command_prefix
        descriptions = ctx.router.describe() if ctx.router else {}
        lines = [
            f"Hi {ctx.session.key}",
            "",
            f"Uptime: {format_duration(ctx.session.uptime)}",
            f"Prefix: {prefix}",
            "",
            "Commands:",
        ]
        for name, description in descriptions.items():
            lines.append(f"- {prefix}{name}" + (f": {description}" if description else ""))
        await ctx.reply("\n".join(lines))

    async def ping(self, ctx: CommandContext) -> None:
        start = time.monotonic()
        await ctx.reply("Pong!")
        latency = int((time.monotonic() - start) * 1000)
        if latency < 500:
            quality = "Excellent"
        elif latency < 1000:
            quality = "Good"
        else:
            quality = "Poor"
        await ctx.reply(f"Latency: {latency}ms\nConnection: {quality}")

    async def uptime(self, ctx: CommandContext) -> None:
        await ctx.reply(
            f"Uptime: {format_duration(ctx.session.uptime)}\n"
            f"Active sessions: {self.registry.count()}"
        )

    async def deleteme(self, ctx: CommandContext) -> None:
        if not ctx.from_owner:
            await ctx.reply("Only the account owner can delete this session.")
            return
        prefix = ctx.router.prefix if ctx.router else self.config.command_prefix
        await ctx.reply(
            "Are you sure you want to delete your session?\n\n"
            "This will log out your bot, delete all session data and "
            "require pairing again.\n\n"
            f"Reply with {prefix}confirm to proceed or ignore to cancel."
        )

    async def confirm(self, ctx: CommandContext) -> None:
        if not ctx.from_owner:
            await ctx.reply("Only the account owner can delete this session.")
            return
        await ctx.reply("Deleting your session...")
        # The session's transport is gone after this call
        await self.delete_session(ctx.session.key)

    # ===== Automatic behaviour =====

    async def handle_status(self, session: Any, message: InboundMessage) -> None:
        """View, like and show recording presence on a status update."""
        key = message.key
        if not key.participant or not self.status_throttle.ready(session.key):
            return

        user_config = await self.credentials.load_user_config(session.key)
        transport = session.transport

        try:
            if user_config.auto_recording:
                await transport.send_presence_update("recording", key.remote_jid)

            if user_config.auto_view_status:
                await self._retry_action(
                    lambda: transport.read_messages([key]),
                    description=f"[{session.key}] read status",
                )

            if user_config.auto_like_status and user_config.auto_like_emoji:
                emoji = random.choice(user_config.auto_like_emoji)
                await self._retry_action(
                    lambda: transport.send(key.remote_jid, self._reaction(key, emoji)),
                    description=f"[{session.key}] react to status",
                )
                logger.info(f"[{session.key}] Reacted to status with {emoji}")
        except (TransportError, RetryExhaustedError) as e:
            logger.error(f"[{session.key}] Status handler error: {e}")
            return

        self.status_throttle.mark(session.key)

    @staticmethod
    def _reaction(key: MessageKey, emoji: str) -> dict:
        return {
            "react": {"text": emoji, "key": key.model_dump(by_alias=True)},
            "statusJidList": [key.participant],
        }

    async def handle_presence(self, session: Any, message: InboundMessage) -> None:
        """Show recording presence in chats that receive messages."""
        if not self.presence_throttle.ready(session.key):
            return
        user_config = await self.credentials.load_user_config(session.key)
        if not user_config.auto_recording:
            return
        try:
            await session.transport.send_presence_update("recording", message.key.remote_jid)
        except TransportError as e:
            logger.error(f"[{session.key}] Failed to set recording presence: {e}")
            return
        self.presence_throttle.mark(session.key)

    async def handle_newsletter(self, session: Any, message: InboundMessage) -> None:
        """React to a post of the followed channel with a random emoji."""
        if not self.newsletter_throttle.ready(session.key):
            logger.debug(f"[{session.key}] Skipping channel reaction, cooling down")
            return
        server_id = message.newsletter_server_id
        if server_id is None:
            logger.warning(f"[{session.key}] Channel post {message.key.id} has no server id")
            return
        emojis = self.config.newsletter_reaction_emojis
        if not emojis:
            return

        emoji = random.choice(emojis)
        jid = message.key.remote_jid
        try:
            await self._retry_action(
                lambda: session.transport.newsletter_react(jid, server_id, emoji),
                description=f"[{session.key}] react to channel post {server_id}",
            )
        except RetryExhaustedError as e:
            logger.error(f"[{session.key}] Channel reaction failed: {e}")
            return
        self.newsletter_throttle.mark(session.key)
        logger.info(f"[{session.key}] Reacted to channel post {server_id} with {emoji}")

    async def handle_deletion(self, session: Any, keys: List[MessageKey]) -> None:
        """Tell the session owner a message was deleted."""
        if not keys or not self.deletion_throttle.ready(session.key):
            return
        deleted = keys[0]
        text = (
            "MESSAGE DELETED\n"
            "A message was deleted from your chat.\n"
            f"From: {deleted.remote_jid}\n"
            f"Deletion time: {local_timestamp(self.config.timezone)}"
        )
        try:
            await session.send(session.user_jid, {"text": text})
        except TransportError as e:
            logger.error(f"[{session.key}] Failed to send deletion notice: {e}")
            return
        self.deletion_throttle.mark(session.key)
        logger.info(f"[{session.key}] Notified about deleted message {deleted.id}")


def install_default_handlers(
    router: CommandRouter,
    config: SessionConfig,
    registry: SessionRegistry,
    credentials: CredentialStore,
    delete_session: Callable[[str], Awaitable[Any]],
) -> BuiltinHandlers:
    """Register the built-in handlers on ``router``."""
    handlers = BuiltinHandlers(config, registry, credentials, delete_session)
    handlers.install(router)
    return handlers
