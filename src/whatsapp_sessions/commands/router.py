"""Routes inbound message events to command and event handlers."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..exceptions import TransportError
from ..models import InboundMessage, MessageKey, STATUS_BROADCAST_JID, TransportEvent, TransportEventType

logger = logging.getLogger(__name__)


@dataclass
class CommandContext:
    """Everything a command handler needs."""

    session: Any
    message: InboundMessage
    command: str
    args: List[str] = field(default_factory=list)
    router: Optional["CommandRouter"] = None

    @property
    def sender(self) -> str:
        return self.message.key.remote_jid

    @property
    def from_owner(self) -> bool:
        """Sent by the session's own account."""
        return self.message.key.from_me or self.sender == self.session.user_jid

    async def reply(self, text: str) -> None:
        await self.session.send(self.sender, {"text": text})


CommandHandler = Callable[[CommandContext], Awaitable[None]]
MessageHandler = Callable[[Any, InboundMessage], Awaitable[None]]
DeleteHandler = Callable[[Any, List[MessageKey]], Awaitable[None]]


class CommandRouter:
    """
    Dispatches message events of a session.

    Status broadcasts go to status handlers and posts of the followed
    channel to newsletter handlers. Chat messages go to message handlers
    and, when they start with the prefix, to the matching command. Commands
    are rate limited per session and sender; in a group the sender is the
    participant, not the group.

    Example:
        >>> router = CommandRouter(prefix=".")
        >>> @router.command("ping", "Check bot speed")
        ... async def ping(ctx):
        ...     await ctx.reply("Pong!")
    """

    def __init__(
        self,
        prefix: str = ".",
        cooldown: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        newsletter_jid: str = "",
    ) -> None:
        self.prefix = prefix
        self.cooldown = cooldown
        self.newsletter_jid = newsletter_jid
        self._clock = clock
        self._commands: Dict[str, CommandHandler] = {}
        self._descriptions: Dict[str, str] = {}
        self._status_handlers: List[MessageHandler] = []
        self._message_handlers: List[MessageHandler] = []
        self._newsletter_handlers: List[MessageHandler] = []
        self._delete_handlers: List[DeleteHandler] = []
        self._last_command: Dict[Tuple[str, str], float] = {}

    # ===== Registration =====

    def register(self, name: str, handler: CommandHandler, description: str = "") -> None:
        name = name.lower()
        if name in self._commands:
            logger.warning(f"Replacing handler for command {name}")
        self._commands[name] = handler
        self._descriptions[name] = description

    def command(self, name: str, description: str = "") -> Callable[[CommandHandler], CommandHandler]:
        """Decorator registering a command handler."""

        def decorator(handler: CommandHandler) -> CommandHandler:
            self.register(name, handler, description)
            return handler

        return decorator

    def on_status(self, handler: MessageHandler) -> MessageHandler:
        self._status_handlers.append(handler)
        return handler

    def on_message(self, handler: MessageHandler) -> MessageHandler:
        self._message_handlers.append(handler)
        return handler

    def on_newsletter(self, handler: MessageHandler) -> MessageHandler:
        self._newsletter_handlers.append(handler)
        return handler

    def on_delete(self, handler: DeleteHandler) -> DeleteHandler:
        self._delete_handlers.append(handler)
        return handler

    @property
    def commands(self) -> List[str]:
        return list(self._commands)

    def describe(self) -> Dict[str, str]:
        return dict(self._descriptions)

    def forget(self, key: str) -> None:
        """Drop the command cooldowns of session ``key``."""
        for entry in [e for e in self._last_command if e[0] == key]:
            del self._last_command[entry]

    # ===== Dispatch =====

    async def dispatch(self, session: Any, event: TransportEvent) -> None:
        """Entry point used as the supervisor's event sink."""
        if event.type == TransportEventType.MESSAGES_DELETE:
            if event.keys:
                for handler in self._delete_handlers:
                    await self._run_handler(session, handler, event.keys)
            return

        if event.type != TransportEventType.MESSAGES_UPSERT or event.message is None:
            return

        message = event.message
        if message.key.remote_jid == STATUS_BROADCAST_JID:
            for handler in self._status_handlers:
                await self._run_handler(session, handler, message)
            return
        if self.newsletter_jid and message.key.remote_jid == self.newsletter_jid:
            for handler in self._newsletter_handlers:
                await self._run_handler(session, handler, message)
            return

        for handler in self._message_handlers:
            await self._run_handler(session, handler, message)
        await self.dispatch_command(session, message)

    async def _run_handler(self, session: Any, handler: Callable, payload: Any) -> None:
        try:
            await handler(session, payload)
        except Exception as e:
            logger.error(f"[{session.key}] Handler {getattr(handler, '__name__', handler)} failed: {e}")

    def parse(self, text: str) -> Optional[Tuple[str, List[str]]]:
        """Split ``<prefix>command arg...``; None when ``text`` is not a command."""
        text = text.strip()
        if not text.startswith(self.prefix):
            return None
        parts = text[len(self.prefix):].split()
        if not parts:
            return None
        return parts[0].lower(), parts[1:]

    async def dispatch_command(self, session: Any, message: InboundMessage) -> bool:
        """
        Run the command in ``message``.

        Returns:
            True if a command was handled (or answered as unknown)
        """
        parsed = self.parse(message.text)
        if parsed is None:
            return False

        sender = message.key.participant or message.key.remote_jid
        now = self._clock()
        last = self._last_command.get((session.key, sender))
        if last is not None and now - last < self.cooldown:
            logger.debug(f"[{session.key}] Command from {sender} rate limited")
            return False
        self._last_command[(session.key, sender)] = now

        command, args = parsed
        ctx = CommandContext(session=session, message=message, command=command, args=args, router=self)
        handler = self._commands.get(command)
        logger.info(f"[{session.key}] Command {command} from {sender}")

        if handler is None:
            await self._reply_quietly(
                ctx,
                f"Unknown command: {command}\nUse {self.prefix}menu to see available commands.",
            )
            return True

        try:
            await handler(ctx)
        except Exception as e:
            logger.error(f"[{session.key}] Command {command} failed: {e}")
            await self._reply_quietly(
                ctx, "An error occurred while processing your command. Please try again."
            )
        return True

    async def _reply_quietly(self, ctx: CommandContext, text: str) -> None:
        try:
            await ctx.reply(text)
        except TransportError as e:
            logger.error(f"[{ctx.session.key}] Failed to reply to {ctx.sender}: {e}")
