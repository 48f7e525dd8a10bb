"""Throttled side effects run when a session opens."""

import asyncio
import json
import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .async_utils import linear_backoff, retry
from .cache import TTLCache
from .config import SessionConfig
from .exceptions import RetryExhaustedError, TransportError
from .models import STATUS_BROADCAST_JID, GroupJoinResult, UserConfig, jid_for
from .storage import CredentialStore

logger = logging.getLogger(__name__)

INVITE_LINK_PATTERN = re.compile(r"chat\.whatsapp\.com/([a-zA-Z0-9]+)")

# Substrings of protocol failures and what they mean for a group join
_GROUP_ERRORS = (
    ("not-authorized", "Bot is not authorized to join (possibly banned)"),
    ("conflict", "Bot is already a member of the group"),
    ("gone", "Group invite link is invalid or expired"),
)


def local_timestamp(tz_name: str, when: Optional[float] = None) -> str:
    """Format an epoch time (default: now) as ``YYYY-MM-DD HH:MM:SS`` in ``tz_name``."""
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {tz_name!r}, using UTC")
        tz = timezone.utc
    moment = datetime.fromtimestamp(time.time() if when is None else when, tz)
    return moment.strftime("%Y-%m-%d %H:%M:%S")


class Throttle:
    """
    Per-key "at most once per window" gate.

    ``ready`` checks the window, ``mark`` starts it. Marking only after the
    guarded action succeeded keeps failed attempts retryable.
    """

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.interval = interval
        self._clock = clock
        self._last: Dict[str, float] = {}

    def ready(self, key: str) -> bool:
        last = self._last.get(key)
        return last is None or self._clock() - last >= self.interval

    def mark(self, key: str) -> None:
        self._last[key] = self._clock()

    def allow(self, key: str) -> bool:
        """``ready`` and ``mark`` in one step."""
        if not self.ready(key):
            return False
        self.mark(key)
        return True

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._last.clear()
        else:
            self._last.pop(key, None)


class OnOpenHook:
    """Base class for side effects run after a session registers."""

    name = "hook"

    async def __call__(self, session) -> None:
        raise NotImplementedError

    def forget(self, key: str) -> None:
        """Drop any state kept for ``key``."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class AboutStatusHook(OnOpenHook):
    """Sets the account's about text, at most once per window."""

    name = "about_status"

    def __init__(self, text: str, interval: float = 3600.0, throttle: Optional[Throttle] = None):
        self.text = text
        self.throttle = throttle or Throttle(interval)

    async def __call__(self, session) -> None:
        if not self.throttle.ready(session.key):
            return
        await session.transport.update_profile_status(self.text)
        self.throttle.mark(session.key)
        logger.info(f"[{session.key}] Updated about status")

    def forget(self, key: str) -> None:
        self.throttle.reset(key)


class ConnectedBroadcastHook(OnOpenHook):
    """Posts a "connected" status broadcast, at most once per window."""

    name = "connected_broadcast"

    def __init__(
        self,
        interval: float = 86400.0,
        tz_name: str = "UTC",
        throttle: Optional[Throttle] = None,
    ):
        self.tz_name = tz_name
        self.throttle = throttle or Throttle(interval)

    async def __call__(self, session) -> None:
        if not self.throttle.ready(session.key):
            return
        text = f"Connected!\nConnected at: {local_timestamp(self.tz_name)}"
        await session.send(STATUS_BROADCAST_JID, {"text": text})
        self.throttle.mark(session.key)
        logger.info(f"[{session.key}] Posted connected status")

    def forget(self, key: str) -> None:
        self.throttle.reset(key)


def invite_code(link: str) -> Optional[str]:
    """Invite code of a ``chat.whatsapp.com`` link, or None if it has none."""
    match = INVITE_LINK_PATTERN.search(link or "")
    return match.group(1) if match else None


def describe_group_error(error: BaseException) -> str:
    message = str(error) or "Unknown error"
    for marker, description in _GROUP_ERRORS:
        if marker in message:
            return description
    return message


class GroupJoinHook(OnOpenHook):
    """
    Joins the group behind the configured invite link.

    Failed joins are retried with a linear backoff. The outcome is kept per
    key so the admin notice can report it; a failure never stops the
    remaining hooks.
    """

    name = "group_join"

    def __init__(
        self,
        invite_link: str,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.invite_link = invite_link
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep
        self.results: Dict[str, GroupJoinResult] = {}

    async def join(self, session) -> GroupJoinResult:
        if not self.invite_link:
            return GroupJoinResult(error="No group invite link configured")
        code = invite_code(self.invite_link)
        if code is None:
            logger.error(f"Invalid group invite link: {self.invite_link!r}")
            return GroupJoinResult(error="Invalid group invite link")

        async def attempt() -> str:
            response = await session.transport.accept_group_invite(code)
            gid = (response or {}).get("gid")
            if not gid:
                raise TransportError("No group ID in response")
            return gid

        try:
            gid = await retry(
                attempt,
                self.max_attempts,
                linear_backoff(self.retry_delay),
                retry_on=(TransportError,),
                description=f"[{session.key}] Join group",
                sleep=self._sleep,
            )
        except RetryExhaustedError as e:
            return GroupJoinResult(error=describe_group_error(e.last_error))
        logger.info(f"[{session.key}] Joined group {gid}")
        return GroupJoinResult(gid=gid)

    async def __call__(self, session) -> None:
        result = await self.join(session)
        self.results[session.key] = result
        if not result.joined:
            logger.warning(f"[{session.key}] {result.describe()}")

    def forget(self, key: str) -> None:
        self.results.pop(key, None)


class NewsletterFollowHook(OnOpenHook):
    """Follows the configured channel and reacts to its pinned post."""

    name = "newsletter_follow"

    def __init__(
        self,
        newsletter_jid: str,
        message_id: str = "",
        emoji: str = "\u2764\ufe0f",
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.newsletter_jid = newsletter_jid
        self.message_id = message_id
        self.emoji = emoji
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep

    async def _retry(self, operation, description: str):
        try:
            return await retry(
                operation,
                self.max_attempts,
                linear_backoff(self.retry_delay),
                retry_on=(TransportError,),
                description=description,
                sleep=self._sleep,
            )
        except RetryExhaustedError as e:
            raise TransportError(str(e)) from e.last_error

    async def __call__(self, session) -> None:
        jid = self.newsletter_jid
        await self._retry(
            lambda: session.transport.newsletter_follow(jid),
            f"[{session.key}] Follow {jid}",
        )
        if self.message_id:
            reaction = {"react": {"text": self.emoji, "key": {"id": self.message_id}}}
            await self._retry(
                lambda: session.send(jid, reaction),
                f"[{session.key}] React to {jid}/{self.message_id}",
            )
        logger.info(f"[{session.key}] Followed {jid}")


class UserConfigBootstrapHook(OnOpenHook):
    """Stores the default per-session config when none exists."""

    name = "user_config_bootstrap"

    def __init__(self, credentials: CredentialStore):
        self.credentials = credentials

    async def __call__(self, session) -> None:
        if await self.credentials.has_user_config(session.key):
            return
        await self.credentials.save_user_config(session.key, UserConfig())


class WelcomeMessageHook(OnOpenHook):
    """Tells the session owner the bot is connected and lists the commands."""

    name = "welcome_message"

    def __init__(self, prefix: str = ".", commands: Sequence[str] = ()):
        self.prefix = prefix
        self.commands = list(commands)

    def render(self, key: str) -> str:
        lines = [
            "BOT CONNECTED",
            "",
            f"Number: {key}",
            "",
            "Available commands:",
        ]
        lines.extend(f"{self.prefix}{name}" for name in self.commands)
        return "\n".join(lines)

    async def __call__(self, session) -> None:
        await session.send(session.user_jid, {"text": self.render(session.key)})


class AdminNotifyHook(OnOpenHook):
    """
    Notifies admins that a session connected.

    Admins come from the configured numbers plus an optional JSON list file,
    read through a TTL cache.
    """

    name = "admin_notify"

    def __init__(
        self,
        admin_numbers: Sequence[str] = (),
        admin_list_path: Optional[str] = None,
        cache_ttl: float = 300.0,
        tz_name: str = "UTC",
        group_hook: Optional[GroupJoinHook] = None,
    ):
        self.admin_numbers = list(admin_numbers)
        self.admin_list_path = admin_list_path
        self.tz_name = tz_name
        self.group_hook = group_hook
        self._cache: TTLCache[List[str]] = TTLCache(ttl=cache_ttl)

    def _read_list_file(self) -> List[str]:
        path = Path(self.admin_list_path).expanduser()
        if not path.exists():
            return []
        with open(path, "r") as f:
            data = json.load(f)
        return [str(n) for n in data] if isinstance(data, list) else []

    async def _load_admins(self) -> List[str]:
        admins = list(self.admin_numbers)
        if self.admin_list_path:
            try:
                admins.extend(await asyncio.to_thread(self._read_list_file))
            except (OSError, ValueError) as e:
                logger.error(f"Failed to read admin list {self.admin_list_path}: {e}")
        return list(dict.fromkeys(admins))

    async def admins(self) -> List[str]:
        return await self._cache.get_or_compute("admins", self._load_admins)

    async def __call__(self, session) -> None:
        text = (
            "Bot connected\n"
            f"Number: {session.key}\n"
            f"Connected at: {local_timestamp(self.tz_name)}"
        )
        group = self.group_hook.results.get(session.key) if self.group_hook else None
        if group is not None:
            text += f"\nGroup: {group.describe()}"
        for admin in await self.admins():
            try:
                await session.send(jid_for(admin), {"text": text})
            except Exception as e:
                logger.error(f"[{session.key}] Failed to notify admin {admin}: {e}")


class KnownNumbersHook(OnOpenHook):
    """Adds the key to the known-numbers list used by ``connect_all``."""

    name = "known_numbers"

    def __init__(self, credentials: CredentialStore):
        self.credentials = credentials

    async def __call__(self, session) -> None:
        await self.credentials.remember_number(session.key)


def default_hooks(
    config: SessionConfig,
    credentials: CredentialStore,
    commands: Sequence[str] = (),
) -> List[OnOpenHook]:
    """
    Hooks every session runs on open, in order.

    The group join and channel follow are only included when a link or
    channel is configured.
    """
    hooks: List[OnOpenHook] = [
        AboutStatusHook(config.about_status_text, config.about_update_interval_seconds),
        ConnectedBroadcastHook(config.connected_broadcast_interval_seconds, config.timezone),
    ]

    group_hook = None
    if config.group_invite_link:
        group_hook = GroupJoinHook(
            config.group_invite_link,
            config.action_max_retries,
            config.action_retry_delay_seconds,
        )
        hooks.append(group_hook)
    if config.newsletter_jid:
        hooks.append(
            NewsletterFollowHook(
                config.newsletter_jid,
                config.newsletter_message_id,
                max_attempts=config.action_max_retries,
                retry_delay=config.action_retry_delay_seconds,
            )
        )

    hooks.extend(
        [
            UserConfigBootstrapHook(credentials),
            WelcomeMessageHook(config.command_prefix, commands),
            AdminNotifyHook(
                config.admin_numbers,
                config.admin_list_path,
                config.cache_ttl_seconds,
                config.timezone,
                group_hook=group_hook,
            ),
            KnownNumbersHook(credentials),
        ]
    )
    return hooks
