"""Command dispatch for inbound messages."""

from .router import CommandContext, CommandRouter
from .handlers import BuiltinHandlers, format_duration, install_default_handlers

__all__ = [
    "CommandContext",
    "CommandRouter",
    "BuiltinHandlers",
    "format_duration",
    "install_default_handlers",
]
