"""wa-agent - WhatsApp personal assistant with calendar, mail and memory tools."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("wa-agent")
except PackageNotFoundError:
    __version__ = "0.2.0"

__logo__ = "📅"
__brand__ = "wa-agent"
