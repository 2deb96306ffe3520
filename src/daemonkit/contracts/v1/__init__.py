from __future__ import annotations

from .command import Command, OptionMap, OptionRef
from .settings import LogFileMode, LogFormat, ServiceSettings

__all__ = [
    "Command",
    "LogFileMode",
    "LogFormat",
    "OptionMap",
    "OptionRef",
    "ServiceSettings",
]
