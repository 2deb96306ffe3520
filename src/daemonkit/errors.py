from __future__ import annotations

from typing import Optional


class DaemonkitError(Exception):
    """Base class for recoverable failures reported to callers."""


class ArgumentError(DaemonkitError):
    """Raised when the argument vector cannot be turned into commands."""


class InvalidArgumentCountError(ArgumentError):
    def __init__(self) -> None:
        super().__init__("invalid count of arguments (argc)")


class InvalidArgumentVectorError(ArgumentError):
    def __init__(self, index: Optional[int] = None) -> None:
        self.index = index
        msg = "invalid vector of arguments (argv)"
        if index is not None:
            msg += f" at argv[{index}]"
        super().__init__(msg)


class EmptyCommandNameError(ArgumentError):
    def __init__(self, index: Optional[int] = None) -> None:
        self.index = index
        if index is None:
            super().__init__("empty command name")
        else:
            super().__init__(f"empty command name at argv[{index}]")


class InvalidParameterIndexError(ArgumentError, IndexError):
    def __init__(self, index: int) -> None:
        self.index = index
        super().__init__("invalid command parameter index")


class UnexpectedOptionError(ArgumentError):
    def __init__(self, option: str) -> None:
        self.option = option
        super().__init__(f"unexpected option --{option}")


class CommandIdError(ArgumentError):
    """Raised when a command id cannot be generated for the given offset."""


class OptionRequirementError(DaemonkitError):
    """An option is present (or absent) in a way its contract forbids."""

    def __init__(self, option: str, requirement: str) -> None:
        self.option = option
        self.requirement = requirement
        super().__init__(f"option --{option} {requirement}")


class SettingsError(DaemonkitError):
    """Raised when a settings file cannot be loaded or validated."""


class ContextStateError(RuntimeError):
    """The process context was used before, or initialized after, its one-time setup."""


class LifecycleError(RuntimeError):
    """A precondition of LifecycleManager.start() was violated by the caller."""
