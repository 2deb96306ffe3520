"""Process-wide context of a command-line service.

The context is created exactly once per process, normally from the program's
entry point:

    ctx = initialize(MyContext.from_argv, sys.argv)

and is then handed to the lifecycle manager and the signal bridge. Its only
mutable state is the stop signal, which signal handlers write and the running
service polls.
"""
from __future__ import annotations

import signal
import sys
import time
from pathlib import Path
from typing import Any, Callable, NoReturn, Optional, Protocol, Sequence, TextIO, Tuple, runtime_checkable

from ..contracts.v1 import Command
from ..errors import ContextStateError
from .parser import parse_commands


@runtime_checkable
class ProgramInfo(Protocol):
    """What the embedding application tells the lifecycle about itself."""

    def executable_path(self) -> Path: ...

    def synopsis(self) -> str: ...


class StopSignal:
    """Last stop signal received; 0 while none.

    Written from signal handlers with a single attribute store and read by
    polling, so it never takes a lock.
    """

    __slots__ = ("value",)

    def __init__(self) -> None:
        self.value = 0


class ProcessContext:
    """Parsed commands plus the stop state of the running process.

    Applications subclass it to provide `synopsis()` and, when argv[0] is not
    a usable executable path, `executable_path()`.
    """

    def __init__(self, commands: Sequence[Command]) -> None:
        cmds = tuple(commands)
        if not cmds:
            raise ContextStateError("process context requires at least one command")
        self._commands: Tuple[Command, ...] = cmds
        self._stop = StopSignal()

    @classmethod
    def from_argv(cls, argv: Sequence[str], *, one_command: bool = False, **kwargs: Any) -> "ProcessContext":
        return cls(parse_commands(argv, one_command=one_command), **kwargs)

    @property
    def commands(self) -> Tuple[Command, ...]:
        return self._commands

    @property
    def command(self) -> Command:
        return self._commands[0]

    def executable_path(self) -> Path:
        return Path(self._commands[0].name)

    def synopsis(self) -> str:
        return ""

    def program_name(self) -> str:
        return self.executable_path().name

    # Stop state

    @property
    def stop_signal(self) -> int:
        return self._stop.value

    @property
    def is_running(self) -> bool:
        return self._stop.value == 0

    def record_signal(self, signum: int) -> None:
        self._stop.value = int(signum)

    def request_stop(self, signum: int = signal.SIGTERM) -> None:
        self.record_signal(signum)

    def wait_for_stop(self, timeout: float, *, poll_interval: float = 0.1) -> bool:
        """Sleep up to `timeout` seconds; return True as soon as a stop is recorded."""
        deadline = time.monotonic() + max(0.0, timeout)
        while self._stop.value == 0:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(poll_interval, remaining))
        return True


_INSTANCE: Optional[ProcessContext] = None


def is_initialized() -> bool:
    return _INSTANCE is not None


def initialize(factory: Callable[..., ProcessContext], *args: Any, **kwargs: Any) -> ProcessContext:
    """Create the process context once; later calls are programming errors."""
    global _INSTANCE
    if _INSTANCE is not None:
        raise ContextStateError("process context is already initialized")
    ctx = factory(*args, **kwargs)
    if not isinstance(ctx, ProcessContext):
        raise ContextStateError(f"context factory returned {type(ctx).__name__}, not a ProcessContext")
    _INSTANCE = ctx
    return ctx


def instance() -> ProcessContext:
    if _INSTANCE is None:
        raise ContextStateError("process context is not initialized")
    return _INSTANCE


def exit_usage(code: int = 1, *, context: Optional[ProcessContext] = None, out: Optional[TextIO] = None) -> NoReturn:
    """Print `usage: <program> [<synopsis>]` and exit with `code`."""
    ctx = context or instance()
    stream = out or sys.stderr
    line = f"usage: {ctx.program_name()}"
    syn = ctx.synopsis()
    if syn:
        line += f" {syn}"
    print(line, file=stream, flush=True)
    raise SystemExit(code)
