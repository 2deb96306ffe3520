"""Double-fork daemonization as an ordered list of steps.

    first_fork -> umask -> redirect_log -> setsid -> second_fork
      -> write_pid -> chdir -> close_stdio -> startup

Every step returns a StepResult. The runner stops at the first step that does
not CONTINUE: a parent hands over and exits 0, a failure is logged and exits 1.
Nothing is raised back to the caller, since after the first fork the code that
called start() lives in another process.
"""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from ..util.fs import write_pid
from ..util.obslog import redirect_log
from .osops import OsOps

logger = logging.getLogger("daemonkit.detach")

# Group may not write, others get nothing.
DAEMON_UMASK = 0o027

STDIO_FDS = (0, 1, 2)


class StepStatus(str, Enum):
    CONTINUE = "continue"
    PARENT_EXIT = "parent_exit"
    FAILED = "failed"


@dataclass(frozen=True)
class StepResult:
    status: StepStatus
    message: str = ""
    error: Optional[BaseException] = None

    @classmethod
    def ok(cls) -> "StepResult":
        return cls(StepStatus.CONTINUE)

    @classmethod
    def parent(cls) -> "StepResult":
        return cls(StepStatus.PARENT_EXIT)

    @classmethod
    def failed(cls, message: str, error: Optional[BaseException] = None) -> "StepResult":
        return cls(StepStatus.FAILED, message, error)


def _os_error(e: OSError) -> str:
    return e.strerror or str(e)


class Detacher:
    """Runs the daemonization steps for one startup routine."""

    def __init__(
        self,
        startup: Callable[[], object],
        *,
        working_directory: Path,
        pid_file: Path,
        log_file: Path,
        log_file_mode: str = "a",
        os_ops: Optional[OsOps] = None,
    ) -> None:
        self._startup = startup
        self.working_directory = working_directory
        self.pid_file = pid_file
        self.log_file = log_file
        self.log_file_mode = log_file_mode
        self._os = os_ops or OsOps()
        # Becomes True in the grandchild; from then on this process is the daemon.
        self._is_daemon = False
        self.completed: List[str] = []

    def steps(self) -> List[Tuple[str, Callable[[], StepResult]]]:
        return [
            ("first_fork", self.first_fork),
            ("umask", self.set_umask),
            ("redirect_log", self.redirect_log),
            ("setsid", self.setsid),
            ("second_fork", self.second_fork),
            ("write_pid", self.write_pid),
            ("chdir", self.chdir),
            ("close_stdio", self.close_stdio),
            ("startup", self.startup),
        ]

    def run(self) -> None:
        """Run every step; returns only in the daemon, after startup returned."""
        for name, step in self.steps():
            result = step()
            if result.status is StepStatus.CONTINUE:
                self.completed.append(name)
                continue
            if result.status is StepStatus.PARENT_EXIT:
                self._os.exit(0, hard=True)
            logger.error("%s", result.message, exc_info=result.error, extra={"step": name})
            self._os.exit(1, hard=not self._is_daemon)

    # Steps

    def first_fork(self) -> StepResult:
        try:
            pid = self._os.fork()
        except OSError as e:
            return StepResult.failed(f"first fork() failed ({_os_error(e)})")
        return StepResult.parent() if pid > 0 else StepResult.ok()

    def set_umask(self) -> StepResult:
        self._os.umask(DAEMON_UMASK)
        return StepResult.ok()

    def redirect_log(self) -> StepResult:
        try:
            redirect_log(self.log_file, self.log_file_mode)
        except OSError as e:
            # Still logged through the handler that was active before.
            return StepResult.failed(f"cannot redirect log to {self.log_file} ({_os_error(e)})")
        return StepResult.ok()

    def setsid(self) -> StepResult:
        try:
            self._os.setsid()
        except OSError as e:
            return StepResult.failed(f"cannot setup the new process group leader ({_os_error(e)})")
        return StepResult.ok()

    def second_fork(self) -> StepResult:
        try:
            pid = self._os.fork()
        except OSError as e:
            return StepResult.failed(f"second fork() failed ({_os_error(e)})")
        if pid > 0:
            return StepResult.parent()
        self._is_daemon = True
        return StepResult.ok()

    def write_pid(self) -> StepResult:
        try:
            write_pid(self.pid_file, self._os.getpid())
        except OSError as e:
            return StepResult.failed(f"cannot write PID file {self.pid_file} ({_os_error(e)})")
        return StepResult.ok()

    def chdir(self) -> StepResult:
        try:
            self._os.chdir(str(self.working_directory))
        except OSError as e:
            return StepResult.failed(
                f"cannot change current working directory to {self.working_directory} ({_os_error(e)})"
            )
        return StepResult.ok()

    def close_stdio(self) -> StepResult:
        for stream in (sys.stdout, sys.stderr):
            try:
                if stream is not None:
                    stream.flush()
            except (OSError, ValueError):
                pass
        for fd in STDIO_FDS:
            try:
                self._os.close(fd)
            except OSError as e:
                return StepResult.failed(f"cannot close file descriptor {fd} ({_os_error(e)})")
        self._os.release_std_streams()
        return StepResult.ok()

    def startup(self) -> StepResult:
        logger.info("daemon started", extra={"pid": self._os.getpid()})
        try:
            self._startup()
        except Exception as e:
            return StepResult.failed(f"start routine failed: {e}", e)
        return StepResult.ok()
