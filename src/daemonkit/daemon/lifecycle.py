from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Callable, NoReturn, Optional, Union

from ..errors import LifecycleError
from ..kernel.context import ProcessContext
from ..paths import LifecyclePaths, resolve_paths
from ..util.fs import write_pid
from ..util.obslog import redirect_log, set_log_with_now
from .detach import Detacher
from .osops import OsOps, can_detach

logger = logging.getLogger("daemonkit.lifecycle")

LOG_FILE_MODES = ("a", "w")

PathArg = Optional[Union[str, Path]]


class LifecycleState(str, Enum):
    PREPARING = "preparing"
    RESOLVING_PATHS = "resolving_paths"
    FOREGROUND_RUN = "foreground_run"
    DAEMONIZING = "daemonizing"
    RUNNING = "running"
    EXITED = "exited"


def _invalid_file_name(p: Optional[Path]) -> bool:
    return p is None or not str(p) or p.name in ("", ".", "..")


class LifecycleManager:
    """Moves a process from parsed arguments to a running service.

    `start()` either runs the startup routine in the current process or
    daemonizes first. Setup failures are logged and terminate the process;
    only violated preconditions raise (LifecycleError).
    """

    def __init__(self, context: ProcessContext, *, os_ops: Optional[OsOps] = None) -> None:
        self.context = context
        self._os = os_ops or OsOps()
        self.state = LifecycleState.PREPARING
        self.paths: Optional[LifecyclePaths] = None

    def _enter(self, state: LifecycleState) -> None:
        self.state = state
        logger.debug("lifecycle state: %s", state.value, extra={"state": state.value})

    def _fatal(self, message: str) -> NoReturn:
        logger.error("%s", message, extra={"state": self.state.value})
        self._os.exit(1)

    def start(
        self,
        detach: bool,
        startup: Callable[[], object],
        *,
        working_directory: PathArg = None,
        pid_file: PathArg = None,
        log_file: PathArg = None,
        log_file_mode: Optional[str] = None,
    ) -> None:
        self._prepare(detach, startup, log_file_mode)

        self._enter(LifecycleState.RESOLVING_PATHS)
        paths = resolve_paths(
            self.context.executable_path(),
            detach=detach,
            working_directory=working_directory,
            pid_file=pid_file,
            log_file=log_file,
        )
        self.paths = paths

        set_log_with_now(detach)
        if detach:
            self._daemonize(startup, paths, log_file_mode or "a")
        else:
            self._run_foreground(startup, paths, log_file_mode or "w")

    def _prepare(self, detach: bool, startup: Callable[[], object], log_file_mode: Optional[str]) -> None:
        self._enter(LifecycleState.PREPARING)
        if not callable(startup):
            raise LifecycleError("startup routine must be callable")
        if not self.context.commands:
            raise LifecycleError("process context has no commands")
        if not self.context.is_running:
            raise LifecycleError(f"stop signal {self.context.stop_signal} already recorded")
        if log_file_mode is not None and log_file_mode not in LOG_FILE_MODES:
            raise LifecycleError(f"invalid log file mode {log_file_mode!r}")
        if detach and not can_detach():
            raise LifecycleError("detaching is only supported on POSIX systems")

    def _tracked(self, startup: Callable[[], object]) -> Callable[[], None]:
        def run() -> None:
            self._enter(LifecycleState.RUNNING)
            startup()
            self._enter(LifecycleState.EXITED)

        return run

    def _run(self, startup: Callable[[], object]) -> None:
        try:
            self._tracked(startup)()
        except Exception as e:
            logger.exception("start routine failed: %s", e)
            self._os.exit(1)

    def _run_foreground(self, startup: Callable[[], object], paths: LifecyclePaths, log_file_mode: str) -> None:
        self._enter(LifecycleState.FOREGROUND_RUN)
        try:
            self._os.chdir(str(paths.working_directory))
        except OSError as e:
            self._fatal(f"cannot change the working directory to {paths.working_directory}: {e.strerror or e}")

        if paths.pid_file is not None:
            try:
                write_pid(paths.pid_file, self._os.getpid())
            except OSError as e:
                self._fatal(f"cannot write PID file {paths.pid_file}: {e.strerror or e}")

        if paths.log_file is not None:
            try:
                redirect_log(paths.log_file, log_file_mode)
            except OSError as e:
                self._fatal(f"cannot redirect log to {paths.log_file}: {e.strerror or e}")

        self._run(startup)

    def _daemonize(self, startup: Callable[[], object], paths: LifecyclePaths, log_file_mode: str) -> None:
        self._enter(LifecycleState.DAEMONIZING)
        if not str(paths.working_directory):
            self._fatal("cannot detach process because the working directory isn't specified")
        if _invalid_file_name(paths.pid_file):
            self._fatal("cannot detach process because the PID file name is invalid")
        if _invalid_file_name(paths.log_file):
            self._fatal("cannot detach process because the log file name is invalid")
        assert paths.pid_file is not None and paths.log_file is not None

        for p in (paths.pid_file, paths.log_file):
            try:
                os.makedirs(p.parent, exist_ok=True)
            except OSError as e:
                self._fatal(f"cannot create directory {p.parent}: {e.strerror or e}")

        detacher = Detacher(
            self._tracked(startup),
            working_directory=paths.working_directory,
            pid_file=paths.pid_file,
            log_file=paths.log_file,
            log_file_mode=log_file_mode,
            os_ops=self._os,
        )
        detacher.run()
