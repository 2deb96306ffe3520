from __future__ import annotations

import logging
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from . import __version__
from .contracts.v1 import Command, ServiceSettings
from .daemon.lifecycle import LifecycleManager
from .daemon.signals import set_cleanup, set_signals, with_shutdown_on_error
from .errors import DaemonkitError, OptionRequirementError
from .kernel.context import ProcessContext, exit_usage, initialize
from .kernel.parser import command_id
from .kernel.settings import load_settings
from .paths import ensure_home
from .util.fs import atomic_write_text, read_pid, remove_file
from .util.obslog import setup_root_logging
from .util.time import utc_now_iso

PROGRAM = "daemonkit"

SYNOPSIS = (
    "[--config=FILE] [--log-level=LEVEL] [--log-format=text|jsonl] "
    "run [--detach|--foreground] [--workdir=DIR] [--pid-file=FILE] [--log-file=FILE] [--interval=SECONDS] "
    "| status [--pid-file=FILE] | stop [--pid-file=FILE]"
)

logger = logging.getLogger("daemonkit.service")


class ServiceContext(ProcessContext):
    def synopsis(self) -> str:
        return SYNOPSIS


@dataclass(frozen=True)
class ServicePaths:
    working_directory: Path
    pid_file: Path
    log_file: Optional[Path]

    @property
    def heartbeat_file(self) -> Path:
        return self.pid_file.with_suffix(".heartbeat")


def service_paths(
    settings: ServiceSettings,
    *,
    detach: bool,
    workdir: Optional[str] = None,
    pid_file: Optional[str] = None,
    log_file: Optional[str] = None,
) -> ServicePaths:
    wd = Path(workdir or settings.working_directory) if (workdir or settings.working_directory) else ensure_home()
    pid = Path(pid_file or settings.pid_file) if (pid_file or settings.pid_file) else wd / f"{PROGRAM}.pid"
    log: Optional[Path] = None
    if log_file or settings.log_file:
        log = Path(log_file or settings.log_file)
    elif detach:
        log = wd / f"{PROGRAM}.log"
    return ServicePaths(working_directory=wd.absolute(), pid_file=pid.absolute(), log_file=log.absolute() if log else None)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def heartbeat(context: ProcessContext, paths: ServicePaths, interval: float) -> None:
    """The service loop: beat every `interval` seconds until a stop is recorded."""
    logger.info("service running (version %s)", __version__, extra={"pid": os.getpid()})
    beats = 0

    def beat() -> None:
        atomic_write_text(paths.heartbeat_file, f"{utc_now_iso()} {beats}\n")

    while context.is_running:
        beats += 1
        with_shutdown_on_error(beat, "heartbeat", context=context)
        if context.wait_for_stop(interval):
            break
    logger.info("stopping on signal %d after %d beats", context.stop_signal, beats, extra={"signal": context.stop_signal})
    remove_file(paths.heartbeat_file)


def cmd_run(context: ProcessContext, cmd: Command, settings: ServiceSettings) -> int:
    detach_o, foreground_o, workdir_o, pid_o, log_o, interval_o = cmd.options_strict(
        "detach", "foreground", "workdir", "pid-file", "log-file", "interval"
    )
    detach = settings.detach
    if detach_o.present_without_value():
        if foreground_o.present_without_value():
            raise OptionRequirementError("foreground", "cannot be combined with --detach")
        detach = True
    elif foreground_o.present_without_value():
        detach = False
    interval = settings.interval
    if interval_o:
        raw = interval_o.mandatory_not_empty()
        try:
            interval = float(raw)
        except ValueError:
            interval = 0.0
        if not interval > 0:
            raise OptionRequirementError("interval", "requires a positive number of seconds")

    paths = service_paths(
        settings,
        detach=detach,
        workdir=workdir_o.mandatory_not_empty() if workdir_o else None,
        pid_file=pid_o.mandatory_not_empty() if pid_o else None,
        log_file=log_o.mandatory_not_empty() if log_o else None,
    )

    pid = read_pid(paths.pid_file)
    if pid and pid != os.getpid() and _pid_alive(pid):
        print(f"{PROGRAM}: already running pid={pid}")
        return 0

    def cleanup() -> None:
        # Only the process that owns the PID file removes it.
        if read_pid(paths.pid_file) == os.getpid():
            remove_file(paths.pid_file)

    set_signals()
    set_cleanup(cleanup)
    LifecycleManager(context).start(
        detach,
        lambda: heartbeat(context, paths, interval),
        working_directory=paths.working_directory,
        pid_file=paths.pid_file,
        log_file=paths.log_file,
        log_file_mode=settings.log_file_mode,
    )
    return 0


def cmd_status(context: ProcessContext, cmd: Command, settings: ServiceSettings) -> int:
    (pid_o,) = cmd.options_strict("pid-file")
    paths = service_paths(settings, detach=False, pid_file=pid_o.mandatory_not_empty() if pid_o else None)
    pid = read_pid(paths.pid_file)
    if not _pid_alive(pid):
        print(f"{PROGRAM}: not running")
        return 1
    try:
        last = paths.heartbeat_file.read_text(encoding="utf-8").split()[0]
    except (OSError, IndexError):
        last = "-"
    print(f"{PROGRAM}: running pid={pid} heartbeat={last}")
    return 0


def cmd_stop(context: ProcessContext, cmd: Command, settings: ServiceSettings) -> int:
    (pid_o,) = cmd.options_strict("pid-file")
    paths = service_paths(settings, detach=False, pid_file=pid_o.mandatory_not_empty() if pid_o else None)
    pid = read_pid(paths.pid_file)
    if not _pid_alive(pid):
        print(f"{PROGRAM}: not running")
        return 0
    os.kill(pid, signal.SIGTERM)
    print(f"{PROGRAM}: SIGTERM sent pid={pid}")
    return 0


COMMANDS: Dict[str, Callable[[ProcessContext, Command, ServiceSettings], int]] = {
    "run": cmd_run,
    "status": cmd_status,
    "stop": cmd_stop,
}


def dispatch(context: ProcessContext) -> int:
    cmds = context.commands
    prog = cmds[0]
    config_o, level_o, format_o = prog.options_strict("config", "log-level", "log-format")
    if len(cmds) != 2 or prog.parameters or cmds[1].parameters:
        exit_usage(context=context)
    handler = COMMANDS.get(command_id(cmds))
    if handler is None:
        exit_usage(context=context)

    settings = load_settings(Path(config_o.mandatory_not_empty()) if config_o else None)
    updates: Dict[str, str] = {}
    if level_o:
        updates["log_level"] = level_o.mandatory_not_empty()
    if format_o:
        fmt = format_o.mandatory_not_empty()
        if fmt not in ("text", "jsonl"):
            raise OptionRequirementError("log-format", "requires one of: text, jsonl")
        updates["log_format"] = fmt
    if updates:
        settings = settings.model_copy(update=updates)

    setup_root_logging(component=PROGRAM, level=settings.log_level, fmt=settings.log_format)
    return handler(context, cmds[1], settings)


def main(argv: Optional[List[str]] = None) -> int:
    args = list(sys.argv if argv is None else argv)
    try:
        context = initialize(ServiceContext.from_argv, args)
        return dispatch(context)
    except DaemonkitError as e:
        print(f"{PROGRAM}: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"{PROGRAM}: unknown error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
