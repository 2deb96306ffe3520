from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

PathLike = Union[str, "os.PathLike[str]"]


def daemonkit_home() -> Path:
    env = os.environ.get("DAEMONKIT_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".daemonkit").resolve()


def ensure_home() -> Path:
    home = daemonkit_home()
    home.mkdir(parents=True, exist_ok=True)
    return home


@dataclass(frozen=True)
class LifecyclePaths:
    working_directory: Path
    pid_file: Optional[Path] = None
    log_file: Optional[Path] = None


def _opt_path(p: Optional[PathLike]) -> Optional[Path]:
    if p is None:
        return None
    s = os.fspath(p)
    return Path(s) if s else None


def resolve_paths(
    executable: PathLike,
    *,
    detach: bool,
    working_directory: Optional[PathLike] = None,
    pid_file: Optional[PathLike] = None,
    log_file: Optional[PathLike] = None,
) -> LifecyclePaths:
    """Fill in the unset paths of a service.

    The working directory defaults to the directory of `executable`. When
    detaching, the PID and log files default to `<stem>.pid` and `<stem>.log`
    inside the working directory; in the foreground they stay unset.
    """
    exe = Path(os.fspath(executable))
    wd = _opt_path(working_directory) or exe.parent
    pid = _opt_path(pid_file)
    log = _opt_path(log_file)
    if detach:
        stem = Path(exe.name).stem or exe.name
        if pid is None:
            pid = wd / f"{stem}.pid"
        if log is None:
            log = wd / f"{stem}.log"
    return LifecyclePaths(working_directory=wd, pid_file=pid, log_file=log)
