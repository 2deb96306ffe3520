from __future__ import annotations

import os
import sys
from typing import NoReturn

from ..util.obslog import flush_logging


def can_detach() -> bool:
    """Background detachment needs fork() and setsid() (POSIX only)."""
    return hasattr(os, "fork") and hasattr(os, "setsid")


class OsOps:
    """The OS calls the lifecycle makes, in one replaceable place.

    Tests pass a fake with the same methods to drive every branch without
    forking. Failing calls raise OSError, as the os module does.
    """

    def fork(self) -> int:
        return os.fork()

    def setsid(self) -> int:
        return os.setsid()

    def umask(self, mask: int) -> int:
        return os.umask(mask)

    def chdir(self, path: str) -> None:
        os.chdir(path)

    def close(self, fd: int) -> None:
        os.close(fd)

    def getpid(self) -> int:
        return os.getpid()

    def release_std_streams(self) -> None:
        # fds 0-2 are closed; keep Python from writing into whatever file reuses them.
        sys.stdin = None  # type: ignore[assignment]
        sys.stdout = None  # type: ignore[assignment]
        sys.stderr = None  # type: ignore[assignment]

    def exit(self, code: int, *, hard: bool = False) -> NoReturn:
        """Terminate the process.

        `hard` is used once forking has started: no caller frame, atexit hook
        or buffered output of a parent may run twice.
        """
        flush_logging()
        for stream in (sys.stdout, sys.stderr):
            try:
                if stream is not None:
                    stream.flush()
            except (OSError, ValueError):
                pass
        if hard:
            os._exit(code)
        raise SystemExit(code)
