from __future__ import annotations

import atexit
import logging
import signal
import sys
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, TypeVar

from ..kernel.context import ProcessContext, instance

logger = logging.getLogger("daemonkit.signals")

T = TypeVar("T")


def _available(*names: str) -> Tuple[int, ...]:
    return tuple(int(getattr(signal, n)) for n in names if hasattr(signal, n))


STOP_SIGNALS: Tuple[int, ...] = _available("SIGABRT", "SIGFPE", "SIGILL", "SIGINT", "SIGSEGV", "SIGTERM")


def handle_signal(signum: int, frame: Any) -> None:
    # Single store into the context; no logging or locking from here.
    instance().record_signal(signum)


def set_signals(
    handler: Callable[[int, Any], Any] = handle_signal,
    signals: Iterable[int] = STOP_SIGNALS,
) -> Dict[int, Any]:
    """Install `handler` for `signals`; returns the handlers it replaced.

    Must be called from the main thread.
    """
    previous: Dict[int, Any] = {}
    for sig in signals:
        previous[sig] = signal.signal(sig, handler)
    return previous


def restore_signals(previous: Dict[int, Any]) -> None:
    for sig, h in previous.items():
        signal.signal(sig, h if h is not None else signal.SIG_DFL)


def set_cleanup(cleanup: Callable[[], Any]) -> Callable[[], None]:
    """Run `cleanup` once when the process ends.

    Covers normal interpreter exit, SystemExit, and death by an uncaught
    exception (run before the traceback is printed). Processes ended with
    os._exit() skip it, as do the parents of a daemon.
    """
    state = {"done": False}

    def run_once() -> None:
        if state["done"]:
            return
        state["done"] = True
        try:
            cleanup()
        except Exception:
            logger.exception("cleanup failed")

    prev_hook = sys.excepthook

    def excepthook(tp: Any, value: Any, tb: Any) -> None:
        run_once()
        prev_hook(tp, value, tb)

    sys.excepthook = excepthook
    atexit.register(run_once)
    return run_once


def with_shutdown_on_error(
    func: Callable[[], T],
    where: str,
    *,
    context: Optional[ProcessContext] = None,
) -> Optional[T]:
    """Call `func`; turn a failure into a stop request instead of a crash.

    On error the context records SIGTERM, exactly as if the process had been
    asked to terminate, and None is returned.
    """
    try:
        return func()
    except Exception as e:
        ctx = context or instance()
        ctx.request_stop(signal.SIGTERM)
        logger.error("%s: %s. Shutting down!", where, e, extra={"signal": int(signal.SIGTERM)})
        return None
