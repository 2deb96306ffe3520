import errno
import io
import logging
import os
import re
import signal
import tempfile
import unittest
from pathlib import Path
from typing import Any, List, Optional, Sequence, Union
from unittest.mock import patch


class FakeExit(BaseException):
    def __init__(self, code: int, hard: bool) -> None:
        super().__init__(code, hard)
        self.code = code
        self.hard = hard


class FakeOsOps:
    """Records OS calls instead of making them."""

    def __init__(
        self,
        forks: Sequence[Union[int, OSError]] = (0, 0),
        *,
        pid: int = 4242,
        fail: Sequence[str] = (),
        fail_fds: Sequence[int] = (),
    ) -> None:
        self.forks: List[Union[int, OSError]] = list(forks)
        self.pid = pid
        self.fail = set(fail)
        self.fail_fds = set(fail_fds)
        self.calls: List[tuple] = []

    def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name,) + args)
        if name in self.fail:
            raise OSError(errno.EPERM, f"{name} not permitted")

    def names(self) -> List[str]:
        return [c[0] for c in self.calls if c[0] != "getpid"]

    def fork(self) -> int:
        self._call("fork")
        r = self.forks.pop(0)
        if isinstance(r, OSError):
            raise r
        return r

    def setsid(self) -> int:
        self._call("setsid")
        return self.pid

    def umask(self, mask: int) -> int:
        self._call("umask", mask)
        return 0o022

    def chdir(self, path: str) -> None:
        self._call("chdir", path)

    def close(self, fd: int) -> None:
        self._call("close", fd)
        if fd in self.fail_fds:
            raise OSError(errno.EBADF, "Bad file descriptor")

    def getpid(self) -> int:
        self.calls.append(("getpid",))
        return self.pid

    def release_std_streams(self) -> None:
        self._call("release_std_streams")

    def exit(self, code: int, *, hard: bool = False) -> None:
        self.calls.append(("exit", code, hard))
        raise FakeExit(code, hard)


class LoggingTestCase(unittest.TestCase):
    def setUp(self) -> None:
        from daemonkit.kernel import context
        from daemonkit.util import obslog
        from daemonkit.util.obslog import TextFormatter, set_log_with_now

        state = patch.dict(obslog._STATE, {"with_now": False, "fmt": "text"})
        state.start()
        self.addCleanup(state.stop)

        root = logging.getLogger()
        saved_handlers = list(root.handlers)
        saved_level = root.level

        def restore() -> None:
            for h in list(root.handlers):
                root.removeHandler(h)
                if h not in saved_handlers:
                    h.close()
            for h in saved_handlers:
                root.addHandler(h)
            root.setLevel(saved_level)
            set_log_with_now(False)

        self.addCleanup(restore)
        self.stream = io.StringIO()
        handler = logging.StreamHandler(self.stream)
        handler.setFormatter(TextFormatter())
        for h in list(root.handlers):
            root.removeHandler(h)
        root.addHandler(handler)
        root.setLevel(logging.INFO)

        td = tempfile.TemporaryDirectory()
        self.addCleanup(td.cleanup)
        self.tmp = Path(td.name)
        self.ctx = context.ProcessContext.from_argv([str(self.tmp / "bin" / "app.py"), "--detach"])
        self.started: List[str] = []

    def startup(self) -> None:
        self.started.append("started")
        logging.getLogger("test.app").info("hello from startup")


class TestForeground(LoggingTestCase):
    def test_runs_startup_in_resolved_directory(self) -> None:
        from daemonkit.daemon.lifecycle import LifecycleManager, LifecycleState
        from daemonkit.util.obslog import log_with_now

        pid_file = self.tmp / "run" / "app.pid"
        log_file = self.tmp / "app.log"
        log_file.write_text("old content\n", encoding="utf-8")
        fake = FakeOsOps()
        mgr = LifecycleManager(self.ctx, os_ops=fake)
        mgr.start(False, self.startup, pid_file=pid_file, log_file=log_file)

        self.assertEqual(self.started, ["started"])
        self.assertEqual(mgr.state, LifecycleState.EXITED)
        self.assertFalse(log_with_now())
        self.assertEqual(fake.calls[0], ("chdir", str(self.tmp / "bin")))
        self.assertNotIn("fork", fake.names())
        self.assertEqual(pid_file.read_text(encoding="utf-8").strip(), "4242")

        text = log_file.read_text(encoding="utf-8")
        self.assertNotIn("old content", text)
        self.assertIn("INFO test.app: hello from startup", text)
        # No timestamp prefix in the foreground.
        self.assertTrue(text.startswith("INFO "))

    def test_no_pid_or_log_by_default(self) -> None:
        from daemonkit.daemon.lifecycle import LifecycleManager

        mgr = LifecycleManager(self.ctx, os_ops=FakeOsOps())
        mgr.start(False, self.startup)
        self.assertIsNotNone(mgr.paths)
        self.assertIsNone(mgr.paths.pid_file)
        self.assertIsNone(mgr.paths.log_file)
        self.assertFalse((self.tmp / "bin" / "app.pid").exists())
        self.assertIn("hello from startup", self.stream.getvalue())

    def test_chdir_failure_is_fatal(self) -> None:
        from daemonkit.daemon.lifecycle import LifecycleManager

        fake = FakeOsOps(fail=["chdir"])
        with self.assertRaises(FakeExit) as cm:
            LifecycleManager(self.ctx, os_ops=fake).start(False, self.startup)
        self.assertEqual(cm.exception.code, 1)
        self.assertFalse(cm.exception.hard)
        self.assertEqual(self.started, [])
        self.assertIn("cannot change the working directory", self.stream.getvalue())

    def test_startup_error_exits_with_failure(self) -> None:
        from daemonkit.daemon.lifecycle import LifecycleManager

        def broken() -> None:
            raise RuntimeError("database unreachable")

        with self.assertRaises(FakeExit) as cm:
            LifecycleManager(self.ctx, os_ops=FakeOsOps()).start(False, broken)
        self.assertEqual(cm.exception.code, 1)
        self.assertIn("start routine failed: database unreachable", self.stream.getvalue())

    def test_pid_write_failure_is_fatal(self) -> None:
        from daemonkit.daemon.lifecycle import LifecycleManager

        blocker = self.tmp / "blocker"
        blocker.write_text("", encoding="utf-8")
        fake = FakeOsOps()
        with self.assertRaises(FakeExit) as cm:
            LifecycleManager(self.ctx, os_ops=fake).start(False, self.startup, pid_file=blocker / "app.pid")
        self.assertEqual((cm.exception.code, cm.exception.hard), (1, False))
        self.assertEqual(self.started, [])
        self.assertIn(f"cannot write PID file {blocker / 'app.pid'}", self.stream.getvalue())

    def test_log_redirect_failure_is_fatal(self) -> None:
        from daemonkit.daemon.lifecycle import LifecycleManager

        log_file = self.tmp / "missing" / "app.log"
        with self.assertRaises(FakeExit) as cm:
            LifecycleManager(self.ctx, os_ops=FakeOsOps()).start(False, self.startup, log_file=log_file)
        self.assertEqual((cm.exception.code, cm.exception.hard), (1, False))
        self.assertEqual(self.started, [])
        # Reported on the destination that was active before the redirect.
        self.assertIn(f"cannot redirect log to {log_file}", self.stream.getvalue())

    def test_preconditions(self) -> None:
        from daemonkit.daemon.lifecycle import LifecycleManager
        from daemonkit.errors import LifecycleError

        mgr = LifecycleManager(self.ctx, os_ops=FakeOsOps())
        with self.assertRaises(LifecycleError):
            mgr.start(False, None)  # type: ignore[arg-type]
        with self.assertRaises(LifecycleError):
            mgr.start(False, self.startup, log_file_mode="r")

        self.ctx.record_signal(signal.SIGINT)
        with self.assertRaises(LifecycleError):
            mgr.start(False, self.startup)
        self.assertEqual(self.started, [])


@unittest.skipUnless(hasattr(os, "fork") and hasattr(os, "setsid"), "POSIX only")
class TestDaemonize(LoggingTestCase):
    def _start(self, fake: FakeOsOps, startup: Optional[Any] = None, **kwargs: Any) -> None:
        from daemonkit.daemon.lifecycle import LifecycleManager

        self.mgr = LifecycleManager(self.ctx, os_ops=fake)
        self.mgr.start(True, startup or self.startup, **kwargs)

    def test_full_sequence_in_daemon(self) -> None:
        from daemonkit.daemon.detach import DAEMON_UMASK
        from daemonkit.daemon.lifecycle import LifecycleState
        from daemonkit.util.obslog import log_with_now

        fake = FakeOsOps(forks=(0, 0), pid=777)
        self._start(fake)

        self.assertEqual(self.started, ["started"])
        self.assertEqual(self.mgr.state, LifecycleState.EXITED)
        self.assertTrue(log_with_now())
        self.assertEqual(
            fake.names(),
            ["fork", "umask", "setsid", "fork", "chdir", "close", "close", "close", "release_std_streams"],
        )
        self.assertIn(("umask", DAEMON_UMASK), fake.calls)
        self.assertEqual([c[1] for c in fake.calls if c[0] == "close"], [0, 1, 2])

        pid_file = self.tmp / "bin" / "app.pid"
        log_file = self.tmp / "bin" / "app.log"
        self.assertEqual(pid_file.read_text(encoding="utf-8").strip(), "777")
        self.assertTrue(log_file.exists())
        lines = [ln for ln in log_file.read_text(encoding="utf-8").splitlines() if "hello from startup" in ln]
        self.assertEqual(len(lines), 1)
        self.assertRegex(lines[0], r"^\d{4}-\d{2}-\d{2}T\S+Z INFO test.app: hello from startup$")

    def test_log_appends_by_default(self) -> None:
        log_file = self.tmp / "logs" / "svc.log"
        log_file.parent.mkdir()
        log_file.write_text("previous run\n", encoding="utf-8")
        self._start(FakeOsOps(), log_file=log_file, pid_file=self.tmp / "pids" / "svc.pid")
        text = log_file.read_text(encoding="utf-8")
        self.assertTrue(text.startswith("previous run\n"))
        self.assertIn("hello from startup", text)
        self.assertTrue((self.tmp / "pids" / "svc.pid").exists())

    def test_first_fork_parent_exits_successfully(self) -> None:
        fake = FakeOsOps(forks=(1234,))
        with self.assertRaises(FakeExit) as cm:
            self._start(fake)
        self.assertEqual((cm.exception.code, cm.exception.hard), (0, True))
        self.assertEqual(fake.names(), ["fork", "exit"])
        self.assertEqual(self.started, [])
        self.assertFalse((self.tmp / "bin" / "app.pid").exists())

    def test_second_fork_parent_exits_successfully(self) -> None:
        fake = FakeOsOps(forks=(0, 1234))
        with self.assertRaises(FakeExit) as cm:
            self._start(fake)
        self.assertEqual((cm.exception.code, cm.exception.hard), (0, True))
        self.assertEqual(fake.names(), ["fork", "umask", "setsid", "fork", "exit"])
        self.assertFalse((self.tmp / "bin" / "app.pid").exists())

    def test_fork_failure(self) -> None:
        fake = FakeOsOps(forks=(OSError(errno.EAGAIN, "Resource temporarily unavailable"),))
        with self.assertRaises(FakeExit) as cm:
            self._start(fake)
        self.assertEqual((cm.exception.code, cm.exception.hard), (1, True))
        self.assertIn("first fork() failed (Resource temporarily unavailable)", self.stream.getvalue())

    def test_second_fork_failure(self) -> None:
        fake = FakeOsOps(forks=(0, OSError(errno.EAGAIN, "Resource temporarily unavailable")))
        with self.assertRaises(FakeExit) as cm:
            self._start(fake)
        self.assertEqual((cm.exception.code, cm.exception.hard), (1, True))
        log_text = (self.tmp / "bin" / "app.log").read_text(encoding="utf-8")
        self.assertIn("second fork() failed", log_text)

    def test_setsid_failure(self) -> None:
        fake = FakeOsOps(fail=["setsid"])
        with self.assertRaises(FakeExit) as cm:
            self._start(fake)
        self.assertEqual((cm.exception.code, cm.exception.hard), (1, True))
        self.assertNotIn("chdir", fake.names())

    def test_chdir_failure_in_daemon(self) -> None:
        fake = FakeOsOps(fail=["chdir"])
        with self.assertRaises(FakeExit) as cm:
            self._start(fake)
        self.assertEqual((cm.exception.code, cm.exception.hard), (1, False))
        self.assertNotIn("close", fake.names())
        self.assertTrue((self.tmp / "bin" / "app.pid").exists())

    def test_close_failure_stops_sequence(self) -> None:
        fake = FakeOsOps(fail_fds=[1])
        with self.assertRaises(FakeExit) as cm:
            self._start(fake)
        self.assertEqual((cm.exception.code, cm.exception.hard), (1, False))
        self.assertEqual([c[1] for c in fake.calls if c[0] == "close"], [0, 1])
        self.assertNotIn("release_std_streams", fake.names())
        self.assertEqual(self.started, [])
        log_text = (self.tmp / "bin" / "app.log").read_text(encoding="utf-8")
        self.assertIn("cannot close file descriptor 1", log_text)

    def test_startup_error_in_daemon(self) -> None:
        def broken() -> None:
            raise ValueError("bad config")

        with self.assertRaises(FakeExit) as cm:
            self._start(FakeOsOps(), startup=broken)
        self.assertEqual((cm.exception.code, cm.exception.hard), (1, False))
        log_text = (self.tmp / "bin" / "app.log").read_text(encoding="utf-8")
        self.assertIn("start routine failed: bad config", log_text)
        self.assertIn("ValueError", log_text)

    def test_invalid_pid_file_name(self) -> None:
        fake = FakeOsOps()
        with self.assertRaises(FakeExit) as cm:
            self._start(fake, pid_file=self.tmp / "..")
        self.assertEqual((cm.exception.code, cm.exception.hard), (1, False))
        self.assertEqual(fake.names(), ["exit"])
        self.assertIn("PID file name is invalid", self.stream.getvalue())

    def test_directory_creation_failure(self) -> None:
        blocker = self.tmp / "blocker"
        blocker.write_text("", encoding="utf-8")
        fake = FakeOsOps()
        with self.assertRaises(FakeExit) as cm:
            self._start(fake, log_file=blocker / "app.log")
        self.assertEqual((cm.exception.code, cm.exception.hard), (1, False))
        self.assertEqual(fake.names(), ["exit"])
        self.assertIn(f"cannot create directory {blocker}", self.stream.getvalue())


class TestDetacher(LoggingTestCase):
    def test_redirect_failure_is_logged_before_redirect(self) -> None:
        from daemonkit.daemon.detach import Detacher

        fake = FakeOsOps()
        d = Detacher(
            self.startup,
            working_directory=self.tmp,
            pid_file=self.tmp / "x.pid",
            log_file=self.tmp / "missing-dir" / "x.log",
            os_ops=fake,
        )
        with self.assertRaises(FakeExit) as cm:
            d.run()
        self.assertEqual((cm.exception.code, cm.exception.hard), (1, True))
        self.assertEqual(d.completed, ["first_fork", "umask"])
        self.assertRegex(self.stream.getvalue(), re.escape(f"cannot redirect log to {self.tmp / 'missing-dir' / 'x.log'}"))
        self.assertNotIn("setsid", fake.names())

    def test_steps_are_ordered(self) -> None:
        from daemonkit.daemon.detach import Detacher

        d = Detacher(
            self.startup,
            working_directory=self.tmp,
            pid_file=self.tmp / "x.pid",
            log_file=self.tmp / "x.log",
            os_ops=FakeOsOps(),
        )
        d.run()
        self.assertEqual(
            d.completed,
            ["first_fork", "umask", "redirect_log", "setsid", "second_fork", "write_pid", "chdir", "close_stdio", "startup"],
        )
        self.assertEqual(self.started, ["started"])

    def test_pid_write_failure_in_daemon(self) -> None:
        from daemonkit.daemon.detach import Detacher

        blocker = self.tmp / "blocker"
        blocker.write_text("", encoding="utf-8")
        fake = FakeOsOps(forks=(0, 0))
        d = Detacher(
            self.startup,
            working_directory=self.tmp,
            pid_file=blocker / "x.pid",
            log_file=self.tmp / "x.log",
            os_ops=fake,
        )
        with self.assertRaises(FakeExit) as cm:
            d.run()
        self.assertEqual((cm.exception.code, cm.exception.hard), (1, False))
        self.assertEqual(d.completed, ["first_fork", "umask", "redirect_log", "setsid", "second_fork"])
        self.assertNotIn("chdir", fake.names())
        self.assertEqual(self.started, [])
        log_text = (self.tmp / "x.log").read_text(encoding="utf-8")
        self.assertIn(f"cannot write PID file {blocker / 'x.pid'}", log_text)


if __name__ == "__main__":
    unittest.main()
