import logging
import os
import signal
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest import mock

import command_runner
from command_runner import CommandExecutor, CommandInterrupted


class CommandExecutorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.executor = CommandExecutor(logger=logging.getLogger("komodo.test.command"))

    def test_returns_real_exit_status_and_output(self) -> None:
        with self.assertLogs("komodo.test.command", level="INFO") as logs:
            result = self.executor.run(["sh", "-c", "echo first; echo second >&2; exit 3"])

        self.assertEqual(3, result.returncode)
        self.assertFalse(result.succeeded)
        self.assertIn("first\n", result.output)
        self.assertIn("second\n", result.output)
        self.assertTrue(any(line.endswith("first") for line in logs.output))

    def test_environment_overrides_are_scoped_to_child(self) -> None:
        self.assertNotIn("KOMODO_TEST_VALUE", os.environ)

        with self.assertLogs("komodo.test.command", level="INFO"):
            result = self.executor.run(
                ["sh", "-c", 'echo "value=$KOMODO_TEST_VALUE"'],
                env={"KOMODO_TEST_VALUE": "scoped"},
            )

        self.assertEqual("value=scoped\n", result.output)
        self.assertNotIn("KOMODO_TEST_VALUE", os.environ)

    def test_runs_in_requested_directory(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertLogs("komodo.test.command", level="INFO"):
                result = self.executor.run(["pwd"], cwd=Path(tmp))
        self.assertEqual(os.path.realpath(tmp), os.path.realpath(result.output.strip()))

    def test_missing_command_reports_127(self) -> None:
        with self.assertLogs("komodo.test.command", level="ERROR"):
            result = self.executor.run(["komodo-command-that-does-not-exist"])

        self.assertEqual(command_runner.NOT_FOUND_RETURNCODE, result.returncode)
        self.assertIn("command not found", result.output)

    def test_stdin_is_closed(self) -> None:
        with self.assertLogs("komodo.test.command", level="INFO"):
            result = self.executor.run(["cat"], timeout=10)

        self.assertEqual(0, result.returncode)
        self.assertFalse(result.timed_out)
        self.assertEqual("", result.output)

    def test_timeout_kills_command(self) -> None:
        with self.assertLogs("komodo.test.command", level="ERROR"):
            result = self.executor.run(["sh", "-c", "sleep 30"], timeout=0.5)

        self.assertTrue(result.timed_out)
        self.assertEqual(command_runner.TIMEOUT_RETURNCODE, result.returncode)
        self.assertLess(result.duration, 30)

    def test_interrupt_terminates_process_group(self) -> None:
        process = mock.Mock()
        process.pid = 4321
        process.stdout.__iter__ = mock.Mock(side_effect=KeyboardInterrupt)
        process.poll.return_value = None
        process.wait.return_value = -15

        with mock.patch("command_runner.subprocess.Popen", return_value=process), mock.patch(
            "command_runner.os.killpg"
        ) as killpg_mock, self.assertLogs("komodo.test.command", level="WARNING"):
            with self.assertRaises(CommandInterrupted) as ctx:
                self.executor.run(["make", "all"])

        killpg_mock.assert_called_once_with(4321, signal.SIGTERM)
        self.assertEqual(["make", "all"], ctx.exception.command)


def process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return True
    # Zombies waiting to be reaped by init no longer run.
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


class ProcessTreeTests(unittest.TestCase):
    """The whole process group is stopped, including background grandchildren."""

    def setUp(self) -> None:
        self.executor = CommandExecutor(logger=logging.getLogger("komodo.test.tree"), terminate_grace=2.0)
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.pid_file = Path(self._tmp.name) / "grandchild.pid"
        self.command = ["sh", "-c", f'sleep 60 & echo $! > "{self.pid_file}"; echo started; wait']

    def grandchild_pid(self) -> int:
        return int(self.pid_file.read_text().strip())

    def assert_stopped(self, pid: int) -> None:
        deadline = time.monotonic() + 5
        while process_alive(pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        if process_alive(pid):
            os.kill(pid, signal.SIGKILL)
            self.fail(f"background process {pid} survived")

    def test_timeout_stops_background_grandchild(self) -> None:
        with self.assertLogs("komodo.test.tree", level="INFO"):
            result = self.executor.run(self.command, timeout=0.5)

        self.assertTrue(result.timed_out)
        self.assertLess(result.duration, 30)
        self.assert_stopped(self.grandchild_pid())

    def test_interrupt_stops_background_grandchild(self) -> None:
        previous = signal.signal(signal.SIGINT, signal.default_int_handler)
        self.addCleanup(signal.signal, signal.SIGINT, previous)
        main_thread = threading.main_thread().ident
        interrupter = threading.Timer(0.5, signal.pthread_kill, args=(main_thread, signal.SIGINT))
        interrupter.daemon = True

        with self.assertLogs("komodo.test.tree", level="INFO"):
            interrupter.start()
            with self.assertRaises(CommandInterrupted):
                self.executor.run(self.command)
        interrupter.cancel()

        self.assert_stopped(self.grandchild_pid())


class BuildEnvironmentTests(unittest.TestCase):
    def test_overrides_do_not_touch_os_environ(self) -> None:
        with mock.patch.dict(os.environ, {"PATH": "/usr/bin"}, clear=False):
            env = command_runner.build_environment({"PATH": "/opt/clang/bin:/usr/bin", "ARCH": "arm64"})
            self.assertEqual("/usr/bin", os.environ["PATH"])
        self.assertEqual("/opt/clang/bin:/usr/bin", env["PATH"])
        self.assertEqual("arm64", env["ARCH"])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
