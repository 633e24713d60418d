"""Execution of external commands on behalf of pipeline stages.

Commands run with an environment built from a copy of ``os.environ`` plus the
per-call overrides, so toolchain and cache variables never leak into the
orchestrator itself or into sibling commands.  Each child is started in its
own session which lets an interrupt take down the whole process tree
(``make`` and its compilers, ``repo`` and its git workers) instead of only the
direct child.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Sequence

from progress import ProgressParser, format_progress_message, get_progress_parser

LOG = logging.getLogger("komodo.command")

TIMEOUT_RETURNCODE = 124
NOT_FOUND_RETURNCODE = 127
TERMINATE_GRACE_SECONDS = 10.0


class CommandInterrupted(Exception):
    """Raised when a running command was cancelled by an interrupt."""

    def __init__(self, args: Sequence[str]) -> None:
        super().__init__(f"Interrupted while running: {' '.join(args)}")
        self.command = list(args)


@dataclass
class CommandResult:
    """Outcome of a single external command."""

    args: list[str]
    returncode: int
    output: str = ""
    duration: float = 0.0
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0

    @property
    def command_line(self) -> str:
        return " ".join(self.args)


def build_environment(overrides: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a child environment: the current environment plus *overrides*."""

    env = os.environ.copy()
    if overrides:
        env.update({key: str(value) for key, value in overrides.items()})
    return env


@dataclass
class CommandExecutor:
    """Runs commands, streams their output to the log and returns the result."""

    logger: logging.Logger = field(default_factory=lambda: LOG)
    terminate_grace: float = TERMINATE_GRACE_SECONDS

    def run(
        self,
        argv: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        timeout: float | None = None,
        progress: ProgressParser | None = None,
    ) -> CommandResult:
        """Run *argv* to completion and return its real exit status."""

        command = list(argv)
        if progress is None:
            progress = get_progress_parser(command)

        location = f" (in {cwd})" if cwd else ""
        self.logger.info("$ %s%s", " ".join(command), location)
        if env:
            self.logger.debug(
                "Environment overrides: %s",
                ", ".join(f"{key}={value}" for key, value in sorted(env.items())),
            )

        started = time.monotonic()
        try:
            process = subprocess.Popen(
                command,
                cwd=cwd,
                env=build_environment(env),
                text=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except FileNotFoundError:
            message = f"{command[0]}: command not found"
            self.logger.error(message)
            return CommandResult(command, NOT_FOUND_RETURNCODE, message + "\n", time.monotonic() - started)

        timed_out = threading.Event()
        timer: threading.Timer | None = None
        if timeout is not None:
            timer = threading.Timer(timeout, self._expire, args=(process, timed_out))
            timer.daemon = True
            timer.start()

        output_lines: list[str] = []
        try:
            assert process.stdout is not None  # For type-checkers.
            for raw_line in process.stdout:
                for segment in _iter_output_segments(raw_line):
                    output_lines.append(segment + "\n")
                    self._emit(segment, progress)
            process.stdout.close()
            returncode = process.wait()
        except KeyboardInterrupt as exc:
            self.logger.warning("Interrupt received; terminating %s", command[0])
            self._terminate_tree(process)
            raise CommandInterrupted(command) from exc
        finally:
            if timer is not None:
                timer.cancel()

        duration = time.monotonic() - started
        if timed_out.is_set():
            self.logger.error("Command timed out after %.0fs: %s", timeout, " ".join(command))
            returncode = TIMEOUT_RETURNCODE

        return CommandResult(command, returncode, "".join(output_lines), duration, timed_out.is_set())

    def _emit(self, segment: str, parser: ProgressParser | None) -> None:
        if parser:
            updates = parser.parse(segment)
            if updates:
                for update in updates:
                    self.logger.info(format_progress_message(update))
                return
        self.logger.info(segment)

    def _expire(self, process: subprocess.Popen, flag: threading.Event) -> None:
        flag.set()
        self._terminate_tree(process)

    def _terminate_tree(self, process: subprocess.Popen) -> None:
        """Stop every process in the child's session: SIGTERM, then SIGKILL."""

        if process.poll() is not None:
            return
        _signal_group(process.pid, signal.SIGTERM)
        try:
            process.wait(timeout=self.terminate_grace)
        except subprocess.TimeoutExpired:
            self.logger.warning("Process group %s ignored SIGTERM; sending SIGKILL", process.pid)
            _signal_group(process.pid, signal.SIGKILL)
            process.wait()


def _signal_group(pgid: int, signum: int) -> None:
    try:
        os.killpg(pgid, signum)
    except ProcessLookupError:
        pass


def _iter_output_segments(text: str) -> list[str]:
    """Return sanitized output *text* split into logical display segments."""

    if not text:
        return []
    return [segment for segment in text.replace("\r", "\n").splitlines() if segment.strip()]
