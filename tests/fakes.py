"""Test doubles shared by the pipeline tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from command_runner import CommandResult


@dataclass
class RecordedCall:
    argv: list[str]
    env: dict[str, str]
    cwd: Path | None

    @property
    def line(self) -> str:
        return " ".join(self.argv)


@dataclass
class RecordingExecutor:
    """Executor stand-in that records commands instead of running them.

    ``returncodes`` maps a substring of the command line to the exit status
    reported for matching commands; ``outputs`` does the same for output.
    """

    returncodes: dict[str, int] = field(default_factory=dict)
    outputs: dict[str, str] = field(default_factory=dict)
    calls: list[RecordedCall] = field(default_factory=list)

    def run(self, argv, *, env=None, cwd=None, timeout=None, progress=None):
        argv = list(argv)
        call = RecordedCall(argv, dict(env or {}), cwd)
        self.calls.append(call)
        returncode = next((code for text, code in self.returncodes.items() if text in call.line), 0)
        output = next((text for key, text in self.outputs.items() if key in call.line), "")
        return CommandResult(argv, returncode, output)

    @property
    def lines(self) -> list[str]:
        return [call.line for call in self.calls]
