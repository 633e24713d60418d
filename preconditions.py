"""Named environment checks evaluated before a stage body runs.

A check never changes the environment it inspects.  Failing checks carry a
message that says what is missing and how to fix it, which the pipeline
reports verbatim instead of a bare boolean.
"""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from build_config import GIB, total_ram_bytes

DEPENDENCY_HINTS: dict[str, str] = {
    "repo": "Install repo: https://source.android.com/docs/setup/download#installing-repo",
    "git": "sudo apt-get install git",
    "make": "sudo apt-get install build-essential",
    "unzip": "sudo apt-get install unzip",
    "adb": "Install Android SDK platform-tools (sudo apt-get install adb)",
}


@dataclass(frozen=True)
class CheckResult:
    passed: bool
    message: str


@dataclass(frozen=True)
class Precondition:
    """A named check with the remediation shown when it fails.

    Advisory preconditions only produce a warning; blocking ones keep the
    stage body from running.
    """

    name: str
    check: Callable[[], CheckResult]
    remediation: str = ""
    advisory: bool = False

    def evaluate(self) -> CheckResult:
        result = self.check()
        if result.passed or not self.remediation:
            return result
        return CheckResult(False, f"{result.message} {self.remediation}")


def tool_on_path(command: str, hint: str | None = None) -> Precondition:
    hint = hint or DEPENDENCY_HINTS.get(command)

    def check() -> CheckResult:
        found = shutil.which(command)
        if found:
            return CheckResult(True, f"'{command}' found at {found}")
        return CheckResult(False, f"Required command '{command}' not found in PATH.")

    return Precondition(f"tool:{command}", check, f"Try: {hint}" if hint else "")


def directory_exists(path: Path, remediation: str = "", *, advisory: bool = False) -> Precondition:
    def check() -> CheckResult:
        if path.is_dir():
            return CheckResult(True, f"Directory present: {path}")
        return CheckResult(False, f"Directory not found: {path}.")

    return Precondition(f"directory:{path}", check, remediation, advisory)


def file_exists(path: Path, remediation: str = "", *, advisory: bool = False) -> Precondition:
    def check() -> CheckResult:
        if path.is_file():
            return CheckResult(True, f"File present: {path}")
        return CheckResult(False, f"File not found: {path}.")

    return Precondition(f"file:{path}", check, remediation, advisory)


def min_free_disk(path: Path, required_bytes: int, *, advisory: bool = False) -> Precondition:
    """Require *required_bytes* free on the filesystem holding *path*."""

    def check() -> CheckResult:
        probe = path
        while not probe.exists() and probe != probe.parent:
            probe = probe.parent
        usage = shutil.disk_usage(probe)
        available_gib = usage.free / GIB
        required_gib = required_bytes / GIB
        if usage.free < required_bytes:
            return CheckResult(
                False,
                f"Insufficient disk space in {probe}: "
                f"{available_gib:.2f} GiB available but {required_gib:.0f} GiB required.",
            )
        return CheckResult(True, f"{available_gib:.2f} GiB free in {probe}")

    return Precondition(
        "disk-space",
        check,
        "Free disk space or move the source tree to a larger volume before retrying.",
        advisory,
    )


def min_ram(
    required_bytes: int,
    *,
    advisory: bool = True,
    remediation: str = "Reduce the number of parallel jobs.",
    probe: Callable[[], int | None] = total_ram_bytes,
) -> Precondition:
    def check() -> CheckResult:
        available = probe()
        if available is None:
            return CheckResult(True, "Unable to determine host memory; skipping RAM check")
        if available < required_bytes:
            return CheckResult(
                False,
                f"Host has {available / GIB:.1f} GiB RAM, "
                f"{required_bytes / GIB:.0f} GiB recommended.",
            )
        return CheckResult(True, f"{available / GIB:.1f} GiB RAM available")

    return Precondition("memory", check, remediation, advisory)


def _git_config_value(key: str) -> str | None:
    try:
        completed = subprocess.run(
            ["git", "config", "--global", key],
            check=False,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        return None
    value = completed.stdout.strip()
    if completed.returncode != 0 or not value:
        return None
    return value


def git_identity_configured() -> Precondition:
    def check() -> CheckResult:
        missing = [key for key in ("user.email", "user.name") if _git_config_value(key) is None]
        if not missing:
            return CheckResult(True, "Git identity configured")
        commands = "; ".join(
            "git config --global user.email 'you@example.com'"
            if key == "user.email"
            else "git config --global user.name 'Your Name'"
            for key in missing
        )
        return CheckResult(False, f"Git {', '.join(missing)} not configured. Run: {commands}")

    return Precondition("git-identity", check)


def connected_adb_devices(output: str) -> list[str]:
    """Return serials listed as ``device`` in ``adb devices`` *output*."""

    serials = []
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) >= 2 and parts[1] == "device":
            serials.append(parts[0])
    return serials


def adb_device_connected() -> Precondition:
    def check() -> CheckResult:
        try:
            completed = subprocess.run(
                ["adb", "devices"],
                check=False,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError:
            return CheckResult(False, "adb is not installed.")
        serials = connected_adb_devices(completed.stdout)
        if serials:
            return CheckResult(True, f"Connected device(s): {', '.join(serials)}")
        return CheckResult(False, "No device connected via ADB.")

    return Precondition(
        "adb-device",
        check,
        "Connect the device, enable USB debugging and accept the host key prompt.",
    )
