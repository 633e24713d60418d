"""Utilities for parsing and formatting the progress output of delegated tools."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

__all__ = [
    "ProgressUpdate",
    "ProgressParser",
    "GitProgressParser",
    "NinjaProgressParser",
    "get_progress_parser",
    "format_progress_message",
]


@dataclass
class ProgressUpdate:
    """Structured representation of an incremental progress update."""

    label: str
    percent: float | None = None
    current: int | None = None
    total: int | None = None
    size_bytes: float | None = None
    speed_bytes_per_sec: float | None = None
    detail: str | None = None


class ProgressParser:
    """Base class for command-specific progress parsers."""

    def parse(self, text: str) -> list[ProgressUpdate]:
        """Return progress updates extracted from *text*."""

        raise NotImplementedError


class GitProgressParser(ProgressParser):
    """Parse ``Label: NN% (a/b)`` lines emitted by ``git`` and ``repo sync``."""

    _PROGRESS_RE = re.compile(
        r"^(?:remote:\s+)?(?P<label>[A-Za-z][A-Za-z ]*):\s+"
        r"(?P<percent>\d+)%\s+\((?P<current>[\d,]+)/(?P<total>[\d,]+)\)"
        r"(?:,\s*(?P<size>[^|,]+))?"
        r"(?:\s+\|\s+(?P<speed>[^,]+))?"
        r"(?:,\s*done\.?)?"
        r"(?:\s+.*)?$"
    )

    def parse(self, text: str) -> list[ProgressUpdate]:
        match = self._PROGRESS_RE.match(text.strip())
        if not match:
            return []
        size = match.group("size")
        speed = match.group("speed")
        return [
            ProgressUpdate(
                label=match.group("label").strip(),
                percent=float(match.group("percent")),
                current=_parse_int(match.group("current")),
                total=_parse_int(match.group("total")),
                size_bytes=_parse_size(size) if size else None,
                speed_bytes_per_sec=_parse_rate(speed) if speed else None,
            )
        ]


class NinjaProgressParser(ProgressParser):
    """Parse ``[ NN% a/b] description`` lines printed by Soong and ninja."""

    _PROGRESS_RE = re.compile(
        r"^\[\s*(?P<percent>\d+)%\s+(?P<current>\d+)/(?P<total>\d+)"
        r"(?:\s+[^\]]*)?\]\s*(?P<detail>.*)$"
    )

    def __init__(self, label: str = "build") -> None:
        self.label = label

    def parse(self, text: str) -> list[ProgressUpdate]:
        match = self._PROGRESS_RE.match(text.strip())
        if not match:
            return []
        detail = match.group("detail").strip()
        return [
            ProgressUpdate(
                label=self.label,
                percent=float(match.group("percent")),
                current=int(match.group("current")),
                total=int(match.group("total")),
                detail=detail or None,
            )
        ]


def get_progress_parser(command: Sequence[str]) -> ProgressParser | None:
    """Return a parser suitable for *command*, if its output reports progress."""

    if not command:
        return None

    program = Path(command[0]).name
    if program == "repo" and len(command) >= 2 and command[1] == "sync":
        return GitProgressParser()
    if program in {"ninja", "m", "mka"}:
        return NinjaProgressParser()
    return None


def format_progress_message(update: ProgressUpdate) -> str:
    """Return a human-readable string representing *update*."""

    parts: list[str] = [update.label]
    if update.percent is not None:
        parts.append(f"{update.percent:.0f}%")
    if update.current is not None:
        if update.total is not None:
            parts.append(f"({update.current}/{update.total})")
        else:
            parts.append(f"({update.current})")
    if update.size_bytes is not None:
        parts.append(_format_bytes(update.size_bytes))
    if update.speed_bytes_per_sec is not None:
        parts.append(f"@ {_format_bytes(update.speed_bytes_per_sec)}/s")
    if update.detail:
        parts.append(f"- {update.detail}")
    return " ".join(part for part in parts if part)


def _parse_int(value: str) -> int:
    return int(value.replace(",", ""))


_SIZE_RE = re.compile(r"^(?P<number>[\d.,]+)\s*(?P<unit>[KMGTP]?i?B)$")

_UNIT_MULTIPLIERS = {
    "B": 1,
    "KB": 1000,
    "MB": 1000**2,
    "GB": 1000**3,
    "TB": 1000**4,
    "KiB": 1024,
    "MiB": 1024**2,
    "GiB": 1024**3,
    "TiB": 1024**4,
}


def _parse_size(value: str) -> float | None:
    match = _SIZE_RE.match(value.strip())
    if not match:
        return None
    multiplier = _UNIT_MULTIPLIERS.get(match.group("unit"))
    if multiplier is None:
        return None
    try:
        return float(match.group("number").replace(",", "")) * multiplier
    except ValueError:
        return None


def _parse_rate(value: str) -> float | None:
    cleaned = value.strip()
    if cleaned.endswith("/s"):
        cleaned = cleaned[:-2].strip()
    return _parse_size(cleaned)


def _format_bytes(value: float) -> str:
    units = ["B", "KiB", "MiB", "GiB", "TiB"]
    index = 0
    while abs(value) >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    if index == 0 or abs(value) >= 10:
        return f"{value:.0f} {units[index]}"
    return f"{value:.1f} {units[index]}"
