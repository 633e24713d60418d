"""Merge ``.config`` fragments onto a generated kernel configuration.

Only the ``.config`` line format is understood: ``CONFIG_FOO=value`` and
``# CONFIG_FOO is not set``.  Symbols keep the position of their first
appearance; fragments applied later overwrite the value.  Dependency
resolution is left to ``make olddefconfig``.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable

LOG = logging.getLogger("komodo.kconfig")

_SET_RE = re.compile(r"^(?P<symbol>CONFIG_[A-Za-z0-9_]+)=(?P<value>.*)$")
_UNSET_RE = re.compile(r"^#\s*(?P<symbol>CONFIG_[A-Za-z0-9_]+) is not set\s*$")

UNSET = "is not set"


def parse_config(text: str) -> dict[str, str]:
    """Return ``{symbol: value}`` for every assignment in *text*.

    Unset symbols map to :data:`UNSET`; other comments and blank lines are
    ignored.
    """

    values: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        match = _SET_RE.match(stripped)
        if match:
            values[match.group("symbol")] = match.group("value")
            continue
        match = _UNSET_RE.match(stripped)
        if match:
            values[match.group("symbol")] = UNSET
    return values


def merge_configs(base: dict[str, str], fragments: Iterable[tuple[str, dict[str, str]]]) -> dict[str, str]:
    """Apply *fragments* (``(name, values)`` pairs) to *base* in order."""

    merged = dict(base)
    for name, values in fragments:
        for symbol, value in values.items():
            previous = merged.get(symbol)
            if previous is not None and previous != value:
                LOG.info("Value of %s is redefined by fragment %s: %s -> %s", symbol, name, previous, value)
            merged[symbol] = value
    return merged


def render_config(values: dict[str, str]) -> str:
    lines = []
    for symbol, value in values.items():
        if value == UNSET:
            lines.append(f"# {symbol} is not set")
        else:
            lines.append(f"{symbol}={value}")
    return "\n".join(lines) + "\n"


def merge_fragment_files(config_path: Path, fragment_paths: Iterable[Path]) -> dict[str, str]:
    """Merge *fragment_paths* into the ``.config`` at *config_path* in place."""

    base = parse_config(config_path.read_text()) if config_path.exists() else {}
    fragments = []
    for path in fragment_paths:
        LOG.info("Applying config fragment: %s", path.name)
        fragments.append((path.name, parse_config(path.read_text())))
    merged = merge_configs(base, fragments)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(render_config(merged))
    return merged
