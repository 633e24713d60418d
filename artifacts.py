"""Collection of build outputs into timestamped directories.

After a successful build the expected outputs are globbed, copied into a
fresh ``YYYYmmdd_HHMMSS_<label>`` directory and described by a plain-text
manifest (``build-info.txt``) recording the configuration and provenance of
the run.  Outputs that were not produced are listed in the manifest instead
of failing the run because which files exist depends on the build mode.
"""

from __future__ import annotations

import getpass
import logging
import platform
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Sequence

from command_runner import CommandExecutor

if TYPE_CHECKING:
    from stages import ExecutionResult

LOG = logging.getLogger("komodo.artifacts")

MANIFEST_NAME = "build-info.txt"
STATUS_COMPLETE = "complete"
UNKNOWN = "Unknown"


@dataclass(frozen=True)
class ArtifactSpec:
    """An expected output: a glob relative to *root*.

    ``rename`` only applies when the pattern matches a single entry;
    ``first_match_only`` keeps the first match in sorted order.
    """

    pattern: str
    root: Path
    description: str = ""
    rename: str | None = None
    first_match_only: bool = False

    @property
    def label(self) -> str:
        return self.description or self.pattern


@dataclass(frozen=True)
class ArtifactCopy:
    source: Path
    destination: Path


@dataclass(frozen=True)
class StageOutcome:
    name: str
    state: str
    duration: float


class ManifestSealedError(RuntimeError):
    """Raised when a manifest is modified after it was written."""


@dataclass
class ArtifactManifest:
    title: str
    destination: Path
    timestamp: datetime = field(default_factory=datetime.now)
    status: str = STATUS_COMPLETE
    configuration: dict[str, str] = field(default_factory=dict)
    environment: dict[str, str] = field(default_factory=dict)
    copies: list[ArtifactCopy] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    stages: list[StageOutcome] = field(default_factory=list)
    sealed: bool = False

    def _ensure_open(self) -> None:
        if self.sealed:
            raise ManifestSealedError(f"Manifest for {self.destination} has already been written")

    def record_copy(self, source: Path, destination: Path) -> None:
        self._ensure_open()
        self.copies.append(ArtifactCopy(source, destination))

    def record_missing(self, label: str) -> None:
        self._ensure_open()
        self.missing.append(label)

    def add_note(self, note: str) -> None:
        self._ensure_open()
        self.notes.append(note)

    def record_stages(self, results: Iterable[ExecutionResult]) -> None:
        """Append the outcome of every stage that ran before packaging finished."""

        self._ensure_open()
        for result in results:
            state = "succeeded" if result.succeeded else "failed"
            self.stages.append(StageOutcome(result.stage, state, result.duration))

    def collected_names(self) -> list[str]:
        """Return the collected entries relative to the destination directory."""

        return [copy.destination.relative_to(self.destination).as_posix() for copy in self.copies]

    def render(self) -> str:
        lines = [self.title, "=" * len(self.title)]
        lines.append(f"Status: {self.status}")
        lines.append(f"Date: {self.timestamp.strftime('%Y-%m-%d %H:%M:%S')}")
        if self.configuration:
            lines.extend(["", "Configuration:"])
            lines.extend(f"  {key}: {value}" for key, value in self.configuration.items())
        if self.environment:
            lines.extend(["", "Environment:"])
            lines.extend(f"  {key}: {value}" for key, value in self.environment.items())
        if self.stages:
            lines.extend(["", "Stages:"])
            lines.extend(
                f"  {stage.name:<14} {stage.state:<9} {stage.duration:.1f}s" for stage in self.stages
            )
        if self.copies or self.missing:
            lines.extend(["", "Artifacts:"])
            for copy in self.copies:
                relative = copy.destination.relative_to(self.destination).as_posix()
                lines.append(f"  - {relative} <- {copy.source}")
            for label in self.missing:
                lines.append(f"  - {label}: not produced")
        if self.notes:
            lines.append("")
            lines.extend(self.notes)
        return "\n".join(lines) + "\n"

    def write(self, path: Path | None = None) -> Path:
        """Serialise the manifest and seal it against further changes."""

        self._ensure_open()
        target = path or self.destination / MANIFEST_NAME
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.render())
        self.sealed = True
        LOG.info("Wrote manifest %s", target)
        return target


def create_timestamped_directory(base: Path, label: str, now: datetime | None = None) -> Path:
    """Create and return ``base/<timestamp>_<label>``, never reusing a directory."""

    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    base.mkdir(parents=True, exist_ok=True)
    candidate = base / f"{stamp}_{label}"
    suffix = 1
    while True:
        try:
            candidate.mkdir()
            return candidate
        except FileExistsError:
            candidate = base / f"{stamp}_{label}-{suffix}"
            suffix += 1


def collect_artifacts(
    specs: Sequence[ArtifactSpec],
    destination: Path,
    *,
    title: str,
    configuration: dict[str, str] | None = None,
    environment: dict[str, str] | None = None,
) -> ArtifactManifest:
    """Copy every existing artifact matching *specs* into *destination*."""

    destination.mkdir(parents=True, exist_ok=True)
    manifest = ArtifactManifest(
        title=title,
        destination=destination,
        configuration=dict(configuration or {}),
        environment=dict(environment or {}),
    )
    for spec in specs:
        matches = sorted(spec.root.glob(spec.pattern))
        if spec.first_match_only:
            matches = matches[:1]
        if not matches:
            LOG.warning("Artifact not produced: %s", spec.label)
            manifest.record_missing(spec.label)
            continue
        for source in matches:
            name = spec.rename if spec.rename and len(matches) == 1 else source.name
            target = destination / name
            earlier = next((copy.source for copy in manifest.copies if copy.destination == target), None)
            if earlier is not None:
                LOG.warning("Not packaging %s: %s was already collected from %s", source, name, earlier)
                manifest.add_note(f"Skipped {source}: {name} already collected from {earlier}")
                continue
            _copy_entry(source, target)
            manifest.record_copy(source, target)
            LOG.info("Packaged %s -> %s", source, target)
    return manifest


def _copy_entry(source: Path, target: Path) -> None:
    if source.is_dir():
        shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True)
    else:
        shutil.copy2(source, target)


def probe_tool_version(
    executor: CommandExecutor,
    argv: Sequence[str],
    *,
    env: dict[str, str] | None = None,
    cwd: Path | None = None,
) -> str:
    """Return the first output line of a ``--version`` style command."""

    result = executor.run(argv, env=env, cwd=cwd)
    if not result.succeeded:
        return UNKNOWN
    for line in result.output.splitlines():
        if line.strip():
            return line.strip()
    return UNKNOWN


def git_revision(executor: CommandExecutor, path: Path) -> str:
    if not path.is_dir():
        return UNKNOWN
    return probe_tool_version(executor, ["git", "rev-parse", "HEAD"], cwd=path)


def host_facts(extra: Iterable[tuple[str, str]] = ()) -> dict[str, str]:
    facts = {"Host": platform.node() or UNKNOWN, "User": _current_user()}
    facts.update(extra)
    return facts


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return UNKNOWN
