"""Immutable run parameters for each pipeline.

Every pipeline receives exactly one of the frozen dataclasses below.  They are
built once from command line input and threaded explicitly into each stage,
so no stage can observe a value another stage changed.
"""

from __future__ import annotations

import dataclasses
import enum
import os
from dataclasses import dataclass
from pathlib import Path

from device_profiles import KOMODO, DeviceProfile

GIB = 1024**3

DEFAULT_BRANCH = "android-16.0.0_r1"
DEFAULT_MANIFEST_URL = "https://android.googlesource.com/platform/manifest"
DEFAULT_CLONE_DEPTH = 1
DEFAULT_KERNEL_OUTPUT = "out"

# Hosts below this amount of memory build with half the requested jobs.
LOW_RAM_THRESHOLD_BYTES = 16 * GIB


class ConfigError(ValueError):
    """Raised when command line input cannot be mapped onto a configuration."""


class _Choice(enum.Enum):
    """Closed enumeration parsed from its command line spelling."""

    @classmethod
    def parse(cls, value: str):
        normalised = value.strip().lower()
        for member in cls:
            if member.value == normalised:
                return member
        choices = ", ".join(member.value for member in cls)
        raise ConfigError(f"Unknown {cls.label()} '{value}'. Expected one of: {choices}")

    @classmethod
    def label(cls) -> str:
        return cls.__name__

    @classmethod
    def choices(cls) -> list[str]:
        return [member.value for member in cls]

    def __str__(self) -> str:
        return self.value


class RomType(_Choice):
    AOSP = "aosp"
    LINEAGE = "lineage"
    PIXEL = "pixel"

    @classmethod
    def label(cls) -> str:
        return "ROM type"


class BuildType(_Choice):
    USER = "user"
    USERDEBUG = "userdebug"
    ENG = "eng"

    @classmethod
    def label(cls) -> str:
        return "build type"


class ExtractionMode(_Choice):
    FACTORY_IMAGE = "factory-image"
    OTA_PACKAGE = "ota-package"
    ADB = "adb"

    @classmethod
    def label(cls) -> str:
        return "extraction mode"


def default_jobs() -> int:
    return os.cpu_count() or 1


def total_ram_bytes() -> int | None:
    """Return the physical memory size of the host, if the platform exposes it."""

    try:
        return os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES")
    except (AttributeError, ValueError, OSError):
        return None


def resolve_parallelism(
    requested: int,
    ram_bytes: int | None,
    *,
    threshold: int = LOW_RAM_THRESHOLD_BYTES,
) -> int:
    """Return the job count to use given *requested* jobs and the host RAM.

    Below *threshold* the request is halved; the result is never below one.
    Unknown RAM leaves the request untouched.
    """

    jobs = max(1, requested)
    if ram_bytes is not None and ram_bytes < threshold:
        return max(1, jobs // 2)
    return jobs


@dataclass(frozen=True)
class PipelineConfig:
    android_root: Path
    device: DeviceProfile = KOMODO
    jobs: int = dataclasses.field(default_factory=default_jobs)

    def snapshot(self) -> dict[str, str]:
        """Return a flat, printable view of the configuration."""

        values: dict[str, str] = {}
        for field in dataclasses.fields(self):
            value = getattr(self, field.name)
            if isinstance(value, DeviceProfile):
                value = value.codename
            elif value is None:
                value = "-"
            values[field.name] = str(value)
        return values


@dataclass(frozen=True)
class InitConfig(PipelineConfig):
    branch: str = DEFAULT_BRANCH
    depth: int = DEFAULT_CLONE_DEPTH
    no_clone_bundle: bool = False
    manifest_url: str = DEFAULT_MANIFEST_URL


@dataclass(frozen=True)
class ExtractConfig(PipelineConfig):
    mode: ExtractionMode = ExtractionMode.ADB
    archive: Path | None = None

    def __post_init__(self) -> None:
        if self.mode is ExtractionMode.ADB and self.archive is not None:
            raise ConfigError("ADB extraction does not take an archive path")
        if self.mode is not ExtractionMode.ADB and self.archive is None:
            raise ConfigError(f"{self.mode.value} extraction requires an archive path")


@dataclass(frozen=True)
class KernelConfig(PipelineConfig):
    defconfig: str = KOMODO.kernel_defconfig
    clean: bool = False
    output: str = DEFAULT_KERNEL_OUTPUT
    source: str = KOMODO.kernel_source
    modules_only: bool = False
    config_only: bool = False
    skip_modules: bool = False
    artifacts_root: Path = dataclasses.field(default_factory=lambda: Path.home() / "kernel-builds")

    def __post_init__(self) -> None:
        if self.modules_only and self.config_only:
            raise ConfigError("--modules-only and --config-only are mutually exclusive")

    @property
    def source_dir(self) -> Path:
        return self.android_root / self.source

    @property
    def output_dir(self) -> Path:
        output = Path(self.output)
        if output.is_absolute():
            return output
        return self.source_dir / output


@dataclass(frozen=True)
class RomConfig(PipelineConfig):
    rom_type: RomType = RomType.AOSP
    build_type: BuildType = BuildType.USERDEBUG
    clean: bool = False
    skip_sync: bool = False
    ccache_enabled: bool = True
    artifacts_root: Path = dataclasses.field(default_factory=lambda: Path.home() / "android-builds")
