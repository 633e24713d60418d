"""Blob extraction pipeline.

Pulls proprietary files from a factory image, an OTA package or a live device
into ``vendor/<vendor>/<codename>`` and regenerates the vendor makefiles that
tell the build system to ship them.

When the device tree provides ``proprietary-files.txt`` the device's own
``extract-files.py`` does the work.  Otherwise a best-effort fallback copies
files matching :data:`GENERIC_BLOB_PATTERNS`; the list is a heuristic and does
not guarantee a bootable vendor tree.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import shutil
from pathlib import Path
from textwrap import dedent

from build_config import ExtractConfig, ExtractionMode
from preconditions import Precondition, adb_device_connected, file_exists, tool_on_path
from stages import Pipeline, Stage, StageContext, StageError, log_success

LOG = logging.getLogger("komodo.extract")

# Matched against the full path of every file below the extraction source,
# with ``*`` also matching ``/``.
GENERIC_BLOB_PATTERNS: tuple[str, ...] = (
    "*/lib*/lib*gril*",
    "*/lib*/lib*ril*",
    "*/lib*/vendor.qti*",
    "*/lib*/lib*qmi*",
    "*/bin/*radio*",
    "*/bin/*thermal*",
    "*/etc/permissions/*",
    "*/framework/*.jar",
)

DEVICE_PARTITIONS: tuple[str, ...] = ("/system", "/vendor", "/product")


def required_tools(mode: ExtractionMode) -> list[str]:
    if mode is ExtractionMode.ADB:
        return ["adb"]
    return ["unzip"]


def _unzip(context: StageContext, archive: Path, destination: Path) -> None:
    destination.mkdir(parents=True, exist_ok=True)
    context.run(["unzip", "-q", "-o", str(archive), "-d", str(destination)])


def _from_factory_image(context: StageContext, archive: Path) -> Path:
    context.log.info("Extracting from factory image: %s", archive)
    scratch = context.scratch_dir("komodo-factory-")
    outer = scratch / "factory"
    _unzip(context, archive, outer)

    inner_archives = sorted(outer.rglob("*.zip"))
    if not inner_archives:
        context.log.warning("No inner image archive found in %s; using its contents directly.", archive.name)
        return outer
    inner = scratch / "inner"
    context.log.info("Unpacking inner image archive %s", inner_archives[0].name)
    _unzip(context, inner_archives[0], inner)
    return inner


def _from_ota_package(context: StageContext, archive: Path) -> Path:
    context.log.info("Extracting from OTA package: %s", archive)
    destination = context.scratch_dir("komodo-ota-") / "ota"
    _unzip(context, archive, destination)
    return destination


def _from_device(context: StageContext) -> Path:
    context.log.info("Pulling system files from the connected device via ADB...")
    destination = context.scratch_dir("komodo-device-") / "device"
    destination.mkdir(parents=True)
    for partition in DEVICE_PARTITIONS:
        context.run(["adb", "pull", partition, str(destination)])
    return destination


def prepare_source(context: StageContext) -> None:
    config: ExtractConfig = context.config
    if config.mode is ExtractionMode.FACTORY_IMAGE:
        source = _from_factory_image(context, config.archive)
    elif config.mode is ExtractionMode.OTA_PACKAGE:
        source = _from_ota_package(context, config.archive)
    else:
        source = _from_device(context)
    context.outputs["source_dir"] = source
    log_success(context.log, "Extraction source ready at %s", source)


def find_generic_blobs(source_dir: Path, patterns: tuple[str, ...] = GENERIC_BLOB_PATTERNS) -> list[Path]:
    """Return files below *source_dir* matching any of *patterns*, sorted."""

    matches: set[Path] = set()
    for directory, _dirs, files in os.walk(source_dir):
        for name in files:
            path = Path(directory) / name
            if path.is_symlink() or not path.is_file():
                continue
            text = path.as_posix()
            if any(fnmatch.fnmatchcase(text, pattern) for pattern in patterns):
                matches.add(path)
    return sorted(matches)


def copy_generic_blobs(source_dir: Path, proprietary_dir: Path, logger: logging.Logger = LOG) -> list[Path]:
    copied: list[Path] = []
    for path in find_generic_blobs(source_dir):
        relative = path.relative_to(source_dir)
        target = proprietary_dir / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, target)
        logger.info("Extracted: %s", relative.as_posix())
        copied.append(target)
    return copied


def extract_files(context: StageContext) -> None:
    config: ExtractConfig = context.config
    device = config.device
    root = config.android_root
    source: Path = context.outputs["source_dir"]
    vendor_dir = root / device.vendor_dir
    vendor_dir.mkdir(parents=True, exist_ok=True)

    file_list = root / device.tree_dir / "proprietary-files.txt"
    if file_list.is_file():
        context.log.info("Using device-specific proprietary files list...")
        extractor = root / device.tree_dir / "extract-files.py"
        if not extractor.is_file():
            raise StageError(
                f"{file_list} exists but {extractor} is missing.",
                remediation="Sync the device tree or remove the proprietary files list to use the generic fallback.",
            )
        context.run(["python3", str(extractor), str(source)], cwd=root)
        return

    context.log.warning("No proprietary files list found. Creating generic extraction...")
    copied = copy_generic_blobs(source, vendor_dir / "proprietary", context.log)
    if copied:
        log_success(context.log, "Copied %d files with the generic patterns.", len(copied))
    else:
        context.log.warning("Generic patterns matched no files in %s; the vendor tree is empty.", source)


def render_android_mk(config: ExtractConfig) -> str:
    device = config.device
    return dedent(
        f"""\
        # Automatically generated file. DO NOT MODIFY
        LOCAL_PATH := $(call my-dir)

        ifeq ($(TARGET_DEVICE),{device.codename})
        $(call inherit-product, {device.vendor_dir}/{device.codename}-vendor.mk)
        endif
        """
    )


def render_vendor_mk(config: ExtractConfig, relative_files: list[str]) -> str:
    device = config.device
    lines = ["# Automatically generated file. DO NOT MODIFY", ""]
    if relative_files:
        lines.append("PRODUCT_COPY_FILES += \\")
        entries = [
            f"    {device.vendor_dir}/proprietary/{name}:$(TARGET_COPY_OUT_VENDOR)/{name}"
            for name in relative_files
        ]
        lines.extend(entry + " \\" for entry in entries[:-1])
        lines.append(entries[-1])
    return "\n".join(lines) + "\n"


def generate_makefiles(context: StageContext) -> None:
    config: ExtractConfig = context.config
    vendor_dir = config.android_root / config.device.vendor_dir
    vendor_dir.mkdir(parents=True, exist_ok=True)
    proprietary = vendor_dir / "proprietary"

    relative_files = []
    if proprietary.is_dir():
        relative_files = sorted(
            path.relative_to(proprietary).as_posix() for path in proprietary.rglob("*") if path.is_file()
        )

    (vendor_dir / "Android.mk").write_text(render_android_mk(config))
    (vendor_dir / f"{config.device.codename}-vendor.mk").write_text(render_vendor_mk(config, relative_files))
    log_success(context.log, "Vendor makefiles generated for %d files.", len(relative_files))


def _source_preconditions(config: ExtractConfig) -> list[Precondition]:
    checks = [tool_on_path(tool) for tool in required_tools(config.mode)]
    if config.mode is ExtractionMode.ADB:
        checks.append(adb_device_connected())
    else:
        label = "Factory image" if config.mode is ExtractionMode.FACTORY_IMAGE else "OTA package"
        checks.append(file_exists(config.archive, f"{label} path must point to an existing ZIP file."))
    return checks


def build_pipeline(config: ExtractConfig, **kwargs) -> Pipeline:
    stages = [
        Stage(
            "dependencies",
            lambda context: log_success(context.log, "All dependencies are available."),
            f"tools for {config.mode.value} extraction",
            preconditions=_source_preconditions(config),
        ),
        Stage("source", prepare_source, f"unpack {config.mode.value} source"),
        Stage("extract", extract_files, "copy proprietary files"),
        Stage("metadata", generate_makefiles, "regenerate vendor makefiles"),
    ]
    return Pipeline("extract", stages, config, logger=LOG, **kwargs)
