#!/usr/bin/env python3
"""Build orchestration for the Pixel 9 Pro XL (``komodo``) Android tree.

Each pipeline is exposed as a sub-command:

* ``init`` - check the host, fetch the source tree and configure the toolchain.
* ``extract`` - pull proprietary blobs from a factory image, an OTA package or
  a connected device and regenerate the vendor makefiles.
* ``kernel`` - configure, build and package the device kernel.
* ``rom`` - build and package a complete ROM.

All console output of a run is also written to
``<android-root>/.build-logs/<command>-<timestamp>.log``.  The exit status is
0 when every stage succeeded, 130 after an interrupt and otherwise the exit
status of the command that made the pipeline abort.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable

import build_kernel
import build_rom
import extract_blobs
import repo_init
from build_config import (
    DEFAULT_BRANCH,
    DEFAULT_CLONE_DEPTH,
    DEFAULT_KERNEL_OUTPUT,
    BuildType,
    ConfigError,
    ExtractConfig,
    ExtractionMode,
    InitConfig,
    KernelConfig,
    PipelineConfig,
    RomConfig,
    RomType,
    default_jobs,
    resolve_parallelism,
    total_ram_bytes,
)
from device_profiles import KOMODO
from stages import Pipeline, log_pipeline_plan, log_run_summary

LOG = logging.getLogger("komodo.build")
ROOT_LOGGER = logging.getLogger("komodo")

LOG_DIR_NAME = ".build-logs"


def setup_logging(log_dir: Path, command: str) -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{command}-{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    ROOT_LOGGER.setLevel(logging.INFO)
    ROOT_LOGGER.handlers.clear()

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")

    file_handler = logging.FileHandler(log_path, mode="w")
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.INFO)

    ROOT_LOGGER.addHandler(file_handler)
    ROOT_LOGGER.addHandler(console_handler)
    return log_path


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got '{value}'") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got '{value}'")
    return number


def non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got '{value}'") from None
    if number < 0:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got '{value}'")
    return number


def choice_type(enum_type) -> Callable[[str], object]:
    """Return an argparse ``type`` that parses *enum_type* spellings."""

    def parse(value: str):
        try:
            return enum_type.parse(value)
        except ConfigError as exc:
            raise argparse.ArgumentTypeError(str(exc)) from None

    parse.__name__ = enum_type.label()
    return parse


def _parallelism(args: argparse.Namespace) -> int:
    requested = args.jobs or default_jobs()
    jobs = resolve_parallelism(requested, total_ram_bytes())
    if jobs != requested:
        LOG.warning("Less than 16 GiB of RAM detected; reducing parallel jobs from %d to %d.", requested, jobs)
    return jobs


def make_init_config(args: argparse.Namespace) -> InitConfig:
    return InitConfig(
        android_root=args.android_root,
        device=KOMODO,
        jobs=args.jobs or default_jobs(),
        branch=args.branch,
        depth=args.depth,
        no_clone_bundle=args.no_clone_bundle,
    )


def make_extract_config(args: argparse.Namespace) -> ExtractConfig:
    if args.factory_image is not None:
        mode, archive = ExtractionMode.FACTORY_IMAGE, args.factory_image
    elif args.ota_package is not None:
        mode, archive = ExtractionMode.OTA_PACKAGE, args.ota_package
    else:
        mode, archive = ExtractionMode.ADB, None
    return ExtractConfig(android_root=args.android_root, device=KOMODO, mode=mode, archive=archive)


def make_kernel_config(args: argparse.Namespace) -> KernelConfig:
    extra = {}
    if args.artifacts_dir is not None:
        extra["artifacts_root"] = args.artifacts_dir
    return KernelConfig(
        android_root=args.android_root,
        device=KOMODO,
        jobs=_parallelism(args),
        defconfig=args.config,
        clean=args.clean,
        output=args.output,
        source=args.source,
        modules_only=args.modules_only,
        config_only=args.config_only,
        skip_modules=args.skip_modules,
        **extra,
    )


def make_rom_config(args: argparse.Namespace) -> RomConfig:
    extra = {}
    if args.artifacts_dir is not None:
        extra["artifacts_root"] = args.artifacts_dir
    return RomConfig(
        android_root=args.android_root,
        device=KOMODO,
        jobs=_parallelism(args),
        rom_type=args.rom_type,
        build_type=args.build_type,
        clean=args.clean,
        skip_sync=args.skip_sync,
        ccache_enabled=not args.no_ccache,
        **extra,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=f"Build utilities for the {KOMODO.display_name}")
    parser.add_argument(
        "--android-root",
        type=Path,
        default=Path.cwd(),
        help="Root of the Android source tree (default: current directory).",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=None,
        help=f"Directory for run logs (default: <android-root>/{LOG_DIR_NAME}).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Initialize the build environment and sync sources")
    init_parser.add_argument("-b", "--branch", default=DEFAULT_BRANCH, help="Android branch to sync.")
    init_parser.add_argument(
        "-d",
        "--depth",
        type=non_negative_int,
        default=DEFAULT_CLONE_DEPTH,
        help="Clone depth (0 for full history).",
    )
    init_parser.add_argument("-j", "--jobs", type=positive_int, help="Number of parallel sync jobs.")
    init_parser.add_argument("--no-clone-bundle", action="store_true", help="Disable clone bundles.")
    init_parser.set_defaults(make_config=make_init_config, build_pipeline=repo_init.build_pipeline)

    extract_parser = subparsers.add_parser("extract", help="Extract proprietary blobs")
    source = extract_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("-f", "--factory-image", type=Path, metavar="PATH", help="Extract from a factory image ZIP.")
    source.add_argument("-o", "--ota-package", type=Path, metavar="PATH", help="Extract from an OTA package ZIP.")
    source.add_argument("-a", "--adb", action="store_true", help="Extract from a connected device.")
    extract_parser.set_defaults(make_config=make_extract_config, build_pipeline=extract_blobs.build_pipeline)

    kernel_parser = subparsers.add_parser("kernel", help="Build the device kernel")
    kernel_parser.add_argument(
        "-c", "--config", default=KOMODO.kernel_defconfig, metavar="NAME", help="Kernel defconfig to use."
    )
    kernel_parser.add_argument("--clean", action="store_true", help="Remove previous output before building.")
    kernel_parser.add_argument("-j", "--jobs", type=positive_int, help="Number of parallel jobs.")
    kernel_parser.add_argument(
        "-o", "--output", default=DEFAULT_KERNEL_OUTPUT, metavar="DIR", help="Kernel output directory."
    )
    kernel_parser.add_argument(
        "-s", "--source", default=KOMODO.kernel_source, metavar="DIR", help="Kernel source directory."
    )
    mode = kernel_parser.add_mutually_exclusive_group()
    mode.add_argument("--modules-only", action="store_true", help="Build only the kernel modules.")
    mode.add_argument("--config-only", action="store_true", help="Only generate the kernel configuration.")
    kernel_parser.add_argument("--skip-modules", action="store_true", help="Do not build kernel modules.")
    kernel_parser.add_argument("--artifacts-dir", type=Path, metavar="DIR", help="Where packaged builds are stored.")
    kernel_parser.set_defaults(make_config=make_kernel_config, build_pipeline=build_kernel.build_pipeline)

    rom_parser = subparsers.add_parser("rom", help="Build a complete ROM")
    rom_parser.add_argument(
        "-r",
        "--rom-type",
        type=choice_type(RomType),
        default=RomType.AOSP,
        metavar="{" + ",".join(RomType.choices()) + "}",
        help="ROM flavour to build.",
    )
    rom_parser.add_argument(
        "-t",
        "--build-type",
        type=choice_type(BuildType),
        default=BuildType.USERDEBUG,
        metavar="{" + ",".join(BuildType.choices()) + "}",
        help="Android build type.",
    )
    rom_parser.add_argument("-c", "--clean", action="store_true", help="Clobber the output before building.")
    rom_parser.add_argument("-s", "--skip-sync", action="store_true", help="Skip the repo sync.")
    rom_parser.add_argument("-j", "--jobs", type=positive_int, help="Number of parallel jobs.")
    rom_parser.add_argument("--no-ccache", action="store_true", help="Build without ccache.")
    rom_parser.add_argument("--artifacts-dir", type=Path, metavar="DIR", help="Where packaged builds are stored.")
    rom_parser.set_defaults(make_config=make_rom_config, build_pipeline=build_rom.build_pipeline)

    return parser


def _raise_interrupt(signum, frame) -> None:
    raise KeyboardInterrupt(f"received signal {signum}")


def run_pipeline(pipeline: Pipeline) -> int:
    log_pipeline_plan(pipeline)
    run = pipeline.run()
    log_run_summary(run, LOG)
    if run.failed_stage is not None:
        LOG.error("Pipeline '%s' failed at stage '%s': %s", run.name, run.failed_stage, run.error.describe())
    else:
        LOG.info("Pipeline '%s' completed successfully.", run.name)
    return run.exit_code


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    args.android_root = args.android_root.expanduser().resolve()
    log_dir = args.log_dir or args.android_root / LOG_DIR_NAME

    log_path = setup_logging(log_dir, args.command)
    LOG.info("Logging to %s", log_path)
    try:
        config: PipelineConfig = args.make_config(args)
    except ConfigError as exc:
        LOG.error("%s", exc)
        return 2

    previous = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        return run_pipeline(args.build_pipeline(config))
    except RuntimeError as exc:
        LOG.error("%s", exc)
        return 1
    finally:
        signal.signal(signal.SIGTERM, previous)


if __name__ == "__main__":
    sys.exit(main())
