"""Kernel build pipeline for the device kernel tree.

The kernel is configured from the device defconfig plus the configured
fragments, compiled out of tree, optionally followed by a module build with a
staging install, and then packaged together with a ``flash-kernel.sh``
helper.  ``--config-only`` stops after the configuration and
``--modules-only`` skips the full image build.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from pathlib import Path

from artifacts import (
    ArtifactSpec,
    collect_artifacts,
    create_timestamped_directory,
    git_revision,
    host_facts,
    probe_tool_version,
)
from build_config import KernelConfig
from device_profiles import DeviceProfile
from flash_scripts import ScriptGenerationError, ScriptKind, emit_script, parameters_from_manifest
from kconfig_merge import merge_fragment_files
from preconditions import directory_exists, file_exists, tool_on_path
from stages import FailurePolicy, Pipeline, Stage, StageContext, StageError, log_success

LOG = logging.getLogger("komodo.kernel")

CLANG_PREBUILTS = Path("prebuilts/clang/host/linux-x86")
GCC_PREBUILTS = (
    Path("prebuilts/gcc/linux-x86/aarch64/aarch64-linux-android-4.9/bin"),
    Path("prebuilts/gcc/linux-x86/arm/arm-linux-androideabi-4.9/bin"),
)
MODULES_STAGING = "modules_staging"


def _natural_key(text: str) -> list:
    return [int(part) if part.isdigit() else part for part in re.split(r"(\d+)", text)]


def find_clang(android_root: Path) -> Path | None:
    """Return the newest ``clang-r*`` prebuilt directory, if any."""

    prebuilts = android_root / CLANG_PREBUILTS
    if not prebuilts.is_dir():
        return None
    candidates = [path for path in prebuilts.glob("clang-r*") if path.is_dir()]
    if not candidates:
        return None
    return max(candidates, key=lambda path: _natural_key(path.name))


def toolchain_env(android_root: Path, device: DeviceProfile, base_path: str | None = None) -> dict[str, str]:
    """Return the environment overrides for a cross kernel build.

    The mapping is handed to each ``make`` invocation; nothing is exported
    into the orchestrator's own environment.
    """

    env = {
        "ARCH": device.kernel_arch,
        "SUBARCH": device.kernel_arch,
        "CROSS_COMPILE": device.cross_compile,
        "CROSS_COMPILE_ARM32": device.cross_compile_arm32,
        "CROSS_COMPILE_COMPAT": device.cross_compile_arm32,
        "ANDROID_MAJOR_VERSION": "u",
        "PLATFORM_VERSION": "16",
        "ANDROID_VERSION": "16",
    }

    path_entries: list[str] = []
    clang = find_clang(android_root)
    if clang is not None:
        path_entries.append(str(clang / "bin"))
        env["CC"] = "clang"
        env["CXX"] = "clang++"
    for gcc in GCC_PREBUILTS:
        if (android_root / gcc).is_dir():
            path_entries.append(str(android_root / gcc))

    base = base_path if base_path is not None else os.environ.get("PATH", "")
    env["PATH"] = os.pathsep.join(path_entries + ([base] if base else []))
    return env


def make_command(config: KernelConfig, *targets: str, jobs: bool = False, extra: tuple[str, ...] = ()) -> list[str]:
    command = ["make", f"O={config.output_dir}", f"ARCH={config.device.kernel_arch}"]
    if jobs:
        command.append(f"-j{config.jobs}")
    command.extend(extra)
    command.extend(targets)
    return command


def _make(context: StageContext, *targets: str, jobs: bool = False, extra: tuple[str, ...] = ()) -> None:
    config: KernelConfig = context.config
    context.run(
        make_command(config, *targets, jobs=jobs, extra=extra),
        cwd=config.source_dir,
        env=toolchain_env(config.android_root, config.device),
    )


def check_environment(context: StageContext) -> None:
    config: KernelConfig = context.config
    env = toolchain_env(config.android_root, config.device)
    clang = find_clang(config.android_root)
    if clang is not None:
        context.log.info("Using Clang from: %s", clang)
    else:
        cross_gcc = f"{config.device.cross_compile}gcc"
        if shutil.which(cross_gcc, path=env["PATH"]) is None:
            context.log.warning("No Clang prebuilt and %s not found; the build will use the host compiler.", cross_gcc)
    log_success(context.log, "Toolchain configured for %s.", config.device.kernel_arch)


def clean_build(context: StageContext) -> None:
    config: KernelConfig = context.config
    context.log.info("Cleaning previous build...")
    if config.output_dir.exists():
        shutil.rmtree(config.output_dir)
        context.log.info("Removed output directory: %s", config.output_dir)
    context.run(["make", "mrproper"], cwd=config.source_dir, env=toolchain_env(config.android_root, config.device))
    log_success(context.log, "Clean completed.")


def fragment_paths(config: KernelConfig) -> list[Path]:
    """Return the configured fragments present in the tree, in merge order."""

    configs_dir = config.source_dir / "arch" / config.device.kernel_arch / "configs"
    return [configs_dir / name for name in config.device.config_fragments if (configs_dir / name).is_file()]


def generate_config(context: StageContext) -> None:
    config: KernelConfig = context.config
    context.log.info("Generating kernel configuration: %s", config.defconfig)
    config.output_dir.mkdir(parents=True, exist_ok=True)
    _make(context, config.defconfig)

    fragments = fragment_paths(config)
    if fragments:
        merge_fragment_files(config.output_dir / ".config", fragments)
    else:
        context.log.info("No config fragments found for %s.", config.device.kernel_family)

    _make(context, "olddefconfig")
    context.outputs["kernel_config"] = config.output_dir / ".config"
    log_success(context.log, "Configuration generated at %s", config.output_dir / ".config")


def compile_kernel(context: StageContext) -> None:
    config: KernelConfig = context.config
    context.log.info(
        "Building kernel for %s (%s) with %d jobs...",
        config.device.display_name,
        config.device.soc,
        config.jobs,
    )
    _make(context, "all", jobs=True)


def build_modules(context: StageContext) -> None:
    config: KernelConfig = context.config
    context.log.info("Building kernel modules...")
    _make(context, "modules", jobs=True)
    staging = config.output_dir / MODULES_STAGING
    _make(context, "modules_install", extra=(f"INSTALL_MOD_PATH={staging}",))
    log_success(context.log, "Kernel modules built and staged.")


def artifact_specs(config: KernelConfig) -> list[ArtifactSpec]:
    out = config.output_dir
    boot = f"arch/{config.device.kernel_arch}/boot"
    return [
        ArtifactSpec(f"{boot}/Image", out, "Uncompressed kernel image"),
        ArtifactSpec(f"{boot}/Image.gz", out, "Compressed kernel image"),
        ArtifactSpec(f"{boot}/dts", out, "Device tree blobs"),
        ArtifactSpec(".config", out, "Kernel configuration", rename="kernel-config"),
        ArtifactSpec(MODULES_STAGING, out, "Loadable kernel modules"),
    ]


def compiler_version(context: StageContext) -> str:
    config: KernelConfig = context.config
    env = toolchain_env(config.android_root, config.device)
    compiler = env.get("CC") or f"{config.device.cross_compile}gcc"
    return probe_tool_version(context.executor, [compiler, "--version"], env=env)


def package_kernel(context: StageContext) -> None:
    config: KernelConfig = context.config
    device = config.device
    destination = create_timestamped_directory(config.artifacts_root, f"{device.codename}_kernel")
    context.log.info("Packaging kernel artifacts into %s", destination)

    manifest = collect_artifacts(
        artifact_specs(config),
        destination,
        title="Kernel Build Information",
        configuration={
            "Device": device.display_name,
            "Kernel Family": f"{device.kernel_family} ({device.soc})",
            "Architecture": device.kernel_arch,
            "Mode": "modules only" if config.modules_only else "full",
            **config.snapshot(),
        },
        environment=host_facts(
            [
                ("Git Revision", git_revision(context.executor, config.source_dir)),
                ("Compiler", compiler_version(context)),
            ]
        ),
    )
    context.outputs["package_dir"] = destination
    context.outputs["manifest"] = manifest
    log_success(context.log, "Kernel artifacts packaged in: %s", destination)


def write_flash_script(context: StageContext) -> None:
    config: KernelConfig = context.config
    manifest = context.outputs["manifest"]
    params = parameters_from_manifest(ScriptKind.KERNEL_FLASH, config.device, manifest)
    try:
        context.outputs["flash_script"] = emit_script(ScriptKind.KERNEL_FLASH, params, manifest.destination)
    except ScriptGenerationError as exc:
        manifest.add_note(f"Flash script not generated: {exc}")
        raise StageError(str(exc), remediation="Inspect the packaged artifacts and build-info.txt.") from exc
    finally:
        manifest.record_stages(context.results)
        manifest.write()


def build_pipeline(config: KernelConfig, **kwargs) -> Pipeline:
    root = config.android_root
    building = not config.config_only
    config_only_note = "configuration only (--config-only)"
    stages = [
        Stage(
            "environment",
            check_environment,
            "kernel source and toolchain",
            preconditions=[
                file_exists(
                    root / "build" / "envsetup.sh",
                    "Run from the root of your Android source tree.",
                ),
                directory_exists(config.source_dir, "Please ensure you have synced the kernel source."),
                tool_on_path("make"),
            ],
        ),
        Stage(
            "clean",
            clean_build,
            "remove previous output",
            enabled=config.clean,
            skip_note="clean not requested (pass --clean to remove previous output)",
        ),
        Stage("config", generate_config, f"generate {config.defconfig}"),
        Stage(
            "compile",
            compile_kernel,
            "build kernel image",
            enabled=building and not config.modules_only,
            skip_note=config_only_note if config.config_only else "modules only (--modules-only)",
        ),
        Stage(
            "modules",
            build_modules,
            "build and stage modules",
            enabled=building and not config.skip_modules,
            skip_note=config_only_note if config.config_only else "modules disabled (--skip-modules)",
        ),
        Stage("package", package_kernel, "collect artifacts", enabled=building, skip_note=config_only_note),
        Stage(
            "flash-script",
            write_flash_script,
            "generate flash-kernel.sh",
            policy=FailurePolicy.WARN_AND_CONTINUE,
            enabled=building,
            skip_note=config_only_note,
        ),
    ]
    return Pipeline("kernel", stages, config, logger=LOG, **kwargs)
