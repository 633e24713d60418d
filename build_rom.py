"""Full ROM build pipeline.

Runs the Android build for the selected ROM flavour and build type: optional
repo sync, lunch target selection, an in-tree kernel build, the platform
build itself and packaging of the flashable outputs with a generated
``flash-<codename>.sh``.
"""

from __future__ import annotations

import logging
import shlex
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
from build_config import GIB, BuildType, KernelConfig, RomConfig, RomType
from build_kernel import make_command, toolchain_env
from device_profiles import DeviceProfile
from flash_scripts import ScriptGenerationError, ScriptKind, emit_script, parameters_from_manifest
from preconditions import file_exists, min_free_disk, min_ram
from progress import NinjaProgressParser
from repo_init import CCACHE_SIZE
from stages import FailurePolicy, Pipeline, Stage, StageContext, StageError, log_success

LOG = logging.getLogger("komodo.rom")

RECOMMENDED_DISK_BYTES = 200 * GIB
RECOMMENDED_RAM_BYTES = 16 * GIB

# Pixel builds use the AOSP lunch prefix.
LUNCH_PREFIXES = {
    RomType.AOSP: "aosp",
    RomType.LINEAGE: "lineage",
    RomType.PIXEL: "aosp",
}


def lunch_target(rom_type: RomType, build_type: BuildType, device: DeviceProfile) -> str:
    return f"{LUNCH_PREFIXES[rom_type]}_{device.codename}-{build_type.value}"


def build_command(config: RomConfig) -> str:
    if config.rom_type is RomType.LINEAGE:
        return f"brunch {config.device.codename}"
    return f"make -j{config.jobs} dist"


def ccache_env(config: RomConfig) -> dict[str, str]:
    if not config.ccache_enabled:
        return {"USE_CCACHE": "0"}
    return {
        "USE_CCACHE": "1",
        "CCACHE_EXEC": shutil.which("ccache") or "/usr/bin/ccache",
        "CCACHE_DIR": str(Path.home() / ".ccache"),
    }


def envsetup_script(target: str, command: str) -> str:
    """Return the ``bash -c`` script that sources envsetup and runs *command*."""

    return f"source build/envsetup.sh && lunch {shlex.quote(target)} && {command}"


def _in_build_env(context: StageContext, command: str, **kwargs) -> None:
    config: RomConfig = context.config
    target = context.outputs.get("lunch_target") or lunch_target(config.rom_type, config.build_type, config.device)
    context.run(
        ["bash", "-c", envsetup_script(target, command)],
        cwd=config.android_root,
        env=ccache_env(config),
        **kwargs,
    )


def check_environment(context: StageContext) -> None:
    config: RomConfig = context.config
    context.log.info(
        "Building %s (%s) for %s with %d jobs",
        config.rom_type.value,
        config.build_type.value,
        config.device.display_name,
        config.jobs,
    )
    log_success(context.log, "Build environment validated.")


def setup_ccache(context: StageContext) -> None:
    if shutil.which("ccache") is None:
        context.log.warning("ccache not found; building without a compiler cache.")
        return
    context.run(["ccache", "-M", CCACHE_SIZE], env=ccache_env(context.config))
    log_success(context.log, "ccache configured with %s cache.", CCACHE_SIZE)


def sync_sources(context: StageContext) -> None:
    config: RomConfig = context.config
    context.log.info("Syncing source code...")
    context.run(
        ["repo", "sync", "-c", f"-j{config.jobs}", "--force-sync", "--no-clone-bundle", "--no-tags"],
        cwd=config.android_root,
    )
    log_success(context.log, "Source sync completed.")


def select_variant(context: StageContext) -> None:
    config: RomConfig = context.config
    target = lunch_target(config.rom_type, config.build_type, config.device)
    context.outputs["lunch_target"] = target
    log_success(context.log, "Lunch target: %s", target)


def clean_build(context: StageContext) -> None:
    context.log.info("Cleaning previous build...")
    _in_build_env(context, "make clobber")
    log_success(context.log, "Clean completed.")


def build_kernel(context: StageContext) -> None:
    config: RomConfig = context.config
    kernel = KernelConfig(android_root=config.android_root, device=config.device, jobs=config.jobs)
    if not kernel.source_dir.is_dir():
        context.log.warning("Kernel source not found at %s; using the prebuilt kernel.", kernel.source_dir)
        return

    context.log.info("Building kernel for %s...", config.device.soc)
    env = toolchain_env(config.android_root, config.device)
    context.run(make_command(kernel, kernel.defconfig), cwd=kernel.source_dir, env=env)
    context.run(make_command(kernel, "all", jobs=True), cwd=kernel.source_dir, env=env)
    log_success(context.log, "Kernel build completed.")


def build_platform(context: StageContext) -> None:
    config: RomConfig = context.config
    command = build_command(config)
    context.log.info("Starting %s build: %s", config.rom_type.value, command)
    _in_build_env(context, command, progress=NinjaProgressParser())
    log_success(context.log, "%s build completed.", config.rom_type.value)


def product_out(config: RomConfig) -> Path:
    return config.android_root / "out" / "target" / "product" / config.device.codename


def artifact_specs(config: RomConfig) -> list[ArtifactSpec]:
    codename = config.device.codename
    product = product_out(config)
    return [
        ArtifactSpec("boot.img", product, "Boot image"),
        ArtifactSpec("recovery.img", product, "Recovery image"),
        ArtifactSpec(f"*{codename}*.zip", product, "Flashable ROM package", first_match_only=True),
        ArtifactSpec(f"*{codename}*", config.android_root / "out" / "dist", "Distribution files"),
    ]


def package_rom(context: StageContext) -> None:
    config: RomConfig = context.config
    device = config.device
    label = f"{config.rom_type.value}_{device.codename}_{config.build_type.value}"
    destination = create_timestamped_directory(config.artifacts_root, label)
    context.log.info("Packaging build artifacts into %s", destination)

    manifest = collect_artifacts(
        artifact_specs(config),
        destination,
        title="ROM Build Information",
        configuration={
            "Device": device.display_name,
            "Lunch Target": context.outputs.get("lunch_target", "-"),
            **config.snapshot(),
        },
        environment=host_facts(
            [
                ("Git Revision", git_revision(context.executor, config.android_root / "build" / "make")),
                ("Repo Version", probe_tool_version(context.executor, ["repo", "version"], cwd=config.android_root)),
            ]
        ),
    )
    context.outputs["package_dir"] = destination
    context.outputs["manifest"] = manifest
    log_success(context.log, "Build artifacts packaged in: %s", destination)


def write_flash_script(context: StageContext) -> None:
    config: RomConfig = context.config
    manifest = context.outputs["manifest"]
    params = parameters_from_manifest(ScriptKind.ROM_FLASH, config.device, manifest)
    try:
        context.outputs["flash_script"] = emit_script(ScriptKind.ROM_FLASH, params, manifest.destination)
    except ScriptGenerationError as exc:
        manifest.add_note(f"Flash script not generated: {exc}")
        raise StageError(str(exc), remediation="Inspect the packaged artifacts and build-info.txt.") from exc
    finally:
        manifest.record_stages(context.results)
        manifest.write()


def build_pipeline(config: RomConfig, **kwargs) -> Pipeline:
    root = config.android_root
    target = lunch_target(config.rom_type, config.build_type, config.device)
    stages = [
        Stage(
            "environment",
            check_environment,
            "source tree and host resources",
            preconditions=[
                file_exists(root / "build" / "envsetup.sh", "Run from the root of your Android source tree."),
                min_free_disk(root, RECOMMENDED_DISK_BYTES, advisory=True),
                min_ram(RECOMMENDED_RAM_BYTES, remediation="Build may be slow or fail."),
            ],
        ),
        Stage(
            "ccache",
            setup_ccache,
            "compiler cache",
            enabled=config.ccache_enabled,
            skip_note="ccache disabled (--no-ccache)",
        ),
        Stage(
            "sync",
            sync_sources,
            "repo sync",
            enabled=not config.skip_sync,
            skip_note="source sync skipped (--skip-sync)",
        ),
        Stage("variant", select_variant, f"lunch {target}"),
        Stage(
            "clean",
            clean_build,
            "make clobber",
            enabled=config.clean,
            skip_note="clean not requested (pass --clean to clobber the output)",
        ),
        Stage("kernel", build_kernel, f"{config.device.kernel_family} kernel"),
        Stage("build", build_platform, f"{config.rom_type.value} {config.build_type.value} build"),
        Stage("package", package_rom, "collect artifacts"),
        Stage(
            "flash-script",
            write_flash_script,
            f"generate flash-{config.device.codename}.sh",
            policy=FailurePolicy.WARN_AND_CONTINUE,
        ),
    ]
    return Pipeline("rom", stages, config, logger=LOG, **kwargs)
