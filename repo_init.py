"""Environment initialization pipeline.

Checks the host, fetches the Android source tree with ``repo``, installs the
host build packages, configures ccache and records how the tree was set up in
``build-info-<codename>.txt`` at the root of the tree.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from textwrap import dedent

from artifacts import ArtifactManifest, host_facts, probe_tool_version
from build_config import GIB, InitConfig
from host_bootstrap import install_build_packages
from preconditions import (
    directory_exists,
    file_exists,
    git_identity_configured,
    min_free_disk,
    min_ram,
    tool_on_path,
)
from stages import Pipeline, Stage, StageContext, StageError, log_success

LOG = logging.getLogger("komodo.init")

MIN_SOURCE_DISK_BYTES = 400 * GIB
RECOMMENDED_RAM_BYTES = 16 * GIB
CCACHE_SIZE = "50G"


def ccache_env() -> dict[str, str]:
    return {"USE_CCACHE": "1", "CCACHE_DIR": str(Path.home() / ".ccache")}


def repo_init_command(config: InitConfig) -> list[str]:
    command = ["repo", "init", "-u", config.manifest_url, "-b", config.branch]
    if config.depth > 0:
        command.append(f"--depth={config.depth}")
    if config.no_clone_bundle:
        command.append("--no-clone-bundle")
    return command


def repo_sync_command(config: InitConfig) -> list[str]:
    command = ["repo", "sync", "-c", f"-j{config.jobs}", "--force-sync", "--no-tags"]
    if config.no_clone_bundle:
        command.append("--no-clone-bundle")
    return command


def _report_prerequisites(context: StageContext) -> None:
    log_success(context.log, "All prerequisites are met.")


def _report_resources(context: StageContext) -> None:
    log_success(context.log, "Host resources are sufficient for an Android source tree.")


def _install_local_manifest(context: StageContext) -> None:
    config: InitConfig = context.config
    source = config.android_root / "local_manifests" / f"{config.device.codename}.xml"
    manifest_dir = config.android_root / ".repo" / "local_manifests"
    manifest_dir.mkdir(parents=True, exist_ok=True)
    if source.is_file():
        shutil.copy2(source, manifest_dir / source.name)
        log_success(context.log, "Local manifest copied to %s", manifest_dir / source.name)
    else:
        context.log.warning("No local manifest found at %s. You may need to create one manually.", source)


def fetch_sources(context: StageContext) -> None:
    config: InitConfig = context.config
    _install_local_manifest(context)

    context.log.info("Initializing repository for %s...", config.branch)
    context.run(repo_init_command(config), cwd=config.android_root)
    log_success(context.log, "Repository initialized successfully.")

    context.log.info("Syncing repository with %d parallel jobs...", config.jobs)
    context.run(repo_sync_command(config), cwd=config.android_root)
    log_success(context.log, "Repository sync completed.")


def setup_toolchain(context: StageContext) -> None:
    install_build_packages(context)

    if shutil.which("ccache") is None:
        context.log.warning("ccache not found; skipping cache configuration.")
        return
    context.log.info("Setting up ccache...")
    context.run(["ccache", "-M", CCACHE_SIZE], env=ccache_env())
    log_success(context.log, "ccache configured with %s cache.", CCACHE_SIZE)


def verify_setup(context: StageContext) -> None:
    config: InitConfig = context.config
    root = config.android_root
    device = config.device

    if not (root / "build" / "envsetup.sh").is_file():
        raise StageError(
            "build/envsetup.sh not found.",
            remediation="Repository sync may have failed; re-run the init pipeline.",
        )

    if (root / device.tree_dir).is_dir():
        log_success(context.log, "Device tree found for %s.", device.codename)
    else:
        context.log.warning("Device tree for %s not found. You may need to add it manually.", device.codename)

    if (root / device.kernel_source).is_dir():
        log_success(context.log, "Kernel source found for %s.", device.soc)
    else:
        context.log.warning("Kernel source not found. Check your local manifest.")

    log_success(context.log, "Setup verification completed.")


def write_setup_manifest(context: StageContext) -> None:
    config: InitConfig = context.config
    device = config.device
    root = config.android_root

    manifest = ArtifactManifest(
        title="Build Environment Information",
        destination=root,
        configuration={
            "Device": device.display_name,
            "Android Version": config.branch,
            "Clone Depth": str(config.depth) if config.depth > 0 else "full",
            "Jobs": str(config.jobs),
        },
        environment=host_facts(
            [
                ("Repo Version", probe_tool_version(context.executor, ["repo", "version"], cwd=root)),
                ("Git Version", probe_tool_version(context.executor, ["git", "--version"])),
            ]
        ),
    )
    manifest.add_note(
        dedent(
            f"""\
            Directory Structure:
            - Source: {root}
            - Device: {device.tree_dir}
            - Vendor: {device.vendor_dir}
            - Kernel: {device.kernel_source}

            Next Steps:
            1. Extract proprietary blobs: komodo-build extract --adb
            2. Build ROM: komodo-build rom
            3. Flash ROM: run the flash script generated next to the packaged build"""
        )
    )
    path = manifest.write(root / f"build-info-{device.codename}.txt")
    context.outputs["manifest"] = manifest
    log_success(context.log, "Build information saved to %s", path.name)


def build_pipeline(config: InitConfig, **kwargs) -> Pipeline:
    root = config.android_root
    stages = [
        Stage(
            "prerequisites",
            _report_prerequisites,
            "repo tool and git identity",
            preconditions=[
                tool_on_path("repo"),
                tool_on_path("git"),
                git_identity_configured(),
            ],
        ),
        Stage(
            "resources",
            _report_resources,
            "disk space and memory",
            preconditions=[
                directory_exists(root, "Create the directory that will hold the Android source tree."),
                min_free_disk(root, MIN_SOURCE_DISK_BYTES),
                min_ram(RECOMMENDED_RAM_BYTES, remediation="Syncing and building will be slow."),
            ],
        ),
        Stage("fetch", fetch_sources, f"repo init/sync of {config.branch}"),
        Stage("toolchain", setup_toolchain, "host packages and ccache"),
        Stage(
            "verify",
            verify_setup,
            "post-fetch verification",
            preconditions=[
                file_exists(
                    root / ".repo" / "manifest.xml",
                    "repo init did not leave a manifest; check the fetch stage output.",
                    advisory=True,
                )
            ],
        ),
        Stage("manifest", write_setup_manifest, "write setup manifest"),
    ]
    return Pipeline("init", stages, config, logger=LOG, **kwargs)
