"""Generation of self-contained flashing helpers for packaged builds.

Each helper is a bash script written next to the artifacts it flashes.  It
embeds the device constants and the exact list of collected artifacts, so it
can be used on a machine that has never seen this tool.  Every check that can
fail (fastboot present, device in fastboot mode, matching product, unlocked
bootloader, referenced files present) runs before the first ``fastboot
flash``.
"""

from __future__ import annotations

import enum
import logging
import shlex
import stat
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PurePosixPath
from textwrap import dedent

from artifacts import ArtifactManifest
from device_profiles import DeviceProfile

LOG = logging.getLogger("komodo.flash_scripts")


class ScriptGenerationError(RuntimeError):
    """Raised when the collected artifacts cannot back a flashing script."""


class ScriptKind(enum.Enum):
    KERNEL_FLASH = "kernel"
    ROM_FLASH = "rom"


@dataclass(frozen=True)
class FlashParameters:
    device: DeviceProfile
    artifacts: tuple[str, ...]
    kernel_image: str | None = None
    dtb: str | None = None
    boot_image: str | None = None
    recovery_image: str | None = None
    rom_zip: str | None = None


def script_name(kind: ScriptKind, device: DeviceProfile) -> str:
    if kind is ScriptKind.KERNEL_FLASH:
        return "flash-kernel.sh"
    return f"flash-{device.codename}.sh"


def parameters_from_manifest(
    kind: ScriptKind,
    device: DeviceProfile,
    manifest: ArtifactManifest,
) -> FlashParameters:
    """Derive flashing parameters from what *manifest* actually collected."""

    collected = manifest.collected_names()
    files = _collected_files(manifest)

    if kind is ScriptKind.KERNEL_FLASH:
        kernel_image = next((name for name in ("Image.gz", "Image") if name in collected), None)
        dtb = next(
            (
                name
                for name in files
                if name.startswith("dts/")
                and PurePosixPath(name).suffix == ".dtb"
                and device.codename in PurePosixPath(name).name
            ),
            None,
        )
        return FlashParameters(device, tuple(collected), kernel_image=kernel_image, dtb=dtb)

    rom_zip = next(
        (
            name
            for name in collected
            if name.endswith(".zip") and device.codename in name and "/" not in name
        ),
        None,
    )
    return FlashParameters(
        device,
        tuple(collected),
        boot_image="boot.img" if "boot.img" in collected else None,
        recovery_image="recovery.img" if "recovery.img" in collected else None,
        rom_zip=rom_zip,
    )


def _collected_files(manifest: ArtifactManifest) -> list[str]:
    """Return every file under the collected entries, relative to the destination."""

    names: list[str] = []
    for copy in manifest.copies:
        if copy.destination.is_dir():
            for path in sorted(copy.destination.rglob("*")):
                if path.is_file():
                    names.append(path.relative_to(manifest.destination).as_posix())
        else:
            names.append(copy.destination.relative_to(manifest.destination).as_posix())
    return names


def _header(kind: ScriptKind, params: FlashParameters, referenced: list[str]) -> str:
    device = params.device
    if kind is ScriptKind.KERNEL_FLASH:
        summary = f"Flash kernel for {device.display_name}"
        warning = "WARNING: This requires an unlocked bootloader!"
    else:
        summary = f"Flash script for {device.display_name}"
        warning = "WARNING: This will wipe your device!"
    generated = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    lines = [
        "#!/bin/bash",
        "",
        f"# {summary}",
        f"# {warning}",
        f"# Generated {generated}; run it from the directory holding the artifacts.",
        "",
        "set -eu",
        "",
        'cd "$(dirname "$(readlink -f "$0")")"',
        "",
        f"DEVICE={shlex.quote(device.codename)}",
        f"DEVICE_NAME={shlex.quote(device.marketing_name)}",
        f"ARTIFACTS=({' '.join(shlex.quote(name) for name in params.artifacts)})",
        f"REQUIRED_FILES=({' '.join(shlex.quote(name) for name in referenced)})",
    ]
    return "\n".join(lines) + "\n"


_COMMON_CHECKS = dedent(
    """
    error() {
        echo -e "\\033[0;31m[ERROR]\\033[0m $1" >&2
    }

    success() {
        echo -e "\\033[0;32m[SUCCESS]\\033[0m $1"
    }

    log() {
        echo -e "\\033[0;34m[INFO]\\033[0m $1"
    }

    if ! command -v fastboot &> /dev/null; then
        error "fastboot not found. Please install Android SDK platform-tools."
        exit 1
    fi

    if ! fastboot devices | grep -q "fastboot"; then
        error "Device not detected in fastboot mode."
        error "Please boot your device into fastboot mode and try again."
        exit 1
    fi

    PRODUCT=$(fastboot getvar product 2>&1 | awk -F': ' '/^product:/ {print $2}' | tr -d '[:space:]')
    if [[ "$PRODUCT" != "$DEVICE" ]]; then
        error "Connected device reports product '${PRODUCT:-unknown}', expected '$DEVICE'."
        exit 1
    fi

    log "Checking bootloader status..."
    if ! fastboot getvar unlocked 2>&1 | grep -q "unlocked: yes"; then
        error "Bootloader is locked. Please unlock it first:"
        error "fastboot flashing unlock"
        exit 1
    fi

    for artifact in "${REQUIRED_FILES[@]}"; do
        if [[ ! -f "$artifact" ]]; then
            error "Missing artifact: $artifact"
            exit 1
        fi
    done
    """
)


def _kernel_body(params: FlashParameters) -> str:
    lines = [
        'log "Flashing kernel to $DEVICE_NAME..."',
        f"fastboot flash boot_a {shlex.quote(params.kernel_image or '')}",
        f"fastboot flash boot_b {shlex.quote(params.kernel_image or '')}",
    ]
    if params.dtb:
        lines.extend(
            [
                f'log "Flashing device tree: {params.dtb}"',
                f"fastboot flash dtbo {shlex.quote(params.dtb)}",
            ]
        )
    lines.extend(['log "Rebooting..."', "fastboot reboot", "", 'success "Kernel flash completed!"'])
    return "\n".join(lines) + "\n"


def _rom_body(params: FlashParameters) -> str:
    lines = ['log "Flashing $DEVICE_NAME ($DEVICE)..."']
    if params.boot_image:
        lines.extend(['log "Flashing boot image..."', f"fastboot flash boot {shlex.quote(params.boot_image)}"])
    if params.recovery_image:
        lines.extend(
            ['log "Flashing recovery image..."', f"fastboot flash recovery {shlex.quote(params.recovery_image)}"]
        )
    if params.rom_zip:
        lines.extend([f'log "Flashing ROM: {params.rom_zip}"', f"fastboot -w update {shlex.quote(params.rom_zip)}"])
    else:
        lines.append('log "No ROM zip collected. Flashing individual images only."')
    lines.extend(
        [
            'log "Rebooting device..."',
            "fastboot reboot",
            "",
            'success "Flashing completed successfully!"',
            'success "Your device should now boot with the new ROM."',
        ]
    )
    return "\n".join(lines) + "\n"


def render_script(kind: ScriptKind, params: FlashParameters) -> str:
    """Return the text of the flashing helper for *kind*."""

    if kind is ScriptKind.KERNEL_FLASH:
        if not params.kernel_image:
            raise ScriptGenerationError("No kernel image was collected; nothing to flash.")
        referenced = [params.kernel_image] + ([params.dtb] if params.dtb else [])
        body = _kernel_body(params)
    else:
        referenced = [
            name for name in (params.boot_image, params.recovery_image, params.rom_zip) if name
        ]
        if not referenced:
            raise ScriptGenerationError("No flashable images were collected.")
        body = _rom_body(params)

    missing = [name for name in referenced if not _is_collected(name, params.artifacts)]
    if missing:
        raise ScriptGenerationError(f"Flash script references uncollected files: {', '.join(missing)}")

    return _header(kind, params, referenced) + _COMMON_CHECKS + "\n" + body


def _is_collected(name: str, artifacts: tuple[str, ...]) -> bool:
    return any(name == entry or name.startswith(entry.rstrip("/") + "/") for entry in artifacts)


def emit_script(kind: ScriptKind, params: FlashParameters, destination: Path) -> Path:
    """Write the helper for *kind* into *destination* and mark it executable."""

    path = destination / script_name(kind, params.device)
    path.write_text(render_script(kind, params))
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    LOG.info("Flash script created: %s", path)
    return path
