"""Host package installation for an AOSP build machine.

The environment initialization pipeline installs the packages an Android
build needs when the host has a supported package manager.  Installation goes
through the stage context so every command is logged and a failing package
manager fails the stage with its real exit status.
"""

from __future__ import annotations

import os
import shutil
from typing import Mapping, Sequence

from stages import StageContext, StageError

APT_PACKAGES: Sequence[str] = (
    "bc",
    "bison",
    "build-essential",
    "ccache",
    "curl",
    "flex",
    "g++-multilib",
    "gcc-multilib",
    "git",
    "gnupg",
    "gperf",
    "imagemagick",
    "lib32ncurses5-dev",
    "lib32readline-dev",
    "lib32z1-dev",
    "liblz4-tool",
    "libncurses5",
    "libncurses5-dev",
    "libsdl1.2-dev",
    "libssl-dev",
    "libxml2",
    "libxml2-utils",
    "lzop",
    "pngcrush",
    "rsync",
    "schedtool",
    "squashfs-tools",
    "xsltproc",
    "zip",
    "zlib1g-dev",
    "python3",
    "python3-pip",
)

DNF_PACKAGES: Sequence[str] = (
    "bc",
    "bison",
    "ccache",
    "curl",
    "flex",
    "gcc",
    "gcc-c++",
    "git",
    "gnupg2",
    "gperf",
    "ImageMagick",
    "ncurses-devel",
    "readline-devel",
    "zlib-devel",
    "lz4",
    "libxml2",
    "lzop",
    "pngcrush",
    "rsync",
    "squashfs-tools",
    "libxslt",
    "zip",
    "openssl-devel",
    "SDL-devel",
    "python3",
    "python3-pip",
)

PACKAGE_SETS: Mapping[str, Sequence[str]] = {
    "apt-get": APT_PACKAGES,
    "dnf": DNF_PACKAGES,
}


def detect_package_manager() -> str | None:
    for manager in PACKAGE_SETS:
        if shutil.which(manager):
            return manager
    return None


def privilege_prefix() -> list[str]:
    """Return the command prefix needed to run the package manager as root."""

    if os.geteuid() == 0:
        return []
    sudo = shutil.which("sudo")
    if not sudo:
        raise StageError(
            "Installing host packages requires root privileges and sudo is unavailable.",
            remediation="Re-run as root or install sudo.",
        )
    return [sudo]


def install_build_packages(context: StageContext, manager: str | None = None) -> bool:
    """Install the AOSP host packages; return ``False`` if no manager is supported."""

    manager = manager or detect_package_manager()
    if manager is None:
        context.log.warning(
            "No supported package manager found (apt-get or dnf); install the AOSP build "
            "dependencies manually."
        )
        return False

    packages = list(PACKAGE_SETS[manager])
    prefix = privilege_prefix() + [manager]
    context.log.info("Installing %d build packages via %s", len(packages), manager)
    if manager == "apt-get":
        context.run(prefix + ["update"])
    context.run(prefix + ["install", "-y", *packages])
    return True
