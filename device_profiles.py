"""Device-identifying constants shared by every pipeline.

The values here end up inside generated flashing scripts, so anything that
identifies the handset (codename, fastboot product name, partition layout
assumptions) belongs in :class:`DeviceProfile` rather than in a pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DeviceProfile:
    """Static description of a supported device and its kernel tree."""

    codename: str
    vendor: str
    marketing_name: str
    soc: str
    kernel_family: str
    kernel_arch: str
    kernel_source: str
    kernel_defconfig: str
    config_fragments: tuple[str, ...] = ()
    cross_compile: str = "aarch64-linux-android-"
    cross_compile_arm32: str = "arm-linux-androideabi-"

    @property
    def display_name(self) -> str:
        return f"{self.marketing_name} ({self.codename})"

    @property
    def tree_dir(self) -> str:
        """Device tree location relative to the Android root."""

        return f"device/{self.vendor}/{self.codename}"

    @property
    def vendor_dir(self) -> str:
        """Vendor blob location relative to the Android root."""

        return f"vendor/{self.vendor}/{self.codename}"


KOMODO = DeviceProfile(
    codename="komodo",
    vendor="google",
    marketing_name="Pixel 9 Pro XL",
    soc="Tensor G4",
    kernel_family="caimito",
    kernel_arch="arm64",
    kernel_source="kernel/google/gs/caimito",
    kernel_defconfig="caimito_gki_defconfig",
    config_fragments=(
        "android-base.config",
        "android-recommended.config",
        "caimito-gki.config",
    ),
)
