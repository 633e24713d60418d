import dataclasses
import unittest
from pathlib import Path

from build_config import (
    GIB,
    BuildType,
    ConfigError,
    ExtractConfig,
    ExtractionMode,
    KernelConfig,
    RomType,
    resolve_parallelism,
)


class ResolveParallelismTests(unittest.TestCase):
    def test_low_ram_halves_jobs(self) -> None:
        self.assertEqual(8, resolve_parallelism(16, 8 * GIB))
        self.assertEqual(3, resolve_parallelism(7, 15 * GIB))

    def test_low_ram_never_below_one(self) -> None:
        self.assertEqual(1, resolve_parallelism(1, 4 * GIB))

    def test_sufficient_ram_keeps_request(self) -> None:
        self.assertEqual(16, resolve_parallelism(16, 16 * GIB))
        self.assertEqual(16, resolve_parallelism(16, 64 * GIB))

    def test_unknown_ram_keeps_request(self) -> None:
        self.assertEqual(12, resolve_parallelism(12, None))


class ChoiceParsingTests(unittest.TestCase):
    def test_parse_known_values(self) -> None:
        self.assertIs(RomType.LINEAGE, RomType.parse("lineage"))
        self.assertIs(BuildType.ENG, BuildType.parse(" ENG "))
        self.assertIs(ExtractionMode.OTA_PACKAGE, ExtractionMode.parse("ota-package"))

    def test_unknown_rom_type_is_rejected(self) -> None:
        with self.assertRaises(ConfigError) as ctx:
            RomType.parse("grapheneos")
        self.assertIn("aosp, lineage, pixel", str(ctx.exception))


class ConfigValidationTests(unittest.TestCase):
    def test_archive_modes_require_archive(self) -> None:
        with self.assertRaises(ConfigError):
            ExtractConfig(android_root=Path("/src"), mode=ExtractionMode.FACTORY_IMAGE)

    def test_adb_mode_rejects_archive(self) -> None:
        with self.assertRaises(ConfigError):
            ExtractConfig(android_root=Path("/src"), mode=ExtractionMode.ADB, archive=Path("image.zip"))

    def test_kernel_modes_are_exclusive(self) -> None:
        with self.assertRaises(ConfigError):
            KernelConfig(android_root=Path("/src"), modules_only=True, config_only=True)

    def test_kernel_output_relative_to_source(self) -> None:
        config = KernelConfig(android_root=Path("/src"), source="kernel/x", output="out")
        self.assertEqual(Path("/src/kernel/x/out"), config.output_dir)

        absolute = dataclasses.replace(config, output="/tmp/kernel-out")
        self.assertEqual(Path("/tmp/kernel-out"), absolute.output_dir)

    def test_configs_are_frozen(self) -> None:
        config = KernelConfig(android_root=Path("/src"), jobs=4)
        with self.assertRaises(dataclasses.FrozenInstanceError):
            config.jobs = 8  # type: ignore[misc]

    def test_snapshot_is_flat(self) -> None:
        snapshot = KernelConfig(android_root=Path("/src"), jobs=4).snapshot()
        self.assertEqual("komodo", snapshot["device"])
        self.assertEqual("4", snapshot["jobs"])
        self.assertEqual("caimito_gki_defconfig", snapshot["defconfig"])


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
