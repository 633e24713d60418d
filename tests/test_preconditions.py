import tempfile
import unittest
from collections import namedtuple
from pathlib import Path
from unittest import mock

import build_kernel
import extract_blobs
import preconditions
import repo_init
from build_config import GIB, ExtractConfig, ExtractionMode, InitConfig, KernelConfig

DiskUsage = namedtuple("DiskUsage", "total used free")


class ToolOnPathTests(unittest.TestCase):
    def test_missing_tool_includes_install_hint(self) -> None:
        with mock.patch("preconditions.shutil.which", return_value=None):
            result = preconditions.tool_on_path("unzip").evaluate()

        self.assertFalse(result.passed)
        self.assertIn("'unzip' not found", result.message)
        self.assertIn("sudo apt-get install unzip", result.message)

    def test_hints_cover_exactly_the_checked_tools(self) -> None:
        root = Path("/src")
        pipelines = [
            repo_init.build_pipeline(InitConfig(android_root=root)),
            build_kernel.build_pipeline(KernelConfig(android_root=root)),
            extract_blobs.build_pipeline(ExtractConfig(android_root=root, mode=ExtractionMode.ADB)),
            extract_blobs.build_pipeline(
                ExtractConfig(android_root=root, mode=ExtractionMode.OTA_PACKAGE, archive=root / "ota.zip")
            ),
        ]
        checked = {
            precondition.name.split(":", 1)[1]
            for pipeline in pipelines
            for stage in pipeline.stages
            for precondition in stage.preconditions
            if precondition.name.startswith("tool:")
        }

        self.assertEqual(checked, set(preconditions.DEPENDENCY_HINTS))

    def test_present_tool_passes(self) -> None:
        with mock.patch("preconditions.shutil.which", return_value="/usr/bin/make"):
            result = preconditions.tool_on_path("make").evaluate()
        self.assertTrue(result.passed)


class FilesystemChecksTests(unittest.TestCase):
    def test_file_and_directory_checks(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "build").mkdir()
            (root / "build" / "envsetup.sh").write_text("")

            self.assertTrue(preconditions.file_exists(root / "build" / "envsetup.sh").evaluate().passed)
            self.assertTrue(preconditions.directory_exists(root / "build").evaluate().passed)
            missing = preconditions.directory_exists(root / "kernel", "Sync the kernel source.").evaluate()

        self.assertFalse(missing.passed)
        self.assertTrue(missing.message.endswith("Sync the kernel source."))

    def test_disk_space_probes_nearest_existing_parent(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            target = Path(tmp) / "not" / "yet" / "created"
            with mock.patch(
                "preconditions.shutil.disk_usage", return_value=DiskUsage(500 * GIB, 400 * GIB, 100 * GIB)
            ) as usage_mock:
                result = preconditions.min_free_disk(target, 400 * GIB).evaluate()

            usage_mock.assert_called_once_with(Path(tmp))
        self.assertFalse(result.passed)
        self.assertIn("100.00 GiB available but 400 GiB required", result.message)


class MemoryCheckTests(unittest.TestCase):
    def test_low_memory_fails_advisory_check(self) -> None:
        check = preconditions.min_ram(16 * GIB, probe=lambda: 8 * GIB)
        result = check.evaluate()

        self.assertTrue(check.advisory)
        self.assertFalse(result.passed)
        self.assertIn("8.0 GiB RAM", result.message)

    def test_unknown_memory_passes(self) -> None:
        self.assertTrue(preconditions.min_ram(16 * GIB, probe=lambda: None).evaluate().passed)


class GitIdentityTests(unittest.TestCase):
    def test_missing_email_reported_with_command(self) -> None:
        values = {"user.name": "Builder", "user.email": None}
        with mock.patch("preconditions._git_config_value", side_effect=values.get):
            result = preconditions.git_identity_configured().evaluate()

        self.assertFalse(result.passed)
        self.assertIn("user.email", result.message)
        self.assertIn("git config --global user.email", result.message)
        self.assertNotIn("user.name 'Your Name'", result.message)


class AdbDevicesTests(unittest.TestCase):
    def test_only_authorized_devices_are_listed(self) -> None:
        output = "List of devices attached\n1A2B3C\tdevice\n4D5E6F\tunauthorized\n\n"
        self.assertEqual(["1A2B3C"], preconditions.connected_adb_devices(output))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
