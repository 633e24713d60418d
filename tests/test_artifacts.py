import tempfile
import unittest
from datetime import datetime
from pathlib import Path

import artifacts
from fakes import RecordingExecutor
from stages import ExecutionResult


class TimestampedDirectoryTests(unittest.TestCase):
    def test_collision_gets_suffix(self) -> None:
        now = datetime(2025, 1, 2, 3, 4, 5)
        with tempfile.TemporaryDirectory() as tmp:
            base = Path(tmp) / "builds"
            first = artifacts.create_timestamped_directory(base, "komodo_kernel", now)
            second = artifacts.create_timestamped_directory(base, "komodo_kernel", now)
            third = artifacts.create_timestamped_directory(base, "komodo_kernel", now)

            self.assertEqual("20250102_030405_komodo_kernel", first.name)
            self.assertEqual("20250102_030405_komodo_kernel-1", second.name)
            self.assertEqual("20250102_030405_komodo_kernel-2", third.name)
            self.assertTrue(all(path.is_dir() for path in (first, second, third)))


class CollectArtifactsTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name)
        self.out = self.root / "out"
        self.destination = self.root / "package"

    def test_missing_artifacts_listed_as_not_produced(self) -> None:
        (self.out / "boot").mkdir(parents=True)
        (self.out / "boot" / "Image").write_bytes(b"kernel")
        specs = [
            artifacts.ArtifactSpec("boot/Image", self.out, "Uncompressed kernel image"),
            artifacts.ArtifactSpec("boot/Image.gz", self.out, "Compressed kernel image"),
        ]

        with self.assertLogs("komodo.artifacts", level="WARNING"):
            manifest = artifacts.collect_artifacts(specs, self.destination, title="Kernel Build Information")
        path = manifest.write()

        self.assertEqual(["Image"], manifest.collected_names())
        self.assertEqual(["Compressed kernel image"], manifest.missing)
        text = path.read_text()
        self.assertIn("Status: complete", text)
        self.assertIn("Compressed kernel image: not produced", text)
        self.assertEqual(b"kernel", (self.destination / "Image").read_bytes())

    def test_rename_and_directories(self) -> None:
        (self.out / "modules_staging" / "lib").mkdir(parents=True)
        (self.out / "modules_staging" / "lib" / "a.ko").write_text("ko")
        (self.out / ".config").write_text("CONFIG_A=y\n")
        specs = [
            artifacts.ArtifactSpec(".config", self.out, rename="kernel-config"),
            artifacts.ArtifactSpec("modules_staging", self.out),
        ]

        manifest = artifacts.collect_artifacts(specs, self.destination, title="t")

        self.assertEqual(["kernel-config", "modules_staging"], manifest.collected_names())
        self.assertTrue((self.destination / "modules_staging" / "lib" / "a.ko").is_file())

    def test_first_match_only(self) -> None:
        self.out.mkdir()
        for name in ("b-komodo.zip", "a-komodo.zip"):
            (self.out / name).write_text(name)
        spec = artifacts.ArtifactSpec("*komodo*.zip", self.out, first_match_only=True)

        manifest = artifacts.collect_artifacts([spec], self.destination, title="t")

        self.assertEqual(["a-komodo.zip"], manifest.collected_names())

    def test_same_name_from_second_source_is_not_overwritten(self) -> None:
        product = self.out / "target" / "product" / "komodo"
        dist = self.out / "dist"
        product.mkdir(parents=True)
        dist.mkdir(parents=True)
        (product / "aosp_komodo-ota.zip").write_text("PRODUCT")
        (dist / "aosp_komodo-ota.zip").write_text("DIST")
        (dist / "aosp_komodo-symbols.zip").write_text("SYMBOLS")
        specs = [
            artifacts.ArtifactSpec("*komodo*.zip", product, "Flashable ROM package", first_match_only=True),
            artifacts.ArtifactSpec("*komodo*", dist, "Distribution files"),
        ]

        with self.assertLogs("komodo.artifacts", level="WARNING") as logs:
            manifest = artifacts.collect_artifacts(specs, self.destination, title="t")
        text = manifest.write().read_text()

        self.assertEqual(["aosp_komodo-ota.zip", "aosp_komodo-symbols.zip"], manifest.collected_names())
        self.assertEqual("PRODUCT", (self.destination / "aosp_komodo-ota.zip").read_text())
        self.assertTrue(any("already collected" in line for line in logs.output))
        self.assertIn(f"Skipped {dist / 'aosp_komodo-ota.zip'}", text)

    def test_manifest_lists_stage_outcomes(self) -> None:
        manifest = artifacts.ArtifactManifest(title="t", destination=self.destination)
        manifest.record_stages(
            [
                ExecutionResult("config", 0, "", 1.5),
                ExecutionResult("compile", 2, "", 42.0, error="make exited with status 2"),
            ]
        )

        text = manifest.write().read_text()

        self.assertIn("Stages:", text)
        self.assertIn("config         succeeded 1.5s", text)
        self.assertIn("compile        failed    42.0s", text)

    def test_written_manifest_is_sealed(self) -> None:
        manifest = artifacts.ArtifactManifest(title="t", destination=self.destination)
        manifest.add_note("first")
        manifest.write()

        with self.assertRaises(artifacts.ManifestSealedError):
            manifest.add_note("second")
        with self.assertRaises(artifacts.ManifestSealedError):
            manifest.write()


class ToolVersionTests(unittest.TestCase):
    def test_first_output_line(self) -> None:
        executor = RecordingExecutor(outputs={"git --version": "\ngit version 2.43.0\nextra\n"})
        self.assertEqual("git version 2.43.0", artifacts.probe_tool_version(executor, ["git", "--version"]))

    def test_failure_reports_unknown(self) -> None:
        executor = RecordingExecutor(returncodes={"repo": 127})
        self.assertEqual(artifacts.UNKNOWN, artifacts.probe_tool_version(executor, ["repo", "version"]))

    def test_git_revision_of_missing_tree(self) -> None:
        executor = RecordingExecutor()
        self.assertEqual(artifacts.UNKNOWN, artifacts.git_revision(executor, Path("/nonexistent/tree")))
        self.assertEqual([], executor.calls)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
