import logging
import unittest
from pathlib import Path
from unittest import mock

import host_bootstrap
from build_config import PipelineConfig
from fakes import RecordingExecutor
from stages import CommandFailed, StageContext, StageError


def make_context(executor: RecordingExecutor) -> StageContext:
    config = PipelineConfig(android_root=Path("/src"), jobs=2)
    return StageContext(config, executor, logging.getLogger("komodo.test.bootstrap"))


class PackageSetTests(unittest.TestCase):
    def test_kernel_build_tools_included(self) -> None:
        for package in ("bc", "bison", "flex", "ccache"):
            self.assertIn(package, host_bootstrap.APT_PACKAGES)
            self.assertIn(package, host_bootstrap.DNF_PACKAGES)


class InstallBuildPackagesTests(unittest.TestCase):
    def test_apt_updates_then_installs_with_sudo(self) -> None:
        executor = RecordingExecutor()
        with mock.patch("host_bootstrap.os.geteuid", return_value=1000), mock.patch(
            "host_bootstrap.shutil.which", return_value="/usr/bin/sudo"
        ), self.assertLogs("komodo.test.bootstrap", level="INFO"):
            installed = host_bootstrap.install_build_packages(make_context(executor), "apt-get")

        self.assertTrue(installed)
        self.assertEqual(["/usr/bin/sudo", "apt-get", "update"], executor.calls[0].argv)
        self.assertEqual(["/usr/bin/sudo", "apt-get", "install", "-y"], executor.calls[1].argv[:4])
        self.assertIn("schedtool", executor.calls[1].argv)

    def test_dnf_as_root_has_no_prefix_or_update(self) -> None:
        executor = RecordingExecutor()
        with mock.patch("host_bootstrap.os.geteuid", return_value=0), self.assertLogs(
            "komodo.test.bootstrap", level="INFO"
        ):
            host_bootstrap.install_build_packages(make_context(executor), "dnf")

        self.assertEqual(1, len(executor.calls))
        self.assertEqual(["dnf", "install", "-y"], executor.calls[0].argv[:3])

    def test_no_package_manager_warns(self) -> None:
        executor = RecordingExecutor()
        with mock.patch("host_bootstrap.detect_package_manager", return_value=None), self.assertLogs(
            "komodo.test.bootstrap", level="WARNING"
        ):
            installed = host_bootstrap.install_build_packages(make_context(executor))

        self.assertFalse(installed)
        self.assertEqual([], executor.calls)

    def test_missing_sudo_raises_stage_error(self) -> None:
        with mock.patch("host_bootstrap.os.geteuid", return_value=1000), mock.patch(
            "host_bootstrap.shutil.which", return_value=None
        ):
            with self.assertRaises(StageError) as ctx:
                host_bootstrap.privilege_prefix()
        self.assertIn("install sudo", ctx.exception.describe())

    def test_failed_install_propagates_exit_status(self) -> None:
        executor = RecordingExecutor(returncodes={"install": 100})
        with mock.patch("host_bootstrap.os.geteuid", return_value=0), self.assertLogs(
            "komodo.test.bootstrap", level="INFO"
        ):
            with self.assertRaises(CommandFailed) as ctx:
                host_bootstrap.install_build_packages(make_context(executor), "apt-get")
        self.assertEqual(100, ctx.exception.returncode)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
