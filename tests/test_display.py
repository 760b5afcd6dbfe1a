from __future__ import annotations

import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fakes import FakeProbe

from devenv_cli.capabilities import OS_LINUX, OS_WSL
from devenv_cli.display import DisplayBridge, rewrite_auth_records
from devenv_cli.errors import DisplayAuthSetupFailure


NLIST_OUTPUT = (
    "0100 0007 6c6170746f70 0001 30 0012 4d49542d4d414749432d434f4f4b49452d31 0010 a1b2c3d4e5f60718293a4b5c6d7e8f90\n"
    "0000 0004 7f000001 0001 30 0012 4d49542d4d414749432d434f4f4b49452d31 0010 a1b2c3d4e5f60718293a4b5c6d7e8f90\n"
)


class RewriteAuthRecordsTests(unittest.TestCase):
    def test_family_field_replaced_with_wildcard(self) -> None:
        records = rewrite_auth_records(NLIST_OUTPUT)
        self.assertEqual(len(records), 2)
        self.assertTrue(all(record.startswith("ffff ") for record in records))
        self.assertTrue(records[0].endswith("a1b2c3d4e5f60718293a4b5c6d7e8f90"))

    def test_duplicates_and_short_lines_dropped(self) -> None:
        records = rewrite_auth_records("0100 0001 41\n0100 0001 41\nab\n\n")
        self.assertEqual(records, ["ffff 0001 41"])


class NativeDisplayTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.token_path = Path(self._tmp.name) / ".docker.xauth"

    def _bridge(self, **probe_kwargs) -> DisplayBridge:
        return DisplayBridge(FakeProbe(**probe_kwargs), token_path=self.token_path)

    def test_existing_token_performs_zero_writes(self) -> None:
        self.token_path.write_text("cookie", encoding="utf-8")
        bridge = self._bridge(environ={"DISPLAY": ":1"}, paths={"/tmp/.X11-unix"})
        with (
            patch("devenv_cli.display._run") as run_mock,
            patch("devenv_cli.display.shutil.which", return_value=None),
            self.assertLogs("devenv.display", level="WARNING"),
        ):
            self.assertFalse(bridge.ensure_auth_token(":1"))
            fragments = bridge.prepare(OS_LINUX)
        run_mock.assert_not_called()
        self.assertEqual(self.token_path.read_text(encoding="utf-8"), "cookie")
        self.assertEqual(fragments.env()["XAUTHORITY"], str(self.token_path))
        self.assertIn(f"{self.token_path}:{self.token_path}", fragments.volumes())

    def test_token_created_from_rewritten_records(self) -> None:
        calls: list[tuple[list[str], str | None]] = []

        def fake_run(command, input_text=None):
            calls.append((command, input_text))
            if command[:2] == ["xauth", "nlist"]:
                return subprocess.CompletedProcess(command, 0, stdout=NLIST_OUTPUT, stderr="")
            if "nmerge" in command:
                self.token_path.write_text(input_text or "", encoding="utf-8")
            return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

        bridge = self._bridge(environ={"DISPLAY": ":1"}, paths={"/tmp/.X11-unix"})
        with (
            patch("devenv_cli.display._run", side_effect=fake_run),
            patch("devenv_cli.display.shutil.which", side_effect=lambda name: f"/usr/bin/{name}"),
        ):
            fragments = bridge.prepare(OS_LINUX)

        commands = [command for command, _ in calls]
        self.assertEqual(commands[0], ["xauth", "nlist", ":1"])
        self.assertEqual(commands[1], ["xauth", "-f", str(self.token_path), "nmerge", "-"])
        self.assertEqual(commands[2], ["xhost", "+local:docker"])
        merged_input = calls[1][1] or ""
        self.assertTrue(all(line.startswith("ffff") for line in merged_input.splitlines()))
        self.assertEqual(self.token_path.stat().st_mode & 0o777, 0o644)
        self.assertEqual(fragments.env()["DISPLAY"], ":1")
        self.assertEqual(fragments.env()["QT_X11_NO_MITSHM"], "1")
        self.assertIn("/tmp/.X11-unix:/tmp/.X11-unix:rw", fragments.volumes())

    def test_missing_auth_tool_is_reported(self) -> None:
        bridge = self._bridge()
        with patch("devenv_cli.display.shutil.which", return_value=None):
            with self.assertRaises(DisplayAuthSetupFailure):
                bridge.ensure_auth_token(":0")
        self.assertFalse(self.token_path.exists())

    def test_auth_failure_degrades_to_plain_display(self) -> None:
        def fake_run(command, input_text=None):
            return subprocess.CompletedProcess(command, 1, stdout="", stderr="no display")

        bridge = self._bridge(paths={"/tmp/.X11-unix"})
        with (
            patch("devenv_cli.display._run", side_effect=fake_run),
            patch("devenv_cli.display.shutil.which", side_effect=lambda name: f"/usr/bin/{name}"),
            self.assertLogs("devenv.display", level="WARNING") as captured,
        ):
            fragments = bridge.prepare(OS_LINUX)

        self.assertEqual(fragments.env()["DISPLAY"], ":0")
        self.assertNotIn("XAUTHORITY", fragments.env())
        self.assertFalse(self.token_path.exists())
        self.assertIn("X11 authentication setup failed", "\n".join(captured.output))

    def test_headless_host_gets_virtual_display(self) -> None:
        bridge = self._bridge()
        with (
            patch("devenv_cli.display._run") as run_mock,
            self.assertLogs("devenv.display", level="WARNING"),
        ):
            fragments = bridge.prepare(OS_LINUX)
        run_mock.assert_not_called()
        self.assertEqual(fragments.env(), {"DISPLAY": ":99"})
        self.assertEqual(fragments.volumes(), [])


class WslDisplayTests(unittest.TestCase):
    def test_compatibility_layer_fragments(self) -> None:
        probe = FakeProbe(
            environ={"DISPLAY": ":0", "WAYLAND_DISPLAY": "wayland-1"},
            paths={"/tmp/.X11-unix", "/mnt/wslg", "/usr/lib/wsl", "/dev/dxg"},
            dirs={"/dev/dri": ["card0", "renderD128"]},
        )
        with tempfile.TemporaryDirectory() as tmp:
            with patch("devenv_cli.display._run") as run_mock:
                fragments = DisplayBridge(probe, token_path=Path(tmp) / "xauth").prepare(OS_WSL)
        run_mock.assert_not_called()

        env = fragments.env()
        self.assertEqual(env["WAYLAND_DISPLAY"], "wayland-1")
        self.assertEqual(env["PULSE_SERVER"], "unix:/tmp/pulse-socket")
        self.assertEqual(env["LD_LIBRARY_PATH"], "/usr/lib/wsl/lib")
        self.assertNotIn("XAUTHORITY", env)
        self.assertIn("/mnt/wslg:/mnt/wslg:ro", fragments.volumes())
        self.assertIn("/usr/lib/wsl:/usr/lib/wsl:ro", fragments.volumes())
        self.assertEqual(fragments.devices(), ["/dev/dxg", "/dev/dri/card0", "/dev/dri/renderD128"])

    def test_unreadable_device_directory_degrades_to_warning(self) -> None:
        probe = FakeProbe(paths={"/tmp/.X11-unix", "/mnt/wslg", "/dev/dxg"}, broken={"/dev/dri", "/usr/lib/wsl"})
        with self.assertLogs("devenv.display", level="WARNING") as captured:
            fragments = DisplayBridge(probe).prepare(OS_WSL)
        output = "\n".join(captured.output)
        self.assertIn("unable to list /dev/dri", output)
        self.assertIn("unable to stat /usr/lib/wsl", output)
        self.assertEqual(fragments.devices(), ["/dev/dxg"])
        self.assertNotIn("LD_LIBRARY_PATH", fragments.env())

    def test_missing_wslg_and_gpu_device_warn(self) -> None:
        probe = FakeProbe(paths={"/tmp/.X11-unix"})
        with self.assertLogs("devenv.display", level="WARNING") as captured:
            fragments = DisplayBridge(probe).prepare(OS_WSL)
        output = "\n".join(captured.output)
        self.assertIn("WSLg directory not found", output)
        self.assertIn("/dev/dxg", output)
        self.assertEqual(fragments.devices(), [])
        self.assertEqual(fragments.env()["DISPLAY"], ":0")


if __name__ == "__main__":
    unittest.main()
