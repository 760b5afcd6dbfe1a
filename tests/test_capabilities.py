from __future__ import annotations

import dataclasses
import unittest

from fakes import FakeProbe

from devenv_cli.capabilities import (
    GPU_GENERIC,
    GPU_NONE,
    GPU_NVIDIA,
    OS_LINUX,
    OS_UNKNOWN,
    OS_WSL,
    CapabilityDetector,
    CapabilitySnapshot,
    detect_capabilities,
    parse_engine_version,
)


LINUX_KERNEL = "Linux version 6.8.0-45-generic (buildd@lcy02-amd64-075) (gcc 13.2.0) #45-Ubuntu SMP"
WSL_KERNEL = "Linux version 5.15.153.1-microsoft-standard-WSL2 (root@941d701f84f1) (gcc 11.2.0)"
NVIDIA_QUERY = {"nvidia-smi": (0, "NVIDIA GeForce RTX 4090\n")}


class OsDetectionTests(unittest.TestCase):
    def test_environment_marker_wins_over_kernel_string(self) -> None:
        probe = FakeProbe(environ={"WSL_DISTRO_NAME": "Ubuntu-24.04"}, files={"/proc/version": LINUX_KERNEL})
        self.assertEqual(CapabilityDetector(probe).detect_os(), OS_WSL)

    def test_kernel_marker_is_case_insensitive(self) -> None:
        probe = FakeProbe(files={"/proc/version": WSL_KERNEL.replace("microsoft", "Microsoft")})
        self.assertEqual(CapabilityDetector(probe).detect_os(), OS_WSL)

    def test_osrelease_marker_detected(self) -> None:
        probe = FakeProbe(
            files={
                "/proc/version": LINUX_KERNEL,
                "/proc/sys/kernel/osrelease": "5.15.153.1-microsoft-standard-WSL2\n",
            }
        )
        self.assertEqual(CapabilityDetector(probe).detect_os(), OS_WSL)

    def test_compatibility_mount_point_detected(self) -> None:
        probe = FakeProbe(files={"/proc/version": LINUX_KERNEL}, paths={"/mnt/wslg"})
        self.assertEqual(CapabilityDetector(probe).detect_os(), OS_WSL)

    def test_plain_kernel_is_linux(self) -> None:
        probe = FakeProbe(files={"/proc/version": LINUX_KERNEL})
        self.assertEqual(CapabilityDetector(probe).detect_os(), OS_LINUX)

    def test_no_readable_probe_is_unknown(self) -> None:
        self.assertEqual(CapabilityDetector(FakeProbe()).detect_os(), OS_UNKNOWN)

    def test_unreadable_kernel_file_degrades_with_warning(self) -> None:
        probe = FakeProbe(
            files={"/proc/sys/kernel/osrelease": "6.8.0-45-generic\n"},
            broken={"/proc/version"},
        )
        detector = CapabilityDetector(probe)
        with self.assertLogs("devenv.capabilities", level="WARNING") as captured:
            self.assertEqual(detector.detect_os(), OS_LINUX)
        self.assertIn("/proc/version", "\n".join(captured.output))


class GpuDetectionTests(unittest.TestCase):
    def test_working_query_tool_is_nvidia(self) -> None:
        probe = FakeProbe(tools={"nvidia-smi"}, commands=NVIDIA_QUERY)
        self.assertEqual(CapabilityDetector(probe).detect_gpu(), GPU_NVIDIA)

    def test_failing_query_tool_is_none_with_warning(self) -> None:
        probe = FakeProbe(
            tools={"nvidia-smi"},
            commands={"nvidia-smi": (9, "")},
            dirs={"/dev/dri": ["card0", "renderD128"]},
        )
        detector = CapabilityDetector(probe)
        with self.assertLogs("devenv.capabilities", level="WARNING") as captured:
            self.assertEqual(detector.detect_gpu(), GPU_NONE)
        self.assertIn("nvidia-smi found but not working", "\n".join(captured.output))

    def test_query_tool_with_empty_output_is_none(self) -> None:
        probe = FakeProbe(tools={"nvidia-smi"}, commands={"nvidia-smi": (0, "\n")})
        with self.assertLogs("devenv.capabilities", level="WARNING"):
            self.assertEqual(CapabilityDetector(probe).detect_gpu(), GPU_NONE)

    def test_dri_nodes_without_query_tool_is_generic(self) -> None:
        probe = FakeProbe(dirs={"/dev/dri": ["card0", "renderD128"]})
        self.assertEqual(CapabilityDetector(probe).detect_gpu(), GPU_GENERIC)

    def test_empty_dri_directory_is_none(self) -> None:
        probe = FakeProbe(dirs={"/dev/dri": []})
        self.assertEqual(CapabilityDetector(probe).detect_gpu(), GPU_NONE)


class SnapshotTests(unittest.TestCase):
    def _wsl_nvidia_probe(self) -> FakeProbe:
        return FakeProbe(
            files={"/proc/version": WSL_KERNEL},
            paths={"/dev/input"},
            tools={"nvidia-smi"},
            commands={
                **NVIDIA_QUERY,
                "docker version": (0, "27.3.1\n"),
                "docker info": (0, "Runtimes: io.containerd.runc.v2 nvidia runc\n"),
            },
        )

    def test_wsl_kernel_marker_and_working_gpu_query(self) -> None:
        snapshot = detect_capabilities(self._wsl_nvidia_probe())
        self.assertEqual(snapshot.os_kind, OS_WSL)
        self.assertEqual(snapshot.gpu_kind, GPU_NVIDIA)
        self.assertEqual(snapshot.engine_version, "27.3.1")
        self.assertTrue(snapshot.engine_gpu_runtime)
        self.assertFalse(snapshot.legacy_gpu_runtime)
        self.assertEqual(snapshot.host_device_dirs, ("/dev/input",))

    def test_detection_is_deterministic(self) -> None:
        probe = self._wsl_nvidia_probe()
        self.assertEqual(detect_capabilities(probe), detect_capabilities(probe))

    def test_engine_facts_and_old_engine_warning(self) -> None:
        probe = FakeProbe(
            files={"/proc/version": LINUX_KERNEL},
            tools={"nvidia-docker"},
            commands={"docker version": (0, "18.09.7\n"), "docker info": (0, "Runtimes: runc\n")},
        )
        with self.assertLogs("devenv.capabilities", level="WARNING"):
            snapshot = detect_capabilities(probe)
        self.assertFalse(snapshot.engine_gpu_runtime)
        self.assertTrue(snapshot.legacy_gpu_runtime)
        self.assertTrue(any("19.03" in warning for warning in snapshot.warnings))

    def test_unreachable_engine_reports_unknown_version(self) -> None:
        probe = FakeProbe(files={"/proc/version": LINUX_KERNEL}, broken={"docker"})
        with self.assertLogs("devenv.capabilities", level="WARNING"):
            snapshot = detect_capabilities(probe)
        self.assertEqual(snapshot.engine_version, "unknown")
        self.assertEqual(snapshot.os_kind, OS_LINUX)

    def test_snapshot_is_immutable(self) -> None:
        snapshot = CapabilitySnapshot(os_kind=OS_LINUX, gpu_kind=GPU_NVIDIA)
        with self.assertRaises(dataclasses.FrozenInstanceError):
            snapshot.gpu_kind = GPU_NONE  # type: ignore[misc]
        self.assertEqual(snapshot.without_gpu().gpu_kind, GPU_NONE)
        self.assertEqual(snapshot.gpu_kind, GPU_NVIDIA)

    def test_snapshot_rejects_unknown_kinds(self) -> None:
        with self.assertRaises(ValueError):
            CapabilitySnapshot(os_kind="macos", gpu_kind=GPU_NONE)

    def test_parse_engine_version(self) -> None:
        self.assertEqual(parse_engine_version("27.3.1"), (27, 3, 1))
        self.assertEqual(parse_engine_version("19.03"), (19, 3))
        self.assertIsNone(parse_engine_version("unknown"))


if __name__ == "__main__":
    unittest.main()
