from __future__ import annotations

import dataclasses
import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Sequence

from devenv_cli.errors import CapabilityDetectionDegraded


LOGGER = logging.getLogger("devenv.capabilities")

OS_LINUX = "linux"
OS_WSL = "wsl"
OS_UNKNOWN = "unknown"
OS_KINDS = (OS_LINUX, OS_WSL, OS_UNKNOWN)

GPU_NVIDIA = "nvidia"
GPU_GENERIC = "generic"
GPU_NONE = "none"
GPU_KINDS = (GPU_NVIDIA, GPU_GENERIC, GPU_NONE)

ENGINE_VERSION_UNKNOWN = "unknown"
MIN_NATIVE_GPU_ENGINE_VERSION = (19, 3)

WSL_ENV_MARKERS = ("WSL_DISTRO_NAME", "WSL_INTEROP")
KERNEL_VERSION_FILES = ("/proc/version", "/proc/sys/kernel/osrelease")
WSL_KERNEL_MARKER = "microsoft"
WSL_MOUNT_MARKERS = ("/mnt/wslg", "/mnt/wsl", "/mnt/c")
DRI_DEVICE_DIR = "/dev/dri"
GPU_QUERY_TOOL = "nvidia-smi"
HOST_DEVICE_DIRS = ("/dev/input", "/dev/bus/usb")
LEGACY_GPU_RUNTIME_TOOL = "nvidia-docker"


@dataclass(frozen=True)
class CapabilitySnapshot:
    os_kind: str
    gpu_kind: str
    engine_version: str = ENGINE_VERSION_UNKNOWN
    engine_gpu_runtime: bool = False
    legacy_gpu_runtime: bool = False
    host_device_dirs: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.os_kind not in OS_KINDS:
            raise ValueError(f"Unsupported os_kind: {self.os_kind!r}")
        if self.gpu_kind not in GPU_KINDS:
            raise ValueError(f"Unsupported gpu_kind: {self.gpu_kind!r}")

    def without_gpu(self) -> "CapabilitySnapshot":
        return dataclasses.replace(self, gpu_kind=GPU_NONE)

    def describe(self) -> str:
        return f"os={self.os_kind} gpu={self.gpu_kind} engine={self.engine_version}"


@dataclass
class HostProbe:
    """Read-only access to host signals.

    Missing files and tools are reported as absent (None/False/empty). Any other
    failure to read a signal raises CapabilityDetectionDegraded so the detector
    can record it and fall back to the signal being absent.
    """

    environ: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))
    which_func: Callable[[str], str | None] = shutil.which

    def env(self, name: str) -> str:
        return str(self.environ.get(name, "") or "").strip()

    def read_text(self, path: str) -> str | None:
        try:
            return Path(path).read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CapabilityDetectionDegraded(f"unable to read {path}: {exc}") from exc

    def exists(self, path: str) -> bool:
        try:
            return Path(path).exists()
        except OSError as exc:
            raise CapabilityDetectionDegraded(f"unable to stat {path}: {exc}") from exc

    def list_dir(self, path: str) -> list[str]:
        try:
            return sorted(entry.name for entry in Path(path).iterdir())
        except (FileNotFoundError, NotADirectoryError):
            return []
        except OSError as exc:
            raise CapabilityDetectionDegraded(f"unable to list {path}: {exc}") from exc

    def which(self, name: str) -> str | None:
        return self.which_func(name)

    def run(self, command: Sequence[str]) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(list(command), check=False, text=True, capture_output=True)
        except OSError as exc:
            raise CapabilityDetectionDegraded(f"unable to run {command[0]}: {exc}") from exc


def parse_engine_version(raw_value: str) -> tuple[int, ...] | None:
    match = re.match(r"^\s*v?(\d+)\.(\d+)(?:\.(\d+))?", str(raw_value or ""))
    if not match:
        return None
    return tuple(int(part) for part in match.groups() if part is not None)


class CapabilityDetector:
    def __init__(self, probe: HostProbe | None = None) -> None:
        self._probe = probe or HostProbe()
        self._warnings: list[str] = []

    def _degraded(self, exc: CapabilityDetectionDegraded) -> None:
        message = f"capability probe degraded: {exc}"
        LOGGER.warning(message)
        self._warnings.append(message)

    def _warn(self, message: str) -> None:
        LOGGER.warning(message)
        self._warnings.append(message)

    def detect_os(self) -> str:
        probe = self._probe
        if any(probe.env(name) for name in WSL_ENV_MARKERS):
            LOGGER.debug("WSL environment marker present")
            return OS_WSL

        kernel_readable = False
        for kernel_file in KERNEL_VERSION_FILES:
            try:
                content = probe.read_text(kernel_file)
            except CapabilityDetectionDegraded as exc:
                self._degraded(exc)
                continue
            if content is None:
                continue
            kernel_readable = True
            if WSL_KERNEL_MARKER in content.lower():
                LOGGER.debug("WSL kernel marker found in %s", kernel_file)
                return OS_WSL

        for mount_point in WSL_MOUNT_MARKERS:
            try:
                if probe.exists(mount_point):
                    LOGGER.debug("WSL mount point %s present", mount_point)
                    return OS_WSL
            except CapabilityDetectionDegraded as exc:
                self._degraded(exc)

        return OS_LINUX if kernel_readable else OS_UNKNOWN

    def detect_gpu(self) -> str:
        probe = self._probe
        if probe.which(GPU_QUERY_TOOL):
            try:
                result = probe.run(
                    [GPU_QUERY_TOOL, "--query-gpu=name", "--format=csv,noheader,nounits"]
                )
            except CapabilityDetectionDegraded as exc:
                self._degraded(exc)
                return GPU_NONE
            gpu_names = [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]
            if result.returncode == 0 and gpu_names:
                LOGGER.info("NVIDIA GPU detected: %s (count: %d)", gpu_names[0], len(gpu_names))
                return GPU_NVIDIA
            self._warn(f"{GPU_QUERY_TOOL} found but not working")
            return GPU_NONE

        try:
            dri_nodes = probe.list_dir(DRI_DEVICE_DIR)
        except CapabilityDetectionDegraded as exc:
            self._degraded(exc)
            dri_nodes = []
        if dri_nodes:
            LOGGER.info("DRI devices found - GPU acceleration may be available")
            return GPU_GENERIC
        return GPU_NONE

    def detect_engine(self) -> tuple[str, bool, bool]:
        probe = self._probe
        version = ENGINE_VERSION_UNKNOWN
        gpu_runtime = False
        try:
            result = probe.run(["docker", "version", "--format", "{{.Server.Version}}"])
            if result.returncode == 0 and result.stdout.strip():
                version = result.stdout.strip()
        except CapabilityDetectionDegraded as exc:
            self._degraded(exc)

        try:
            info = probe.run(["docker", "info"])
            gpu_runtime = info.returncode == 0 and "nvidia" in (info.stdout or "").lower()
        except CapabilityDetectionDegraded as exc:
            self._degraded(exc)

        parsed = parse_engine_version(version)
        if parsed is not None and parsed[:2] < MIN_NATIVE_GPU_ENGINE_VERSION:
            self._warn(f"Docker version {version} < 19.03 detected. Consider upgrading for better GPU support.")

        legacy_runtime = bool(probe.which(LEGACY_GPU_RUNTIME_TOOL))
        return version, gpu_runtime, legacy_runtime

    def detect_host_device_dirs(self) -> tuple[str, ...]:
        present: list[str] = []
        for path in HOST_DEVICE_DIRS:
            try:
                if self._probe.exists(path):
                    present.append(path)
            except CapabilityDetectionDegraded as exc:
                self._degraded(exc)
        return tuple(present)

    def detect(self) -> CapabilitySnapshot:
        self._warnings = []
        os_kind = self.detect_os()
        gpu_kind = self.detect_gpu()
        engine_version, engine_gpu_runtime, legacy_gpu_runtime = self.detect_engine()
        snapshot = CapabilitySnapshot(
            os_kind=os_kind,
            gpu_kind=gpu_kind,
            engine_version=engine_version,
            engine_gpu_runtime=engine_gpu_runtime,
            legacy_gpu_runtime=legacy_gpu_runtime,
            host_device_dirs=self.detect_host_device_dirs(),
            warnings=tuple(self._warnings),
        )
        LOGGER.debug("capability snapshot: %s", snapshot)
        return snapshot


def detect_capabilities(probe: HostProbe | None = None) -> CapabilitySnapshot:
    return CapabilityDetector(probe).detect()
