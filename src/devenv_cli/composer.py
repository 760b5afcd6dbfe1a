from __future__ import annotations

import glob
import logging
import os
import subprocess
from dataclasses import dataclass, field

from devenv_cli.capabilities import (
    GPU_GENERIC,
    GPU_NONE,
    GPU_NVIDIA,
    OS_KINDS,
    OS_LINUX,
    OS_UNKNOWN,
    OS_WSL,
    CapabilitySnapshot,
)
from devenv_cli.errors import PermissionAdjustmentFailed
from devenv_cli.options import ConfigurationSet


LOGGER = logging.getLogger("devenv.composer")

DEFAULT_CONTAINER_NAME = "px4_ros2_jazzy"
DEFAULT_RMW_IMPLEMENTATION = "rmw_zenoh_cpp"
DEFAULT_GZ_VERSION = "harmonic"
CONTAINER_USER = "user"
CONTAINER_HOME = "/home/user"
CONTAINER_WORKSPACE = f"{CONTAINER_HOME}/shared_volume"
FASTRTPS_PROFILES_FILE = "/usr/local/share/middleware_profiles/rtps_udp_profile.xml"
RESTART_POLICY = "unless-stopped"
NETWORK_MODE = "host"

SIMULATION_PORTS = (
    "14550:14550/udp",  # MAVLink
    "14556:14556/udp",  # MAVLink secondary
    "14557:14557/udp",  # MAVROS GCS
    "14540:14540/udp",  # MAVROS FCU
    "8888:8888/udp",  # XRCE-DDS
    "5760:5760/tcp",  # QGroundControl
)

GPU_MODE_CPU_ONLY = "cpu-only"

GPU_FLAG_NONE = "none"
GPU_FLAG_ALWAYS = "always"
GPU_FLAG_BY_ENGINE = "by-engine"

NVIDIA_ENV = (
    ("NVIDIA_VISIBLE_DEVICES", "all"),
    ("NVIDIA_DRIVER_CAPABILITIES", "all"),
    ("__GLX_VENDOR_LIBRARY_NAME", "nvidia"),
)
DEVICE_RELAXED_MODE = 0o666


@dataclass(frozen=True)
class UserOverrides:
    container_name: str = DEFAULT_CONTAINER_NAME
    workspace_dir: str = ""
    uid: int = 1000
    gid: int = 1000
    force_cpu: bool = False
    git_user: str = ""
    git_token: str = ""
    extra_env: tuple[str, ...] = ()
    extra_volumes: tuple[str, ...] = ()
    rmw_implementation: str = DEFAULT_RMW_IMPLEMENTATION
    gz_version: str = DEFAULT_GZ_VERSION


@dataclass(frozen=True)
class GpuRule:
    mode: str
    gpu_flag: str = GPU_FLAG_NONE
    env: tuple[tuple[str, str], ...] = ()
    devices: tuple[str, ...] = ()
    provision: tuple[str, ...] = ()


@dataclass(frozen=True)
class ComposedOptions:
    options: ConfigurationSet
    gpu_mode: str
    provision: tuple[str, ...] = ()
    warnings: tuple[str, ...] = field(default_factory=tuple)


_NVIDIA_NATIVE_RULE = GpuRule(mode="nvidia", gpu_flag=GPU_FLAG_BY_ENGINE, env=NVIDIA_ENV)

GPU_RULES: dict[tuple[str, str], GpuRule] = {
    (OS_WSL, GPU_NVIDIA): GpuRule(
        mode="nvidia-wsl",
        gpu_flag=GPU_FLAG_ALWAYS,
        env=NVIDIA_ENV + (("MESA_D3D12_DEFAULT_ADAPTER_NAME", "NVIDIA"),),
        devices=("/dev/dxg",),
        provision=("/dev/dxg", "/dev/dri/*"),
    ),
    (OS_LINUX, GPU_NVIDIA): _NVIDIA_NATIVE_RULE,
    (OS_UNKNOWN, GPU_NVIDIA): _NVIDIA_NATIVE_RULE,
    **{(os_kind, GPU_GENERIC): GpuRule(mode="generic", devices=("/dev/dri",)) for os_kind in OS_KINDS},
    **{(os_kind, GPU_NONE): GpuRule(mode=GPU_MODE_CPU_ONLY) for os_kind in OS_KINDS},
}


def gpu_rule_for(snapshot: CapabilitySnapshot) -> GpuRule:
    return GPU_RULES[(snapshot.os_kind, snapshot.gpu_kind)]


def workspace_dir_for(container_name: str, home: str | None = None) -> str:
    base = home if home is not None else os.path.expanduser("~")
    return os.path.join(base, f"{container_name}_shared_volume")


def _base_options(snapshot: CapabilitySnapshot, overrides: UserOverrides) -> ConfigurationSet:
    options = ConfigurationSet()
    options.set_flag("--privileged")
    options.set_flag("--restart", RESTART_POLICY)
    options.set_flag("--workdir", CONTAINER_WORKSPACE)
    options.set_network(NETWORK_MODE)

    options.add_env("LOCAL_USER_ID", str(overrides.uid))
    options.add_env("LOCAL_GROUP_ID", str(overrides.gid))
    options.add_env("CONTAINER_NAME", overrides.container_name)
    options.add_env("FASTRTPS_DEFAULT_PROFILES_FILE", FASTRTPS_PROFILES_FILE)
    options.add_env("RMW_IMPLEMENTATION", overrides.rmw_implementation)
    options.add_env("GZ_VERSION", overrides.gz_version)
    if overrides.git_user and overrides.git_token:
        options.add_env("GIT_USER", overrides.git_user)
        options.add_env("GIT_TOKEN", overrides.git_token)

    workspace = overrides.workspace_dir or workspace_dir_for(overrides.container_name)
    options.add_volume(f"{workspace}:{CONTAINER_WORKSPACE}:rw")
    options.add_volume("/etc/localtime:/etc/localtime:ro")
    for device_dir in snapshot.host_device_dirs:
        options.add_volume(f"{device_dir}:{device_dir}:ro")

    for port in SIMULATION_PORTS:
        options.add_port(port)
    return options


def _gpu_options(snapshot: CapabilitySnapshot, rule: GpuRule) -> tuple[ConfigurationSet, list[str]]:
    options = ConfigurationSet()
    warnings: list[str] = []
    if rule.gpu_flag == GPU_FLAG_ALWAYS:
        options.set_flag("--gpus", "all")
    elif rule.gpu_flag == GPU_FLAG_BY_ENGINE:
        if snapshot.engine_gpu_runtime:
            options.set_flag("--gpus", "all")
        elif snapshot.legacy_gpu_runtime:
            warnings.append("Using legacy nvidia-docker runtime")
            options.set_flag("--runtime", "nvidia")
        else:
            warnings.append("NVIDIA Container Runtime not found. GPU support may be limited.")
            options.set_flag("--gpus", "all")
    for key, value in rule.env:
        options.add_env(key, value)
    for device in rule.devices:
        options.add_device(device)
    return options, warnings


def _override_options(overrides: UserOverrides) -> ConfigurationSet:
    options = ConfigurationSet()
    for entry in overrides.extra_env:
        options.add_env_entry(entry)
    for spec in overrides.extra_volumes:
        options.add_volume(spec)
    return options


def compose_options(
    snapshot: CapabilitySnapshot,
    overrides: UserOverrides,
    display: ConfigurationSet | None = None,
) -> ComposedOptions:
    """Build the launch configuration for the primary container.

    Contributions are merged from least to most specific: the always-present
    base, the GPU rule for (os_kind, gpu_kind), the display fragments, then the
    user's extra env/volumes. Performs no I/O; device permission changes the GPU
    rule needs are returned in `provision` for `provision_devices`.
    """
    effective = snapshot.without_gpu() if overrides.force_cpu else snapshot
    rule = gpu_rule_for(effective)

    options = _base_options(effective, overrides)
    gpu_options, warnings = _gpu_options(effective, rule)
    options.merge(gpu_options)
    if display is not None:
        options.merge(display)
    options.merge(_override_options(overrides))

    return ComposedOptions(
        options=options,
        gpu_mode=rule.mode,
        provision=rule.provision,
        warnings=tuple(warnings),
    )


def _expand_device_patterns(patterns: tuple[str, ...]) -> list[str]:
    paths: list[str] = []
    for pattern in patterns:
        matches = sorted(glob.glob(pattern)) if any(ch in pattern for ch in "*?[") else [pattern]
        for path in matches:
            if os.path.exists(path) and path not in paths:
                paths.append(path)
    return paths


def _relax_device(path: str) -> None:
    if os.geteuid() == 0:
        try:
            os.chmod(path, DEVICE_RELAXED_MODE)
        except OSError as exc:
            raise PermissionAdjustmentFailed(f"Could not set permissions for {path}: {exc}") from exc
        return
    result = subprocess.run(["sudo", "chmod", "666", path], check=False)
    if result.returncode != 0:
        raise PermissionAdjustmentFailed(f"Could not set permissions for {path}")


def provision_devices(patterns: tuple[str, ...]) -> list[str]:
    """Relax permissions on host device nodes. Returns the paths that were updated."""
    updated: list[str] = []
    for path in _expand_device_patterns(patterns):
        try:
            _relax_device(path)
        except PermissionAdjustmentFailed as exc:
            LOGGER.warning("%s", exc)
            continue
        updated.append(path)
    return updated
