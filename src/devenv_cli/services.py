from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

import click

from devenv_cli.composer import (
    CONTAINER_WORKSPACE,
    NETWORK_MODE,
    RESTART_POLICY,
    UserOverrides,
    workspace_dir_for,
)
from devenv_cli.lifecycle import ROS_OVERLAY_SETUP
from devenv_cli.options import ConfigurationSet


PROFILE_GPU = "gpu"
PROFILE_CPU = "cpu"
PROFILE_XRCE_AGENT = "xrce-agent"
PROFILE_MAVROS = "mavros"
PROFILE_QGC = "qgc"
PROFILE_BRIDGE = "bridge"

ROS_SETUP = "/opt/ros/jazzy/setup.bash"
QGC_APPIMAGE_URL = "https://d176tv9ibo4jno.cloudfront.net/latest/QGroundControl.AppImage"

_WAIT_FOR_OVERLAY = (
    f"while [ ! -f '{ROS_OVERLAY_SETUP}' ]; do echo 'Waiting for ROS2 workspace...' && sleep 5; done"
    f" && source {ROS_SETUP} && source {ROS_OVERLAY_SETUP}"
)


@dataclass(frozen=True)
class SidecarService:
    profile: str
    container_name: str
    command: str
    ports: tuple[str, ...] = ()
    needs_display: bool = False
    volumes: tuple[str, ...] = ()

    def command_args(self) -> list[str]:
        return ["bash", "-c", self.command]


SIDECARS: dict[str, SidecarService] = {
    PROFILE_XRCE_AGENT: SidecarService(
        profile=PROFILE_XRCE_AGENT,
        container_name="xrce-dds-agent",
        command="echo 'Starting XRCE-DDS Agent on port 8888...' && MicroXRCEAgent udp4 -p 8888 -v6",
        ports=("8888:8888/udp",),
    ),
    PROFILE_MAVROS: SidecarService(
        profile=PROFILE_MAVROS,
        container_name="mavros-bridge",
        command=(
            f"{_WAIT_FOR_OVERLAY} && echo 'Starting MAVROS bridge...'"
            " && ros2 launch mavros px4.launch fcu_url:=udp://:14540@127.0.0.1:14557"
        ),
        ports=("14540:14540/udp", "14557:14557/udp"),
    ),
    PROFILE_QGC: SidecarService(
        profile=PROFILE_QGC,
        container_name="qgroundcontrol",
        command=(
            f"cd {CONTAINER_WORKSPACE}"
            " && if [ ! -f QGroundControl.AppImage ]; then"
            f" wget -qO QGroundControl.AppImage '{QGC_APPIMAGE_URL}' && chmod +x QGroundControl.AppImage; fi"
            " && ./QGroundControl.AppImage --no-sandbox"
        ),
        ports=("5760:5760/tcp",),
        needs_display=True,
        volumes=("qgc_data:/home/user/.config/QGroundControl",),
    ),
    PROFILE_BRIDGE: SidecarService(
        profile=PROFILE_BRIDGE,
        container_name="ros2-bridge",
        command=(
            f"{_WAIT_FOR_OVERLAY} && echo 'Starting ROS2-Gazebo bridge...'"
            " && ros2 run ros_gz_bridge parameter_bridge"
            " /clock@rosgraph_msgs/msg/Clock[ignition.msgs.Clock --ros-args -r __ns:=/bridge"
        ),
    ),
}

GPU_PROFILES = (PROFILE_GPU, PROFILE_CPU)
KNOWN_PROFILES = GPU_PROFILES + tuple(SIDECARS)


@dataclass(frozen=True)
class ProfileSelection:
    force_cpu: bool = False
    require_gpu: bool = False
    sidecars: tuple[SidecarService, ...] = ()

    @property
    def sidecar_names(self) -> list[str]:
        return [service.container_name for service in self.sidecars]


def resolve_profiles(profiles: Iterable[str], *, no_gpu: bool = False) -> ProfileSelection:
    requested: list[str] = []
    for raw in profiles:
        for name in str(raw).split(","):
            name = name.strip().lower()
            if not name:
                continue
            if name not in KNOWN_PROFILES:
                raise click.BadParameter(
                    f"Unknown profile {name!r} (choose from {', '.join(KNOWN_PROFILES)})",
                    param_hint="'--profile'",
                )
            if name not in requested:
                requested.append(name)

    force_cpu = no_gpu or PROFILE_CPU in requested
    require_gpu = PROFILE_GPU in requested and not force_cpu
    sidecars = tuple(SIDECARS[name] for name in requested if name in SIDECARS)
    return ProfileSelection(force_cpu=force_cpu, require_gpu=require_gpu, sidecars=sidecars)


def sidecar_options(
    service: SidecarService,
    overrides: UserOverrides,
    display: ConfigurationSet | None = None,
) -> ConfigurationSet:
    options = ConfigurationSet()
    options.set_flag("--restart", RESTART_POLICY)
    options.set_network(NETWORK_MODE)
    options.add_env("LOCAL_USER_ID", str(overrides.uid))
    options.add_env("LOCAL_GROUP_ID", str(overrides.gid))
    options.add_env("RMW_IMPLEMENTATION", overrides.rmw_implementation)
    options.add_env("GZ_VERSION", overrides.gz_version)

    workspace = overrides.workspace_dir or workspace_dir_for(overrides.container_name)
    options.add_volume(f"{workspace}:{CONTAINER_WORKSPACE}:rw")
    for spec in service.volumes:
        options.add_volume(spec)
    for port in service.ports:
        options.add_port(port)
    if service.needs_display and display is not None:
        options.merge(display)
    return options
