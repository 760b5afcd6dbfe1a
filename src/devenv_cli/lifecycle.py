from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Sequence

import click

from devenv_cli.composer import CONTAINER_HOME, CONTAINER_USER, CONTAINER_WORKSPACE
from devenv_cli.engine import (
    STATUS_NOT_EXISTS,
    STATUS_RUNNING,
    STATUS_STOPPED,
    DockerEngine,
)
from devenv_cli.errors import ContainerNotFound, UnknownContainerState, WorkspaceCreateFailure
from devenv_cli.options import ConfigurationSet


LOGGER = logging.getLogger("devenv.lifecycle")

ACTION_CREATE_AND_RUN = "create-and-run"
ACTION_START_AND_ATTACH = "start-and-attach"
ACTION_ATTACH = "attach-only"

_ACTION_BY_STATUS = {
    STATUS_NOT_EXISTS: ACTION_CREATE_AND_RUN,
    STATUS_STOPPED: ACTION_START_AND_ATTACH,
    STATUS_RUNNING: ACTION_ATTACH,
}

ROS_OVERLAY_SETUP = f"{CONTAINER_WORKSPACE}/ros2_ws/install/setup.bash"

# docker run/exec reserve 125-127 for failures of the engine itself.
ENGINE_FAILURE_EXIT_CODE = 125


def _check_engine_exit(exit_code: int, what: str) -> int:
    if exit_code >= ENGINE_FAILURE_EXIT_CODE:
        raise click.ClickException(f"Failed to {what} (docker exit code {exit_code})")
    return exit_code


def select_action(status: str) -> str:
    try:
        return _ACTION_BY_STATUS[status]
    except KeyError:
        raise UnknownContainerState(f"Cannot select a lifecycle action for container status {status!r}") from None


def session_command(*, banner: bool = True) -> list[str]:
    lines = [
        f"export DEV_DIR={CONTAINER_WORKSPACE}",
        "export PX4_DIR=$DEV_DIR/PX4-Autopilot",
        "export ROS2_WS=$DEV_DIR/ros2_ws",
        "export OSQP_SRC=$DEV_DIR",
        f"source {CONTAINER_HOME}/.bashrc",
        f'if [ -f "{ROS_OVERLAY_SETUP}" ]; then source "{ROS_OVERLAY_SETUP}"; fi',
    ]
    if banner:
        lines.extend(
            [
                "echo 'PX4 ROS2 Development Environment Ready!'",
                f"echo 'Workspace: {CONTAINER_WORKSPACE}'",
            ]
        )
    lines.append("exec /bin/bash")
    return ["bash", "-c", " && ".join(lines)]


def ensure_workspace(path: Path) -> Path:
    if not path.is_dir():
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WorkspaceCreateFailure(f"Failed to create workspace directory {path}: {exc}") from exc
        click.echo(f"Created workspace directory: {path}")

    if not os.access(path, os.W_OK):
        LOGGER.warning("Workspace directory %s is not writable - attempting to fix permissions", path)
        try:
            path.chmod(0o755)
        except OSError as exc:
            raise WorkspaceCreateFailure(f"Could not set permissions for workspace directory {path}: {exc}") from exc
        if not os.access(path, os.W_OK):
            raise WorkspaceCreateFailure(f"Workspace directory {path} is not writable")
    return path


class LifecycleManager:
    def __init__(self, engine: DockerEngine) -> None:
        self._engine = engine

    def launch(
        self,
        name: str,
        options: ConfigurationSet,
        image: str,
        command: Sequence[str] | None = None,
    ) -> str:
        """Bring the named container to an interactive session.

        The container status is queried fresh on every call. A stopped container
        is started with the configuration it was created with; `options` are only
        used when the container has to be created.
        """
        session = list(command) if command is not None else session_command()
        record = self._engine.container_record(name)
        action = select_action(record.status)
        LOGGER.debug("container %s status=%s action=%s", name, record.status, action)

        if action == ACTION_CREATE_AND_RUN:
            click.echo(f"Creating and running new container '{name}'...")
            exit_code = _check_engine_exit(
                self._engine.run_container(name, options.to_docker_args(), image, session),
                f"create container '{name}'",
            )
        elif action == ACTION_START_AND_ATTACH:
            click.echo(f"Restarting existing container '{name}'...")
            self._engine.start(name)
            exit_code = _check_engine_exit(
                self._engine.exec_session(name, CONTAINER_USER, session), f"attach to container '{name}'"
            )
        else:
            click.echo(f"Container '{name}' is already running. Attaching to it...")
            exit_code = _check_engine_exit(
                self._engine.exec_session(name, CONTAINER_USER, session), f"attach to container '{name}'"
            )
        LOGGER.debug("session for %s ended with exit code %s", name, exit_code)
        return action

    def ensure_detached(
        self,
        name: str,
        options: ConfigurationSet,
        image: str,
        command: Sequence[str],
    ) -> str:
        record = self._engine.container_record(name)
        action = select_action(record.status)
        if action == ACTION_CREATE_AND_RUN:
            click.echo(f"Starting service container '{name}'...")
            self._engine.run_container(name, options.to_docker_args(), image, command, detach=True)
        elif action == ACTION_START_AND_ATTACH:
            click.echo(f"Restarting service container '{name}'...")
            self._engine.start(name)
        else:
            click.echo(f"Service container '{name}' is already running")
        return action

    def attach(self, name: str, command: Sequence[str] | None = None) -> str:
        record = self._engine.container_record(name)
        if record.status == STATUS_NOT_EXISTS:
            raise ContainerNotFound(f"Container '{name}' does not exist. Run 'devenv up' first.")
        action = select_action(record.status)
        session = list(command) if command is not None else session_command(banner=False)
        if record.status == STATUS_STOPPED:
            self._engine.start(name)
        _check_engine_exit(self._engine.exec_session(name, CONTAINER_USER, session), f"attach to container '{name}'")
        return action

    def existing(self, names: Sequence[str]) -> list[str]:
        return [name for name in names if self._engine.container_record(name).status != STATUS_NOT_EXISTS]

    def running(self, names: Sequence[str]) -> list[str]:
        return [name for name in names if self._engine.container_record(name).status == STATUS_RUNNING]
