from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import click

from devenv_cli.capabilities import GPU_NVIDIA, HostProbe, detect_capabilities
from devenv_cli.composer import UserOverrides, compose_options, gpu_rule_for, provision_devices, workspace_dir_for
from devenv_cli.display import DisplayBridge
from devenv_cli.engine import STATUS_NOT_EXISTS, DockerEngine
from devenv_cli.lifecycle import LifecycleManager, ensure_workspace
from devenv_cli.services import SIDECARS, ProfileSelection, resolve_profiles, sidecar_options
from devenv_cli.settings import LauncherSettings, load_settings, resolve_config_path


LOGGER = logging.getLogger("devenv")
LOGGER.addHandler(logging.NullHandler())

LOG_LEVEL_CHOICES = ("error", "warning", "info", "debug")
LOG_LEVEL_ENV_VAR = "DEVENV_LOG_LEVEL"


def _normalize_log_level(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in LOG_LEVEL_CHOICES:
        return normalized
    return "info"


def _configure_logging(level: str) -> None:
    normalized = _normalize_log_level(level)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.INFO))
    LOGGER.propagate = False


class LauncherGroup(click.Group):
    """Click group that reports every failure, usage errors included, with exit code 1."""

    def main(self, *args: Any, **kwargs: Any) -> Any:
        kwargs["standalone_mode"] = False
        try:
            result = super().main(*args, **kwargs)
        except click.ClickException as exc:
            exc.show()
            sys.exit(1)
        except click.exceptions.Abort:
            click.echo("Aborted!", err=True)
            sys.exit(1)
        if isinstance(result, int) and result != 0:
            sys.exit(result)
        return result


@dataclass
class LauncherContext:
    settings: LauncherSettings
    engine: DockerEngine
    probe: HostProbe


def _launch_options(func: Callable[..., Any]) -> Callable[..., Any]:
    decorators = [
        click.option("--name", "container_name", default=None, help="Primary container name (default from config)"),
        click.option(
            "--profile",
            "profiles",
            multiple=True,
            help="Profile to enable: gpu, cpu, xrce-agent, mavros, qgc, bridge (repeatable)",
        ),
        click.option("--no-gpu", is_flag=True, default=False, help="Force CPU-only mode"),
        click.option("--with-qgc", is_flag=True, default=False, help="Include QGroundControl"),
        click.option("--with-xrce", is_flag=True, default=False, help="Include the XRCE-DDS agent"),
        click.option("--with-bridge", is_flag=True, default=False, help="Include the ROS2-Gazebo bridge"),
        click.option("--with-mavros", is_flag=True, default=False, help="Include the MAVROS bridge"),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


def _profile_selection(
    profiles: tuple[str, ...],
    *,
    no_gpu: bool,
    with_qgc: bool,
    with_xrce: bool,
    with_bridge: bool,
    with_mavros: bool,
) -> ProfileSelection:
    requested = list(profiles)
    for enabled, profile in (
        (with_qgc, "qgc"),
        (with_xrce, "xrce-agent"),
        (with_bridge, "bridge"),
        (with_mavros, "mavros"),
    ):
        if enabled:
            requested.append(profile)
    return resolve_profiles(requested, no_gpu=no_gpu)


def _container_name(obj: LauncherContext, container_name: str | None) -> str:
    name = str(container_name or "").strip() or obj.settings.container_name
    if "/" in name or name in {".", ".."}:
        raise click.BadParameter(f"Invalid container name: {name!r}", param_hint="'--name'")
    return name


def _user_overrides(obj: LauncherContext, container_name: str, workspace: Path, *, force_cpu: bool) -> UserOverrides:
    git_user = obj.probe.env("GIT_USER")
    git_token = obj.probe.env("GIT_TOKEN")
    if bool(git_user) != bool(git_token):
        LOGGER.warning("GIT_USER and GIT_TOKEN must be set together; git credentials not forwarded")
    return UserOverrides(
        container_name=container_name,
        workspace_dir=str(workspace),
        uid=os.getuid(),
        gid=os.getgid(),
        force_cpu=force_cpu,
        git_user=git_user,
        git_token=git_token,
        extra_env=obj.settings.env,
        extra_volumes=obj.settings.volumes,
        rmw_implementation=obj.settings.rmw_implementation,
        gz_version=obj.settings.gz_version,
    )


@click.group(cls=LauncherGroup, invoke_without_command=True, help="Launch the PX4 ROS2 simulation development container")
@click.option("--config-file", default=None, help="TOML config file overriding launcher defaults")
@click.option(
    "--log-level",
    default=lambda: _normalize_log_level(os.environ.get(LOG_LEVEL_ENV_VAR)),
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
    show_default="info",
)
@click.pass_context
def cli(ctx: click.Context, config_file: str | None, log_level: str) -> None:
    _configure_logging(log_level)
    settings = load_settings(resolve_config_path(config_file))
    ctx.obj = LauncherContext(settings=settings, engine=DockerEngine(), probe=HostProbe())
    if ctx.invoked_subcommand is None:
        ctx.invoke(up)


@cli.command(help="Start the development environment and attach to it")
@_launch_options
@click.pass_obj
def up(
    obj: LauncherContext,
    container_name: str | None,
    profiles: tuple[str, ...],
    no_gpu: bool,
    with_qgc: bool,
    with_xrce: bool,
    with_bridge: bool,
    with_mavros: bool,
) -> None:
    selection = _profile_selection(
        profiles,
        no_gpu=no_gpu,
        with_qgc=with_qgc,
        with_xrce=with_xrce,
        with_bridge=with_bridge,
        with_mavros=with_mavros,
    )
    name = _container_name(obj, container_name)
    obj.engine.ensure_available()

    snapshot = detect_capabilities(obj.probe)
    click.echo(f"Detected OS: {snapshot.os_kind}")
    click.echo(f"Detected GPU: {snapshot.gpu_kind}")
    if selection.require_gpu and snapshot.gpu_kind != GPU_NVIDIA:
        LOGGER.warning("gpu profile requested but no working NVIDIA GPU was detected; continuing without GPU")

    workspace = ensure_workspace(Path(workspace_dir_for(name)))
    click.echo(f"Container name: {name}")
    click.echo(f"Workspace directory: {workspace}")

    display = DisplayBridge(obj.probe).prepare(snapshot.os_kind)
    overrides = _user_overrides(obj, name, workspace, force_cpu=selection.force_cpu)
    composed = compose_options(snapshot, overrides, display)
    for warning in composed.warnings:
        LOGGER.warning(warning)
    click.echo(f"GPU mode: {composed.gpu_mode}")
    provision_devices(composed.provision)

    manager = LifecycleManager(obj.engine)
    for service in selection.sidecars:
        manager.ensure_detached(
            service.container_name,
            sidecar_options(service, overrides, display),
            obj.settings.image,
            service.command_args(),
        )
    manager.launch(name, composed.options, obj.settings.image)
    click.echo("Docker environment session completed")


def _managed_names(obj: LauncherContext, container_name: str | None, selection: ProfileSelection) -> list[str]:
    return [*selection.sidecar_names, _container_name(obj, container_name)]


@cli.command(help="Stop the development container and selected services")
@_launch_options
@click.pass_obj
def down(obj: LauncherContext, container_name: str | None, profiles: tuple[str, ...], no_gpu: bool, **with_flags: bool) -> None:
    selection = _profile_selection(profiles, no_gpu=no_gpu, **with_flags)
    obj.engine.ensure_available()
    manager = LifecycleManager(obj.engine)
    running = manager.running(_managed_names(obj, container_name, selection))
    if not running:
        click.echo("Nothing to stop")
        return
    for name in running:
        click.echo(f"Stopping {name}...")
        obj.engine.stop(name)
    click.echo("Services stopped successfully!")


@cli.command(help="Restart the development container and selected services")
@_launch_options
@click.pass_obj
def restart(
    obj: LauncherContext, container_name: str | None, profiles: tuple[str, ...], no_gpu: bool, **with_flags: bool
) -> None:
    selection = _profile_selection(profiles, no_gpu=no_gpu, **with_flags)
    obj.engine.ensure_available()
    manager = LifecycleManager(obj.engine)
    existing = manager.existing(_managed_names(obj, container_name, selection))
    if not existing:
        raise click.ClickException("No containers to restart. Run 'devenv up' first.")
    for name in existing:
        click.echo(f"Restarting {name}...")
        obj.engine.restart(name)
    click.echo("Services restarted successfully!")


@cli.command(help="Follow logs of the development container or a service")
@click.option("--name", "container_name", default=None, help="Primary container name (default from config)")
@click.option("--service", type=click.Choice(tuple(SIDECARS)), default=None, help="Show logs of a service instead")
@click.option("--no-follow", is_flag=True, default=False)
@click.pass_obj
def logs(obj: LauncherContext, container_name: str | None, service: str | None, no_follow: bool) -> None:
    obj.engine.ensure_available()
    name = SIDECARS[service].container_name if service else _container_name(obj, container_name)
    if obj.engine.container_record(name).status == STATUS_NOT_EXISTS:
        raise click.ClickException(f"Container '{name}' does not exist")
    obj.engine.logs(name, follow=not no_follow)


@cli.command(help="Open a shell in the development container")
@click.option("--name", "container_name", default=None, help="Primary container name (default from config)")
@click.pass_obj
def shell(obj: LauncherContext, container_name: str | None) -> None:
    obj.engine.ensure_available()
    LifecycleManager(obj.engine).attach(_container_name(obj, container_name))


@cli.command(help="Build the simulation image")
@click.pass_obj
def build(obj: LauncherContext) -> None:
    settings = obj.settings
    if not settings.dockerfile.is_file():
        raise click.ClickException(f"Dockerfile not found: {settings.dockerfile}")
    if not settings.build_context.is_dir():
        raise click.ClickException(f"Build context directory not found: {settings.build_context}")
    obj.engine.ensure_available()
    click.echo(f"Building image '{settings.image}' from {settings.dockerfile}")
    obj.engine.build(dockerfile=settings.dockerfile, tag=settings.image, context=settings.build_context)
    click.echo("Image built successfully!")


@cli.command(help="Show detected host capabilities and container states")
@_launch_options
@click.pass_obj
def status(
    obj: LauncherContext, container_name: str | None, profiles: tuple[str, ...], no_gpu: bool, **with_flags: bool
) -> None:
    selection = _profile_selection(profiles, no_gpu=no_gpu, **with_flags)
    obj.engine.ensure_available()
    snapshot = detect_capabilities(obj.probe)
    if selection.force_cpu:
        snapshot = snapshot.without_gpu()
    name = _container_name(obj, container_name)

    click.echo(f"OS: {snapshot.os_kind}")
    click.echo(f"GPU: {snapshot.gpu_kind}")
    click.echo(f"GPU mode: {gpu_rule_for(snapshot).mode}")
    click.echo(f"Engine version: {snapshot.engine_version}")
    click.echo(f"Workspace: {workspace_dir_for(name)}")
    sidecar_names = selection.sidecar_names or [service.container_name for service in SIDECARS.values()]
    for managed in [name, *sidecar_names]:
        record = obj.engine.container_record(managed)
        click.echo(f"{record.name}: {record.status}")


@cli.command(help="Remove the development container and all service containers")
@click.option("--name", "container_name", default=None, help="Primary container name (default from config)")
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation")
@click.pass_obj
def clean(obj: LauncherContext, container_name: str | None, yes: bool) -> None:
    obj.engine.ensure_available()
    name = _container_name(obj, container_name)
    names = [name, *(service.container_name for service in SIDECARS.values())]
    existing = LifecycleManager(obj.engine).existing(names)
    if not existing:
        click.echo("Nothing to clean")
        return
    if not yes:
        click.confirm(f"This will remove containers: {', '.join(existing)}. Are you sure?", abort=True)
    for managed in existing:
        click.echo(f"Removing {managed}...")
        obj.engine.remove(managed)
    click.echo(f"Cleanup completed! Workspace kept at {workspace_dir_for(name)}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
