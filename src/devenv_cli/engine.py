from __future__ import annotations

import logging
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import click

from devenv_cli.errors import EngineUnavailable, UnknownContainerState


LOGGER = logging.getLogger("devenv.engine")

STATUS_NOT_EXISTS = "NOT_EXISTS"
STATUS_STOPPED = "STOPPED"
STATUS_RUNNING = "RUNNING"
CONTAINER_STATUSES = (STATUS_NOT_EXISTS, STATUS_STOPPED, STATUS_RUNNING)

_ENGINE_STATE_MAP = {
    "running": STATUS_RUNNING,
    "created": STATUS_STOPPED,
    "exited": STATUS_STOPPED,
    "paused": STATUS_STOPPED,
    "dead": STATUS_STOPPED,
}


@dataclass(frozen=True)
class ContainerRecord:
    name: str
    status: str


def _run(cmd: Iterable[str], cwd: Path | None = None) -> None:
    cmd = list(cmd)
    LOGGER.debug("running: %s", " ".join(cmd))
    try:
        subprocess.run(cmd, cwd=str(cwd) if cwd else None, check=True)
    except subprocess.CalledProcessError as exc:
        raise click.ClickException(f"Command failed with exit code {exc.returncode}: {' '.join(cmd)}")


def _run_interactive(cmd: Iterable[str]) -> int:
    cmd = list(cmd)
    LOGGER.debug("running interactive: %s", " ".join(cmd))
    return subprocess.run(cmd, check=False).returncode


def _capture(cmd: Iterable[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(list(cmd), check=False, text=True, capture_output=True)


def _tty_flags() -> list[str]:
    if sys.stdin is not None and sys.stdin.isatty():
        return ["-i", "-t"]
    return ["-i"]


def parse_container_state(name: str, ps_output: str) -> str:
    for line in str(ps_output or "").splitlines():
        listed_name, _, state = line.strip().partition("\t")
        if listed_name != name:
            continue
        normalized = state.strip().lower()
        status = _ENGINE_STATE_MAP.get(normalized)
        if status is None:
            raise UnknownContainerState(f"Container '{name}' reported unexpected state {state.strip()!r}")
        return status
    return STATUS_NOT_EXISTS


class DockerEngine:
    def __init__(self, executable: str = "docker") -> None:
        self.executable = executable

    def ensure_available(self) -> None:
        if shutil.which(self.executable) is None:
            raise EngineUnavailable(f"{self.executable} command not found in PATH. Please install Docker first.")
        result = _capture([self.executable, "info", "--format", "{{.ServerVersion}}"])
        if result.returncode != 0:
            detail = result.stderr.strip() or "docker info failed"
            raise EngineUnavailable(f"Docker daemon is not running. Please start Docker first. ({detail})")
        LOGGER.debug("docker daemon version %s", result.stdout.strip())

    def container_record(self, name: str) -> ContainerRecord:
        result = _capture(
            [self.executable, "ps", "-a", "--filter", f"name=^{name}$", "--format", "{{.Names}}\t{{.State}}"]
        )
        if result.returncode != 0:
            detail = result.stderr.strip() or f"exit code {result.returncode}"
            raise EngineUnavailable(f"Unable to query container '{name}': {detail}")
        return ContainerRecord(name=name, status=parse_container_state(name, result.stdout))

    def run_container(
        self,
        name: str,
        args: Iterable[str],
        image: str,
        command: Iterable[str] = (),
        *,
        detach: bool = False,
    ) -> int:
        cmd = [self.executable, "run"]
        cmd.extend(["-d"] if detach else _tty_flags())
        cmd.extend(["--name", name, *args, image, *command])
        if detach:
            _run(cmd)
            return 0
        return _run_interactive(cmd)

    def start(self, name: str) -> None:
        _run([self.executable, "start", name])

    def exec_session(self, name: str, user: str, command: Iterable[str]) -> int:
        return _run_interactive(
            [self.executable, "exec", "--user", user, *_tty_flags(), name, "env", "TERM=xterm-256color", *command]
        )

    def stop(self, name: str) -> None:
        _run([self.executable, "stop", name])

    def restart(self, name: str) -> None:
        _run([self.executable, "restart", name])

    def remove(self, name: str) -> None:
        _run([self.executable, "rm", "-f", name])

    def logs(self, name: str, *, follow: bool = True) -> int:
        cmd = [self.executable, "logs"]
        if follow:
            cmd.append("-f")
        cmd.append(name)
        return _run_interactive(cmd)

    def build(self, *, dockerfile: Path, tag: str, context: Path) -> None:
        _run([self.executable, "build", "-f", str(dockerfile), "-t", tag, str(context)], cwd=context)
