#!/usr/bin/env python3

from __future__ import annotations

import glob
import os
import shlex
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path


SERVICE_ACCOUNT = "user"
SERVICE_HOME = Path("/home/user")
SERVICE_WORKSPACE = SERVICE_HOME / "shared_volume"
DEFAULT_PASSWORD = "user"
DEVICE_GROUPS = ("dialout", "plugdev", "video", "audio", "render", "input", "tty")
RELAXED_DEVICE_PATTERNS = ("/dev/dri/*", "/dev/dxg", "/dev/input/event*")
HEADLESS_DISPLAY = ":99"
XVFB_SCREEN = "1600x1200x24+32"


@dataclass(frozen=True)
class Identity:
    uid: int
    gid: int


def _run(command: list[str], check: bool = True, input_text: str | None = None) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, check=check, text=True, capture_output=True, input=input_text)


def _run_success(command: list[str]) -> bool:
    result = _run(command, check=False)
    return result.returncode == 0


def _warn(message: str) -> None:
    print(f"[entrypoint] warning: {message}", file=sys.stderr)


def _info(message: str) -> None:
    print(f"[entrypoint] {message}")


def _parse_id(raw_value: str | None) -> int | None:
    value = str(raw_value or "").strip()
    if not value:
        return None
    if not value.isdigit():
        raise RuntimeError(f"Invalid numeric id: {value!r}")
    return int(value, 10)


def desired_identity(environ: dict[str, str] | None = None) -> Identity | None:
    source = os.environ if environ is None else environ
    uid = _parse_id(source.get("LOCAL_USER_ID"))
    if uid is None:
        return None
    gid = _parse_id(source.get("LOCAL_GROUP_ID"))
    return Identity(uid=uid, gid=uid if gid is None else gid)


def read_current_identity(account: str = SERVICE_ACCOUNT) -> Identity | None:
    uid_result = _run(["id", "-u", account], check=False)
    if uid_result.returncode != 0:
        return None
    gid_result = _run(["id", "-g", account], check=False)
    return Identity(uid=int(uid_result.stdout.strip()), gid=int(gid_result.stdout.strip()))


def plan_reconciliation(desired: Identity, current: Identity | None, account: str = SERVICE_ACCOUNT) -> list[list[str]]:
    """Return the minimal commands that move the service account to `desired`.

    An empty plan means the account already matches.
    """
    if current is None:
        commands: list[list[str]] = []
        if not _run_success(["getent", "group", str(desired.gid)]):
            if _run_success(["getent", "group", account]):
                commands.append(["groupmod", "--gid", str(desired.gid), account])
            else:
                commands.append(["groupadd", "--gid", str(desired.gid), account])
        if not _run_success(["getent", "group", "sudo"]):
            commands.append(["groupadd", "--system", "sudo"])
        commands.append(
            [
                "useradd",
                "--shell",
                "/bin/bash",
                "--uid",
                str(desired.uid),
                "--gid",
                str(desired.gid),
                "--comment",
                "",
                "--create-home",
                account,
            ]
        )
        commands.append(["usermod", "--append", "--groups", "sudo", account])
        return commands

    commands = []
    if current.gid != desired.gid:
        if not _run_success(["getent", "group", str(desired.gid)]):
            commands.append(["groupmod", "--gid", str(desired.gid), account])
        commands.append(["usermod", "--gid", str(desired.gid), account])
    if current.uid != desired.uid:
        commands.append(["usermod", "--uid", str(desired.uid), account])
    return commands


def apply_reconciliation(desired: Identity, current: Identity | None, account: str = SERVICE_ACCOUNT) -> Identity:
    plan = plan_reconciliation(desired, current, account)
    if current is None:
        for command in plan:
            _run(command)
        _run(["chpasswd"], input_text=f"{account}:{DEFAULT_PASSWORD}\n")
        _info(f"Created account {account} with UID {desired.uid}")
        return desired

    if not plan:
        return current
    failed = False
    for command in plan:
        if not _run_success(command):
            _warn(f"{' '.join(command)} failed")
            failed = True
    resolved = read_current_identity(account) or current
    if failed:
        _warn(f"account {account} is UID {resolved.uid} / GID {resolved.gid}")
    else:
        _info(f"Reconciled account {account} to UID {resolved.uid} / GID {resolved.gid}")
    return resolved


def ensure_ownership(identity: Identity, paths: tuple[Path, ...] = (SERVICE_HOME, SERVICE_WORKSPACE)) -> None:
    try:
        SERVICE_WORKSPACE.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        _warn(f"unable to create {SERVICE_WORKSPACE}: {exc}")
    for path in paths:
        if not _run_success(["chown", "-R", f"{identity.uid}:{identity.gid}", str(path)]):
            _warn(f"unable to change ownership of {path}")


def _group_members(group: str) -> list[str] | None:
    result = _run(["getent", "group", group], check=False)
    if result.returncode != 0 or not result.stdout:
        return None
    members = result.stdout.strip().split(":")[-1]
    return [member for member in members.split(",") if member]


def ensure_device_groups(account: str = SERVICE_ACCOUNT, groups: tuple[str, ...] = DEVICE_GROUPS) -> list[str]:
    missing: list[str] = []
    for group in groups:
        members = _group_members(group)
        if members is None or account in members:
            continue
        missing.append(group)
    if missing and not _run_success(["usermod", "--append", "--groups", ",".join(missing), account]):
        _warn(f"unable to add {account} to groups {','.join(missing)}")
        return []
    return missing


def relax_device_permissions(patterns: tuple[str, ...] = RELAXED_DEVICE_PATTERNS) -> None:
    for pattern in patterns:
        for path in sorted(glob.glob(pattern)):
            try:
                os.chmod(path, 0o666)
            except OSError as exc:
                _warn(f"could not set permissions for {path}: {exc}")


def start_virtual_display(environ: dict[str, str] | None = None) -> subprocess.Popen | None:
    source = os.environ if environ is None else environ
    if source.get("DISPLAY") != HEADLESS_DISPLAY or shutil.which("Xvfb") is None:
        return None
    _info("Starting Xvfb")
    return subprocess.Popen(
        ["Xvfb", HEADLESS_DISPLAY, "-screen", "0", XVFB_SCREEN],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )


def handoff_script(command: list[str], environ: dict[str, str] | None = None) -> str:
    source = os.environ if environ is None else environ
    parts = [
        f"export DEV_DIR={SERVICE_WORKSPACE}",
        "export PX4_DIR=$DEV_DIR/PX4-Autopilot",
        "export ROS2_WS=$DEV_DIR/ros2_ws",
        "export OSQP_SRC=$DEV_DIR",
    ]
    ros_distro = str(source.get("ROS_DISTRO", "")).strip()
    if ros_distro:
        parts.append(f"source /opt/ros/{shlex.quote(ros_distro)}/setup.bash")
    parts.append(f"source {SERVICE_HOME}/.bashrc")
    parts.append(shlex.join(command))
    return " && ".join(parts)


def main(argv: list[str] | None = None) -> None:
    command = list(sys.argv[1:] if argv is None else argv) or ["bash"]
    start_virtual_display()

    desired = desired_identity()
    if desired is None or os.geteuid() != 0:
        os.execvp(command[0], command)

    _info(f"Starting with UID : {desired.uid}")
    resolved = apply_reconciliation(desired, read_current_identity())
    ensure_ownership(resolved)
    ensure_device_groups()
    relax_device_permissions()

    os.execvp("gosu", ["gosu", SERVICE_ACCOUNT, "bash", "-c", handoff_script(command)])


if __name__ == "__main__":
    main()
