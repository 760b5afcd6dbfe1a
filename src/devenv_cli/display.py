from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path

from devenv_cli.capabilities import DRI_DEVICE_DIR, OS_WSL, HostProbe
from devenv_cli.errors import CapabilityDetectionDegraded, DisplayAuthSetupFailure
from devenv_cli.options import ConfigurationSet


LOGGER = logging.getLogger("devenv.display")

X11_SOCKET_DIR = "/tmp/.X11-unix"
DEFAULT_XAUTH_TOKEN_PATH = Path("/tmp/.docker.xauth")
XAUTH_WILDCARD_FAMILY = "ffff"
XHOST_LOCAL_GRANT = "+local:docker"
DEFAULT_DISPLAY = ":0"
HEADLESS_DISPLAY = ":99"

WSLG_DIR = "/mnt/wslg"
WSL_LIB_DIR = "/usr/lib/wsl"
WSL_GPU_DEVICE = "/dev/dxg"
WSL_DEFAULT_ENV = (
    ("DISPLAY", DEFAULT_DISPLAY),
    ("WAYLAND_DISPLAY", "wayland-0"),
    ("XDG_RUNTIME_DIR", "/tmp"),
    ("PULSE_SERVER", "unix:/tmp/pulse-socket"),
)


def _run(command: list[str], input_text: str | None = None) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, check=False, text=True, capture_output=True, input=input_text)


def rewrite_auth_records(raw_records: str) -> list[str]:
    """Replace the address-family field of each `xauth nlist` record with the wildcard.

    A record whose family is ffff matches any local client regardless of the
    hostname the container reports, which is what lets the container reuse the
    host's cookie.
    """
    rewritten: list[str] = []
    for line in str(raw_records or "").splitlines():
        record = line.strip()
        if len(record) < 4:
            continue
        candidate = XAUTH_WILDCARD_FAMILY + record[4:]
        if candidate not in rewritten:
            rewritten.append(candidate)
    return rewritten


class DisplayBridge:
    def __init__(
        self,
        probe: HostProbe | None = None,
        *,
        token_path: Path = DEFAULT_XAUTH_TOKEN_PATH,
    ) -> None:
        self._probe = probe or HostProbe()
        self._token_path = Path(token_path)

    @property
    def token_path(self) -> Path:
        return self._token_path

    def _exists(self, path: str) -> bool:
        try:
            return self._probe.exists(path)
        except CapabilityDetectionDegraded as exc:
            LOGGER.warning("display probe degraded: %s", exc)
            return False

    def _list_dir(self, path: str) -> list[str]:
        try:
            return self._probe.list_dir(path)
        except CapabilityDetectionDegraded as exc:
            LOGGER.warning("display probe degraded: %s", exc)
            return []

    def prepare(self, os_kind: str) -> ConfigurationSet:
        if os_kind == OS_WSL:
            return self._wsl_fragments()
        return self._native_fragments()

    def _wsl_fragments(self) -> ConfigurationSet:
        probe = self._probe
        fragments = ConfigurationSet()
        for name, default in WSL_DEFAULT_ENV:
            fragments.add_env(name, probe.env(name) or default)

        if self._exists(X11_SOCKET_DIR):
            fragments.add_volume(f"{X11_SOCKET_DIR}:{X11_SOCKET_DIR}:rw")
        if self._exists(WSLG_DIR):
            fragments.add_volume(f"{WSLG_DIR}:{WSLG_DIR}:ro")
        else:
            LOGGER.warning("WSLg directory not found - GUI applications may not work")
        if self._exists(WSL_LIB_DIR):
            fragments.add_volume(f"{WSL_LIB_DIR}:{WSL_LIB_DIR}:ro")
            fragments.add_env("LD_LIBRARY_PATH", f"{WSL_LIB_DIR}/lib")

        if self._exists(WSL_GPU_DEVICE):
            fragments.add_device(WSL_GPU_DEVICE)
        else:
            LOGGER.warning("WSL GPU device %s not found", WSL_GPU_DEVICE)
        for node in self._list_dir(DRI_DEVICE_DIR):
            fragments.add_device(f"{DRI_DEVICE_DIR}/{node}")
        return fragments

    def _native_fragments(self) -> ConfigurationSet:
        probe = self._probe
        fragments = ConfigurationSet()
        display = probe.env("DISPLAY")
        if not display and not self._exists(X11_SOCKET_DIR):
            LOGGER.warning("No X display available; the container will start a virtual display on %s", HEADLESS_DISPLAY)
            fragments.add_env("DISPLAY", HEADLESS_DISPLAY)
            return fragments
        if not display:
            LOGGER.warning("DISPLAY environment variable not set, defaulting to %s", DEFAULT_DISPLAY)
            display = DEFAULT_DISPLAY

        try:
            self.ensure_auth_token(display)
        except DisplayAuthSetupFailure as exc:
            LOGGER.warning("X11 authentication setup failed - GUI applications may not work: %s", exc)
        self.allow_local_clients()

        fragments.add_volume(f"{X11_SOCKET_DIR}:{X11_SOCKET_DIR}:rw")
        fragments.add_env("DISPLAY", display)
        fragments.add_env("QT_X11_NO_MITSHM", "1")
        if self._token_path.is_file():
            fragments.add_volume(f"{self._token_path}:{self._token_path}")
            fragments.add_env("XAUTHORITY", str(self._token_path))
        return fragments

    def ensure_auth_token(self, display: str) -> bool:
        """Write the wildcard-family auth records for `display` into the token file.

        Returns False without touching anything when the token already exists.
        """
        if self._token_path.exists():
            LOGGER.debug("X11 authentication file %s already present", self._token_path)
            return False
        if shutil.which("xauth") is None:
            raise DisplayAuthSetupFailure("xauth not found")

        listed = _run(["xauth", "nlist", display])
        records = rewrite_auth_records(listed.stdout if listed.returncode == 0 else "")
        if not records:
            raise DisplayAuthSetupFailure(f"no X11 authority records for display {display}")

        merged = _run(["xauth", "-f", str(self._token_path), "nmerge", "-"], input_text="\n".join(records) + "\n")
        if merged.returncode != 0:
            detail = merged.stderr.strip() or f"exit code {merged.returncode}"
            raise DisplayAuthSetupFailure(f"xauth nmerge failed: {detail}")
        try:
            os.chmod(self._token_path, 0o644)
        except OSError as exc:
            LOGGER.warning("Could not relax permissions on %s: %s", self._token_path, exc)
        LOGGER.info("X11 authentication configured in %s", self._token_path)
        return True

    def allow_local_clients(self) -> None:
        if shutil.which("xhost") is None:
            LOGGER.warning("xhost not found - local X11 access control unchanged")
            return
        result = _run(["xhost", XHOST_LOCAL_GRANT])
        if result.returncode != 0:
            LOGGER.warning("Could not configure xhost: %s", result.stderr.strip() or result.returncode)
