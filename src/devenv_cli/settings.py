from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from devenv_cli.composer import DEFAULT_CONTAINER_NAME, DEFAULT_GZ_VERSION, DEFAULT_RMW_IMPLEMENTATION
from devenv_cli.errors import ConfigError


DEFAULT_IMAGE = "px4-dev-simulation-ubuntu24"
DEFAULT_DOCKERFILE = "docker/Dockerfile_simulation-ubuntu24"
DEFAULT_BUILD_CONTEXT = "docker"
CONFIG_FILE_NAME = "devenv.toml"
CONFIG_ENV_VAR = "DEVENV_CONFIG"

_STRING_KEYS = ("image", "container_name", "dockerfile", "build_context", "rmw_implementation", "gz_version")


@dataclass(frozen=True)
class LauncherSettings:
    image: str = DEFAULT_IMAGE
    container_name: str = DEFAULT_CONTAINER_NAME
    dockerfile: Path = Path(DEFAULT_DOCKERFILE)
    build_context: Path = Path(DEFAULT_BUILD_CONTEXT)
    rmw_implementation: str = DEFAULT_RMW_IMPLEMENTATION
    gz_version: str = DEFAULT_GZ_VERSION
    env: tuple[str, ...] = ()
    volumes: tuple[str, ...] = ()
    source: Path | None = None


def _repo_root() -> Path:
    for parent in Path(__file__).resolve().parents:
        if (parent / "pyproject.toml").exists():
            return parent
    return Path(__file__).resolve().parent.parent.parent


def _default_config_file() -> Path:
    config_file = _repo_root() / "config" / CONFIG_FILE_NAME
    if config_file.exists():
        return config_file

    fallback = Path.cwd() / "config" / CONFIG_FILE_NAME
    if fallback.exists():
        return fallback

    return config_file


def resolve_config_path(explicit: str | None, environ: dict[str, str] | None = None) -> Path | None:
    source = os.environ if environ is None else environ
    if explicit:
        path = Path(explicit).expanduser()
        if not path.is_file():
            raise ConfigError(f"Config file does not exist: {path}")
        return path
    from_env = str(source.get(CONFIG_ENV_VAR, "")).strip()
    if from_env:
        path = Path(from_env).expanduser()
        if not path.is_file():
            raise ConfigError(f"{CONFIG_ENV_VAR} points to a missing file: {path}")
        return path
    default = _default_config_file()
    return default if default.is_file() else None


def _string_list(raw: Any, key: str, config_path: Path) -> tuple[str, ...]:
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ConfigError(f"Invalid '{key}' in {config_path}: expected a list of strings")
    seen: list[str] = []
    for item in raw:
        value = item.strip()
        if value and value not in seen:
            seen.append(value)
    return tuple(seen)


def _env_table(raw: Any, config_path: Path) -> tuple[str, ...]:
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid 'env' in {config_path}: expected a table of KEY = \"value\"")
    entries: list[str] = []
    for key, value in raw.items():
        if not isinstance(value, (str, int, float, bool)):
            raise ConfigError(f"Invalid env value for {key!r} in {config_path}")
        if isinstance(value, bool):
            value = "1" if value else "0"
        entries.append(f"{key}={value}")
    return tuple(entries)


def _resolve_path(value: str, base: Path) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else (base / path).resolve()


def load_settings(config_path: Path | None) -> LauncherSettings:
    repo_root = _repo_root()
    defaults = LauncherSettings(
        dockerfile=repo_root / DEFAULT_DOCKERFILE,
        build_context=repo_root / DEFAULT_BUILD_CONTEXT,
    )
    if config_path is None:
        return defaults

    try:
        parsed = tomllib.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeError) as exc:
        raise ConfigError(f"Unable to read config file {config_path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Unable to parse config file {config_path}: {exc}") from exc

    values: dict[str, Any] = {}
    for key in _STRING_KEYS:
        if key not in parsed:
            continue
        raw = parsed[key]
        if not isinstance(raw, str) or not raw.strip():
            raise ConfigError(f"Invalid '{key}' in {config_path}: expected a non-empty string")
        values[key] = raw.strip()

    base = config_path.resolve().parent
    return LauncherSettings(
        image=values.get("image", defaults.image),
        container_name=values.get("container_name", defaults.container_name),
        dockerfile=_resolve_path(values["dockerfile"], base) if "dockerfile" in values else defaults.dockerfile,
        build_context=(
            _resolve_path(values["build_context"], base) if "build_context" in values else defaults.build_context
        ),
        rmw_implementation=values.get("rmw_implementation", defaults.rmw_implementation),
        gz_version=values.get("gz_version", defaults.gz_version),
        env=_env_table(parsed["env"], config_path) if "env" in parsed else (),
        volumes=_string_list(parsed["volumes"], "volumes", config_path) if "volumes" in parsed else (),
        source=config_path,
    )
