from __future__ import annotations

import logging
from typing import Iterable


LOGGER = logging.getLogger("devenv.options")

CATEGORY_FLAG = "flag"
CATEGORY_NETWORK = "network"
CATEGORY_ENV = "env"
CATEGORY_VOLUME = "volume"
CATEGORY_DEVICE = "device"
CATEGORY_PORT = "port"
CATEGORIES = (
    CATEGORY_FLAG,
    CATEGORY_NETWORK,
    CATEGORY_ENV,
    CATEGORY_VOLUME,
    CATEGORY_DEVICE,
    CATEGORY_PORT,
)
LIST_CATEGORIES = (CATEGORY_ENV, CATEGORY_VOLUME, CATEGORY_DEVICE, CATEGORY_PORT)


def _parse_env_entry(entry: str) -> tuple[str, str]:
    key, sep, value = str(entry).partition("=")
    key = key.strip()
    if not sep or not key:
        raise ValueError(f"Invalid environment entry: {entry!r} (expected KEY=VALUE)")
    if any(ch.isspace() for ch in key):
        raise ValueError(f"Invalid environment entry: {entry!r} (key must not contain whitespace)")
    return key, value


class ConfigurationSet:
    """Category-scoped container launch arguments.

    List-valued categories (env, volume, device, port) only ever grow and never
    hold the same fragment twice. Environment entries are keyed by variable name,
    so a later contributor replaces an earlier value for the same key. Flags and
    the network mode are single-valued per name; a later contributor wins.
    """

    def __init__(self) -> None:
        self._flags: dict[str, str | None] = {}
        self._network: str | None = None
        self._env: dict[str, str] = {}
        self._volumes: list[str] = []
        self._devices: list[str] = []
        self._ports: list[str] = []

    def set_flag(self, name: str, value: str | None = None) -> "ConfigurationSet":
        if name in self._flags and self._flags[name] != value:
            LOGGER.debug("flag %s overridden: %r -> %r", name, self._flags[name], value)
        self._flags[name] = value
        return self

    def set_network(self, mode: str) -> "ConfigurationSet":
        if self._network is not None and self._network != mode:
            LOGGER.debug("network mode overridden: %s -> %s", self._network, mode)
        self._network = mode
        return self

    def add_env(self, key: str, value: str) -> "ConfigurationSet":
        key, value = _parse_env_entry(f"{key}={value}")
        if key in self._env and self._env[key] != value:
            LOGGER.debug("env %s overridden: %r -> %r", key, self._env[key], value)
        self._env[key] = value
        return self

    def add_env_entry(self, entry: str) -> "ConfigurationSet":
        key, value = _parse_env_entry(entry)
        return self.add_env(key, value)

    def add_volume(self, spec: str) -> "ConfigurationSet":
        if spec not in self._volumes:
            self._volumes.append(spec)
        return self

    def add_device(self, path: str) -> "ConfigurationSet":
        if path not in self._devices:
            self._devices.append(path)
        return self

    def add_port(self, spec: str) -> "ConfigurationSet":
        if spec not in self._ports:
            self._ports.append(spec)
        return self

    def merge(self, other: "ConfigurationSet") -> "ConfigurationSet":
        for name, value in other._flags.items():
            self.set_flag(name, value)
        if other._network is not None:
            self.set_network(other._network)
        for key, value in other._env.items():
            self.add_env(key, value)
        for spec in other._volumes:
            self.add_volume(spec)
        for path in other._devices:
            self.add_device(path)
        for spec in other._ports:
            self.add_port(spec)
        return self

    @property
    def network(self) -> str | None:
        return self._network

    def flag(self, name: str, default: str | None = None) -> str | None:
        return self._flags.get(name, default)

    def has_flag(self, name: str) -> bool:
        return name in self._flags

    def env(self) -> dict[str, str]:
        return dict(self._env)

    def volumes(self) -> list[str]:
        return list(self._volumes)

    def devices(self) -> list[str]:
        return list(self._devices)

    def ports(self) -> list[str]:
        return list(self._ports)

    def categories(self) -> dict[str, list[str]]:
        flags = [name if value is None else f"{name}={value}" for name, value in self._flags.items()]
        return {
            CATEGORY_FLAG: flags,
            CATEGORY_NETWORK: [self._network] if self._network is not None else [],
            CATEGORY_ENV: [f"{key}={value}" for key, value in self._env.items()],
            CATEGORY_VOLUME: list(self._volumes),
            CATEGORY_DEVICE: list(self._devices),
            CATEGORY_PORT: list(self._ports),
        }

    def as_sets(self) -> dict[str, frozenset[str]]:
        categories = self.categories()
        return {name: frozenset(categories[name]) for name in LIST_CATEGORIES}

    def to_docker_args(self) -> list[str]:
        args: list[str] = []
        for name, value in self._flags.items():
            args.append(name)
            if value is not None:
                args.append(value)
        if self._network is not None:
            args.extend(["--network", self._network])
        for key, value in self._env.items():
            args.extend(["--env", f"{key}={value}"])
        for spec in self._volumes:
            args.extend(["--volume", spec])
        for path in self._devices:
            args.extend(["--device", path])
        for spec in self._ports:
            args.extend(["--publish", spec])
        return args

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ConfigurationSet):
            return NotImplemented
        return self.categories() == other.categories()

    def __repr__(self) -> str:
        return f"ConfigurationSet({self.categories()!r})"

    @classmethod
    def from_fragments(
        cls,
        *,
        env: Iterable[tuple[str, str]] = (),
        volumes: Iterable[str] = (),
        devices: Iterable[str] = (),
    ) -> "ConfigurationSet":
        options = cls()
        for key, value in env:
            options.add_env(key, value)
        for spec in volumes:
            options.add_volume(spec)
        for path in devices:
            options.add_device(path)
        return options
