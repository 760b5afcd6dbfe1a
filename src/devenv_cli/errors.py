from __future__ import annotations

import click


class EngineUnavailable(click.ClickException):
    """The container engine is not installed or its daemon cannot be reached."""


class WorkspaceCreateFailure(click.ClickException):
    """The shared workspace directory could not be created or made writable."""


class UnknownContainerState(click.ClickException):
    """The engine reported a container state outside NOT_EXISTS/STOPPED/RUNNING."""


class ContainerNotFound(click.ClickException):
    """An operation needs a container that has not been created yet."""


class ConfigError(click.ClickException):
    """The launcher config file is missing, unreadable, or malformed."""


class DevEnvWarning(Exception):
    """Base for conditions that are logged and then ignored."""


class CapabilityDetectionDegraded(DevEnvWarning):
    """A host signal could not be read; it is treated as absent."""


class PermissionAdjustmentFailed(DevEnvWarning):
    """A device node permission change was refused."""


class DisplayAuthSetupFailure(DevEnvWarning):
    """The X11 auth token could not be written."""
