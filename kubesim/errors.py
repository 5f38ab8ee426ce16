from __future__ import annotations


class SimulationError(Exception):
    """Base class for errors raised by the simulator."""


class CommandError(SimulationError, ValueError):
    """A command that cannot be applied. The cluster state is left untouched."""

    reason = "BadRequest"


class NotFoundError(CommandError):
    reason = "NotFound"

    def __init__(self, resource: str, name: str) -> None:
        super().__init__(f'{resource} "{name}" not found')
        self.resource = resource
        self.name = name


class AlreadyExistsError(CommandError):
    reason = "AlreadyExists"

    def __init__(self, resource: str, name: str) -> None:
        super().__init__(f'{resource} "{name}" already exists')
        self.resource = resource
        self.name = name


class ManifestError(CommandError):
    """YAML that does not describe a supported object."""
