from __future__ import annotations


class SplatError(Exception):
    """Base class for every orchestration failure."""


class ConfigError(SplatError):
    pass


class AuthError(SplatError):
    pass


class PullError(SplatError):
    pass


class CreateError(SplatError):
    """The runtime rejected the container spec; nothing was created."""


class StartError(SplatError):
    """The container exists but did not boot."""

    def __init__(self, message: str, container_id: str | None = None):
        super().__init__(message)
        self.container_id = container_id


class RenderError(SplatError):
    pass


class InstallError(SplatError):
    pass


class ReloadError(SplatError):
    """The proxy did not apply new configs. Non-fatal for the owning app."""


class VolumeValidationError(SplatError):
    pass


class PortExhaustedError(SplatError):
    pass


class ProcessNotFound(SplatError, KeyError):
    pass


class InvalidTransition(SplatError, ValueError):
    pass
