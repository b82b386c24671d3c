from __future__ import annotations

import os
import re
from dataclasses import dataclass, field

from .errors import VolumeValidationError


APP_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
VOLUME_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]{0,63}$")


def validate_app_name(name: str) -> None:
    if not APP_NAME_RE.match(name):
        raise ValueError(
            "Invalid app name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


@dataclass(frozen=True)
class ImageRef:
    image: str
    tag: str = "latest"
    registry: str | None = None  # None: image is local, skip auth and pull

    @property
    def repo_path(self) -> str:
        if self.registry:
            return f"{self.registry.rstrip('/')}/{self.image}"
        return self.image

    @property
    def reference(self) -> str:
        return f"{self.repo_path}:{self.tag}"


@dataclass(frozen=True)
class VolumeSpec:
    name: str
    source: str


@dataclass(frozen=True)
class AppConfig:
    name: str
    environment: str
    container: ImageRef
    external_host: str
    container_port: int
    volumes: tuple[VolumeSpec, ...] = field(default_factory=tuple)

    @property
    def identity(self) -> str:
        return f"{self.name}.{self.environment}"


@dataclass(frozen=True)
class PortMapping:
    container_port: int
    host_port: int
    protocol: str = "tcp"
    host_address: str = "127.0.0.1"

    @property
    def key(self) -> str:
        """docker-py port key, e.g. '8080/tcp'."""
        return f"{int(self.container_port)}/{self.protocol}"

    def binding(self) -> tuple[str, int]:
        return (self.host_address, int(self.host_port))


@dataclass(frozen=True)
class VolumeMapping:
    name: str
    source: str
    target_root: str

    @property
    def target(self) -> str:
        return f"{self.target_root.rstrip('/')}/{self.name}"

    @classmethod
    def resolve(cls, spec: VolumeSpec, allowed_root: str, target_root: str) -> "VolumeMapping":
        """Resolve a volume source against allowed_root.

        Relative sources are taken relative to the root. The resolved path
        (symlinks included) must stay inside the root.
        """
        if not VOLUME_NAME_RE.match(spec.name) or spec.name in {".", ".."}:
            raise VolumeValidationError(f"Invalid volume name {spec.name!r}.")
        if not spec.source:
            raise VolumeValidationError(f"Volume {spec.name!r} has an empty source.")

        root = os.path.realpath(allowed_root)
        resolved = os.path.realpath(os.path.join(root, spec.source))
        if os.path.commonpath([root, resolved]) != root:
            raise VolumeValidationError(
                f"Volume {spec.name!r} source {spec.source!r} resolves to {resolved}, outside {root}."
            )
        return cls(name=spec.name, source=resolved, target_root=target_root)


@dataclass(frozen=True)
class ProxyRoute:
    external_host: str
    upstream_url: str

    @classmethod
    def for_port(cls, external_host: str, port: int, address: str = "127.0.0.1") -> "ProxyRoute":
        return cls(external_host=external_host, upstream_url=f"http://{address}:{int(port)}")
