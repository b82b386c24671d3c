from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError
from .models import AppConfig, ImageRef, VolumeSpec, validate_app_name


class ContainerSection(BaseModel):
    ecr: str | None = Field(None, description="Remote registry address; omit for local images")
    image: str = Field(..., min_length=1)
    tag: str = Field("latest", min_length=1)

    @field_validator("ecr")
    @classmethod
    def _blank_registry_is_none(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return v.strip()


class NetSection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    external_host: str = Field(..., alias="external-host", min_length=1)
    container_port: int = Field(..., alias="container-port", ge=1, le=65535)


class VolumeSection(BaseModel):
    name: str = Field(..., min_length=1)
    source: str = Field(..., min_length=1)


class AppFile(BaseModel):
    """Schema of one application definition file."""

    name: str
    environment: str
    container: ContainerSection
    net: NetSection
    volumes: list[VolumeSection] = Field(default_factory=list)

    @field_validator("name", "environment")
    @classmethod
    def _dns_safe(cls, v: str) -> str:
        validate_app_name(v)
        return v

    def to_config(self) -> AppConfig:
        return AppConfig(
            name=self.name,
            environment=self.environment,
            container=ImageRef(
                image=self.container.image,
                tag=self.container.tag,
                registry=self.container.ecr,
            ),
            external_host=self.net.external_host,
            container_port=self.net.container_port,
            volumes=tuple(VolumeSpec(name=v.name, source=v.source) for v in self.volumes),
        )


def parse_app_config(text: str, origin: str = "<string>") -> AppConfig:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"{origin}: invalid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{origin}: YAML root must be a mapping")
    try:
        return AppFile.model_validate(data).to_config()
    except ValidationError as e:
        raise ConfigError(f"{origin}: {e}") from e


def load_app_config(path: str | Path) -> AppConfig:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"{p}: cannot read config: {e}") from e
    return parse_app_config(text, origin=str(p))
