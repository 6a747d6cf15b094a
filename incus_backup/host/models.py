"""Pydantic models for host resources captured in backups."""

from typing import Dict

from pydantic import BaseModel, Field, field_validator


class _HostResource(BaseModel):
    name: str = Field(..., min_length=1)

    @field_validator("config", mode="before", check_fields=False)
    @classmethod
    def _none_config(cls, v):
        return v or {}


class Project(_HostResource):
    """Project with its configuration keys."""

    description: str = ""
    config: Dict[str, str] = Field(default_factory=dict)


class Profile(_HostResource):
    description: str = ""
    config: Dict[str, str] = Field(default_factory=dict)
    devices: Dict[str, Dict[str, str]] = Field(default_factory=dict)

    @field_validator("devices", mode="before")
    @classmethod
    def _none_devices(cls, v):
        return v or {}


class Network(_HostResource):
    """Network definition; only managed networks can be reconciled."""

    description: str = ""
    managed: bool = True
    type: str = ""
    config: Dict[str, str] = Field(default_factory=dict)


class StoragePool(_HostResource):
    driver: str = ""
    description: str = ""
    config: Dict[str, str] = Field(default_factory=dict)


class Instance(_HostResource):
    project: str = "default"
    type: str = "container"
    status: str = ""


class CustomVolume(_HostResource):
    project: str = "default"
    pool: str = ""
    content_type: str = "filesystem"
