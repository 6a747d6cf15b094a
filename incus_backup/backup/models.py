"""Data models for backup manifests and verification reports."""

import json
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from .._utils import rfc3339, utc_now

STATUS_OK = "ok"
STATUS_MISMATCH = "mismatch"
STATUS_MISSING = "missing"
STATUS_ERROR = "error"


class Manifest(BaseModel):
    """Per-snapshot manifest, written once at backup time."""

    model_config = ConfigDict(populate_by_name=True)

    type: str = Field(..., description="Resource kind: instance, volume or config")
    project: Optional[str] = Field(None, description="Project of an instance or volume")
    pool: Optional[str] = Field(None, description="Storage pool of a volume")
    name: Optional[str] = Field(None, description="Instance or volume name")
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
    includes: Optional[List[str]] = Field(None, description="Config parts captured")
    options: Optional[Dict[str, str]] = Field(None, description="Export options (snapshot, optimized)")

    @field_serializer("created_at")
    def _serialize_created_at(self, value: datetime) -> str:
        return rfc3339(value)

    @classmethod
    def for_instance(cls, project: str, name: str, snapshot: bool, optimized: bool) -> "Manifest":
        return cls(type="instance", project=project, name=name, options=_options(snapshot, optimized))

    @classmethod
    def for_volume(cls, project: str, pool: str, name: str, snapshot: bool, optimized: bool) -> "Manifest":
        return cls(type="volume", project=project, pool=pool, name=name, options=_options(snapshot, optimized))

    @classmethod
    def for_config(cls, includes: List[str]) -> "Manifest":
        return cls(type="config", includes=list(includes))

    def to_json(self) -> bytes:
        data = self.model_dump(by_alias=True, exclude_none=True)
        return (json.dumps(data, indent=2) + "\n").encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> "Manifest":
        return cls.model_validate_json(data)


def _options(snapshot: bool, optimized: bool) -> Dict[str, str]:
    return {"snapshot": str(bool(snapshot)).lower(), "optimized": str(bool(optimized)).lower()}


class VerifyFileResult(BaseModel):
    """Verification outcome of one file listed in checksums.txt."""

    name: str
    status: str
    expected: Optional[str] = None
    actual: Optional[str] = None
    error: Optional[str] = None


class VerifyResult(BaseModel):
    """Verification outcome of one logical snapshot."""

    type: str
    project: str = ""
    pool: str = ""
    name: str = ""
    fingerprint: str = ""
    timestamp: str
    status: str
    path: str = ""
    files: List[VerifyFileResult] = Field(default_factory=list)

    def to_dict(self) -> dict:
        data = self.model_dump(exclude_none=True)
        for key in ("project", "pool", "name", "fingerprint"):
            if not data.get(key):
                data.pop(key, None)
        if not data["files"]:
            data.pop("files")
        return data
