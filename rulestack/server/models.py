"""Pydantic models for the registry API.

Field names match what ``HTTPRegistryClient`` reads back into the
dataclasses in ``rulestack.registry.models``.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = ""


class PackageSummaryResponse(BaseModel):
    name: str
    description: str = ""
    latest: str = ""
    tags: list[str] = Field(default_factory=list)
    targets: list[str] = Field(default_factory=list)
    updated_at: str = ""


class SearchResponse(BaseModel):
    packages: list[PackageSummaryResponse] = Field(default_factory=list)
    total_count: int = 0


class VersionResponse(BaseModel):
    name: str
    version: str
    sha256: str = ""
    size: int = 0
    description: str = ""
    targets: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)
    dependencies: dict[str, str] = Field(default_factory=dict)
    published_at: str = ""


class PackageResponse(BaseModel):
    name: str
    description: str = ""
    latest: str = ""
    tags: list[str] = Field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""
    versions: list[VersionResponse] = Field(default_factory=list)


class PublishResponse(BaseModel):
    name: str
    version: str
    sha256: str
    size: int = 0
    url: str = ""


class ManifestUpload(BaseModel):
    """The ``manifest`` part of a publish request."""

    name: str
    version: str
    description: str = ""
    targets: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)
    license: str = ""
