"""FastAPI application serving the RuleStack registry API.

Routes mirror what ``HTTPRegistryClient`` calls:

- ``GET  /health``
- ``GET  /packages`` search
- ``GET  /packages/{name}`` and ``/packages/{name}/versions/{version}``
- ``GET  /blobs/{sha256}``
- ``POST /packages`` authenticated multipart publish

Every store access goes through a bounded pool with a per-request
deadline; a request that cannot get a slot in time gets ``503`` instead
of queueing without bound.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import FileResponse
from pydantic import ValidationError

from rulestack import __version__
from rulestack.errors import InvalidFormat, UnsafeContent
from rulestack.manifest.models import PackageManifest
from rulestack.packaging.archive import read_embedded_manifest, validate_archive
from rulestack.packaging.security import MAX_TOTAL_SIZE
from rulestack.server.auth import require_token
from rulestack.server.models import (
    HealthResponse,
    ManifestUpload,
    PackageResponse,
    PackageSummaryResponse,
    PublishResponse,
    SearchResponse,
    VersionResponse,
)
from rulestack.server.repository import FileSystemRepository, PackageRepository, VersionExists
from rulestack.server.resilience import (
    BackoffConfig,
    PoolExhausted,
    ResourcePool,
    TransientWriteConflict,
    retry_with_backoff,
)
from rulestack.utils.deadline import Deadline

logger = logging.getLogger(__name__)

DATA_ENV = "RULESTACK_SERVER_DATA"
TOKENS_ENV = "RULESTACK_SERVER_TOKENS"


@dataclass
class ServerSettings:
    data_dir: str = "./registry-data"
    tokens: list[str] = field(default_factory=list)
    pool_size: int = 8
    request_timeout: float = 10.0
    backoff: BackoffConfig = field(default_factory=BackoffConfig)

    @classmethod
    def from_env(cls) -> "ServerSettings":
        tokens = [t.strip() for t in os.environ.get(TOKENS_ENV, "").split(",") if t.strip()]
        return cls(data_dir=os.environ.get(DATA_ENV, "./registry-data"), tokens=tokens)


def create_app(repository: PackageRepository | None = None, settings: ServerSettings | None = None) -> FastAPI:
    """Build the registry application around ``repository``."""
    settings = settings or ServerSettings.from_env()
    if repository is None:
        repository = FileSystemRepository(settings.data_dir, tokens=settings.tokens)

    app = FastAPI(
        title="RuleStack Registry",
        description="Package registry for AI-assistant rulesets.",
        version=__version__,
    )
    app.state.repository = repository
    app.state.settings = settings
    app.state.pool = ResourcePool(settings.pool_size)

    def with_store(request: Request, operation):
        """Run ``operation`` holding a pool slot, retrying write conflicts."""
        deadline = Deadline(settings.request_timeout)
        try:
            with request.app.state.pool.acquire(deadline):
                return retry_with_backoff(operation, deadline, settings.backoff)
        except PoolExhausted as exc:
            logger.warning("pool exhausted: %s", exc)
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        except TransientWriteConflict as exc:
            logger.warning("write conflict persisted: %s", exc)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="package store is busy, retry later",
            ) from exc

    # ---------------------------------------------------------------------------
    # Read endpoints
    # ---------------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse, tags=["meta"])
    def health():
        return HealthResponse(status="ok", version=__version__)

    @app.get("/packages", response_model=SearchResponse, tags=["packages"])
    def search_packages(
        request: Request,
        q: Optional[str] = Query(None, description="Free-text search over name and description"),
        tag: Optional[str] = Query(None),
        target: Optional[str] = Query(None),
        limit: int = Query(0, ge=0),
    ):
        rows = with_store(request, lambda: repository.search(q or "", tag or "", target or "", limit))
        return SearchResponse(
            packages=[PackageSummaryResponse(**row) for row in rows],
            total_count=len(rows),
        )

    # Registered before /packages/{name:path} so scoped names with a
    # trailing /versions/... are not swallowed by the package route.
    @app.get("/packages/{name:path}/versions/{version}", response_model=VersionResponse, tags=["packages"])
    def get_version(request: Request, name: str, version: str):
        record = with_store(request, lambda: repository.get_version(name, version))
        if record is None:
            raise HTTPException(status_code=404, detail=f"{name}@{version} not found")
        return VersionResponse(**record)

    @app.get("/packages/{name:path}", response_model=PackageResponse, tags=["packages"])
    def get_package(request: Request, name: str):
        pkg = with_store(request, lambda: repository.get_package(name))
        if pkg is None:
            raise HTTPException(status_code=404, detail=f"package {name} not found")
        return PackageResponse(**pkg)

    @app.get("/blobs/{sha256}", tags=["blobs"])
    def get_blob(request: Request, sha256: str):
        path = with_store(request, lambda: repository.blob_path(sha256.lower()))
        if path is None:
            raise HTTPException(status_code=404, detail=f"blob {sha256} not found")
        return FileResponse(path, media_type="application/gzip", filename=f"{sha256}.tgz")

    # ---------------------------------------------------------------------------
    # Publish
    # ---------------------------------------------------------------------------

    @app.post(
        "/packages",
        response_model=PublishResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["packages"],
    )
    def publish_package(
        request: Request,
        manifest: UploadFile = File(...),
        archive: UploadFile = File(...),
        _token: str = Depends(require_token),
    ):
        upload = _parse_manifest(manifest.file.read())
        blob = archive.file.read(MAX_TOTAL_SIZE + 1)
        if len(blob) > MAX_TOTAL_SIZE:
            raise HTTPException(status_code=413, detail="archive exceeds the maximum package size")

        _check_archive(blob, upload)

        record = upload.model_dump()
        try:
            with_store(request, lambda: repository.create_package(upload.name, upload.description, upload.tags))
            stored = with_store(request, lambda: repository.create_version(upload.name, record, blob))
        except VersionExists as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

        url = f"{str(request.base_url).rstrip('/')}/packages/{upload.name}/versions/{upload.version}"
        logger.info("published %s@%s (%s)", upload.name, upload.version, stored["sha256"])
        return PublishResponse(
            name=upload.name,
            version=upload.version,
            sha256=stored["sha256"],
            size=stored["size"],
            url=url,
        )

    return app


def _parse_manifest(raw: bytes) -> ManifestUpload:
    try:
        upload = ManifestUpload.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=f"invalid manifest: {exc}") from exc
    try:
        PackageManifest.from_dict(upload.model_dump()).validate()
    except InvalidFormat as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return upload


def _check_archive(blob: bytes, upload: ManifestUpload) -> None:
    """Validate the uploaded archive and its embedded manifest against ``upload``."""
    tmp_dir = tempfile.mkdtemp(prefix="rulestack-upload-")
    try:
        path = Path(tmp_dir) / "archive.tgz"
        path.write_bytes(blob)
        try:
            validate_archive(path)
            embedded = read_embedded_manifest(path)
        except (InvalidFormat, UnsafeContent) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)

    if (embedded.name, embedded.version) != (upload.name, upload.version):
        raise HTTPException(
            status_code=400,
            detail=(
                f"archive contains {embedded.name}@{embedded.version}, "
                f"manifest says {upload.name}@{upload.version}"
            ),
        )
