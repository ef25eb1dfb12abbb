"""REST registry backend.

Endpoints (all relative to the registry URL)::

    GET  /health
    GET  /packages?q=&tag=&target=&limit=
    GET  /packages/{name}
    GET  /packages/{name}/versions/{version}
    GET  /blobs/{sha256}
    POST /packages            multipart: manifest + archive

Non-2xx responses and transport failures are translated into the
``rulestack.errors`` taxonomy at this boundary.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from urllib.parse import quote

import httpx

from rulestack.errors import (
    Conflict,
    ConnectionFailed,
    InvalidFormat,
    NotFound,
    RateLimited,
    RegistryError,
    ServerError,
    Timeout,
    Unauthorized,
)
from rulestack.registry.blobs import write_verified
from rulestack.registry.models import (
    PackageInfo,
    PackageSummary,
    PublishResult,
    RegistryConfig,
    RegistryType,
    VersionInfo,
    package_info_from_dict,
    summary_from_dict,
    version_info_from_dict,
)

logger = logging.getLogger(__name__)

_CHUNK = 64 * 1024


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(body, dict):
        for key in ("detail", "error", "message"):
            if body.get(key):
                return str(body[key])
    return response.reason_phrase


class HTTPRegistryClient:
    """Registry client for a RuleStack REST server."""

    def __init__(self, config: RegistryConfig, http_client: httpx.Client | None = None):
        self.config = config
        self.base_url = config.url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=httpx.Timeout(config.timeout))

    @property
    def type(self) -> RegistryType:
        return RegistryType.HTTP

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HTTPRegistryClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -- Transport ---------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    def _check(self, response: httpx.Response, **context) -> httpx.Response:
        """Map a non-2xx response onto the error taxonomy."""
        if response.is_success:
            return response
        status = response.status_code
        detail = _error_detail(response)
        context.setdefault("registry", self.config.name)
        if status in (401, 403):
            raise Unauthorized(f"authentication failed: {detail}", status_code=status, **context)
        if status == 404:
            raise NotFound(f"not found: {detail}", status_code=status, **context)
        if status == 409:
            raise Conflict(f"version already exists: {detail}", status_code=status, **context)
        if status == 429:
            raise RateLimited(f"rate limited: {detail}", status_code=status, **context)
        if status >= 500:
            raise ServerError(f"server error {status}: {detail}", status_code=status, **context)
        raise RegistryError(f"request failed with status {status}: {detail}", status_code=status, **context)

    def _json(self, response: httpx.Response, **context) -> dict | list:
        """Decode a 2xx body; anything but a JSON object or array is a registry error."""
        try:
            body = response.json()
        except ValueError as exc:
            content_type = response.headers.get("content-type", "unknown")
            raise RegistryError(
                f"{response.request.method} {response.request.url.path} returned a non-JSON body ({content_type})",
                status_code=response.status_code,
                registry=self.config.name,
                **context,
            ) from exc
        if not isinstance(body, (dict, list)):
            raise RegistryError(
                f"{response.request.url.path} returned unexpected JSON: {type(body).__name__}",
                status_code=response.status_code,
                registry=self.config.name,
                **context,
            )
        return body

    def _object(self, response: httpx.Response, **context) -> dict:
        body = self._json(response, **context)
        if not isinstance(body, dict):
            raise RegistryError(
                f"{response.request.url.path} returned a JSON array where an object was expected",
                status_code=response.status_code,
                registry=self.config.name,
                **context,
            )
        return body

    def _request(self, method: str, path: str, context: dict | None = None, **kwargs) -> httpx.Response:
        context = context or {}
        try:
            response = self._client.request(
                method,
                self._url(path),
                headers=self._headers(),
                timeout=self.config.timeout,
                **kwargs,
            )
        except httpx.TimeoutException as exc:
            raise Timeout(f"{method} {path} timed out after {self.config.timeout:g}s", registry=self.config.name, **context) from exc
        except httpx.TransportError as exc:
            raise ConnectionFailed(f"cannot reach {self.base_url}: {exc}", registry=self.config.name, **context) from exc
        return self._check(response, **context)

    # -- RegistryClient ----------------------------------------------------

    def health(self) -> None:
        self._request("GET", "/health")

    def search(self, query: str = "", tag: str = "", target: str = "", limit: int = 0) -> list[PackageSummary]:
        params = {}
        if query:
            params["q"] = query
        if tag:
            params["tag"] = tag
        if target:
            params["target"] = target
        if limit:
            params["limit"] = str(limit)
        body = self._json(self._request("GET", "/packages", params=params))
        rows = body.get("packages", []) if isinstance(body, dict) else body
        if not isinstance(rows, list) or not all(isinstance(row, dict) for row in rows):
            raise RegistryError("/packages returned a malformed package list", registry=self.config.name)
        return [summary_from_dict(row) for row in rows]

    def get_package(self, name: str) -> PackageInfo:
        context = {"package": name}
        response = self._request("GET", f"/packages/{quote(name, safe='@/')}", context=context)
        return package_info_from_dict(self._object(response, **context))

    def get_version(self, name: str, version: str) -> VersionInfo:
        context = {"package": name, "version": version}
        path = f"/packages/{quote(name, safe='@/')}/versions/{quote(version, safe='')}"
        body = self._object(self._request("GET", path, context=context), **context)
        return version_info_from_dict(name, body)

    def publish(self, manifest_path: str | Path, archive_path: str | Path) -> PublishResult:
        manifest_path = Path(manifest_path)
        archive_path = Path(archive_path)
        manifest_bytes = manifest_path.read_bytes()
        try:
            manifest = json.loads(manifest_bytes)
        except json.JSONDecodeError as exc:
            raise InvalidFormat(f"invalid manifest {manifest_path}: {exc}") from exc
        name = manifest.get("name", "")
        version = manifest.get("version", "")
        context = {"package": name, "version": version}

        with open(archive_path, "rb") as archive:
            files = {
                "manifest": ("manifest.json", manifest_bytes, "application/json"),
                "archive": (archive_path.name, archive, "application/gzip"),
            }
            body = self._object(self._request("POST", "/packages", context=context, files=files), **context)

        locator = self._url(f"/packages/{quote(name, safe='@/')}/versions/{quote(version, safe='')}")
        logger.info("published %s@%s to %s", name, version, self.config.name)
        return PublishResult(
            package_name=body.get("name", name),
            version=body.get("version", version),
            sha256=body.get("sha256", ""),
            locator=body.get("url") or locator,
            message=f"Published {name}@{version} to {self.config.name}",
        )

    def download_blob(self, sha256: str, dest_path: str | Path) -> None:
        path = f"/blobs/{sha256}"
        try:
            with self._client.stream(
                "GET",
                self._url(path),
                headers=self._headers(),
                timeout=self.config.timeout,
            ) as response:
                if not response.is_success:
                    response.read()
                    self._check(response, registry=self.config.name)
                write_verified(response.iter_bytes(_CHUNK), dest_path, sha256, registry=self.config.name)
        except httpx.TimeoutException as exc:
            raise Timeout(f"download of {sha256} timed out", registry=self.config.name) from exc
        except httpx.TransportError as exc:
            raise ConnectionFailed(f"download of {sha256} failed: {exc}", registry=self.config.name) from exc
