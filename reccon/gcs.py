#!/usr/bin/env python3
"""Minimal Google Cloud Storage uploader (JSON API, multipart uploads)."""
from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

LOG = logging.getLogger("gcs")

SCOPE = "https://www.googleapis.com/auth/devstorage.read_write"
UPLOAD_URL = "https://storage.googleapis.com/upload/storage/v1/b/{bucket}/o?uploadType=multipart"
METADATA_TOKEN_URL = (
    "http://metadata.google.internal/computeMetadata/v1/"
    "instance/service-accounts/default/token?scopes=" + quote(SCOPE, safe="")
)


class GcsError(Exception):
    """Raised when a GCS path is malformed or an upload fails."""


@dataclass(frozen=True)
class GcsPath:
    bucket: str
    prefix: str = ""

    @classmethod
    def parse(cls, value: str) -> "GcsPath":
        if not value.startswith("gs://"):
            raise GcsError(f'GCS path must start with "gs://", but got {value!r}')
        rest = value[len("gs://"):]
        bucket, sep, prefix = rest.partition("/")
        if not bucket:
            raise GcsError(f"GCS path has no bucket: {value!r}")
        if not sep:
            return cls(bucket=bucket)
        if prefix and not prefix.endswith("/"):
            raise GcsError(f"Non-empty GCS prefix must end with slash, but got {prefix!r}")
        return cls(bucket=bucket, prefix=prefix)

    def object_name(self, name: str) -> str:
        return f"{self.prefix}{name}"


def multipart_boundary() -> str:
    """Random boundary with 128 bits of entropy for a multipart/related body."""
    raw = secrets.token_hex(16)
    return "-".join(raw[i:i + 8] for i in range(0, 32, 8))


def build_multipart_body(
    metadata_json: str,
    content_type: str,
    contents: bytes,
    *,
    boundary_factory: Callable[[], str] = multipart_boundary,
) -> tuple[str, bytes]:
    """Return ``(boundary, body)`` for a GCS multipart upload.

    The boundary is regenerated until it appears in none of the parts.
    """
    meta_bytes = metadata_json.encode("utf-8")
    type_bytes = content_type.encode("utf-8")
    while True:
        boundary = boundary_factory()
        marker = boundary.encode("ascii")
        if marker in meta_bytes or marker in type_bytes or marker in contents:
            continue
        break

    delimiter = b"--" + marker
    body = b"".join(
        [
            delimiter, b"\r\n",
            b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
            meta_bytes, b"\r\n",
            delimiter, b"\r\n",
            b"Content-Type: ", type_bytes, b"\r\n\r\n",
            contents, b"\r\n",
            delimiter, b"--\r\n",
        ]
    )
    return boundary, body


class StaticTokenProvider:
    def __init__(self, token: str) -> None:
        self._token = token

    def __call__(self) -> str:
        return self._token


class MetadataServerTokenProvider:
    """Fetches (and caches until shortly before expiry) a token from the compute metadata server."""

    def __init__(self, *, timeout: float = 5.0, url: str = METADATA_TOKEN_URL) -> None:
        self.timeout = timeout
        self.url = url
        self._token: str | None = None
        self._expires_at = 0.0

    def __call__(self) -> str:
        now = time.monotonic()
        if self._token and now < self._expires_at:
            return self._token
        request = Request(self.url, headers={"Metadata-Flavor": "Google"})
        try:
            with urlopen(request, timeout=self.timeout) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except (URLError, OSError, ValueError) as exc:
            raise GcsError(f"Failed to get GCS auth token: {exc}") from exc
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token:
            raise GcsError("Failed to get GCS auth token: no access_token in response")
        expires_in = payload.get("expires_in", 0)
        try:
            lifetime = float(expires_in)
        except (TypeError, ValueError):
            lifetime = 0.0
        self._token = token
        self._expires_at = now + max(0.0, lifetime - 60.0)
        return token


class GcsClient:
    def __init__(
        self,
        path: GcsPath,
        *,
        token_provider: Callable[[], str],
        timeout: float = 30.0,
    ) -> None:
        self.path = path
        self.token_provider = token_provider
        self.timeout = timeout

    def put(
        self,
        name: str,
        contents: bytes,
        content_type: str,
        metadata: Mapping[str, str],
    ) -> None:
        """Write an object and set its custom metadata.

        ``content_type`` must be suitable for raw inclusion in an HTTP header.
        """
        token = self.token_provider()
        object_name = self.path.object_name(name)
        metadata_json = json.dumps(
            {"name": object_name, "metadata": {str(k): str(v) for k, v in metadata.items()}}
        )
        boundary, body = build_multipart_body(metadata_json, content_type, contents)
        request = Request(
            UPLOAD_URL.format(bucket=quote(self.path.bucket, safe="")),
            data=body,
            method="POST",
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": f"multipart/related; boundary={boundary}",
            },
        )
        try:
            with urlopen(request, timeout=self.timeout) as response:
                response.read()
        except HTTPError as exc:
            raise GcsError(f"Failed to upload to GCS: HTTP {exc.code} for {object_name}") from exc
        except (URLError, OSError) as exc:
            raise GcsError(f"Failed to upload to GCS: {exc}") from exc
        LOG.info("uploaded gs://%s/%s (%d bytes)", self.path.bucket, object_name, len(contents))


def build_client(upload_cfg: Mapping[str, object] | None) -> GcsClient | None:
    """Return a client for the ``upload`` config section, or None when uploads are off."""
    upload_cfg = upload_cfg or {}
    bucket = str(upload_cfg.get("gcs_bucket") or "").strip()
    if not bucket:
        return None
    path = GcsPath.parse(bucket)
    token = str(upload_cfg.get("access_token") or "").strip()
    provider: Callable[[], str]
    if token:
        provider = StaticTokenProvider(token)
    else:
        provider = MetadataServerTokenProvider()
    timeout = float(upload_cfg.get("timeout_sec", 30.0) or 30.0)
    return GcsClient(path, token_provider=provider, timeout=timeout)
