"""
Persistence for learned pattern snapshots.

The learner writes its whole state as one JSON object keyed by a session
name. Two object stores are supported: a local directory (development,
tests, single-host deploys) and Supabase Storage (hosted deploys without
a persistent filesystem).
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Protocol

import httpx
from loguru import logger
from pydantic import ValidationError

from aves.exceptions import ConfigurationError, PatternStoreError
from aves.learning.models import PatternSnapshot
from config import Settings


class BlobStore(Protocol):
    """Minimal object-storage capability: upload and download by key."""

    async def upload(self, key: str, data: bytes) -> None: ...

    async def download(self, key: str) -> bytes | None: ...


class LocalBlobStore:
    """Objects stored as files under a root directory."""

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / key

    async def upload(self, key: str, data: bytes) -> None:
        await asyncio.to_thread(self._write, self._path(key), data)

    async def download(self, key: str) -> bytes | None:
        return await asyncio.to_thread(self._read, self._path(key))

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write to a sibling temp file and rename so readers never see a partial object
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @staticmethod
    def _read(path: Path) -> bytes | None:
        if not path.exists():
            return None
        return path.read_bytes()


class SupabaseBlobStore:
    """Supabase Storage REST client."""

    def __init__(
        self,
        url: str,
        service_key: str,
        bucket: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize Supabase Storage client.

        Args:
            url: Supabase project URL
            service_key: Service role key (bypasses storage RLS)
            bucket: Storage bucket holding the snapshots
            timeout: Request timeout in seconds
            client: Optional preconfigured client (tests pass a MockTransport)
        """
        self.base_url = url.rstrip("/")
        self.bucket = bucket
        self._headers = {
            "Authorization": f"Bearer {service_key}",
            "apikey": service_key,
        }
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    def _object_url(self, key: str) -> str:
        return f"{self.base_url}/storage/v1/object/{self.bucket}/{key}"

    async def close(self) -> None:
        await self.client.aclose()

    async def upload(self, key: str, data: bytes) -> None:
        try:
            response = await self.client.post(
                self._object_url(key),
                content=data,
                headers={
                    **self._headers,
                    "Content-Type": "application/json",
                    "x-upsert": "true",
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise PatternStoreError(
                f"Upload of {self.bucket}/{key} failed: {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise PatternStoreError(f"Upload of {self.bucket}/{key} failed: {e}") from e

    async def download(self, key: str) -> bytes | None:
        try:
            response = await self.client.get(self._object_url(key), headers=self._headers)
        except httpx.HTTPError as e:
            raise PatternStoreError(f"Download of {self.bucket}/{key} failed: {e}") from e

        # Storage answers 400 for a missing object in some project versions
        if response.status_code in (400, 404):
            return None
        if response.is_error:
            raise PatternStoreError(
                f"Download of {self.bucket}/{key} failed: {response.status_code}",
                status_code=response.status_code,
            )
        return response.content


class PatternStore:
    """Serializes PatternSnapshot objects to a BlobStore."""

    def __init__(self, blob_store: BlobStore, session_name: str = "learned-patterns"):
        self.blob_store = blob_store
        self.key = f"{session_name}.json"

    async def save(self, snapshot: PatternSnapshot) -> None:
        data = snapshot.model_dump_json(indent=2).encode("utf-8")
        await self.blob_store.upload(self.key, data)
        logger.debug(
            "Persisted {} patterns to {} ({} bytes)",
            len(snapshot.patterns),
            self.key,
            len(data),
        )

    async def load(self) -> PatternSnapshot | None:
        """Load the snapshot; missing or malformed data yields None."""
        raw = await self.blob_store.download(self.key)
        if raw is None:
            logger.info("No persisted patterns found at {}", self.key)
            return None
        try:
            return PatternSnapshot.model_validate(json.loads(raw))
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
            logger.warning(f"Ignoring malformed pattern snapshot {self.key}: {e}")
            return None


def create_blob_store(settings: Settings) -> BlobStore:
    """Build the blob store selected by ``pattern_store_backend``."""
    if settings.pattern_store_backend == "supabase":
        if not settings.has_supabase_configured():
            raise ConfigurationError(
                "pattern_store_backend=supabase requires SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY"
            )
        return SupabaseBlobStore(
            url=settings.supabase_url,
            service_key=settings.supabase_service_role_key,
            bucket=settings.pattern_bucket,
            timeout=settings.storage_timeout_seconds,
        )
    return LocalBlobStore(settings.pattern_store_dir)


def create_pattern_store(settings: Settings) -> PatternStore:
    return PatternStore(create_blob_store(settings), settings.pattern_session_name)
