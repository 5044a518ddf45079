"""Content-addressed storage for identifier metadata documents."""

from __future__ import annotations

import asyncio
import hashlib
import re
from pathlib import Path
from typing import Protocol

import httpx
import structlog

from doci.settings import Settings

logger = structlog.get_logger(__name__)

SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")


class ContentStoreError(RuntimeError):
    """Raised when the content store cannot serve a request."""


class ContentStore(Protocol):
    """Protocol for content-addressed blob stores."""

    name: str

    async def put(self, data: bytes) -> str:
        ...

    async def get(self, ref: str) -> bytes:
        ...


class LocalContentStore:
    """Stores blobs on disk under their SHA-256 digest."""

    name = "local"

    def __init__(self, root: Path) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocalContentStore":
        return cls(settings.content_dir)

    async def put(self, data: bytes) -> str:
        return await asyncio.to_thread(self._put_sync, data)

    async def get(self, ref: str) -> bytes:
        return await asyncio.to_thread(self._get_sync, ref)

    def _path_for(self, ref: str) -> Path:
        if not SHA256_PATTERN.match(ref):
            raise ContentStoreError(f"Malformed content reference: {ref}")
        return self._root / ref[:2] / f"{ref}.json"

    def _put_sync(self, data: bytes) -> str:
        ref = hashlib.sha256(data).hexdigest()
        path = self._path_for(ref)
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = path.with_suffix(".tmp")
            temp_path.write_bytes(data)
            temp_path.replace(path)
        logger.debug("content.put", store=self.name, ref=ref)
        return ref

    def _get_sync(self, ref: str) -> bytes:
        path = self._path_for(ref)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise ContentStoreError(f"Content {ref} is unavailable") from exc


class IpfsContentStore:
    """Talks to an IPFS node through its HTTP RPC API."""

    name = "ipfs"

    def __init__(self, client: httpx.AsyncClient, settings: Settings) -> None:
        self._client = client
        self._base_url = settings.ipfs_api_url.rstrip("/")

    async def put(self, data: bytes) -> str:
        try:
            response = await self._client.post(
                f"{self._base_url}/add",
                params={"pin": "true", "cid-version": 1},
                files={"file": ("metadata.json", data, "application/json")},
                timeout=30,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("content.put_failed", store=self.name, error=str(exc))
            raise ContentStoreError("IPFS add failed") from exc
        try:
            ref = response.json().get("Hash")
        except (ValueError, AttributeError) as exc:
            raise ContentStoreError("IPFS add returned an unreadable response") from exc
        if not isinstance(ref, str) or not ref:
            raise ContentStoreError("IPFS add returned no content hash")
        logger.debug("content.put", store=self.name, ref=ref)
        return ref

    async def get(self, ref: str) -> bytes:
        try:
            response = await self._client.post(
                f"{self._base_url}/cat", params={"arg": ref}, timeout=30
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("content.get_failed", store=self.name, ref=ref, error=str(exc))
            raise ContentStoreError(f"Content {ref} is unavailable") from exc
        return response.content
