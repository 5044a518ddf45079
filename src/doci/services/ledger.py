"""Clients for the external ledger that anchors identifiers."""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import quote

import httpx
import structlog

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class LedgerEntry:
    tx_ref: str
    content_ref: str


class LedgerError(RuntimeError):
    """Raised when the ledger cannot be reached or rejects a call."""


class Ledger(Protocol):
    """Call contract of the on-chain registry."""

    name: str

    async def anchor(self, prefix: str, suffix: str, content_ref: str) -> str:
        ...

    async def lookup(self, prefix: str, suffix: str) -> LedgerEntry | None:
        ...


class HttpLedger:
    """Ledger gateway reached over a small JSON API.

    ``POST {base}/anchors`` records an anchor and returns ``{"tx_ref": ...}``;
    ``GET {base}/anchors/{prefix}/{suffix}`` returns the entry or 404.
    """

    name = "ledger"

    def __init__(self, client: httpx.AsyncClient, base_url: str) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")

    async def anchor(self, prefix: str, suffix: str, content_ref: str) -> str:
        payload = {"prefix": prefix, "suffix": suffix, "content_ref": content_ref}
        try:
            response = await self._client.post(f"{self._base_url}/anchors", json=payload, timeout=30)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("ledger.anchor_failed", prefix=prefix, suffix=suffix, error=str(exc))
            raise LedgerError("Ledger anchoring failed") from exc
        tx_ref = _json_object(response).get("tx_ref")
        if not tx_ref:
            raise LedgerError("Ledger returned no transaction reference")
        logger.info("ledger.anchored", prefix=prefix, suffix=suffix, tx_ref=tx_ref)
        return tx_ref

    async def lookup(self, prefix: str, suffix: str) -> LedgerEntry | None:
        url = f"{self._base_url}/anchors/{quote(prefix, safe='')}/{quote(suffix, safe='')}"
        try:
            response = await self._client.get(url, timeout=30)
            if response.status_code == httpx.codes.NOT_FOUND:
                return None
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("ledger.lookup_failed", prefix=prefix, suffix=suffix, error=str(exc))
            raise LedgerError("Ledger lookup failed") from exc
        payload = _json_object(response)
        try:
            return LedgerEntry(tx_ref=payload["tx_ref"], content_ref=payload["content_ref"])
        except (KeyError, TypeError) as exc:
            raise LedgerError("Ledger returned a malformed entry") from exc


def _json_object(response: httpx.Response) -> dict:
    try:
        payload = response.json()
    except ValueError as exc:
        raise LedgerError("Ledger returned a non-JSON response") from exc
    if not isinstance(payload, dict):
        raise LedgerError("Ledger returned an unexpected response")
    return payload


class InMemoryLedger:
    """Process-local ledger used in development and tests."""

    name = "memory-ledger"

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], LedgerEntry] = {}
        self._lock = asyncio.Lock()

    async def anchor(self, prefix: str, suffix: str, content_ref: str) -> str:
        async with self._lock:
            existing = self._entries.get((prefix, suffix))
            if existing is not None:
                raise LedgerError(f"{prefix}/{suffix} is already anchored")
            digest = hashlib.sha256(f"{prefix}/{suffix}:{content_ref}".encode()).hexdigest()
            entry = LedgerEntry(tx_ref=f"tx-{digest[:32]}", content_ref=content_ref)
            self._entries[(prefix, suffix)] = entry
            return entry.tx_ref

    async def lookup(self, prefix: str, suffix: str) -> LedgerEntry | None:
        async with self._lock:
            return self._entries.get((prefix, suffix))
