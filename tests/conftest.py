from __future__ import annotations

import hashlib

import pytest

from doci.services.content import ContentStoreError
from doci.services.ledger import InMemoryLedger
from doci.services.store import InMemoryIdentifierStore
from doci.settings import Settings

PUBLICATION_METADATA = {
    "title": "Open Peer Review on Chain",
    "authors": [{"given_name": "Ada", "family_name": "Lovelace"}],
}


class MemoryContent:
    """Content store double keeping blobs in a dict."""

    name = "memory"

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.fail = False

    async def put(self, data: bytes) -> str:
        if self.fail:
            raise ContentStoreError("content store offline")
        ref = hashlib.sha256(data).hexdigest()
        self.blobs[ref] = data
        return ref

    async def get(self, ref: str) -> bytes:
        if self.fail or ref not in self.blobs:
            raise ContentStoreError(f"{ref} unavailable")
        return self.blobs[ref]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(data_dir=tmp_path, researcher_prefix="10.DOCIR")


@pytest.fixture
def store() -> InMemoryIdentifierStore:
    return InMemoryIdentifierStore()


@pytest.fixture
def content() -> MemoryContent:
    return MemoryContent()


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()
