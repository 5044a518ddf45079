"""Lookup providers tried in order when resolving a composite code."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import structlog

from doci.errors import DociError, DuplicateCode
from doci.models import Identifier, IdentifierKind, IdentifierStatus
from doci.utils import composite_code, normalize_part
from .content import ContentStore, ContentStoreError
from .ledger import Ledger, LedgerError
from .store import IdentifierStore

logger = structlog.get_logger(__name__)


class LookupStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(slots=True)
class LookupResult:
    status: LookupStatus
    provider: str
    identifier: Identifier | None = None
    error: str | None = None

    @classmethod
    def found(cls, provider: str, identifier: Identifier) -> "LookupResult":
        return cls(status=LookupStatus.FOUND, provider=provider, identifier=identifier)

    @classmethod
    def not_found(cls, provider: str) -> "LookupResult":
        return cls(status=LookupStatus.NOT_FOUND, provider=provider)

    @classmethod
    def failed(cls, provider: str, error: str) -> "LookupResult":
        return cls(status=LookupStatus.ERROR, provider=provider, error=error)


class LookupProvider(Protocol):
    """Protocol for identifier lookup providers."""

    name: str

    async def lookup(self, prefix: str, suffix: str) -> LookupResult:
        ...


class StoreLookupProvider:
    """Exact match against the local Identifier Store."""

    name = "store"

    def __init__(self, store: IdentifierStore) -> None:
        self._store = store

    async def lookup(self, prefix: str, suffix: str) -> LookupResult:
        try:
            identifier = await asyncio.to_thread(self._store.get, composite_code(prefix, suffix))
        except DociError as exc:
            return LookupResult.failed(self.name, exc.message)
        if identifier is None:
            return LookupResult.not_found(self.name)
        return LookupResult.found(self.name, identifier)


class LedgerLookupProvider:
    """Falls back to the ledger and the content store, then backfills the store."""

    name = "ledger"

    def __init__(
        self,
        ledger: Ledger,
        content: ContentStore,
        store: IdentifierStore,
        *,
        researcher_prefix: str,
    ) -> None:
        self._ledger = ledger
        self._content = content
        self._store = store
        self._researcher_prefix = normalize_part(researcher_prefix)

    async def lookup(self, prefix: str, suffix: str) -> LookupResult:
        try:
            entry = await self._ledger.lookup(prefix, suffix)
        except LedgerError as exc:
            return LookupResult.failed(self.name, str(exc))
        if entry is None:
            return LookupResult.not_found(self.name)

        try:
            document = json.loads(await self._content.get(entry.content_ref))
        except (ContentStoreError, ValueError) as exc:
            logger.warning("ledger.content_unavailable", ref=entry.content_ref, error=str(exc))
            return LookupResult.failed(self.name, "Anchored metadata is unavailable")

        identifier = self._assemble(prefix, suffix, document, entry.tx_ref, entry.content_ref)
        if identifier is None:
            return LookupResult.failed(self.name, "Anchored metadata is malformed")
        return LookupResult.found(self.name, await self._backfill(identifier))

    def _assemble(
        self, prefix: str, suffix: str, document: dict, tx_ref: str, content_ref: str
    ) -> Identifier | None:
        if not isinstance(document, dict):
            return None
        if prefix == self._researcher_prefix:
            kind = IdentifierKind.RESEARCHER_PROFILE
        else:
            try:
                kind = IdentifierKind(document.get("kind", IdentifierKind.PUBLICATION.value))
            except ValueError:
                return None
        owner = document.get("owner_user_id")
        if not owner:
            return None
        try:
            return Identifier(
                namespace_prefix=prefix,
                suffix=suffix,
                kind=kind,
                owner_user_id=str(owner),
                status=IdentifierStatus.ACTIVE,
                metadata=document.get("metadata") or {},
                metadata_ref=content_ref,
                chain_ref=tx_ref,
            )
        except (ValueError, TypeError) as exc:
            logger.warning("ledger.document_invalid", ref=content_ref, error=str(exc))
            return None

    async def _backfill(self, identifier: Identifier) -> Identifier:
        try:
            stored = await asyncio.to_thread(self._store.put, identifier)
        except DuplicateCode:
            existing = await asyncio.to_thread(self._store.get, identifier.composite_code)
            return existing or identifier
        except DociError as exc:
            logger.warning("ledger.backfill_failed", code=identifier.composite_code, error=exc.message)
            return identifier
        logger.info("ledger.backfilled", code=stored.composite_code, id=stored.id)
        return stored


class ProviderChain:
    """Tries providers in order until one answers definitively.

    ``FOUND`` stops the walk, ``NOT_FOUND`` moves on to the next provider and
    ``ERROR`` gives up so callers can tell a broken dependency from a miss.
    """

    def __init__(self, providers: Iterable[LookupProvider]) -> None:
        self._providers = list(providers)

    @property
    def names(self) -> list[str]:
        return [provider.name for provider in self._providers]

    async def lookup(self, prefix: str, suffix: str) -> LookupResult:
        for provider in self._providers:
            logger.debug("chain.invoke", provider=provider.name)
            result = await provider.lookup(prefix, suffix)
            if result.status == LookupStatus.FOUND:
                logger.info("chain.hit", provider=provider.name)
                return result
            if result.status == LookupStatus.ERROR:
                logger.warning("chain.error", provider=provider.name, error=result.error)
                return result
        logger.info("chain.miss", prefix=prefix, suffix=suffix)
        return LookupResult.not_found("chain")


def build_provider_chain(
    store: IdentifierStore,
    *,
    ledger: Ledger | None = None,
    content: ContentStore | None = None,
    researcher_prefix: str,
) -> ProviderChain:
    providers: list[LookupProvider] = [StoreLookupProvider(store)]
    if ledger is not None and content is not None:
        providers.append(
            LedgerLookupProvider(ledger, content, store, researcher_prefix=researcher_prefix)
        )
    return ProviderChain(providers)
