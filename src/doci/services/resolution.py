"""Resolution of composite codes into identifier records."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from doci.errors import InternalError, NotFound
from doci.models import IdentifierKind, Resolution, ResolutionEvent
from doci.utils import composite_code, is_valid_part, normalize_part
from .providers import LookupStatus, ProviderChain
from .store import IdentifierStore

logger = structlog.get_logger(__name__)


class ResolutionService:
    """Determines the kind of a composite code and returns its record."""

    def __init__(
        self,
        store: IdentifierStore,
        chain: ProviderChain,
        *,
        researcher_prefix: str,
    ) -> None:
        self._store = store
        self._chain = chain
        self._researcher_prefix = normalize_part(researcher_prefix)

    async def resolve(
        self,
        prefix: str,
        suffix: str,
        requester_context: dict[str, Any] | None = None,
    ) -> Resolution:
        prefix, suffix = normalize_part(prefix), normalize_part(suffix)
        code = composite_code(prefix, suffix)
        logger.info("resolve.attempt", code=code)
        if not (is_valid_part(prefix) and is_valid_part(suffix)):
            raise NotFound(f"{code} is not a valid composite code")

        result = await self._chain.lookup(prefix, suffix)
        if result.status == LookupStatus.ERROR:
            raise InternalError(f"Could not determine whether {code} exists")
        identifier = result.identifier
        if result.status == LookupStatus.NOT_FOUND or identifier is None:
            raise NotFound(f"{code} is not registered")
        if not identifier.is_active:
            logger.info("resolve.withheld", code=code, status=identifier.status.value)
            raise NotFound(f"{code} is not registered")

        kind = self.kind_for(prefix, identifier.kind)
        await self._record_event(identifier.id, code, requester_context or {})
        logger.info("resolve.hit", code=code, kind=kind.value, source=result.provider)
        return Resolution(kind=kind, identifier=identifier, source=result.provider)

    def kind_for(self, prefix: str, stored_kind: IdentifierKind) -> IdentifierKind:
        """The researcher prefix always names researcher profiles."""
        if normalize_part(prefix) == self._researcher_prefix:
            return IdentifierKind.RESEARCHER_PROFILE
        return stored_kind

    async def _record_event(
        self, identifier_id: int | None, code: str, context: dict[str, Any]
    ) -> None:
        if identifier_id is None:
            return
        event = ResolutionEvent(
            identifier_id=identifier_id, composite_code=code, requester_context=context
        )
        try:
            await asyncio.to_thread(self._store.record_resolution, event)
        except Exception as exc:  # analytics must never fail a resolution
            logger.warning("resolve.event_failed", code=code, error=str(exc))
