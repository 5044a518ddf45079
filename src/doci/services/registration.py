"""Registration and owner-driven maintenance of identifiers."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import structlog

from doci.errors import (
    Conflict,
    DuplicateCode,
    InternalError,
    NotFound,
    Unauthorized,
    ValidationError,
)
from doci.models import (
    STATUS_TRANSITIONS,
    Identifier,
    IdentifierKind,
    IdentifierStats,
    IdentifierStatus,
)
from doci.settings import Settings
from doci.utils import is_valid_part, normalize_part
from .content import ContentStore, ContentStoreError
from .ledger import Ledger, LedgerError
from .store import IdentifierStore

logger = structlog.get_logger(__name__)

MUTABLE_FIELDS = {"metadata", "status"}
IMMUTABLE_FIELDS = {
    "id",
    "prefix",
    "namespacePrefix",
    "namespace_prefix",
    "suffix",
    "ownerUserId",
    "owner_user_id",
    "kind",
    "compositeCode",
    "composite_code",
    "chainRef",
    "chain_ref",
    "metadataRef",
    "metadata_ref",
    "createdAt",
    "created_at",
    "updatedAt",
    "updated_at",
}


class RegistrationService:
    """Validates, allocates and persists identifiers; handles owner updates."""

    def __init__(
        self,
        store: IdentifierStore,
        content: ContentStore,
        settings: Settings,
        *,
        ledger: Ledger | None = None,
    ) -> None:
        self._store = store
        self._content = content
        self._ledger = ledger
        self._retries = max(settings.allocation_retries, 0)
        self._anchor_on_register = settings.anchor_on_register
        self._researcher_prefix = normalize_part(settings.researcher_prefix)

    async def register(
        self,
        *,
        kind: IdentifierKind | str,
        namespace_prefix: str,
        owner_user_id: str,
        metadata: dict[str, Any] | None = None,
        suffix: str | None = None,
        caller_user_id: str | None = None,
    ) -> Identifier:
        if caller_user_id is not None and caller_user_id != owner_user_id:
            raise Unauthorized("Identifiers can only be registered for the calling user")
        kind = self._coerce_kind(kind)
        prefix = normalize_part(namespace_prefix)
        explicit_suffix = normalize_part(suffix) if suffix else None
        metadata = metadata if metadata is not None else {}
        self._validate(kind, prefix, owner_user_id, metadata, explicit_suffix)

        status = IdentifierStatus.ACTIVE
        if self._ledger is not None and self._anchor_on_register:
            status = IdentifierStatus.PENDING

        stored = await self._insert(kind, prefix, owner_user_id, metadata, explicit_suffix, status)
        logger.info(
            "register.stored",
            code=stored.composite_code,
            kind=kind.value,
            status=stored.status.value,
        )
        if stored.status == IdentifierStatus.PENDING:
            try:
                stored = await self._anchor_on_ledger(stored)
            except LedgerError as exc:
                logger.warning("register.anchor_deferred", code=stored.composite_code, error=str(exc))
            except Conflict:
                stored = await self.get(stored.id)
        return stored

    async def get(self, identifier_id: int) -> Identifier:
        identifier = await asyncio.to_thread(self._store.get_by_id, identifier_id)
        if identifier is None:
            raise NotFound(f"Identifier {identifier_id} does not exist")
        return identifier

    async def view(self, identifier_id: int, caller_user_id: str | None) -> Identifier:
        """Like ``get``, but Pending and Revoked records are only shown to their owner."""
        identifier = await self.get(identifier_id)
        if not identifier.is_active and identifier.owner_user_id != caller_user_id:
            raise NotFound(f"Identifier {identifier_id} does not exist")
        return identifier

    async def list_for_owner(
        self, owner_user_id: str, caller_user_id: str | None = None
    ) -> list[Identifier]:
        items = await asyncio.to_thread(self._store.list_by_owner, owner_user_id)
        if caller_user_id is not None and caller_user_id != owner_user_id:
            items = [item for item in items if item.is_active]
        return items

    async def stats(self, identifier_id: int, caller_user_id: str | None = None) -> IdentifierStats:
        identifier = await self.view(identifier_id, caller_user_id)
        count = await asyncio.to_thread(self._store.resolution_count, identifier_id)
        return IdentifierStats(
            identifier_id=identifier_id,
            composite_code=identifier.composite_code,
            status=identifier.status,
            resolution_count=count,
        )

    async def update(
        self, identifier_id: int, caller_user_id: str | None, patch: dict[str, Any]
    ) -> Identifier:
        identifier = await self._owned(identifier_id, caller_user_id)
        if not isinstance(patch, dict) or not patch:
            raise ValidationError("Patch must be a non-empty object")
        immutable = sorted(set(patch) & IMMUTABLE_FIELDS)
        if immutable:
            raise ValidationError(f"Immutable fields cannot be changed: {', '.join(immutable)}")
        unknown = sorted(set(patch) - MUTABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(unknown)}")

        changes: dict[str, Any] = {}
        if "status" in patch:
            target = self._coerce_status(patch["status"])
            if target != identifier.status:
                if target != IdentifierStatus.REVOKED:
                    raise ValidationError("Status can only be changed to Revoked")
                self._check_transition(identifier.status, target)
                changes["status"] = target
        if "metadata" in patch:
            metadata = patch["metadata"]
            if not isinstance(metadata, dict):
                raise ValidationError("metadata must be an object")
            self._validate_metadata(identifier.kind, metadata)
            candidate = identifier.model_copy(update={"metadata": metadata})
            changes["metadata"] = metadata
            changes["metadata_ref"] = await self._write_content(candidate)

        if not changes:
            return identifier
        updated = await asyncio.to_thread(
            self._store.update,
            identifier.model_copy(update=changes),
            expected_status=identifier.status,
        )
        logger.info("register.updated", code=updated.composite_code, fields=sorted(changes))
        return updated

    async def revoke(self, identifier_id: int, caller_user_id: str | None) -> Identifier:
        identifier = await self._owned(identifier_id, caller_user_id)
        self._check_transition(identifier.status, IdentifierStatus.REVOKED)
        revoked = await asyncio.to_thread(
            self._store.update,
            identifier.model_copy(update={"status": IdentifierStatus.REVOKED}),
            expected_status=identifier.status,
        )
        logger.info("register.revoked", code=revoked.composite_code)
        return revoked

    async def anchor(self, identifier_id: int, caller_user_id: str | None) -> Identifier:
        """Retry ledger anchoring for a Pending identifier."""
        identifier = await self._owned(identifier_id, caller_user_id)
        if self._ledger is None:
            raise ValidationError("No ledger is configured for anchoring")
        if identifier.status != IdentifierStatus.PENDING:
            raise ValidationError(f"Only Pending identifiers can be anchored, not {identifier.status.value}")
        try:
            return await self._anchor_on_ledger(identifier)
        except LedgerError as exc:
            raise InternalError("Ledger anchoring failed, please retry") from exc

    # Internal helpers -----------------------------------------------------

    async def _insert(
        self,
        kind: IdentifierKind,
        prefix: str,
        owner_user_id: str,
        metadata: dict[str, Any],
        explicit_suffix: str | None,
        status: IdentifierStatus,
    ) -> Identifier:
        for attempt in range(self._retries + 1):
            suffix = explicit_suffix or await asyncio.to_thread(self._store.allocate_suffix, prefix)
            identifier = Identifier(
                namespace_prefix=prefix,
                suffix=suffix,
                kind=kind,
                owner_user_id=owner_user_id,
                status=status,
                metadata=metadata,
            )
            identifier.metadata_ref = await self._write_content(identifier)
            try:
                return await asyncio.to_thread(self._store.put, identifier)
            except DuplicateCode:
                if explicit_suffix:
                    raise
                logger.warning(
                    "register.retry", code=identifier.composite_code, attempt=attempt + 1
                )
        raise InternalError("Could not allocate a free suffix, please retry")

    async def _anchor_on_ledger(self, identifier: Identifier) -> Identifier:
        tx_ref = await self._ledger.anchor(
            identifier.namespace_prefix, identifier.suffix, identifier.metadata_ref or ""
        )
        anchored = identifier.model_copy(
            update={"status": IdentifierStatus.ACTIVE, "chain_ref": tx_ref}
        )
        updated = await asyncio.to_thread(
            self._store.update, anchored, expected_status=IdentifierStatus.PENDING
        )
        logger.info("register.anchored", code=updated.composite_code, tx_ref=tx_ref)
        return updated

    async def _write_content(self, identifier: Identifier) -> str:
        document = json.dumps(identifier.content_document(), sort_keys=True).encode("utf-8")
        try:
            return await self._content.put(document)
        except ContentStoreError as exc:
            logger.error("register.content_failed", code=identifier.composite_code, error=str(exc))
            raise InternalError("Metadata could not be stored") from exc

    async def _owned(self, identifier_id: int, caller_user_id: str | None) -> Identifier:
        if not caller_user_id:
            raise Unauthorized("Authentication required")
        identifier = await self.get(identifier_id)
        if identifier.owner_user_id != caller_user_id:
            raise Unauthorized("Only the owner can modify this identifier")
        return identifier

    def _validate(
        self,
        kind: IdentifierKind,
        prefix: str,
        owner_user_id: str,
        metadata: Any,
        suffix: str | None,
    ) -> None:
        if not is_valid_part(prefix):
            raise ValidationError(f"Invalid namespace prefix: {prefix!r}")
        if suffix is not None and not is_valid_part(suffix):
            raise ValidationError(f"Invalid suffix: {suffix!r}")
        if not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object")
        if kind == IdentifierKind.RESEARCHER_PROFILE:
            if not (owner_user_id or "").strip():
                raise ValidationError("Researcher profiles require a linked user")
            if prefix != self._researcher_prefix:
                raise ValidationError(
                    f"Researcher profiles must use the {self._researcher_prefix} prefix"
                )
        else:
            if not (owner_user_id or "").strip():
                raise ValidationError("ownerUserId is required")
            if prefix == self._researcher_prefix:
                raise ValidationError(
                    f"The {self._researcher_prefix} prefix is reserved for researcher profiles"
                )
        self._validate_metadata(kind, metadata)

    def _validate_metadata(self, kind: IdentifierKind, metadata: dict[str, Any]) -> None:
        if kind != IdentifierKind.PUBLICATION:
            return
        title = metadata.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Publications require a title")
        authors = metadata.get("authors")
        if not isinstance(authors, list) or not authors:
            raise ValidationError("Publications require at least one author")
        if not all(_is_named(author) for author in authors):
            raise ValidationError("Every author needs a name")

    def _check_transition(self, current: IdentifierStatus, target: IdentifierStatus) -> None:
        if (current, target) not in STATUS_TRANSITIONS:
            raise ValidationError(f"Cannot change status from {current.value} to {target.value}")

    @staticmethod
    def _coerce_kind(kind: IdentifierKind | str) -> IdentifierKind:
        try:
            return IdentifierKind(kind)
        except ValueError as exc:
            raise ValidationError(f"Unknown identifier kind: {kind!r}") from exc

    @staticmethod
    def _coerce_status(status: Any) -> IdentifierStatus:
        try:
            return IdentifierStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown status: {status!r}") from exc


def _is_named(author: Any) -> bool:
    if isinstance(author, str):
        return bool(author.strip())
    if isinstance(author, dict):
        return any(
            isinstance(author.get(key), str) and author[key].strip()
            for key in ("name", "given_name", "family_name", "given", "family")
        )
    return False
