"""Core data models used throughout the DOCI registry."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from doci.utils import composite_code


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive values read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class WireModel(BaseModel):
    """Snake-case attributes in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class IdentifierKind(str, Enum):
    PUBLICATION = "Publication"
    RESEARCHER_PROFILE = "ResearcherProfile"


class IdentifierStatus(str, Enum):
    PENDING = "Pending"
    ACTIVE = "Active"
    REVOKED = "Revoked"


STATUS_TRANSITIONS: set[tuple[IdentifierStatus, IdentifierStatus]] = {
    (IdentifierStatus.PENDING, IdentifierStatus.ACTIVE),
    (IdentifierStatus.PENDING, IdentifierStatus.REVOKED),
    (IdentifierStatus.ACTIVE, IdentifierStatus.REVOKED),
}


class Identifier(WireModel):
    """A registered publication or researcher-profile identifier."""

    id: int | None = None
    namespace_prefix: str
    suffix: str
    kind: IdentifierKind
    owner_user_id: str
    status: IdentifierStatus = IdentifierStatus.ACTIVE
    metadata: dict[str, Any] = Field(default_factory=dict)
    metadata_ref: str | None = None
    chain_ref: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def composite_code(self) -> str:
        return composite_code(self.namespace_prefix, self.suffix)

    @property
    def is_active(self) -> bool:
        return self.status == IdentifierStatus.ACTIVE

    def to_wire(self) -> dict[str, Any]:
        payload = super().to_wire()
        payload["compositeCode"] = self.composite_code
        return payload

    def content_document(self) -> dict[str, Any]:
        """Document written to the content store and read back on fallback."""
        return {
            "kind": self.kind.value,
            "metadata": self.metadata,
            "namespace_prefix": self.namespace_prefix,
            "owner_user_id": self.owner_user_id,
            "suffix": self.suffix,
        }


class RegistrationRequest(WireModel):
    """Body of ``POST /identifiers``."""

    kind: IdentifierKind
    namespace_prefix: str
    owner_user_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    suffix: str | None = None


class Resolution(BaseModel):
    """Outcome of a successful resolve call."""

    kind: IdentifierKind
    identifier: Identifier
    source: str = "store"

    def to_wire(self) -> dict[str, Any]:
        return {"exists": True, "kind": self.kind.value, "data": self.identifier.to_wire()}


class ResolutionEvent(BaseModel):
    """Append-only analytics entry for a resolved identifier."""

    identifier_id: int
    composite_code: str
    requested_at: datetime = Field(default_factory=utcnow)
    requester_context: dict[str, Any] = Field(default_factory=dict)


class IdentifierStats(WireModel):
    identifier_id: int
    composite_code: str
    status: IdentifierStatus
    resolution_count: int
