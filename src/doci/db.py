"""SQLite persistence layer for the DOCI registry."""

from __future__ import annotations

from datetime import datetime
from functools import lru_cache
from pathlib import Path

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel, create_engine

from doci.models import utcnow


class IdentifierRecord(SQLModel, table=True):
    """Registered identifier row; never deleted."""

    __table_args__ = (UniqueConstraint("namespace_prefix", "suffix", name="uq_prefix_suffix"),)

    id: int | None = Field(default=None, primary_key=True)
    composite_code: str = Field(index=True, unique=True)
    namespace_prefix: str = Field(index=True)
    suffix: str
    kind: str
    owner_user_id: str = Field(index=True)
    status: str
    metadata_json: str = Field(default="{}")
    metadata_ref: str | None = None
    chain_ref: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class NamespaceCounter(SQLModel, table=True):
    """Last suffix value handed out per namespace prefix."""

    prefix: str = Field(primary_key=True)
    last_value: int = Field(default=0)


class ResolutionEventRecord(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    identifier_id: int = Field(foreign_key="identifierrecord.id", index=True)
    composite_code: str
    requested_at: datetime = Field(default_factory=utcnow)
    requester_context: str = Field(default="{}")


class EscrowRecord(SQLModel, table=True):
    """Escrow account row guarded by an optimistic ``version`` counter."""

    id: int | None = Field(default=None, primary_key=True)
    payer_ref: str
    manuscript_ref: str
    amount: int
    required_approvals: int
    approvers_json: str = Field(default="[]")
    state: str
    version: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class EscrowTransferRecord(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    escrow_id: int = Field(foreign_key="escrowrecord.id", index=True)
    source_ref: str
    destination_ref: str
    amount: int
    reason: str
    created_at: datetime = Field(default_factory=utcnow)


def create_engine_for_path(db_path: Path):
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(
        f"sqlite:///{db_path}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )


def init_db(engine) -> None:
    SQLModel.metadata.create_all(engine)


@lru_cache(maxsize=4)
def get_engine(path_str: str):
    engine = create_engine_for_path(Path(path_str))
    init_db(engine)
    return engine
