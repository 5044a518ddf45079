"""Identifier Store: the persistent table of registered identifiers."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Protocol

import structlog
from sqlalchemy import func, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from doci.db import (
    IdentifierRecord,
    NamespaceCounter,
    ResolutionEventRecord,
    create_engine_for_path,
    init_db,
)
from doci.errors import Conflict, DociError, DuplicateCode, InternalError, NotFound
from doci.models import (
    Identifier,
    IdentifierKind,
    IdentifierStatus,
    ResolutionEvent,
    as_utc,
    utcnow,
)
from doci.settings import Settings
from doci.utils import format_suffix, normalize_part, numeric_suffix_value

logger = structlog.get_logger(__name__)

MAX_ALLOCATION_ROUNDS = 64


class IdentifierStore(Protocol):
    """Capability interface for identifier persistence."""

    def get(self, composite_code: str) -> Identifier | None:
        ...

    def get_by_id(self, identifier_id: int) -> Identifier | None:
        ...

    def put(self, identifier: Identifier) -> Identifier:
        ...

    def update(
        self, identifier: Identifier, *, expected_status: IdentifierStatus | None = None
    ) -> Identifier:
        ...

    def allocate_suffix(self, prefix: str) -> str:
        ...

    def list_by_owner(self, owner_user_id: str) -> list[Identifier]:
        ...

    def record_resolution(self, event: ResolutionEvent) -> None:
        ...

    def resolution_count(self, identifier_id: int) -> int:
        ...


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except DociError:
        raise
    except SQLAlchemyError as exc:
        logger.error("store.failure", operation=operation, error=str(exc))
        raise InternalError() from exc


class SqlIdentifierStore:
    """SQLite-backed identifier store.

    Suffix allocation is serialized per prefix by a compare-and-swap on the
    ``NamespaceCounter`` row: read the current value, then update it only if it
    is still unchanged. A lost race simply re-reads and tries again.
    """

    def __init__(self, engine, *, suffix_width: int = 6) -> None:
        self._engine = engine
        self._suffix_width = suffix_width

    @classmethod
    def from_settings(cls, settings: Settings) -> "SqlIdentifierStore":
        engine = create_engine_for_path(settings.db_path)
        init_db(engine)
        return cls(engine, suffix_width=settings.suffix_width)

    @property
    def engine(self):
        return self._engine

    def get(self, composite_code: str) -> Identifier | None:
        with _storage_errors("get"):
            with Session(self._engine) as session:
                statement = select(IdentifierRecord).where(
                    IdentifierRecord.composite_code == composite_code
                )
                record = session.exec(statement).first()
                return self._record_to_identifier(record) if record else None

    def get_by_id(self, identifier_id: int) -> Identifier | None:
        with _storage_errors("get_by_id"):
            with Session(self._engine) as session:
                record = session.get(IdentifierRecord, identifier_id)
                return self._record_to_identifier(record) if record else None

    def put(self, identifier: Identifier) -> Identifier:
        record = IdentifierRecord(
            composite_code=identifier.composite_code,
            namespace_prefix=normalize_part(identifier.namespace_prefix),
            suffix=normalize_part(identifier.suffix),
            kind=identifier.kind.value,
            owner_user_id=identifier.owner_user_id,
            status=identifier.status.value,
            metadata_json=json.dumps(identifier.metadata, sort_keys=True),
            metadata_ref=identifier.metadata_ref,
            chain_ref=identifier.chain_ref,
            created_at=identifier.created_at,
            updated_at=identifier.updated_at,
        )
        with _storage_errors("put"):
            with Session(self._engine, expire_on_commit=False) as session:
                session.add(record)
                try:
                    session.commit()
                except IntegrityError as exc:
                    session.rollback()
                    raise DuplicateCode(
                        f"{identifier.composite_code} is already registered"
                    ) from exc
                session.refresh(record)
        logger.info("store.put", code=record.composite_code, id=record.id)
        return self._record_to_identifier(record)

    def update(
        self, identifier: Identifier, *, expected_status: IdentifierStatus | None = None
    ) -> Identifier:
        """Write the mutable fields back.

        With ``expected_status`` the row is only written while its status is
        still the one the caller read; otherwise ``Conflict`` is raised.
        """
        if identifier.id is None:
            raise NotFound()
        statement = update(IdentifierRecord).where(IdentifierRecord.id == identifier.id)
        if expected_status is not None:
            statement = statement.where(IdentifierRecord.status == expected_status.value)
        statement = statement.values(
            status=identifier.status.value,
            metadata_json=json.dumps(identifier.metadata, sort_keys=True),
            metadata_ref=identifier.metadata_ref,
            chain_ref=identifier.chain_ref,
            updated_at=utcnow(),
        )
        with _storage_errors("update"):
            with self._engine.begin() as conn:
                result = conn.execute(statement)
            stored = self.get_by_id(identifier.id)
        if stored is None:
            raise NotFound()
        if result.rowcount != 1:
            logger.info("store.update_conflict", code=stored.composite_code, status=stored.status.value)
            raise Conflict(f"{stored.composite_code} is now {stored.status.value}")
        return stored

    def allocate_suffix(self, prefix: str) -> str:
        prefix = normalize_part(prefix)
        with _storage_errors("allocate_suffix"):
            for attempt in range(MAX_ALLOCATION_ROUNDS):
                value = self._try_allocate(prefix)
                if value is not None:
                    suffix = format_suffix(value, self._suffix_width)
                    logger.debug("store.allocated", prefix=prefix, suffix=suffix, attempt=attempt)
                    return suffix
                logger.debug("store.allocate_conflict", prefix=prefix, attempt=attempt)
        raise InternalError("Could not allocate a suffix, please retry")

    def list_by_owner(self, owner_user_id: str) -> list[Identifier]:
        with _storage_errors("list_by_owner"):
            with Session(self._engine) as session:
                statement = (
                    select(IdentifierRecord)
                    .where(IdentifierRecord.owner_user_id == owner_user_id)
                    .order_by(IdentifierRecord.created_at.desc())
                )
                records = session.exec(statement).all()
                return [self._record_to_identifier(record) for record in records]

    def record_resolution(self, event: ResolutionEvent) -> None:
        record = ResolutionEventRecord(
            identifier_id=event.identifier_id,
            composite_code=event.composite_code,
            requested_at=event.requested_at,
            requester_context=json.dumps(event.requester_context, sort_keys=True),
        )
        with _storage_errors("record_resolution"):
            with Session(self._engine) as session:
                session.add(record)
                session.commit()

    def resolution_count(self, identifier_id: int) -> int:
        with _storage_errors("resolution_count"):
            with Session(self._engine) as session:
                statement = select(func.count(ResolutionEventRecord.id)).where(
                    ResolutionEventRecord.identifier_id == identifier_id
                )
                return int(session.exec(statement).one())

    # Internal helpers -----------------------------------------------------

    def _try_allocate(self, prefix: str) -> int | None:
        with self._engine.connect() as conn:
            current = conn.execute(
                select(NamespaceCounter.last_value).where(NamespaceCounter.prefix == prefix)
            ).scalar_one_or_none()

        if current is None:
            seed = self._highest_numeric_suffix(prefix) + 1
            try:
                with self._engine.begin() as conn:
                    conn.execute(insert(NamespaceCounter).values(prefix=prefix, last_value=seed))
            except IntegrityError:
                return None
            return seed

        with self._engine.begin() as conn:
            result = conn.execute(
                update(NamespaceCounter)
                .where(NamespaceCounter.prefix == prefix)
                .where(NamespaceCounter.last_value == current)
                .values(last_value=current + 1)
            )
        return current + 1 if result.rowcount == 1 else None

    def _highest_numeric_suffix(self, prefix: str) -> int:
        with self._engine.connect() as conn:
            suffixes = conn.execute(
                select(IdentifierRecord.suffix).where(IdentifierRecord.namespace_prefix == prefix)
            ).scalars()
            values = [numeric_suffix_value(suffix) for suffix in suffixes]
        return max((value for value in values if value is not None), default=0)

    def _record_to_identifier(self, record: IdentifierRecord) -> Identifier:
        return Identifier(
            id=record.id,
            namespace_prefix=record.namespace_prefix,
            suffix=record.suffix,
            kind=IdentifierKind(record.kind),
            owner_user_id=record.owner_user_id,
            status=IdentifierStatus(record.status),
            metadata=json.loads(record.metadata_json or "{}"),
            metadata_ref=record.metadata_ref,
            chain_ref=record.chain_ref,
            created_at=as_utc(record.created_at),
            updated_at=as_utc(record.updated_at),
        )


class InMemoryIdentifierStore:
    """Dictionary-backed store for tests and local experiments."""

    def __init__(self, *, suffix_width: int = 6) -> None:
        self._suffix_width = suffix_width
        self._lock = threading.Lock()
        self._by_id: dict[int, Identifier] = {}
        self._by_code: dict[str, int] = {}
        self._counters: dict[str, int] = {}
        self._events: list[ResolutionEvent] = []
        self._next_id = 1

    @property
    def events(self) -> list[ResolutionEvent]:
        return list(self._events)

    def get(self, composite_code: str) -> Identifier | None:
        with self._lock:
            identifier_id = self._by_code.get(composite_code)
            if identifier_id is None:
                return None
            return self._by_id[identifier_id].model_copy(deep=True)

    def get_by_id(self, identifier_id: int) -> Identifier | None:
        with self._lock:
            identifier = self._by_id.get(identifier_id)
            return identifier.model_copy(deep=True) if identifier else None

    def put(self, identifier: Identifier) -> Identifier:
        code = identifier.composite_code
        with self._lock:
            if code in self._by_code:
                raise DuplicateCode(f"{code} is already registered")
            stored = identifier.model_copy(
                deep=True,
                update={
                    "id": self._next_id,
                    "namespace_prefix": normalize_part(identifier.namespace_prefix),
                    "suffix": normalize_part(identifier.suffix),
                },
            )
            self._next_id += 1
            self._by_id[stored.id] = stored
            self._by_code[code] = stored.id
            return stored.model_copy(deep=True)

    def update(
        self, identifier: Identifier, *, expected_status: IdentifierStatus | None = None
    ) -> Identifier:
        with self._lock:
            current = self._by_id.get(identifier.id) if identifier.id is not None else None
            if current is None:
                raise NotFound()
            if expected_status is not None and current.status != expected_status:
                raise Conflict(f"{current.composite_code} is now {current.status.value}")
            stored = current.model_copy(
                deep=True,
                update={
                    "status": identifier.status,
                    "metadata": dict(identifier.metadata),
                    "metadata_ref": identifier.metadata_ref,
                    "chain_ref": identifier.chain_ref,
                    "updated_at": utcnow(),
                },
            )
            self._by_id[stored.id] = stored
            return stored.model_copy(deep=True)

    def allocate_suffix(self, prefix: str) -> str:
        prefix = normalize_part(prefix)
        with self._lock:
            current = self._counters.get(prefix)
            if current is None:
                values = [
                    numeric_suffix_value(item.suffix)
                    for item in self._by_id.values()
                    if item.namespace_prefix == prefix
                ]
                current = max((value for value in values if value is not None), default=0)
            self._counters[prefix] = current + 1
            return format_suffix(current + 1, self._suffix_width)

    def list_by_owner(self, owner_user_id: str) -> list[Identifier]:
        with self._lock:
            items = [item for item in self._by_id.values() if item.owner_user_id == owner_user_id]
        items.sort(key=lambda item: item.created_at, reverse=True)
        return [item.model_copy(deep=True) for item in items]

    def record_resolution(self, event: ResolutionEvent) -> None:
        with self._lock:
            self._events.append(event)

    def resolution_count(self, identifier_id: int) -> int:
        with self._lock:
            return sum(1 for event in self._events if event.identifier_id == identifier_id)
