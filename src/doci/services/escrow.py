"""Persistence for escrow accounts with atomic state transitions."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar

import structlog
from sqlalchemy import insert, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from doci.db import EscrowRecord, EscrowTransferRecord, get_engine
from doci.errors import InternalError, NotFound, Unauthorized
from doci.escrow import EscrowAccount, EscrowState, Transfer
from doci.models import as_utc, utcnow
from doci.settings import Settings

logger = structlog.get_logger(__name__)

MAX_TRANSITION_ATTEMPTS = 5

T = TypeVar("T")


@dataclass(slots=True)
class TransferEntry:
    id: int
    escrow_id: int
    source_ref: str
    destination_ref: str
    amount: int
    reason: str
    created_at: datetime


class EscrowService:
    """Stores escrow accounts and applies transitions one at a time.

    Each transition loads the account, applies it in memory, then writes it
    back only if ``version`` is unchanged. When another writer got there first
    the transition is replayed against the fresh state, so two concurrent
    ``release`` calls can never both succeed.
    """

    def __init__(self, settings: Settings | None = None, *, engine=None) -> None:
        if engine is None:
            if settings is None:
                raise ValueError("settings or engine is required")
            engine = get_engine(str(settings.db_path))
        self._engine = engine

    def create(
        self, *, payer_ref: str, manuscript_ref: str, amount: int, required_approvals: int
    ) -> EscrowAccount:
        account = EscrowAccount.initialize(payer_ref, manuscript_ref, amount, required_approvals)
        record = EscrowRecord(
            payer_ref=account.payer_ref,
            manuscript_ref=account.manuscript_ref,
            amount=account.amount,
            required_approvals=account.required_approvals,
            approvers_json="[]",
            state=account.state.value,
            version=0,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )
        try:
            with Session(self._engine, expire_on_commit=False) as session:
                session.add(record)
                session.commit()
                session.refresh(record)
        except SQLAlchemyError as exc:
            logger.error("escrow.store_failed", operation="create", error=str(exc))
            raise InternalError() from exc
        logger.info("escrow.created", escrow_id=record.id, amount=record.amount)
        return self._record_to_account(record)

    def get(self, escrow_id: int) -> EscrowAccount:
        try:
            with Session(self._engine) as session:
                record = session.get(EscrowRecord, escrow_id)
        except SQLAlchemyError as exc:
            logger.error("escrow.store_failed", operation="get", error=str(exc))
            raise InternalError() from exc
        if record is None:
            raise NotFound(f"Escrow {escrow_id} does not exist")
        return self._record_to_account(record)

    def fund(self, escrow_id: int, amount: int) -> EscrowAccount:
        return self._transition(escrow_id, "fund", lambda account: account.fund(amount))

    def approve(self, escrow_id: int, approver: str) -> EscrowAccount:
        return self._transition(escrow_id, "approve", lambda account: account.approve(approver))

    def release(self, escrow_id: int) -> EscrowAccount:
        return self._transition(escrow_id, "release", lambda account: account.release())

    def refund(self, escrow_id: int, requested_by: str | None = None) -> EscrowAccount:
        """Return funds to the payer; when ``requested_by`` is given it must be the payer."""

        def apply(account: EscrowAccount) -> Transfer:
            if requested_by is not None and requested_by != account.payer_ref:
                raise Unauthorized("Only the payer can request a refund")
            return account.refund()

        return self._transition(escrow_id, "refund", apply)

    def transfers(self, escrow_id: int) -> list[TransferEntry]:
        statement = (
            select(EscrowTransferRecord)
            .where(EscrowTransferRecord.escrow_id == escrow_id)
            .order_by(EscrowTransferRecord.id.asc())
        )
        try:
            with Session(self._engine) as session:
                records = session.exec(statement).all()
        except SQLAlchemyError as exc:
            logger.error("escrow.store_failed", operation="transfers", error=str(exc))
            raise InternalError() from exc
        return [
            TransferEntry(
                id=record.id,
                escrow_id=record.escrow_id,
                source_ref=record.source_ref,
                destination_ref=record.destination_ref,
                amount=record.amount,
                reason=record.reason,
                created_at=as_utc(record.created_at),
            )
            for record in records
        ]

    # Internal helpers -----------------------------------------------------

    def _transition(
        self, escrow_id: int, operation: str, apply: Callable[[EscrowAccount], T]
    ) -> EscrowAccount:
        for attempt in range(MAX_TRANSITION_ATTEMPTS):
            account = self.get(escrow_id)
            expected_version = account.version
            outcome = apply(account)
            transfer = outcome if isinstance(outcome, Transfer) else None
            if self._write(account, expected_version, transfer):
                logger.info(
                    "escrow.transition",
                    escrow_id=escrow_id,
                    operation=operation,
                    state=account.state.value,
                    approvals=account.approval_count,
                )
                return account.model_copy(update={"version": expected_version + 1})
            logger.debug("escrow.conflict", escrow_id=escrow_id, operation=operation, attempt=attempt)
        raise InternalError("Escrow is busy, please retry")

    def _write(
        self, account: EscrowAccount, expected_version: int, transfer: Transfer | None
    ) -> bool:
        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    update(EscrowRecord)
                    .where(EscrowRecord.id == account.id)
                    .where(EscrowRecord.version == expected_version)
                    .values(
                        state=account.state.value,
                        approvers_json=json.dumps(account.approvers),
                        version=expected_version + 1,
                        updated_at=account.updated_at,
                    )
                )
                if result.rowcount != 1:
                    return False
                if transfer is not None:
                    conn.execute(
                        insert(EscrowTransferRecord).values(
                            escrow_id=account.id,
                            source_ref=transfer.source_ref,
                            destination_ref=transfer.destination_ref,
                            amount=transfer.amount,
                            reason=transfer.reason,
                            created_at=utcnow(),
                        )
                    )
        except SQLAlchemyError as exc:
            logger.error("escrow.store_failed", operation="write", error=str(exc))
            raise InternalError() from exc
        return True

    def _record_to_account(self, record: EscrowRecord) -> EscrowAccount:
        return EscrowAccount(
            id=record.id,
            payer_ref=record.payer_ref,
            manuscript_ref=record.manuscript_ref,
            amount=record.amount,
            required_approvals=record.required_approvals,
            approvers=json.loads(record.approvers_json or "[]"),
            state=EscrowState(record.state),
            version=record.version,
            created_at=as_utc(record.created_at),
            updated_at=as_utc(record.updated_at),
        )
