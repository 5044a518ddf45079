"""Escrow state machine for submission fees held in trust.

Lifecycle::

    Created --fund--> Funded --release--> Released
                             \\--refund---> Refunded

``Released`` and ``Refunded`` are terminal. Approvals are tracked as a set of
distinct approver identities, so one party approving twice still counts once
towards ``required_approvals``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import Field

from doci.errors import DociError, ValidationError
from doci.models import WireModel, utcnow


class EscrowState(str, Enum):
    CREATED = "Created"
    FUNDED = "Funded"
    RELEASED = "Released"
    REFUNDED = "Refunded"


class EscrowError(DociError):
    """Base class for rejected escrow transitions."""

    kind = "EscrowError"
    status_code = 409


class AlreadyFunded(EscrowError):
    kind = "AlreadyFunded"

    @classmethod
    def default_message(cls) -> str:
        return "Escrow has already been funded"


class AmountMismatch(EscrowError):
    kind = "AmountMismatch"
    status_code = 400


class NotFunded(EscrowError):
    kind = "NotFunded"

    @classmethod
    def default_message(cls) -> str:
        return "Escrow has not been funded"


class AlreadyApproved(EscrowError):
    kind = "AlreadyApproved"


class InsufficientApprovals(EscrowError):
    kind = "InsufficientApprovals"


class AlreadyReleased(EscrowError):
    kind = "AlreadyReleased"

    @classmethod
    def default_message(cls) -> str:
        return "Escrow funds have already been released"


class AlreadyRefunded(EscrowError):
    kind = "AlreadyRefunded"

    @classmethod
    def default_message(cls) -> str:
        return "Escrow funds have already been refunded"


VALID_TRANSITIONS: set[tuple[EscrowState, EscrowState]] = {
    (EscrowState.CREATED, EscrowState.FUNDED),
    (EscrowState.FUNDED, EscrowState.RELEASED),
    (EscrowState.FUNDED, EscrowState.REFUNDED),
}

TERMINAL_STATES = {EscrowState.RELEASED, EscrowState.REFUNDED}


@dataclass(slots=True)
class Transfer:
    """Movement of held funds produced by a terminal transition."""

    source_ref: str
    destination_ref: str
    amount: int
    reason: str


class EscrowAccount(WireModel):
    """One escrow per fee-bearing submission."""

    id: int | None = None
    payer_ref: str
    manuscript_ref: str
    amount: int
    required_approvals: int
    approvers: list[str] = Field(default_factory=list)
    state: EscrowState = EscrowState.CREATED
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def initialize(
        cls, payer_ref: str, manuscript_ref: str, amount: int, required_approvals: int
    ) -> "EscrowAccount":
        if not str(payer_ref or "").strip():
            raise ValidationError("payer is required")
        if not str(manuscript_ref or "").strip():
            raise ValidationError("manuscript reference is required")
        if amount <= 0:
            raise ValidationError("amount must be positive")
        if required_approvals < 1:
            raise ValidationError("requiredApprovals must be at least 1")
        return cls(
            payer_ref=str(payer_ref),
            manuscript_ref=str(manuscript_ref),
            amount=amount,
            required_approvals=required_approvals,
        )

    @property
    def beneficiary_ref(self) -> str:
        return f"manuscript:{self.manuscript_ref}"

    @property
    def approval_count(self) -> int:
        return len(self.approvers)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def fund(self, amount: int) -> None:
        if self.state != EscrowState.CREATED:
            raise AlreadyFunded()
        if amount != self.amount:
            raise AmountMismatch(f"Expected {self.amount}, received {amount}")
        self._move_to(EscrowState.FUNDED)

    def approve(self, approver: str) -> None:
        self._require_funded()
        approver = str(approver or "").strip()
        if not approver:
            raise ValidationError("approver identity is required")
        if approver in self.approvers:
            raise AlreadyApproved(f"{approver} has already approved")
        self.approvers.append(approver)
        self.updated_at = utcnow()

    def release(self) -> Transfer:
        self._require_funded()
        if self.approval_count < self.required_approvals:
            raise InsufficientApprovals(
                f"{self.approval_count} of {self.required_approvals} approvals collected"
            )
        self._move_to(EscrowState.RELEASED)
        return Transfer(
            source_ref="escrow",
            destination_ref=self.beneficiary_ref,
            amount=self.amount,
            reason="release",
        )

    def refund(self) -> Transfer:
        self._require_funded()
        self._move_to(EscrowState.REFUNDED)
        return Transfer(
            source_ref="escrow",
            destination_ref=self.payer_ref,
            amount=self.amount,
            reason="refund",
        )

    def _require_funded(self) -> None:
        if self.state == EscrowState.CREATED:
            raise NotFunded()
        if self.state == EscrowState.RELEASED:
            raise AlreadyReleased()
        if self.state == EscrowState.REFUNDED:
            raise AlreadyRefunded()

    def _move_to(self, target: EscrowState) -> None:
        if (self.state, target) not in VALID_TRANSITIONS:
            raise EscrowError(f"Invalid transition from {self.state.value} to {target.value}")
        self.state = target
        self.updated_at = utcnow()
