"""Session models: the escrow and metering unit of one engagement.

A session is created ACTIVE with a fixed deposit. Accepted proofs raise
its recorded consumption; completion or timeout moves it to a terminal
state exactly once. Sessions are never deleted.

State machine:
    ACTIVE → ACTIVE       (accepted proof, consumption updated)
    ACTIVE → COMPLETED    (depositor at any time, others after dispute window)
    ACTIVE → TIMED_OUT    (anyone, after proof_interval * timeout_multiplier)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional

from meterpay.errors import StateError


class SessionStatus(str, enum.Enum):
    """Lifecycle state of a session."""
    ACTIVE = "active"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"


class FundingSource(str, enum.Enum):
    """Where the session deposit came from (and where its refund goes)."""
    INLINE = "inline"
    DEPOSIT = "deposit"


# Valid status transitions. Both terminal states have no exits.
SESSION_TRANSITIONS: Dict[SessionStatus, frozenset] = {
    SessionStatus.ACTIVE: frozenset({
        SessionStatus.COMPLETED,
        SessionStatus.TIMED_OUT,
    }),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.TIMED_OUT: frozenset(),
}


@dataclass
class Session:
    """A metered compute session between a depositor and a host.

    Mutable: consumption and status change over the session's life.
    Status changes are validated against SESSION_TRANSITIONS.

    Invariant: units_consumed * price_per_unit <= deposit_amount
    """
    session_id: int
    depositor: str
    host: str
    asset: str
    deposit_amount: int
    price_per_unit: int
    max_duration: int
    proof_interval: int
    start_time: int
    last_proof_time: int
    fee_basis_points: int
    funding_source: FundingSource = FundingSource.INLINE
    model_id: Optional[str] = None
    units_consumed: int = 0
    status: SessionStatus = SessionStatus.ACTIVE
    host_withdrawn: bool = False
    depositor_refunded: bool = False
    content_ref: str = ""
    last_proof_digest: str = ""
    end_time: Optional[int] = None
    settled_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def amount_owed(self) -> int:
        """Gross amount owed to the host for proven consumption."""
        return self.units_consumed * self.price_per_unit

    @property
    def expires_at(self) -> int:
        """Last moment at which a proof may still be accepted."""
        return self.start_time + self.max_duration

    def transition_to(self, new_status: SessionStatus) -> None:
        """Transition to a new status, validating the transition is legal."""
        allowed = SESSION_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise StateError(
                f"Invalid session transition: {self.status.value} → {new_status.value}",
                reason="session_not_active",
            )
        self.status = new_status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "depositor": self.depositor,
            "host": self.host,
            "asset": self.asset,
            "deposit_amount": self.deposit_amount,
            "price_per_unit": self.price_per_unit,
            "max_duration": self.max_duration,
            "proof_interval": self.proof_interval,
            "start_time": self.start_time,
            "last_proof_time": self.last_proof_time,
            "fee_basis_points": self.fee_basis_points,
            "funding_source": self.funding_source.value,
            "model_id": self.model_id,
            "units_consumed": self.units_consumed,
            "status": self.status.value,
            "host_withdrawn": self.host_withdrawn,
            "depositor_refunded": self.depositor_refunded,
            "content_ref": self.content_ref,
            "last_proof_digest": self.last_proof_digest,
            "end_time": self.end_time,
            "settled_by": self.settled_by,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> Session:
        return Session(
            session_id=int(data["session_id"]),
            depositor=data["depositor"],
            host=data["host"],
            asset=data["asset"],
            deposit_amount=int(data["deposit_amount"]),
            price_per_unit=int(data["price_per_unit"]),
            max_duration=int(data["max_duration"]),
            proof_interval=int(data["proof_interval"]),
            start_time=int(data["start_time"]),
            last_proof_time=int(data["last_proof_time"]),
            fee_basis_points=int(data["fee_basis_points"]),
            funding_source=FundingSource(data["funding_source"]),
            model_id=data.get("model_id"),
            units_consumed=int(data["units_consumed"]),
            status=SessionStatus(data["status"]),
            host_withdrawn=bool(data["host_withdrawn"]),
            depositor_refunded=bool(data["depositor_refunded"]),
            content_ref=data.get("content_ref", ""),
            last_proof_digest=data.get("last_proof_digest", ""),
            end_time=data.get("end_time"),
            settled_by=data.get("settled_by"),
        )
