"""Proof models: an accepted, signature-authenticated consumption claim."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class ProofClaim:
    """A claim of cumulative consumption that passed authentication.

    claimed_units is cumulative for the session, not a per-batch delta.
    The signer is the recovered address, always equal to the host.
    """
    session_id: int
    claimed_units: int
    content_ref: str
    digest: str
    signer: str
    accepted_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "claimed_units": self.claimed_units,
            "content_ref": self.content_ref,
            "digest": self.digest,
            "signer": self.signer,
            "accepted_at": self.accepted_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> ProofClaim:
        return ProofClaim(
            session_id=int(data["session_id"]),
            claimed_units=int(data["claimed_units"]),
            content_ref=data["content_ref"],
            digest=data["digest"],
            signer=data["signer"],
            accepted_at=int(data["accepted_at"]),
        )
