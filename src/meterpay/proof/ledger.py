"""Proof ledger: records the latest authenticated consumption claim.

Verification is deliberately optimistic. A claim is accepted when the
recovered signer is the session's registered host; nothing here proves
the compute was performed correctly. Correctness is enforced out of band
by host staking and by auditing the referenced off-chain content.

Acceptance rules, checked in order, all before any mutation:
1. The session is ACTIVE and not past start_time + max_duration.
2. claimed_units strictly exceeds recorded consumption (anti-replay).
3. The signature over the claim digest recovers to the session host.
4. claimed_units * price_per_unit <= deposit_amount. Over-claims are
   rejected outright, never clamped.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from web3 import Web3

from meterpay.assets.vault import is_amount
from meterpay.engine.notifications import NotificationLog
from meterpay.errors import (
    AuthorizationError,
    InsufficientFundsError,
    ReplayError,
    StateError,
    ValidationError,
)
from meterpay.models.proof import ProofClaim
from meterpay.models.session import Session
from meterpay.persistence.event_log import EventKind
from meterpay.proof.signing import SignatureLike, claim_digest, recover_signer

logger = logging.getLogger(__name__)


class ProofLedger:
    """Validates claims and applies accepted ones to their session.

    Keeps the append-only history of accepted claims per session for
    audit; the session itself always carries the latest values.
    """

    def __init__(self, notifications: NotificationLog) -> None:
        self._notifications = notifications
        self._claims: Dict[int, List[ProofClaim]] = {}

    def submit_proof(
        self,
        session: Session,
        claimed_units: int,
        content_ref: str,
        signature: SignatureLike,
        now: int,
        submitter: str,
    ) -> ProofClaim:
        """Authenticate a claim and record it on ``session``."""
        if not session.is_active:
            raise StateError(
                f"Session {session.session_id} is {session.status.value}",
                reason="session_not_active",
            )
        if now > session.expires_at:
            raise StateError(
                f"Session {session.session_id} passed its max duration at "
                f"{session.expires_at}",
                reason="session_expired",
            )
        if not is_amount(claimed_units) or claimed_units <= 0:
            raise ValidationError(
                f"Claimed units must be a positive integer, got {claimed_units!r}",
                reason="invalid_units",
            )
        if claimed_units <= session.units_consumed:
            raise ReplayError(
                f"Claim of {claimed_units} units does not exceed recorded "
                f"{session.units_consumed} for session {session.session_id}",
                reason="stale_claim",
            )

        digest = claim_digest(content_ref, session.host, claimed_units, session.session_id)
        signer = recover_signer(digest, signature)
        if signer != session.host:
            raise AuthorizationError(
                f"Claim signed by {signer}, not session host {session.host}",
                reason="signer_not_host",
            )

        owed = claimed_units * session.price_per_unit
        if owed > session.deposit_amount:
            raise InsufficientFundsError(
                f"Claim worth {owed} exceeds deposit {session.deposit_amount} "
                f"for session {session.session_id}",
                reason="overclaim",
            )

        digest_hex = Web3.to_hex(digest)
        session.units_consumed = claimed_units
        session.last_proof_time = now
        session.last_proof_digest = digest_hex
        session.content_ref = content_ref

        claim = ProofClaim(
            session_id=session.session_id,
            claimed_units=claimed_units,
            content_ref=content_ref,
            digest=digest_hex,
            signer=signer,
            accepted_at=now,
        )
        self._claims.setdefault(session.session_id, []).append(claim)
        self._notifications.emit(
            EventKind.PROOF_ACCEPTED,
            submitter,
            {
                "session_id": session.session_id,
                "host": session.host,
                "claimed_units": claimed_units,
                "amount_owed": owed,
                "digest": digest_hex,
                "content_ref": content_ref,
            },
            now,
        )
        logger.debug(
            "session %d: accepted claim of %d units", session.session_id, claimed_units,
        )
        return claim

    def latest(self, session_id: int) -> Optional[ProofClaim]:
        claims = self._claims.get(session_id)
        return claims[-1] if claims else None

    def claims_for(self, session_id: int) -> List[ProofClaim]:
        return list(self._claims.get(session_id, []))

    def snapshot(self) -> Dict[int, List[ProofClaim]]:
        return {sid: list(claims) for sid, claims in self._claims.items()}

    def restore(self, snapshot: Dict[int, List[ProofClaim]]) -> None:
        self._claims = {sid: list(claims) for sid, claims in snapshot.items()}

    def export_state(self) -> list:
        return [c.to_dict() for sid in sorted(self._claims) for c in self._claims[sid]]

    def import_state(self, data: list) -> None:
        self._claims = {}
        for row in data:
            claim = ProofClaim.from_dict(row)
            self._claims.setdefault(claim.session_id, []).append(claim)
