"""Settlement engine: disburses a terminal session's deposit exactly once.

For a session with deposit D, recorded consumption U, price P and fee
rate F (basis points, captured at creation):

    host_gross       = U * P
    platform_fee     = floor(host_gross * F / 10000)
    host_net         = host_gross - platform_fee
    depositor_refund = D - host_gross

Disbursement order:
1. host_net moves from marketplace custody to earnings custody and is
   credited to the host's earnings balance.
2. platform_fee is credited to the treasury accumulator (stays in custody).
3. The refund goes back to the depositor: an inline-funded session pays
   it out directly (the only step that can run recipient code, so it
   comes last); a deposit-funded session credits the escrow balance.

The once-only flags are set before the refund leaves custody. The caller
holds the marketplace guard and unwinds everything if any step fails.
"""

from __future__ import annotations

import logging

from meterpay.assets.vault import AssetVault
from meterpay.errors import StateError
from meterpay.ledger.earnings import HostEarningsLedger
from meterpay.ledger.escrow import EscrowLedger
from meterpay.ledger.treasury import TreasuryAccumulator
from meterpay.models.session import FundingSource, Session
from meterpay.models.settlement import SettlementBreakdown

logger = logging.getLogger(__name__)


class SettlementEngine:
    """Computes and executes the three-way split of a session."""

    def __init__(
        self,
        vault: AssetVault,
        custody: str,
        escrow: EscrowLedger,
        earnings: HostEarningsLedger,
        treasury: TreasuryAccumulator,
    ) -> None:
        self._vault = vault
        self._custody = custody
        self._escrow = escrow
        self._earnings = earnings
        self._treasury = treasury

    @staticmethod
    def compute_split(session: Session) -> SettlementBreakdown:
        return SettlementBreakdown.compute(
            deposit_amount=session.deposit_amount,
            units_consumed=session.units_consumed,
            price_per_unit=session.price_per_unit,
            fee_basis_points=session.fee_basis_points,
        )

    def settle(self, session: Session, now: int) -> SettlementBreakdown:
        """Disburse ``session``. It must already be in a terminal state."""
        if session.is_active:
            raise StateError(
                f"Session {session.session_id} is still active", reason="session_active",
            )
        if session.host_withdrawn or session.depositor_refunded:
            raise StateError(
                f"Session {session.session_id} was already settled",
                reason="already_settled",
            )

        split = self.compute_split(session)
        asset = session.asset

        if split.host_net > 0:
            self._vault.transfer(asset, self._custody, self._earnings.address, split.host_net)
            self._earnings.credit(
                self._custody, session.host, asset, split.host_net, now,
                session_id=session.session_id,
            )
        self._treasury.credit(asset, split.platform_fee)
        session.host_withdrawn = True

        session.depositor_refunded = True
        if split.depositor_refund > 0:
            if session.funding_source == FundingSource.DEPOSIT:
                self._escrow.credit(session.depositor, asset, split.depositor_refund)
            else:
                self._vault.transfer(
                    asset, self._custody, session.depositor, split.depositor_refund,
                )

        logger.info(
            "session %d settled: host_net=%d fee=%d refund=%d",
            session.session_id, split.host_net, split.platform_fee, split.depositor_refund,
        )
        return split
