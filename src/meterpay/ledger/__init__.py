"""Balance ledgers: escrow deposits, host earnings, treasury fees."""

from meterpay.ledger.earnings import HostEarningsLedger
from meterpay.ledger.escrow import EscrowLedger
from meterpay.ledger.treasury import TreasuryAccumulator

__all__ = ["EscrowLedger", "HostEarningsLedger", "TreasuryAccumulator"]
