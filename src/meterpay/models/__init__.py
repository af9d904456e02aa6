"""Core data models for meterpay."""

from meterpay.models.proof import ProofClaim
from meterpay.models.session import FundingSource, Session, SessionStatus
from meterpay.models.settlement import BASIS_POINTS, SettlementBreakdown

__all__ = [
    "BASIS_POINTS",
    "FundingSource",
    "ProofClaim",
    "Session",
    "SessionStatus",
    "SettlementBreakdown",
]
