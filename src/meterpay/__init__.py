"""meterpay: escrow and settlement for metered, pay-per-use compute sessions."""

__version__ = "0.1.0"
