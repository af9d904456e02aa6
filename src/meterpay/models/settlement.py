"""Settlement models: the three-way split of a terminal session.

All amounts are integers in the asset's smallest unit. The platform fee
is floored, so any rounding remainder stays with the host.

Invariant: host_net + platform_fee + depositor_refund == deposit_amount
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from meterpay.errors import ValidationError

BASIS_POINTS = 10_000


@dataclass(frozen=True)
class SettlementBreakdown:
    """Full breakdown of a settlement.

    Published with every completion and timeout notification.
    """
    deposit_amount: int
    units_consumed: int
    price_per_unit: int
    fee_basis_points: int
    host_gross: int
    platform_fee: int
    host_net: int
    depositor_refund: int

    @staticmethod
    def compute(
        deposit_amount: int,
        units_consumed: int,
        price_per_unit: int,
        fee_basis_points: int,
    ) -> SettlementBreakdown:
        """Compute the exact split for a session.

        Raises ValidationError if the consumption exceeds the deposit or
        the fee rate is outside [0, 10000] basis points.
        """
        if not 0 <= fee_basis_points <= BASIS_POINTS:
            raise ValidationError(
                f"Fee rate {fee_basis_points} bps outside [0, {BASIS_POINTS}]",
                reason="invalid_fee_rate",
            )
        host_gross = units_consumed * price_per_unit
        if host_gross > deposit_amount:
            raise ValidationError(
                f"Consumption value {host_gross} exceeds deposit {deposit_amount}",
                reason="overclaim",
            )
        platform_fee = host_gross * fee_basis_points // BASIS_POINTS
        return SettlementBreakdown(
            deposit_amount=deposit_amount,
            units_consumed=units_consumed,
            price_per_unit=price_per_unit,
            fee_basis_points=fee_basis_points,
            host_gross=host_gross,
            platform_fee=platform_fee,
            host_net=host_gross - platform_fee,
            depositor_refund=deposit_amount - host_gross,
        )

    @property
    def total(self) -> int:
        return self.host_net + self.platform_fee + self.depositor_refund

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deposit_amount": self.deposit_amount,
            "units_consumed": self.units_consumed,
            "price_per_unit": self.price_per_unit,
            "fee_basis_points": self.fee_basis_points,
            "host_gross": self.host_gross,
            "platform_fee": self.platform_fee,
            "host_net": self.host_net,
            "depositor_refund": self.depositor_refund,
        }
