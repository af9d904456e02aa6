"""Treasury accumulator: the platform's retained fee share, per asset.

Fees stay in the marketplace's custody account until the owner sweeps
them to the configured treasury address. Tracked separately from host
earnings so the two can never be confused in accounting.
"""

from __future__ import annotations

from typing import Dict, Set

from meterpay.assets.vault import AssetVault
from meterpay.engine.notifications import NotificationLog
from meterpay.errors import InsufficientFundsError
from meterpay.persistence.event_log import EventKind


class TreasuryAccumulator:
    """Accumulated platform fees awaiting withdrawal."""

    def __init__(self, vault: AssetVault, custody: str, notifications: NotificationLog) -> None:
        self._vault = vault
        self._custody = custody
        self._notifications = notifications
        self._balances: Dict[str, int] = {}

    def credit(self, asset: str, amount: int) -> int:
        if amount == 0:
            return self._balances.get(asset, 0)
        self._balances[asset] = self._balances.get(asset, 0) + amount
        return self._balances[asset]

    def balance_of(self, asset: str) -> int:
        return self._balances.get(asset, 0)

    def total(self, asset: str) -> int:
        return self.balance_of(asset)

    def assets(self) -> Set[str]:
        return {a for a, v in self._balances.items() if v}

    def sweep(self, sender: str, asset: str, treasury: str, now: int) -> int:
        """Zero the accumulator for ``asset`` and pay it to ``treasury``.

        Callers are responsible for authorization and the guard.
        """
        amount = self._balances.get(asset, 0)
        if amount == 0:
            raise InsufficientFundsError(
                f"No treasury fees accumulated in {asset}", reason="no_fees",
            )
        self._balances[asset] = 0
        self._vault.transfer(asset, self._custody, treasury, amount)
        self._notifications.emit(
            EventKind.TREASURY_WITHDRAWN,
            sender,
            {"asset": asset, "amount": amount, "treasury": treasury},
            now,
        )
        return amount

    def snapshot(self) -> Dict[str, int]:
        return dict(self._balances)

    def restore(self, snapshot: Dict[str, int]) -> None:
        self._balances = dict(snapshot)

    def export_state(self) -> dict:
        return {a: v for a, v in sorted(self._balances.items()) if v}

    def import_state(self, data: dict) -> None:
        self._balances = {a: int(v) for a, v in data.items()}
