"""Host earnings ledger: accumulates withdrawable settlement proceeds.

Settlement credits a host's net payment here instead of pushing it to
the host on every session; the host withdraws when convenient, in one
asset or many at once.

Only allow-listed callers (the settlement engine of the marketplace) may
credit. Unrestricted inbound credit would let anyone book balances that
are not backed by custody, locking funds irrecoverably.

The ledger holds its own custody account in the asset vault and its own
reentrancy guard; each withdraw variant is guarded independently. A
marketplace-owned ledger receives the marketplace's participant set as
``scope``, so a failed withdrawal also unwinds any marketplace entry point
a recipient hook ran in the meantime.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from meterpay.assets.vault import AssetVault, is_amount, normalize_address
from meterpay.engine.clock import resolve_now
from meterpay.engine.guard import ReentrancyGuard, non_reentrant
from meterpay.engine.notifications import NotificationLog
from meterpay.errors import AuthorizationError, InsufficientFundsError, ValidationError
from meterpay.persistence.event_log import EventKind

logger = logging.getLogger(__name__)


class HostEarningsLedger:
    """Per-(host, asset) earnings balances with guarded withdrawals.

    Usage:
        earnings = HostEarningsLedger(vault, earnings_address, owner, notifications)
        earnings.set_authorized_caller(owner, marketplace_address, True)
        earnings.withdraw_all(host, usdc)
    """

    def __init__(
        self,
        vault: AssetVault,
        address: str,
        owner: str,
        notifications: NotificationLog,
        authorized: Iterable[str] = (),
        scope: Optional[Callable[[], tuple]] = None,
    ) -> None:
        self._vault = vault
        self._address = normalize_address(address, "earnings address")
        self._owner = normalize_address(owner, "owner")
        self._notifications = notifications
        self._guard = ReentrancyGuard("host earnings")
        self._balances: Dict[Tuple[str, str], int] = {}
        self._authorized: Set[str] = {normalize_address(a, "caller") for a in authorized}
        self._scope = scope

    @property
    def address(self) -> str:
        return self._address

    def _participants(self) -> tuple:
        if self._scope is not None:
            return self._scope()
        return (self, self._vault, self._notifications)

    # ------------------------------------------------------------------
    # Access control
    # ------------------------------------------------------------------

    def set_authorized_caller(
        self, sender: str, caller: str, authorized: bool, now: Optional[int] = None,
    ) -> None:
        """Allow or revoke ``caller``'s right to credit earnings (owner only)."""
        if normalize_address(sender, "sender") != self._owner:
            raise AuthorizationError(
                "Only the owner may change authorized callers", reason="not_owner",
            )
        caller = normalize_address(caller, "caller")
        if authorized:
            self._authorized.add(caller)
        else:
            self._authorized.discard(caller)
        self._notifications.emit(
            EventKind.AUTHORIZED_CALLER_CHANGED,
            sender,
            {"caller": caller, "authorized": authorized},
            resolve_now(now),
        )

    def is_authorized(self, caller: str) -> bool:
        return caller in self._authorized

    # ------------------------------------------------------------------
    # Credit (settlement only)
    # ------------------------------------------------------------------

    def credit(
        self, caller: str, host: str, asset: str, amount: int, now: int,
        session_id: Optional[int] = None,
    ) -> int:
        """Book ``amount`` for ``host``. Funds must already be in custody."""
        if caller not in self._authorized:
            raise AuthorizationError(
                f"Caller {caller} may not credit host earnings",
                reason="unauthorized_credit",
            )
        if not is_amount(amount) or amount <= 0:
            raise ValidationError("Credit amount must be positive", reason="invalid_amount")
        key = (host, asset)
        self._balances[key] = self._balances.get(key, 0) + amount
        self._notifications.emit(
            EventKind.EARNINGS_CREDITED,
            caller,
            {
                "host": host,
                "asset": asset,
                "amount": amount,
                "balance": self._balances[key],
                "session_id": session_id,
            },
            now,
        )
        return self._balances[key]

    # ------------------------------------------------------------------
    # Withdrawals (host only, each guarded)
    # ------------------------------------------------------------------

    @non_reentrant
    def withdraw(
        self, sender: str, asset: str, amount: int, now: Optional[int] = None,
    ) -> int:
        """Withdraw ``amount`` of ``asset``. Returns the remaining balance."""
        sender = normalize_address(sender, "sender")
        asset = normalize_address(asset, "asset")
        if not is_amount(amount) or amount <= 0:
            raise ValidationError(
                f"Amount must be a positive integer, got {amount!r}",
                reason="invalid_amount",
            )
        return self._withdraw(sender, asset, amount, resolve_now(now))

    @non_reentrant
    def withdraw_all(self, sender: str, asset: str, now: Optional[int] = None) -> int:
        """Withdraw the full balance in ``asset``. Returns the amount paid."""
        sender = normalize_address(sender, "sender")
        asset = normalize_address(asset, "asset")
        amount = self._balances.get((sender, asset), 0)
        if amount == 0:
            raise InsufficientFundsError(
                f"No earnings in {asset} for {sender}", reason="no_earnings",
            )
        self._withdraw(sender, asset, amount, resolve_now(now))
        return amount

    @non_reentrant
    def withdraw_multiple(
        self, sender: str, assets: Iterable[str], now: Optional[int] = None,
    ) -> Dict[str, int]:
        """Withdraw the full balance of each asset; zero balances are skipped.

        Returns {asset: amount_paid} for the assets actually paid.
        """
        sender = normalize_address(sender, "sender")
        now = resolve_now(now)
        paid: Dict[str, int] = {}
        for raw in assets:
            asset = normalize_address(raw, "asset")
            amount = self._balances.get((sender, asset), 0)
            if amount == 0 or asset in paid:
                continue
            self._withdraw(sender, asset, amount, now)
            paid[asset] = amount
        return paid

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def balance_of(self, host: str, asset: str) -> int:
        return self._balances.get((host, asset), 0)

    def balances_of(self, host: str, assets: Iterable[str]) -> List[int]:
        return [self.balance_of(host, asset) for asset in assets]

    def total(self, asset: str) -> int:
        return sum(v for (_, a), v in self._balances.items() if a == asset)

    def assets(self) -> Set[str]:
        return {a for (_, a), v in self._balances.items() if v}

    # ------------------------------------------------------------------
    # Transactional / persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> tuple:
        return (dict(self._balances), set(self._authorized))

    def restore(self, snapshot: tuple) -> None:
        balances, authorized = snapshot
        self._balances = dict(balances)
        self._authorized = set(authorized)

    def export_state(self) -> dict:
        return {
            "balances": [[h, a, v] for (h, a), v in sorted(self._balances.items()) if v],
            "authorized": sorted(self._authorized),
        }

    def import_state(self, data: dict) -> None:
        self._balances = {(h, a): int(v) for h, a, v in data.get("balances", [])}
        self._authorized = set(data.get("authorized", []))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _withdraw(self, host: str, asset: str, amount: int, now: int) -> int:
        key = (host, asset)
        held = self._balances.get(key, 0)
        if held < amount:
            raise InsufficientFundsError(
                f"Earnings {held} of {host} below requested {amount}",
                reason="insufficient_earnings",
            )
        self._balances[key] = held - amount
        self._vault.transfer(asset, self._address, host, amount)
        self._notifications.emit(
            EventKind.EARNINGS_WITHDRAWN,
            host,
            {"host": host, "asset": asset, "amount": amount, "balance": held - amount},
            now,
        )
        logger.debug("host %s withdrew %d of %s", host, amount, asset)
        return held - amount
