"""Escrow ledger: pre-funded, asset-segregated balances per account.

A depositor funds the ledger once and draws down across many sessions.
Balances are decoupled from any single session, so any wallet type
(an EOA, a smart account, a relayer-funded wallet) can pay for sessions
without approving a transfer each time.

Balances live in the marketplace's custody account inside the asset
vault. Withdrawals decrement before transferring out, run under the
marketplace's reentrancy guard, and unwind completely on failure: when
owned by a marketplace, ``scope`` hands the ledger the marketplace's
full participant set, so a failure unwinds every component it touched.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from web3 import Web3

from meterpay.assets.vault import AssetVault, is_amount, is_native, normalize_address
from meterpay.engine.clock import resolve_now
from meterpay.engine.guard import ReentrancyGuard, non_reentrant
from meterpay.engine.notifications import NotificationLog
from meterpay.errors import InsufficientFundsError, ValidationError
from meterpay.persistence.event_log import EventKind
from meterpay.policy.config import ConfigAuthority

logger = logging.getLogger(__name__)


class EscrowLedger:
    """Per-(account, asset) deposit balances.

    Usage:
        ledger.deposit(alice, NATIVE_ASSET, 10**17)
        ledger.balance_of(alice, NATIVE_ASSET)
        ledger.withdraw(alice, NATIVE_ASSET, 5 * 10**16)
    """

    def __init__(
        self,
        vault: AssetVault,
        custody: str,
        config: ConfigAuthority,
        notifications: NotificationLog,
        guard: Optional[ReentrancyGuard] = None,
        scope: Optional[Callable[[], tuple]] = None,
    ) -> None:
        self._vault = vault
        self._custody = custody
        self._config = config
        self._notifications = notifications
        self._guard = guard or ReentrancyGuard("escrow ledger")
        self._scope = scope
        self._balances: Dict[Tuple[str, str], int] = {}

    def _participants(self) -> tuple:
        if self._scope is not None:
            return self._scope()
        return (self, self._vault, self._notifications)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    @non_reentrant
    def deposit(
        self, sender: str, asset: str, amount: int, now: Optional[int] = None,
    ) -> int:
        """Credit ``sender`` with ``amount`` of ``asset``.

        Native currency: ``amount`` is the value attached to the call.
        Tokens: pulled from ``sender`` through its allowance to custody.

        Returns the new balance.
        """
        now = resolve_now(now)
        sender = normalize_address(sender, "sender")
        asset = normalize_address(asset, "asset")
        self._require_positive(amount)
        self._config.current.limits_for(asset)

        if is_native(asset):
            if self._vault.balance_of(sender, asset) < amount:
                raise InsufficientFundsError(
                    f"Attached value {amount} exceeds wallet balance of {sender}",
                    reason="insufficient_payment",
                )
            self._vault.transfer(asset, sender, self._custody, amount)
        else:
            self._vault.transfer_from(asset, self._custody, sender, self._custody, amount)

        balance = self.credit(sender, asset, amount)
        self._notifications.emit(
            EventKind.DEPOSIT_RECEIVED,
            sender,
            {"account": sender, "asset": asset, "amount": amount, "balance": balance},
            now,
        )
        logger.debug("deposit %d of %s by %s", amount, asset, sender)
        return balance

    @non_reentrant
    def withdraw(
        self, sender: str, asset: str, amount: int, now: Optional[int] = None,
    ) -> int:
        """Withdraw ``amount`` of ``asset`` back to ``sender``.

        The balance is decremented before the external transfer.
        Returns the remaining balance.
        """
        now = resolve_now(now)
        sender = normalize_address(sender, "sender")
        asset = normalize_address(asset, "asset")
        self._require_positive(amount)

        remaining = self.debit(sender, asset, amount)
        self._vault.transfer(asset, self._custody, sender, amount)
        self._notifications.emit(
            EventKind.WITHDRAWAL_PROCESSED,
            sender,
            {"account": sender, "asset": asset, "amount": amount, "balance": remaining},
            now,
        )
        return remaining

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def balance_of(self, account: str, asset: str) -> int:
        """Balance of ``account`` in ``asset``. Unknown keys read as 0."""
        if not (Web3.is_address(account) and Web3.is_address(asset)):
            return 0
        key = (Web3.to_checksum_address(account), Web3.to_checksum_address(asset))
        return self._balances.get(key, 0)

    def balances_of(self, account: str, assets: Iterable[str]) -> List[int]:
        return [self.balance_of(account, asset) for asset in assets]

    def total(self, asset: str) -> int:
        """Sum of every open balance in ``asset``."""
        return sum(v for (_, a), v in self._balances.items() if a == asset)

    def assets(self) -> Set[str]:
        return {a for (_, a), v in self._balances.items() if v}

    # ------------------------------------------------------------------
    # Internal mutations (session funding and deposit-funded refunds)
    # ------------------------------------------------------------------

    def debit(self, account: str, asset: str, amount: int) -> int:
        key = (account, asset)
        held = self._balances.get(key, 0)
        if held < amount:
            raise InsufficientFundsError(
                f"Escrow balance {held} of {account} below required {amount}",
                reason="insufficient_balance",
            )
        self._balances[key] = held - amount
        return held - amount

    def credit(self, account: str, asset: str, amount: int) -> int:
        key = (account, asset)
        self._balances[key] = self._balances.get(key, 0) + amount
        return self._balances[key]

    # ------------------------------------------------------------------
    # Transactional / persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[Tuple[str, str], int]:
        return dict(self._balances)

    def restore(self, snapshot: Dict[Tuple[str, str], int]) -> None:
        self._balances = dict(snapshot)

    def export_state(self) -> list:
        return [[a, s, v] for (a, s), v in sorted(self._balances.items()) if v]

    def import_state(self, data: list) -> None:
        self._balances = {(a, s): int(v) for a, s, v in data}

    @staticmethod
    def _require_positive(amount: int) -> None:
        if not is_amount(amount) or amount <= 0:
            raise ValidationError(
                f"Amount must be a positive integer, got {amount!r}",
                reason="invalid_amount",
            )
