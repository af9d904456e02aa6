"""Tests for the host earnings ledger: restricted credit, guarded withdrawals."""

import pytest

from meterpay.assets.vault import NATIVE_ASSET, InMemoryVault, normalize_address
from meterpay.engine.notifications import NotificationLog
from meterpay.errors import (
    AuthorizationError,
    ExternalTransferError,
    InsufficientFundsError,
    ValidationError,
)
from meterpay.ledger.earnings import HostEarningsLedger
from meterpay.persistence.event_log import EventKind

HOST = normalize_address("0x" + "40" * 20)
OWNER = normalize_address("0x" + "0e" * 20)
MARKET = normalize_address("0x" + "aa" * 20)
STRANGER = normalize_address("0x" + "bb" * 20)
EARNINGS = normalize_address("0x" + "ee" * 20)
USDC = normalize_address("0x036cbd53842c5426634e7929541ec2318f3dcf7e")
T0 = 1_760_000_000


def _ledger() -> HostEarningsLedger:
    return HostEarningsLedger(InMemoryVault(), EARNINGS, OWNER, NotificationLog(), authorized=[MARKET])


def _fund(ledger: HostEarningsLedger, asset: str, amount: int) -> None:
    """Put real custody behind a credit, as settlement does."""
    ledger._vault.mint(EARNINGS, asset, amount)
    ledger.credit(MARKET, HOST, asset, amount, T0)


class TestAccessControl:
    def test_authorized_caller_credits(self) -> None:
        ledger = _ledger()
        assert ledger.credit(MARKET, HOST, NATIVE_ASSET, 100, T0) == 100
        assert ledger._notifications.last.kind == EventKind.EARNINGS_CREDITED

    def test_stranger_cannot_credit(self) -> None:
        ledger = _ledger()
        with pytest.raises(AuthorizationError):
            ledger.credit(STRANGER, HOST, NATIVE_ASSET, 100, T0)
        assert ledger.balance_of(HOST, NATIVE_ASSET) == 0

    def test_owner_manages_allow_list(self) -> None:
        ledger = _ledger()
        ledger.set_authorized_caller(OWNER, STRANGER, True, now=T0)
        assert ledger.is_authorized(STRANGER)
        ledger.set_authorized_caller(OWNER, STRANGER, False, now=T0)
        assert not ledger.is_authorized(STRANGER)
        assert ledger._notifications.last.kind == EventKind.AUTHORIZED_CALLER_CHANGED

    def test_non_owner_cannot_manage(self) -> None:
        ledger = _ledger()
        with pytest.raises(AuthorizationError):
            ledger.set_authorized_caller(STRANGER, STRANGER, True, now=T0)

    def test_zero_credit_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _ledger().credit(MARKET, HOST, NATIVE_ASSET, 0, T0)

    def test_boolean_amounts_rejected(self) -> None:
        ledger = _ledger()
        with pytest.raises(ValidationError):
            ledger.credit(MARKET, HOST, NATIVE_ASSET, True, T0)
        _fund(ledger, NATIVE_ASSET, 10)
        with pytest.raises(ValidationError):
            ledger.withdraw(HOST, NATIVE_ASSET, True, now=T0)
        assert ledger.balance_of(HOST, NATIVE_ASSET) == 10


class TestWithdrawals:
    def test_withdraw_partial(self) -> None:
        ledger = _ledger()
        _fund(ledger, NATIVE_ASSET, 1_000)
        assert ledger.withdraw(HOST, NATIVE_ASSET, 300, now=T0) == 700
        assert ledger._vault.balance_of(HOST, NATIVE_ASSET) == 300
        assert ledger._notifications.last.kind == EventKind.EARNINGS_WITHDRAWN

    def test_withdraw_more_than_balance(self) -> None:
        ledger = _ledger()
        _fund(ledger, NATIVE_ASSET, 1_000)
        with pytest.raises(InsufficientFundsError):
            ledger.withdraw(HOST, NATIVE_ASSET, 1_001, now=T0)

    def test_withdraw_all(self) -> None:
        ledger = _ledger()
        _fund(ledger, USDC, 5_000)
        assert ledger.withdraw_all(HOST, USDC, now=T0) == 5_000
        assert ledger.balance_of(HOST, USDC) == 0
        assert ledger._vault.balance_of(HOST, USDC) == 5_000

    def test_withdraw_all_with_nothing(self) -> None:
        with pytest.raises(InsufficientFundsError):
            _ledger().withdraw_all(HOST, USDC, now=T0)

    def test_withdraw_multiple_skips_empty(self) -> None:
        ledger = _ledger()
        _fund(ledger, NATIVE_ASSET, 10)
        paid = ledger.withdraw_multiple(HOST, [NATIVE_ASSET, USDC], now=T0)
        assert paid == {NATIVE_ASSET: 10}
        assert ledger.balances_of(HOST, [NATIVE_ASSET, USDC]) == [0, 0]

    def test_withdraw_multiple_is_atomic(self) -> None:
        ledger = _ledger()
        _fund(ledger, NATIVE_ASSET, 10)
        _fund(ledger, USDC, 20)
        # Custody shortfall on the second asset makes its transfer fail.
        ledger._vault.restore(({(EARNINGS, NATIVE_ASSET): 10}, {}))
        with pytest.raises(ExternalTransferError):
            ledger.withdraw_multiple(HOST, [NATIVE_ASSET, USDC], now=T0)
        assert ledger.balances_of(HOST, [NATIVE_ASSET, USDC]) == [10, 20]
        assert ledger._vault.balance_of(HOST, NATIVE_ASSET) == 0

    def test_export_import(self) -> None:
        ledger = _ledger()
        _fund(ledger, USDC, 20)
        clone = HostEarningsLedger(InMemoryVault(), EARNINGS, OWNER, NotificationLog())
        clone.import_state(ledger.export_state())
        assert clone.balance_of(HOST, USDC) == 20
        assert clone.is_authorized(MARKET)
