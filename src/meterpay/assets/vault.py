"""Asset vault: the in-process model of on-chain balances and transfers.

Every account (wallets and contract custody addresses alike) holds a
balance per asset. The zero address is the native-currency sentinel;
any other checksummed address identifies a fungible token.

Transfers are the only place where untrusted code runs: after crediting a
recipient, the vault invokes the recipient's receive hook (a native
``receive()`` or a token transfer hook). A hook may call back into the
marketplace. If the hook raises, or the sender lacks funds, the transfer
fails with ExternalTransferError and the enclosing operation unwinds.

The settlement core never depends on InMemoryVault directly; it depends
on the AssetVault Protocol, so another backend can be substituted.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, runtime_checkable

from web3 import Web3

from meterpay.errors import ExternalTransferError, InsufficientFundsError, ValidationError

logger = logging.getLogger(__name__)

NATIVE_ASSET = "0x0000000000000000000000000000000000000000"
ZERO_ADDRESS = NATIVE_ASSET

ReceiveHook = Callable[[str, str, int], None]


def normalize_address(value: str, field_name: str = "address") -> str:
    """Return the EIP-55 checksummed form of ``value``.

    Raises ValidationError for anything that is not a 20-byte hex address.
    """
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValidationError(f"Invalid {field_name}: {value!r}", reason="invalid_address")
    return Web3.to_checksum_address(value)


def is_native(asset: str) -> bool:
    return asset == NATIVE_ASSET


def is_amount(value: object) -> bool:
    """True for a plain integer. ``bool`` is an int subclass and is refused."""
    return isinstance(value, int) and not isinstance(value, bool)


@runtime_checkable
class AssetVault(Protocol):
    """Contract that any asset backend must satisfy.

    The escrow, earnings and settlement modules only ever talk to this
    interface. ``snapshot``/``restore`` let an enclosing operation unwind
    transfers it has already performed.
    """

    def balance_of(self, account: str, asset: str) -> int:
        ...

    def transfer(self, asset: str, sender: str, recipient: str, amount: int) -> None:
        ...

    def transfer_from(
        self, asset: str, spender: str, owner: str, recipient: str, amount: int,
    ) -> None:
        ...

    def snapshot(self) -> Any:
        ...

    def restore(self, snapshot: Any) -> None:
        ...


class InMemoryVault:
    """In-memory asset vault with allowances and receive hooks.

    Usage:
        vault = InMemoryVault()
        vault.mint(alice, NATIVE_ASSET, 10**18)
        vault.mint(alice, usdc, 5_000_000)
        vault.approve(alice, marketplace_address, usdc, 5_000_000)
    """

    def __init__(self) -> None:
        self._balances: Dict[Tuple[str, str], int] = {}
        self._allowances: Dict[Tuple[str, str, str], int] = {}
        self._hooks: Dict[str, ReceiveHook] = {}

    # ------------------------------------------------------------------
    # Funding and approvals (wallet-side actions)
    # ------------------------------------------------------------------

    def mint(self, account: str, asset: str, amount: int) -> None:
        """Create ``amount`` of ``asset`` in ``account`` (faucet)."""
        if not is_amount(amount) or amount <= 0:
            raise ValidationError("Mint amount must be positive", reason="invalid_amount")
        key = (normalize_address(account), normalize_address(asset, "asset"))
        self._balances[key] = self._balances.get(key, 0) + amount

    def approve(self, owner: str, spender: str, asset: str, amount: int) -> None:
        """Set the allowance ``spender`` may pull from ``owner``."""
        if not is_amount(amount) or amount < 0:
            raise ValidationError("Allowance cannot be negative", reason="invalid_amount")
        asset = normalize_address(asset, "asset")
        if is_native(asset):
            raise ValidationError(
                "Native currency has no allowances", reason="invalid_asset",
            )
        key = (normalize_address(owner), normalize_address(spender), asset)
        self._allowances[key] = amount

    def allowance(self, owner: str, spender: str, asset: str) -> int:
        return self._allowances.get((owner, spender, asset), 0)

    def set_receive_hook(self, account: str, hook: Optional[ReceiveHook]) -> None:
        """Install (or clear, with None) the code run when ``account`` receives."""
        account = normalize_address(account)
        if hook is None:
            self._hooks.pop(account, None)
        else:
            self._hooks[account] = hook

    # ------------------------------------------------------------------
    # AssetVault Protocol
    # ------------------------------------------------------------------

    def balance_of(self, account: str, asset: str) -> int:
        return self._balances.get((account, asset), 0)

    def transfer(self, asset: str, sender: str, recipient: str, amount: int) -> None:
        """Move ``amount`` from ``sender`` to ``recipient``, then run its hook."""
        if not is_amount(amount) or amount < 0:
            raise ExternalTransferError(f"Invalid transfer amount {amount!r}", reason="transfer_failed")
        if amount == 0:
            return
        before = self.snapshot()
        try:
            self._move(asset, sender, recipient, amount)
            self._notify(asset, sender, recipient, amount)
        except ExternalTransferError:
            self.restore(before)
            raise

    def transfer_from(
        self, asset: str, spender: str, owner: str, recipient: str, amount: int,
    ) -> None:
        """Allowance-gated pull of a fungible token from ``owner``."""
        if is_native(asset):
            raise ExternalTransferError(
                "Native currency cannot be pulled; attach value instead",
                reason="transfer_failed",
            )
        key = (owner, spender, asset)
        allowed = self._allowances.get(key, 0)
        if allowed < amount:
            raise InsufficientFundsError(
                f"Allowance {allowed} below requested {amount} for {owner}",
                reason="insufficient_allowance",
            )
        before = self.snapshot()
        self._allowances[key] = allowed - amount
        try:
            self._move(asset, owner, recipient, amount)
            self._notify(asset, owner, recipient, amount)
        except ExternalTransferError:
            self.restore(before)
            raise

    def snapshot(self) -> Any:
        return (dict(self._balances), dict(self._allowances))

    def restore(self, snapshot: Any) -> None:
        balances, allowances = snapshot
        self._balances = dict(balances)
        self._allowances = dict(allowances)

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def export_state(self) -> dict:
        return {
            "balances": [
                [account, asset, amount]
                for (account, asset), amount in sorted(self._balances.items())
            ],
            "allowances": [
                [owner, spender, asset, amount]
                for (owner, spender, asset), amount in sorted(self._allowances.items())
            ],
        }

    def import_state(self, data: dict) -> None:
        self._balances = {
            (account, asset): int(amount)
            for account, asset, amount in data.get("balances", [])
        }
        self._allowances = {
            (owner, spender, asset): int(amount)
            for owner, spender, asset, amount in data.get("allowances", [])
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _move(self, asset: str, sender: str, recipient: str, amount: int) -> None:
        held = self._balances.get((sender, asset), 0)
        if held < amount:
            raise ExternalTransferError(
                f"Transfer of {amount} failed: {sender} holds {held}",
                reason="transfer_failed",
            )
        self._balances[(sender, asset)] = held - amount
        self._balances[(recipient, asset)] = (
            self._balances.get((recipient, asset), 0) + amount
        )

    def _notify(self, asset: str, sender: str, recipient: str, amount: int) -> None:
        hook = self._hooks.get(recipient)
        if hook is None:
            return
        try:
            hook(asset, sender, amount)
        except ExternalTransferError:
            raise
        except Exception as e:
            logger.debug("receive hook of %s rejected transfer: %s", recipient, e)
            raise ExternalTransferError(
                f"Recipient {recipient} rejected transfer: {e}",
                reason="recipient_rejected",
            ) from e
