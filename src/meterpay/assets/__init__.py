"""Asset vault: balances, allowances and transfers of every account."""

from meterpay.assets.vault import NATIVE_ASSET, AssetVault, InMemoryVault, normalize_address

__all__ = ["NATIVE_ASSET", "AssetVault", "InMemoryVault", "normalize_address"]
