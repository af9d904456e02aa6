from meterpay.policy.config import AssetLimits, ConfigAuthority, MarketplaceConfig

__all__ = ["AssetLimits", "ConfigAuthority", "MarketplaceConfig"]
