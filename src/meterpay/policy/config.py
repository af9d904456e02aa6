"""Marketplace configuration: fee rate, time gates, ranges, accepted assets.

The configuration is an explicit, immutable object. It is loaded once
from config/marketplace_params.json and afterwards replaced only through
ConfigAuthority, whose update entry points are restricted to the owner
and revalidate the whole configuration before it takes effect.

Deposit limits are per asset: an absolute ceiling shared by assets of
different decimal precision would be enormous for one and modest for
another, so every accepted asset carries its own min and max.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from meterpay.assets.vault import NATIVE_ASSET, ZERO_ADDRESS, normalize_address
from meterpay.errors import AuthorizationError, ValidationError
from meterpay.models.settlement import BASIS_POINTS

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "marketplace_params.json"


@dataclass(frozen=True)
class AssetLimits:
    """Deposit bounds for one accepted asset, in its smallest unit."""
    min_deposit: int
    max_deposit: int


@dataclass(frozen=True)
class MarketplaceConfig:
    """Global marketplace parameters.

    Every time value is in seconds. fee_basis_points is the platform's
    share of the host's gross earnings (1000 = 10%).
    """
    owner: str
    treasury: str
    fee_basis_points: int
    dispute_window: int
    timeout_multiplier: int
    min_price_per_unit: int
    max_price_per_unit: int
    min_duration: int
    max_duration: int
    min_proof_interval: int
    max_proof_interval: int
    asset_limits: Dict[str, AssetLimits] = field(default_factory=dict)

    def is_accepted(self, asset: str) -> bool:
        return asset in self.asset_limits

    def limits_for(self, asset: str) -> AssetLimits:
        limits = self.asset_limits.get(asset)
        if limits is None:
            raise ValidationError(f"Asset not accepted: {asset}", reason="asset_not_accepted")
        return limits

    @property
    def accepted_assets(self) -> List[str]:
        return sorted(self.asset_limits)

    def timeout_threshold(self, proof_interval: int) -> int:
        """Seconds after the last proof at which anyone may force a timeout."""
        return proof_interval * self.timeout_multiplier

    def validate(self) -> List[str]:
        """Check every configuration invariant.

        Returns an empty list if valid, or a list of violation descriptions.
        """
        errors: List[str] = []
        if not 0 <= self.fee_basis_points <= BASIS_POINTS:
            errors.append(
                f"fee_basis_points must be in [0, {BASIS_POINTS}], got {self.fee_basis_points}"
            )
        if self.dispute_window < 0:
            errors.append("dispute_window cannot be negative")
        if self.timeout_multiplier < 1:
            errors.append("timeout_multiplier must be at least 1")
        for name in ("price_per_unit", "duration", "proof_interval"):
            low = getattr(self, f"min_{name}")
            high = getattr(self, f"max_{name}")
            if low <= 0:
                errors.append(f"min_{name} must be positive")
            if high < low:
                errors.append(f"max_{name} ({high}) below min_{name} ({low})")
        if self.min_proof_interval > self.max_duration:
            errors.append("min_proof_interval exceeds max_duration")
        if self.treasury == ZERO_ADDRESS:
            errors.append("treasury cannot be the zero address")
        if NATIVE_ASSET not in self.asset_limits:
            errors.append("native asset must be accepted")
        for asset, limits in self.asset_limits.items():
            if limits.min_deposit <= 0:
                errors.append(f"{asset}: min_deposit must be positive")
            if limits.max_deposit < limits.min_deposit:
                errors.append(f"{asset}: max_deposit below min_deposit")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "treasury": self.treasury,
            "fee_basis_points": self.fee_basis_points,
            "dispute_window": self.dispute_window,
            "timeout_multiplier": self.timeout_multiplier,
            "min_price_per_unit": self.min_price_per_unit,
            "max_price_per_unit": self.max_price_per_unit,
            "min_duration": self.min_duration,
            "max_duration": self.max_duration,
            "min_proof_interval": self.min_proof_interval,
            "max_proof_interval": self.max_proof_interval,
            "assets": {
                asset: {"min_deposit": l.min_deposit, "max_deposit": l.max_deposit}
                for asset, l in sorted(self.asset_limits.items())
            },
        }

    @classmethod
    def from_dict(cls, params: Dict[str, Any]) -> MarketplaceConfig:
        assets = {
            normalize_address(asset, "asset"): AssetLimits(
                min_deposit=int(limits["min_deposit"]),
                max_deposit=int(limits["max_deposit"]),
            )
            for asset, limits in params.get("assets", {}).items()
        }
        return cls(
            owner=normalize_address(params["owner"], "owner"),
            treasury=normalize_address(params["treasury"], "treasury"),
            fee_basis_points=int(params["fee_basis_points"]),
            dispute_window=int(params["dispute_window"]),
            timeout_multiplier=int(params["timeout_multiplier"]),
            min_price_per_unit=int(params["min_price_per_unit"]),
            max_price_per_unit=int(params["max_price_per_unit"]),
            min_duration=int(params["min_duration"]),
            max_duration=int(params["max_duration"]),
            min_proof_interval=int(params["min_proof_interval"]),
            max_proof_interval=int(params["max_proof_interval"]),
            asset_limits=assets,
        )

    @classmethod
    def from_file(cls, path: Path) -> MarketplaceConfig:
        """Load and validate a configuration file.

        Raises ValidationError listing every violation if invalid.
        """
        config = cls.from_dict(json.loads(path.read_text(encoding="utf-8")))
        violations = config.validate()
        if violations:
            raise ValidationError(
                f"Invalid configuration in {path}: " + "; ".join(violations),
                reason="invalid_config",
            )
        return config

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> MarketplaceConfig:
        return cls.from_file(config_dir / CONFIG_FILENAME)


class ConfigAuthority:
    """Owner-controlled holder of the current configuration.

    Every update builds a new MarketplaceConfig, validates it, and only
    then swaps it in. The previous object is never mutated, so a session
    or settlement that captured it keeps a consistent view.

    Usage:
        authority = ConfigAuthority(MarketplaceConfig.from_config_dir(path))
        authority.set_fee_rate(owner, 500)
        config = authority.current
    """

    def __init__(self, config: MarketplaceConfig) -> None:
        violations = config.validate()
        if violations:
            raise ValidationError(
                "Invalid configuration: " + "; ".join(violations),
                reason="invalid_config",
            )
        self._config = config

    @property
    def current(self) -> MarketplaceConfig:
        return self._config

    @property
    def owner(self) -> str:
        return self._config.owner

    def set_fee_rate(self, sender: str, fee_basis_points: int) -> MarketplaceConfig:
        return self._update(sender, fee_basis_points=fee_basis_points)

    def set_dispute_window(self, sender: str, seconds: int) -> MarketplaceConfig:
        return self._update(sender, dispute_window=seconds)

    def set_timeout_multiplier(self, sender: str, multiplier: int) -> MarketplaceConfig:
        return self._update(sender, timeout_multiplier=multiplier)

    def set_treasury(self, sender: str, treasury: str) -> MarketplaceConfig:
        return self._update(sender, treasury=normalize_address(treasury, "treasury"))

    def set_asset_limits(
        self, sender: str, asset: str, min_deposit: int, max_deposit: int,
    ) -> MarketplaceConfig:
        """Accept ``asset`` (or change its bounds)."""
        asset = normalize_address(asset, "asset")
        limits = dict(self._config.asset_limits)
        limits[asset] = AssetLimits(min_deposit=min_deposit, max_deposit=max_deposit)
        return self._update(sender, asset_limits=limits)

    def remove_asset(self, sender: str, asset: str) -> MarketplaceConfig:
        """Stop accepting ``asset`` for new deposits and sessions.

        Existing balances and sessions in the asset are unaffected.
        """
        asset = normalize_address(asset, "asset")
        if asset not in self._config.asset_limits:
            raise ValidationError(f"Asset not accepted: {asset}", reason="asset_not_accepted")
        limits = dict(self._config.asset_limits)
        del limits[asset]
        return self._update(sender, asset_limits=limits)

    def require_owner(self, sender: str) -> None:
        if sender != self._config.owner:
            raise AuthorizationError(
                f"Only the owner may perform this action (caller {sender})",
                reason="not_owner",
            )

    def snapshot(self) -> MarketplaceConfig:
        return self._config

    def restore(self, snapshot: MarketplaceConfig) -> None:
        self._config = snapshot

    def _update(self, sender: str, **changes: Any) -> MarketplaceConfig:
        self.require_owner(sender)
        candidate = replace(self._config, **changes)
        violations = candidate.validate()
        if violations:
            raise ValidationError(
                "Rejected configuration update: " + "; ".join(violations),
                reason="invalid_config",
            )
        logger.info("configuration updated: %s", ", ".join(sorted(changes)))
        self._config = candidate
        return candidate


def load_default_config(config_dir: Optional[Path] = None) -> MarketplaceConfig:
    """Load the shipped configuration (repository ``config/`` directory)."""
    if config_dir is None:
        config_dir = Path(__file__).resolve().parents[3] / "config"
    return MarketplaceConfig.from_config_dir(config_dir)
