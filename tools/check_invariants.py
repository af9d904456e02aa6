#!/usr/bin/env python3
"""meterpay invariant checks against the shipped configuration file.

Value rules (fee range, time gates, session ranges, per-asset limits)
come from MarketplaceConfig.validate(). This tool adds the checks on the
raw file's shape that must pass before the file can be loaded at all.
"""

import json
import sys
from pathlib import Path
from typing import Optional

# Add src to path for meterpay imports
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from meterpay.errors import ValidationError
from meterpay.policy.config import CONFIG_FILENAME, MarketplaceConfig

CONFIG_DIR = ROOT / "config"

INTEGER_KEYS = (
    "fee_basis_points",
    "dispute_window",
    "timeout_multiplier",
    "min_price_per_unit",
    "max_price_per_unit",
    "min_duration",
    "max_duration",
    "min_proof_interval",
    "max_proof_interval",
)
ADDRESS_KEYS = ("owner", "treasury")


def load_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def check_shape(params: dict, errors: list[str]) -> None:
    """Validate keys and JSON types, before any value is interpreted."""
    for key in ADDRESS_KEYS:
        if not isinstance(params.get(key), str):
            errors.append(f"{key} must be an address string")
    for key in INTEGER_KEYS:
        value = params.get(key)
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{key} must be an integer")
    assets = params.get("assets")
    if not isinstance(assets, dict) or not assets:
        errors.append("assets must be a non-empty mapping")
        return
    for asset, limits in assets.items():
        if not isinstance(limits, dict):
            errors.append(f"{asset}: limits must be a mapping")
            continue
        for key in ("min_deposit", "max_deposit"):
            value = limits.get(key)
            if not isinstance(value, int) or isinstance(value, bool):
                errors.append(f"{asset}: {key} must be an integer")


def check(config_dir: Optional[Path] = None) -> int:
    params = load_json((config_dir or CONFIG_DIR) / CONFIG_FILENAME)
    errors: list[str] = []

    check_shape(params, errors)
    if not errors:
        try:
            errors.extend(MarketplaceConfig.from_dict(params).validate())
        except ValidationError as e:
            errors.append(str(e))

    if errors:
        print("Invariant check failed:")
        for err in errors:
            print(f"- {err}")
        return 1

    print("Invariant check passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(check(Path(sys.argv[1]) if len(sys.argv) > 1 else None))
