"""Capability interfaces for the external host and model registries.

The host staking registry and the model-approval governance process live
outside the settlement engine. The engine consumes them only through the
narrow, read-only Protocols below, so any backend (an on-chain contract
reader, a static table in tests) can be substituted.

Model identifiers are 32-byte keccak hashes of "repo/filename", hex
encoded with a 0x prefix.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol, Set, runtime_checkable

from web3 import Web3

from meterpay.assets.vault import normalize_address


def model_id_for(repo: str, filename: str) -> str:
    """Compute the canonical identifier of a model artifact."""
    return Web3.to_hex(Web3.keccak(text=f"{repo}/{filename}"))


def normalize_model_id(model_id: str) -> str:
    value = model_id.lower()
    return value if value.startswith("0x") else f"0x{value}"


@runtime_checkable
class HostRegistry(Protocol):
    """Read-only view of registered, staked hosts."""

    def is_registered(self, host: str) -> bool:
        """True if ``host`` is registered and currently active."""
        ...

    def min_price_for(self, host: str, model_id: Optional[str] = None) -> Optional[int]:
        """The host's minimum price per unit for ``model_id``.

        ``model_id=None`` asks for the host's default minimum. Returns
        None if the host does not serve the requested model.
        """
        ...


@runtime_checkable
class ModelRegistry(Protocol):
    """Read-only view of governance-approved models."""

    def is_approved(self, model_id: str) -> bool:
        ...


def is_host_capable(
    registry: HostRegistry,
    host: str,
    model_id: Optional[str],
    price_per_unit: int,
) -> bool:
    """Is ``host`` registered, serving ``model_id``, at a price >= its minimum?"""
    if not registry.is_registered(host):
        return False
    minimum = registry.min_price_for(host, model_id)
    return minimum is not None and price_per_unit >= minimum


@dataclass
class HostListing:
    """One row of the static host table."""
    default_min_price: int = 1
    model_prices: Dict[str, int] = field(default_factory=dict)
    active: bool = True


class StaticHostRegistry:
    """In-memory host table. Implements HostRegistry.

    Usage:
        hosts = StaticHostRegistry()
        hosts.register(host_address, default_min_price=50)
        hosts.set_model_price(host_address, model_id, 80)
    """

    def __init__(self) -> None:
        self._hosts: Dict[str, HostListing] = {}

    def register(self, host: str, default_min_price: int = 1) -> None:
        host = normalize_address(host, "host")
        if host in self._hosts:
            raise ValueError(f"Host already registered: {host}")
        self._hosts[host] = HostListing(default_min_price=default_min_price)

    def unregister(self, host: str) -> None:
        host = normalize_address(host, "host")
        listing = self._hosts.get(host)
        if listing is None:
            raise ValueError(f"Unknown host: {host}")
        listing.active = False

    def set_model_price(self, host: str, model_id: str, min_price: int) -> None:
        host = normalize_address(host, "host")
        listing = self._hosts.get(host)
        if listing is None:
            raise ValueError(f"Unknown host: {host}")
        listing.model_prices[normalize_model_id(model_id)] = min_price

    def is_registered(self, host: str) -> bool:
        listing = self._hosts.get(host)
        return listing is not None and listing.active

    def min_price_for(self, host: str, model_id: Optional[str] = None) -> Optional[int]:
        listing = self._hosts.get(host)
        if listing is None:
            return None
        if model_id is None:
            return listing.default_min_price
        return listing.model_prices.get(normalize_model_id(model_id))

    def export_state(self) -> dict:
        return {
            host: {
                "default_min_price": listing.default_min_price,
                "model_prices": dict(listing.model_prices),
                "active": listing.active,
            }
            for host, listing in sorted(self._hosts.items())
        }

    def import_state(self, data: dict) -> None:
        self._hosts = {
            host: HostListing(
                default_min_price=int(row["default_min_price"]),
                model_prices={k: int(v) for k, v in row.get("model_prices", {}).items()},
                active=bool(row.get("active", True)),
            )
            for host, row in data.items()
        }


class StaticModelRegistry:
    """In-memory set of approved model identifiers. Implements ModelRegistry."""

    def __init__(self, approved: Optional[Set[str]] = None) -> None:
        self._approved: Set[str] = {normalize_model_id(m) for m in (approved or set())}

    def approve(self, model_id: str) -> None:
        self._approved.add(normalize_model_id(model_id))

    def revoke(self, model_id: str) -> None:
        self._approved.discard(normalize_model_id(model_id))

    def is_approved(self, model_id: str) -> bool:
        return normalize_model_id(model_id) in self._approved

    def export_state(self) -> list:
        return sorted(self._approved)

    def import_state(self, data: list) -> None:
        self._approved = {normalize_model_id(m) for m in data}
