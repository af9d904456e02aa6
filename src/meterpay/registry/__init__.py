"""Capability interfaces for the external host and model registries."""

from meterpay.registry.capability import (
    HostRegistry,
    ModelRegistry,
    StaticHostRegistry,
    StaticModelRegistry,
    model_id_for,
)

__all__ = [
    "HostRegistry",
    "ModelRegistry",
    "StaticHostRegistry",
    "StaticModelRegistry",
    "model_id_for",
]
