"""Curated set of tools agents may invoke."""

from .operations import SimulatedOperations
from .registry import (
    PAYLOAD_MODELS,
    Handler,
    ToolRegistry,
    ToolSpec,
    build_registry,
    normalize_payload,
)

__all__ = [
    "Handler",
    "PAYLOAD_MODELS",
    "SimulatedOperations",
    "ToolRegistry",
    "ToolSpec",
    "build_registry",
    "normalize_payload",
]
