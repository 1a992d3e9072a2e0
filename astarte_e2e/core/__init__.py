"""Core primitives for astarte-e2e."""

from .interfaces import (
    Interface,
    InterfaceDefinitionError,
    Mapping,
    Reliability,
    additional_interfaces,
    base_interfaces,
    interface_names,
    load_interfaces,
)
from .protocols import DeviceTransport, InterfaceLister

__all__ = [
    "DeviceTransport",
    "Interface",
    "InterfaceDefinitionError",
    "InterfaceLister",
    "Mapping",
    "Reliability",
    "additional_interfaces",
    "base_interfaces",
    "interface_names",
    "load_interfaces",
]
