"""Protocol definitions for the collaborators a validation run drives."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol

from ..values import TelemetryValue
from .interfaces import Interface


class DeviceTransport(Protocol):
    """Device side of the platform: publishes data as the test device."""

    async def send_individual(
        self,
        interface: str,
        path: str,
        value: TelemetryValue,
        timestamp: datetime,
    ) -> None:
        """Publish ``value`` on ``interface``/``path`` with an explicit timestamp."""
        ...

    async def extend_interfaces(self, interfaces: Iterable[Interface]) -> None:
        """Add interfaces to the device introspection."""
        ...

    async def remove_interfaces(self, names: Iterable[str]) -> None:
        """Remove interfaces from the device introspection."""
        ...


class InterfaceLister(Protocol):
    """Server side view of the interfaces a device declared."""

    async def interfaces(self) -> list[str]:
        ...
