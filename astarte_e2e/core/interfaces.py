"""Astarte interface definitions used by the test device.

Definitions are bundled as JSON under ``astarte_e2e/data/interfaces`` and
parsed once into immutable objects. The ``additional`` subdirectory holds the
interfaces added to and removed from the introspection at runtime.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, Optional

from .. import constants
from ..values import ValueType

INTERFACES_DIR = Path(__file__).resolve().parent.parent / "data" / "interfaces"
ADDITIONAL_INTERFACES_DIR = INTERFACES_DIR / "additional"

DEVICE_DATASTREAM = f"{constants.INTERFACE_PREFIX}.DeviceDatastream"
CUSTOM_DEVICE_DATASTREAM = f"{constants.INTERFACE_PREFIX}.CustomDeviceDatastream"
DEVICE_AGGREGATE = f"{constants.INTERFACE_PREFIX}.DeviceAggregate"
SERVER_AGGREGATE = f"{constants.INTERFACE_PREFIX}.ServerAggregate"
DEVICE_PROPERTY = f"{constants.INTERFACE_PREFIX}.DeviceProperty"
SERVER_PROPERTY = f"{constants.INTERFACE_PREFIX}.ServerProperty"
SERVER_DATASTREAM = f"{constants.INTERFACE_PREFIX}.ServerDatastream"

_PARAMETER = re.compile(r"%\{[A-Za-z_][A-Za-z0-9_]*\}")


class InterfaceDefinitionError(ValueError):
    """Raised when an interface JSON document is invalid."""


class Reliability(str, Enum):
    UNRELIABLE = "unreliable"
    GUARANTEED = "guaranteed"
    UNIQUE = "unique"

    @property
    def qos(self) -> int:
        return {"unreliable": 0, "guaranteed": 1, "unique": 2}[self.value]


@dataclass(frozen=True, slots=True)
class Mapping:
    endpoint: str
    type: ValueType
    reliability: Reliability = Reliability.UNRELIABLE
    retention: str = "discard"
    explicit_timestamp: bool = False

    def matches(self, path: str) -> bool:
        return _endpoint_regex(self.endpoint).fullmatch(path) is not None


@dataclass(frozen=True, slots=True)
class Interface:
    name: str
    version_major: int
    version_minor: int
    type: str
    ownership: str
    aggregation: str
    mappings: tuple[Mapping, ...]

    @property
    def introspection_entry(self) -> str:
        return f"{self.name}:{self.version_major}:{self.version_minor}"

    @property
    def is_device_owned(self) -> bool:
        return self.ownership == "device"

    @property
    def is_property(self) -> bool:
        return self.type == "properties"

    def mapping_for(self, path: str) -> Optional[Mapping]:
        for mapping in self.mappings:
            if mapping.matches(path):
                return mapping
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Interface":
        try:
            name = str(data["interface_name"])
            interface_type = str(data["type"])
            mappings_data = data["mappings"]
            major = int(data["version_major"])
            minor = int(data["version_minor"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InterfaceDefinitionError(f"invalid interface definition: {exc}") from exc

        # Properties are always delivered exactly once.
        default_reliability = (
            Reliability.UNIQUE if interface_type == "properties" else Reliability.UNRELIABLE
        )

        mappings = []
        for item in mappings_data:
            try:
                mappings.append(
                    Mapping(
                        endpoint=str(item["endpoint"]),
                        type=ValueType(item["type"]),
                        reliability=Reliability(
                            item.get("reliability", default_reliability.value)
                        ),
                        retention=str(item.get("retention", "discard")),
                        explicit_timestamp=bool(item.get("explicit_timestamp", False)),
                    )
                )
            except (KeyError, ValueError) as exc:
                raise InterfaceDefinitionError(
                    f"invalid mapping in {name}: {item!r}"
                ) from exc

        return cls(
            name=name,
            version_major=major,
            version_minor=minor,
            type=interface_type,
            ownership=str(data.get("ownership", "device")),
            aggregation=str(data.get("aggregation", "individual")),
            mappings=tuple(mappings),
        )

    @classmethod
    def from_file(cls, path: Path) -> "Interface":
        with path.open("r", encoding="utf-8") as stream:
            return cls.from_dict(json.load(stream))


@lru_cache(maxsize=None)
def _endpoint_regex(endpoint: str) -> re.Pattern[str]:
    pattern = "".join(
        "[^/]+" if _PARAMETER.fullmatch(part) else re.escape(part)
        for part in re.split(r"(%\{[A-Za-z_][A-Za-z0-9_]*\})", endpoint)
        if part
    )
    return re.compile(pattern)


def load_interfaces(directory: Path) -> tuple[Interface, ...]:
    """Parse every ``*.json`` file directly inside ``directory``, sorted by name."""

    return tuple(Interface.from_file(path) for path in sorted(directory.glob("*.json")))


@lru_cache(maxsize=None)
def base_interfaces() -> tuple[Interface, ...]:
    return load_interfaces(INTERFACES_DIR)


@lru_cache(maxsize=None)
def additional_interfaces() -> tuple[Interface, ...]:
    return load_interfaces(ADDITIONAL_INTERFACES_DIR)


def interface_names(interfaces: Iterable[Interface]) -> set[str]:
    return {interface.name for interface in interfaces}
