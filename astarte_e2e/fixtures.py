"""Data sent by the individual datastream checks.

Fixtures are ordered tuples so every run sends paths in the same order.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .core.interfaces import CUSTOM_DEVICE_DATASTREAM, DEVICE_DATASTREAM
from .values import TelemetryValue, ValueType, base64_decode, parse_timestamp


@dataclass(frozen=True, slots=True)
class InterfaceFixture:
    interface: str
    entries: tuple[tuple[str, TelemetryValue], ...]
    description: str = ""

    def __len__(self) -> int:
        return len(self.entries)


ALL_TYPE_DATA: tuple[tuple[str, TelemetryValue], ...] = (
    ("double_endpoint", TelemetryValue(ValueType.DOUBLE, 4.35)),
    ("integer_endpoint", TelemetryValue(ValueType.INTEGER, 1)),
    ("boolean_endpoint", TelemetryValue(ValueType.BOOLEAN, True)),
    ("longinteger_endpoint", TelemetryValue(ValueType.LONG_INTEGER, 45543543534)),
    ("string_endpoint", TelemetryValue(ValueType.STRING, "Hello")),
    ("binaryblob_endpoint", TelemetryValue(ValueType.BINARY_BLOB, base64_decode("aGVsbG8="))),
    (
        "datetime_endpoint",
        TelemetryValue(ValueType.DATETIME, parse_timestamp("2021-09-29T17:46:48.000Z")),
    ),
    ("doublearray_endpoint", TelemetryValue(ValueType.DOUBLE_ARRAY, (43.5, 10.5, 11.9))),
    ("integerarray_endpoint", TelemetryValue(ValueType.INTEGER_ARRAY, (-4, 123, -2222, 30))),
    ("booleanarray_endpoint", TelemetryValue(ValueType.BOOLEAN_ARRAY, (True, False))),
    (
        "longintegerarray_endpoint",
        TelemetryValue(
            ValueType.LONG_INTEGER_ARRAY, (53267895478, 53267895428, 53267895118)
        ),
    ),
    ("stringarray_endpoint", TelemetryValue(ValueType.STRING_ARRAY, ("Test ", "String"))),
    (
        "binaryblobarray_endpoint",
        TelemetryValue(
            ValueType.BINARY_BLOB_ARRAY,
            tuple(base64_decode(item) for item in ("aGVsbG8=", "aGVsbG8=")),
        ),
    ),
    (
        "datetimearray_endpoint",
        TelemetryValue(
            ValueType.DATETIME_ARRAY,
            tuple(
                parse_timestamp(item)
                for item in ("2021-10-23T17:46:48.000Z", "2021-11-11T17:46:48.000Z")
            ),
        ),
    ),
)


DEVICE_DATASTREAM_FIXTURE = InterfaceFixture(
    interface=DEVICE_DATASTREAM,
    entries=tuple((f"/{name}", value) for name, value in ALL_TYPE_DATA),
    description="one value of every type",
)

# Long integers above 2**53 lose precision if decoded as IEEE doubles.
DEVICE_DATASTREAM_OVERFLOW_FIXTURE = InterfaceFixture(
    interface=DEVICE_DATASTREAM,
    entries=(
        ("/longinteger_endpoint", TelemetryValue(ValueType.LONG_INTEGER, 2**55)),
        (
            "/longintegerarray_endpoint",
            TelemetryValue(ValueType.LONG_INTEGER_ARRAY, (2**55,) * 4),
        ),
    ),
    description="long integers beyond the double safe range",
)

CUSTOM_DEVICE_DATASTREAM_FIXTURE = InterfaceFixture(
    interface=CUSTOM_DEVICE_DATASTREAM,
    entries=(
        ("/volatileUnreliable", TelemetryValue(ValueType.LONG_INTEGER, 42)),
        ("/volatileGuaranteed", TelemetryValue(ValueType.BOOLEAN, False)),
        ("/volatileUnique", TelemetryValue(ValueType.DOUBLE, 35.2)),
        ("/storedUnreliable", TelemetryValue(ValueType.LONG_INTEGER, 42)),
        ("/storedGuaranteed", TelemetryValue(ValueType.BOOLEAN, False)),
        ("/storedUnique", TelemetryValue(ValueType.DOUBLE, 35.2)),
    ),
    description="retention and reliability combinations",
)


class Variant(str, Enum):
    """Individual datastream check variants selectable from the CLI."""

    DEFAULT = "default"
    CUSTOM = "custom"
    OVERFLOW = "overflow"

    @property
    def fixture(self) -> InterfaceFixture:
        return VARIANT_FIXTURES[self]


VARIANT_FIXTURES: dict[Variant, InterfaceFixture] = {
    Variant.DEFAULT: DEVICE_DATASTREAM_FIXTURE,
    Variant.CUSTOM: CUSTOM_DEVICE_DATASTREAM_FIXTURE,
    Variant.OVERFLOW: DEVICE_DATASTREAM_OVERFLOW_FIXTURE,
}
