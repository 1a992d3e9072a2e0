"""Typed telemetry values and their JSON wire representation.

Astarte carries a small closed set of value types. Devices send them natively
(BSON over MQTT), while the realtime channel and the REST API re-expose them as
JSON, where binary blobs become base64 strings and timestamps become RFC 3339
strings. This module converts between the two forms and decides whether a
wire value is semantically equal to the value that was sent.
"""

from __future__ import annotations

import base64
import binascii
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1


class ValueDecodeError(ValueError):
    """Raised when a wire value cannot be decoded into the expected type."""


class ValueType(str, Enum):
    """Astarte mapping types."""

    DOUBLE = "double"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    LONG_INTEGER = "longinteger"
    STRING = "string"
    BINARY_BLOB = "binaryblob"
    DATETIME = "datetime"
    DOUBLE_ARRAY = "doublearray"
    INTEGER_ARRAY = "integerarray"
    BOOLEAN_ARRAY = "booleanarray"
    LONG_INTEGER_ARRAY = "longintegerarray"
    STRING_ARRAY = "stringarray"
    BINARY_BLOB_ARRAY = "binaryblobarray"
    DATETIME_ARRAY = "datetimearray"

    @property
    def is_array(self) -> bool:
        return self.value.endswith("array")

    @property
    def scalar(self) -> "ValueType":
        """Element type for array types, the type itself otherwise."""
        if not self.is_array:
            return self
        return ValueType(self.value[: -len("array")])


@dataclass(frozen=True, slots=True)
class TelemetryValue:
    """A value tagged with its Astarte type.

    Array values are normalised to tuples so instances stay hashable.
    """

    type: ValueType
    value: Any

    def __post_init__(self) -> None:
        if self.type.is_array:
            if isinstance(self.value, (str, bytes)) or not hasattr(self.value, "__iter__"):
                raise TypeError(f"{self.type.value} requires a sequence, got {self.value!r}")
            items = tuple(self.value)
            for item in items:
                _check_scalar(self.type.scalar, item)
            object.__setattr__(self, "value", items)
        else:
            _check_scalar(self.type, self.value)

    def __repr__(self) -> str:
        return f"TelemetryValue({self.type.value}, {self.value!r})"


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_scalar(value_type: ValueType, value: Any) -> None:
    if value_type is ValueType.DOUBLE:
        ok = (_is_int(value) or isinstance(value, float)) and math.isfinite(value)
    elif value_type is ValueType.INTEGER:
        ok = _is_int(value) and INT32_MIN <= value <= INT32_MAX
    elif value_type is ValueType.BOOLEAN:
        ok = isinstance(value, bool)
    elif value_type is ValueType.LONG_INTEGER:
        ok = _is_int(value) and INT64_MIN <= value <= INT64_MAX
    elif value_type is ValueType.STRING:
        ok = isinstance(value, str)
    elif value_type is ValueType.BINARY_BLOB:
        ok = isinstance(value, bytes)
    elif value_type is ValueType.DATETIME:
        ok = isinstance(value, datetime) and value.tzinfo is not None
    else:  # pragma: no cover - enum is closed
        ok = False

    if not ok:
        raise TypeError(f"invalid {value_type.value} value: {value!r}")


# ----------------------------------------------------------------------
# Timestamps and base64
# ----------------------------------------------------------------------
def parse_timestamp(raw: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""

    if not isinstance(raw, str):
        raise ValueDecodeError(f"expected an RFC 3339 string, got {raw!r}")

    text = raw.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueDecodeError(f"invalid RFC 3339 timestamp: {raw!r}") from exc

    if parsed.tzinfo is None:
        raise ValueDecodeError(f"timestamp without offset: {raw!r}")

    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def base64_encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def base64_decode(raw: Any) -> bytes:
    if not isinstance(raw, str):
        raise ValueDecodeError(f"expected a base64 string, got {raw!r}")
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueDecodeError(f"malformed base64: {raw!r}") from exc


# ----------------------------------------------------------------------
# Codec
# ----------------------------------------------------------------------
def _encode_scalar(value_type: ValueType, value: Any) -> Any:
    if value_type is ValueType.DOUBLE:
        return float(value)
    if value_type is ValueType.BINARY_BLOB:
        return base64_encode(value)
    if value_type is ValueType.DATETIME:
        return format_timestamp(value)
    return value


def encode(value: TelemetryValue) -> Any:
    """Convert a typed value into its JSON wire form."""

    if value.type.is_array:
        return [_encode_scalar(value.type.scalar, item) for item in value.value]
    return _encode_scalar(value.type, value.value)


def _decode_double(raw: Any) -> float:
    if not (_is_int(raw) or isinstance(raw, float)):
        raise ValueDecodeError(f"expected a number, got {raw!r}")
    result = float(raw)
    if not math.isfinite(result):
        raise ValueDecodeError(f"non-finite double: {raw!r}")
    return result


def _decode_int(lower: int, upper: int) -> Callable[[Any], int]:
    def decoder(raw: Any) -> int:
        if not _is_int(raw):
            raise ValueDecodeError(f"expected an integer, got {raw!r}")
        if not lower <= raw <= upper:
            raise ValueDecodeError(f"integer out of range: {raw!r}")
        return raw

    return decoder


def _decode_bool(raw: Any) -> bool:
    if not isinstance(raw, bool):
        raise ValueDecodeError(f"expected a boolean, got {raw!r}")
    return raw


def _decode_string(raw: Any) -> str:
    if not isinstance(raw, str):
        raise ValueDecodeError(f"expected a string, got {raw!r}")
    return raw


_SCALAR_DECODERS: dict[ValueType, Callable[[Any], Any]] = {
    ValueType.DOUBLE: _decode_double,
    ValueType.INTEGER: _decode_int(INT32_MIN, INT32_MAX),
    ValueType.BOOLEAN: _decode_bool,
    ValueType.LONG_INTEGER: _decode_int(INT64_MIN, INT64_MAX),
    ValueType.STRING: _decode_string,
    ValueType.BINARY_BLOB: base64_decode,
    ValueType.DATETIME: parse_timestamp,
}


def decode(value_type: ValueType, raw: Any) -> TelemetryValue:
    """Decode a JSON wire value into a :class:`TelemetryValue`.

    Raises:
        ValueDecodeError: If the wire value has the wrong shape for ``value_type``.
    """

    decoder = _SCALAR_DECODERS[value_type.scalar]
    if value_type.is_array:
        if not isinstance(raw, list):
            raise ValueDecodeError(f"expected a JSON array for {value_type.value}, got {raw!r}")
        return TelemetryValue(value_type, tuple(decoder(item) for item in raw))
    return TelemetryValue(value_type, decoder(raw))


def equals(expected: TelemetryValue, raw: Any) -> bool:
    """Return whether ``raw`` decodes to exactly ``expected``.

    Doubles are compared exactly. A wire value that cannot be decoded raises
    :class:`ValueDecodeError` rather than returning ``False``.
    """

    return decode(expected.type, raw) == expected
