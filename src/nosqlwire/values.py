"""Dynamic value model used for rows, keys and query results."""

from __future__ import annotations

import math
import re
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any, Iterable, Iterator, Mapping, Optional, Sequence

__all__ = [
    "FieldType",
    "Value",
    "ValueAccessError",
    "AccessErrorKind",
    "compare_values",
    "INT32_MIN",
    "INT32_MAX",
    "INT64_MIN",
    "INT64_MAX",
]

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

_PATH_SEGMENT = re.compile(r"([^\[\]]*)((?:\[\d+\])*)")
_PATH_INDEX = re.compile(r"\[(\d+)\]")


class FieldType(IntEnum):
    """Value variant tags. The numbering is also the one-byte wire tag."""

    ARRAY = 0
    BINARY = 1
    BOOLEAN = 2
    DOUBLE = 3
    INTEGER = 4
    LONG = 5
    MAP = 6
    STRING = 7
    TIMESTAMP = 8
    NUMBER = 9
    NULL = 11


class AccessErrorKind(str, Enum):
    MISSING_FIELD = "missing_field"
    TYPE_MISMATCH = "type_mismatch"


class ValueAccessError(ValueError):
    """Raised on malformed construction or access of a :class:`Value`."""

    def __init__(self, kind: AccessErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


def _mismatch(message: str) -> ValueAccessError:
    return ValueAccessError(AccessErrorKind.TYPE_MISMATCH, message)


def _missing(message: str) -> ValueAccessError:
    return ValueAccessError(AccessErrorKind.MISSING_FIELD, message)


@dataclass(frozen=True, slots=True, eq=False)
class Value:
    """A node of an owned, acyclic value tree.

    Instances are built through the classmethod constructors (or
    :meth:`Value.of` for native Python input) which validate the payload.
    Arrays hold a tuple of values and maps an insertion-ordered dict keyed
    by string; neither is exposed for mutation.
    """

    type: FieldType
    data: Any = None

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def null(cls) -> "Value":
        return cls(FieldType.NULL, None)

    @classmethod
    def boolean(cls, value: bool) -> "Value":
        if not isinstance(value, bool):
            raise _mismatch(f"boolean value expected, got {type(value).__name__}")
        return cls(FieldType.BOOLEAN, value)

    @classmethod
    def integer(cls, value: int) -> "Value":
        if isinstance(value, bool) or not isinstance(value, int):
            raise _mismatch(f"integer value expected, got {type(value).__name__}")
        if not INT32_MIN <= value <= INT32_MAX:
            raise _mismatch(f"{value} does not fit in a 32-bit integer")
        return cls(FieldType.INTEGER, value)

    @classmethod
    def long(cls, value: int) -> "Value":
        if isinstance(value, bool) or not isinstance(value, int):
            raise _mismatch(f"long value expected, got {type(value).__name__}")
        if not INT64_MIN <= value <= INT64_MAX:
            raise _mismatch(f"{value} does not fit in a 64-bit integer")
        return cls(FieldType.LONG, value)

    @classmethod
    def double(cls, value: float) -> "Value":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise _mismatch(f"double value expected, got {type(value).__name__}")
        return cls(FieldType.DOUBLE, float(value))

    @classmethod
    def number(cls, value: Decimal | int | str) -> "Value":
        if isinstance(value, bool):
            raise _mismatch("number value expected, got bool")
        if isinstance(value, (int, str)):
            try:
                value = Decimal(value)
            except ArithmeticError as exc:
                raise _mismatch(f"invalid number literal {value!r}") from exc
        if not isinstance(value, Decimal):
            raise _mismatch(f"number value expected, got {type(value).__name__}")
        if not value.is_finite():
            raise _mismatch(f"number must be finite, got {value}")
        exponent = value.as_tuple().exponent
        if not INT32_MIN <= exponent <= INT32_MAX:
            raise _mismatch(f"number exponent {exponent} does not fit in a 32-bit integer")
        return cls(FieldType.NUMBER, value)

    @classmethod
    def string(cls, value: str) -> "Value":
        if not isinstance(value, str):
            raise _mismatch(f"string value expected, got {type(value).__name__}")
        return cls(FieldType.STRING, value)

    @classmethod
    def binary(cls, value: bytes | bytearray | memoryview) -> "Value":
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise _mismatch(f"binary value expected, got {type(value).__name__}")
        return cls(FieldType.BINARY, bytes(value))

    @classmethod
    def timestamp(cls, value: datetime) -> "Value":
        """Wrap a datetime. Naive datetimes are taken to be UTC."""

        if not isinstance(value, datetime):
            raise _mismatch(f"datetime value expected, got {type(value).__name__}")
        offset = value.utcoffset()
        if offset is None:
            return cls(FieldType.TIMESTAMP, value.replace(tzinfo=timezone.utc))
        if offset % timedelta(minutes=1):
            raise _mismatch(f"UTC offset {offset} is not a whole number of minutes")
        return cls(FieldType.TIMESTAMP, value.astimezone(timezone(offset)))

    @classmethod
    def array(cls, items: Iterable[Any]) -> "Value":
        if isinstance(items, (str, bytes, bytearray, Mapping)):
            raise _mismatch(f"array items expected, got {type(items).__name__}")
        return cls(FieldType.ARRAY, tuple(cls.of(item) for item in items))

    @classmethod
    def map(cls, entries: Mapping[str, Any] | Iterable[tuple[str, Any]] | None = None) -> "Value":
        pairs = entries.items() if isinstance(entries, Mapping) else (entries or ())
        data: dict[str, Value] = {}
        for key, item in pairs:
            if not isinstance(key, str):
                raise _mismatch(f"map keys must be strings, got {type(key).__name__}")
            data[key] = cls.of(item)
        return cls(FieldType.MAP, data)

    @classmethod
    def of(cls, native: Any) -> "Value":
        """Convert a native Python object into a value tree."""

        if isinstance(native, Value):
            return native
        if native is None:
            return cls.null()
        if isinstance(native, bool):
            return cls.boolean(native)
        if isinstance(native, int):
            if INT32_MIN <= native <= INT32_MAX:
                return cls.integer(native)
            if INT64_MIN <= native <= INT64_MAX:
                return cls.long(native)
            return cls.number(native)
        if isinstance(native, float):
            return cls.double(native)
        if isinstance(native, Decimal):
            return cls.number(native)
        if isinstance(native, str):
            return cls.string(native)
        if isinstance(native, (bytes, bytearray, memoryview)):
            return cls.binary(native)
        if isinstance(native, datetime):
            return cls.timestamp(native)
        if isinstance(native, Mapping):
            return cls.map(native)
        if isinstance(native, (list, tuple)):
            return cls.array(native)
        raise _mismatch(f"cannot convert {type(native).__name__} to a value")

    # ------------------------------------------------------------------
    # Conversion and access
    # ------------------------------------------------------------------

    def to_native(self) -> Any:
        if self.type is FieldType.MAP:
            return {key: item.to_native() for key, item in self.data.items()}
        if self.type is FieldType.ARRAY:
            return [item.to_native() for item in self.data]
        return self.data

    def copy(self) -> "Value":
        """Return a structural clone of this tree."""

        if self.type is FieldType.MAP:
            return Value(FieldType.MAP, {key: item.copy() for key, item in self.data.items()})
        if self.type is FieldType.ARRAY:
            return Value(FieldType.ARRAY, tuple(item.copy() for item in self.data))
        return Value(self.type, self.data)

    @property
    def is_null(self) -> bool:
        return self.type is FieldType.NULL

    @property
    def is_numeric(self) -> bool:
        return self.type in _NUMERIC

    def as_bool(self) -> bool:
        self._expect(FieldType.BOOLEAN)
        return self.data

    def as_int(self) -> int:
        self._expect(FieldType.INTEGER, FieldType.LONG)
        return self.data

    def as_float(self) -> float:
        self._expect(FieldType.DOUBLE, FieldType.INTEGER, FieldType.LONG, FieldType.NUMBER)
        return float(self.data)

    def as_decimal(self) -> Decimal:
        self._expect(FieldType.NUMBER, FieldType.INTEGER, FieldType.LONG, FieldType.DOUBLE)
        return self.data if isinstance(self.data, Decimal) else Decimal(self.data)

    def as_str(self) -> str:
        self._expect(FieldType.STRING)
        return self.data

    def as_bytes(self) -> bytes:
        self._expect(FieldType.BINARY)
        return self.data

    def as_datetime(self) -> datetime:
        self._expect(FieldType.TIMESTAMP)
        return self.data

    def as_list(self) -> tuple["Value", ...]:
        self._expect(FieldType.ARRAY)
        return self.data

    def as_dict(self) -> dict[str, "Value"]:
        self._expect(FieldType.MAP)
        return dict(self.data)

    def keys(self) -> list[str]:
        self._expect(FieldType.MAP)
        return list(self.data)

    def items(self) -> list[tuple[str, "Value"]]:
        self._expect(FieldType.MAP)
        return list(self.data.items())

    def get(self, path: str, default: Optional["Value"] = None) -> "Value":
        """Resolve a dotted path such as ``"address.lines[1]"``.

        A missing field raises ``MISSING_FIELD`` unless ``default`` is given;
        stepping into a scalar raises ``TYPE_MISMATCH``.
        """

        node = self
        for step in _parse_path(path):
            try:
                node = node[step]
            except ValueAccessError as exc:
                if default is not None and exc.kind is AccessErrorKind.MISSING_FIELD:
                    return default
                raise
        return node

    def __getitem__(self, step: str | int) -> "Value":
        if isinstance(step, str):
            if self.type is not FieldType.MAP:
                raise _mismatch(f"cannot read field {step!r} from a {self.type.name} value")
            try:
                return self.data[step]
            except KeyError:
                raise _missing(f"field {step!r} not present") from None
        if self.type is not FieldType.ARRAY:
            raise _mismatch(f"cannot index a {self.type.name} value")
        if not 0 <= step < len(self.data):
            raise _missing(f"index {step} out of range for array of {len(self.data)}")
        return self.data[step]

    def __contains__(self, key: object) -> bool:
        return self.type is FieldType.MAP and key in self.data

    def __len__(self) -> int:
        if self.type not in (FieldType.MAP, FieldType.ARRAY):
            raise _mismatch(f"{self.type.name} value has no length")
        return len(self.data)

    def __bool__(self) -> bool:
        return True

    def __iter__(self) -> Iterator[Any]:
        if self.type in (FieldType.MAP, FieldType.ARRAY):
            return iter(self.data)
        raise _mismatch(f"{self.type.name} value is not iterable")

    def _expect(self, *types: FieldType) -> None:
        if self.type not in types:
            wanted = "/".join(t.name for t in types)
            raise _mismatch(f"expected {wanted} value, found {self.type.name}")

    # ------------------------------------------------------------------
    # Equality
    # ------------------------------------------------------------------

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Value):
            return NotImplemented
        if self.type is not other.type:
            return False
        if self.type is FieldType.MAP:
            return list(self.data.items()) == list(other.data.items())
        if self.type is FieldType.NUMBER:
            return self.data.as_tuple() == other.data.as_tuple()
        if self.type is FieldType.DOUBLE:
            return struct.pack(">d", self.data) == struct.pack(">d", other.data)
        if self.type is FieldType.TIMESTAMP:
            return self.data == other.data and self.data.utcoffset() == other.data.utcoffset()
        return self.data == other.data

    def __repr__(self) -> str:
        return f"Value.{self.type.name.lower()}({self.data!r})"


_NUMERIC = frozenset({FieldType.INTEGER, FieldType.LONG, FieldType.DOUBLE, FieldType.NUMBER})

# numerics < timestamps < strings < booleans < binaries < arrays < maps < null
_TYPE_RANK = {
    FieldType.INTEGER: 0,
    FieldType.LONG: 0,
    FieldType.DOUBLE: 0,
    FieldType.NUMBER: 0,
    FieldType.TIMESTAMP: 1,
    FieldType.STRING: 2,
    FieldType.BOOLEAN: 3,
    FieldType.BINARY: 4,
    FieldType.ARRAY: 5,
    FieldType.MAP: 6,
    FieldType.NULL: 7,
}


def _parse_path(path: str) -> list[str | int]:
    if not path:
        raise _missing("empty field path")
    steps: list[str | int] = []
    for segment in path.split("."):
        match = _PATH_SEGMENT.fullmatch(segment)
        if match is None or (not match.group(1) and not match.group(2)):
            raise _missing(f"malformed field path {path!r}")
        if match.group(1):
            steps.append(match.group(1))
        steps.extend(int(index) for index in _PATH_INDEX.findall(match.group(2)))
    return steps


def _compare_numeric(a: Value, b: Value) -> int:
    left, right = a.data, b.data
    left_nan = isinstance(left, float) and math.isnan(left)
    right_nan = isinstance(right, float) and math.isnan(right)
    if left_nan or right_nan:
        return (left_nan > right_nan) - (left_nan < right_nan)
    left_dec, right_dec = Decimal(left), Decimal(right)
    return (left_dec > right_dec) - (left_dec < right_dec)


def _compare_sequences(left: Sequence[Value], right: Sequence[Value], nulls_first: bool) -> int:
    for a, b in zip(left, right):
        result = compare_values(a, b, nulls_first=nulls_first)
        if result:
            return result
    return (len(left) > len(right)) - (len(left) < len(right))


def compare_values(a: Value, b: Value, *, nulls_first: bool = False) -> int:
    """Total order over values; returns -1, 0 or 1."""

    rank_a = -1 if nulls_first and a.is_null else _TYPE_RANK[a.type]
    rank_b = -1 if nulls_first and b.is_null else _TYPE_RANK[b.type]
    if rank_a != rank_b:
        return -1 if rank_a < rank_b else 1
    if a.is_numeric:
        return _compare_numeric(a, b)
    if a.type is FieldType.NULL:
        return 0
    if a.type is FieldType.ARRAY:
        return _compare_sequences(a.data, b.data, nulls_first)
    if a.type is FieldType.MAP:
        for (key_a, item_a), (key_b, item_b) in zip(a.data.items(), b.data.items()):
            if key_a != key_b:
                return -1 if key_a < key_b else 1
            result = compare_values(item_a, item_b, nulls_first=nulls_first)
            if result:
                return result
        return (len(a.data) > len(b.data)) - (len(a.data) < len(b.data))
    left, right = a.data, b.data
    return (left > right) - (left < right)
