"""
Type coercion between loosely-typed records and PostgreSQL wire values.

Load side, in order:

1. ``stringify_records`` normalizes heterogeneous input: datetimes become
   RFC3339 strings and numeric-looking strings become FLOAT64 values that
   keep their source text, so text columns receive the string unchanged.
2. ``coerce_records`` turns every field into a tagged ``Value`` in column
   order; the designated time column is parsed back into a timestamp.
3. The bulk loader emits ``Value.for_column(type)`` when the staging column
   types are known, ``Value.to_wire()`` otherwise.

Read side: ``to_native_records`` unwraps fetched rows into plain values.
"""
import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from psycopg.types.json import Json, Jsonb
from psycopg.types.numeric import Float8, Int4, Int8

from pgupsert.core.errors import CoercionError, CoercionWarning
from pgupsert.core.logger import setup_logger

logger = setup_logger(__name__, include_location=True)

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1

INTEGER_TYPES = {"int2", "int4", "int8"}
FLOAT_TYPES = {"float4", "float8"}
TEXT_TYPES = {"text", "varchar", "bpchar", "name"}
TRUE_STRINGS = {"t", "true", "y", "yes", "on", "1"}
FALSE_STRINGS = {"f", "false", "n", "no", "off", "0"}

# Plain decimal or exponent notation, infinity and NaN. No underscores or padding.
NUMERIC_STRING = re.compile(
    r"[+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|inf(?:inity)?|nan)", re.IGNORECASE
)


class ValueKind(str, Enum):
    NULL = "null"
    BOOL = "bool"
    INT32 = "int32"
    INT64 = "int64"
    FLOAT64 = "float64"
    DECIMAL = "decimal"
    TEXT = "text"
    TIMESTAMP = "timestamp"
    BYTES = "bytes"
    OTHER = "other"


class CoercionPolicy(str, Enum):
    """What to do with a field that is missing or cannot be coerced."""
    NULL = "null"
    RAISE = "raise"


@dataclass(frozen=True)
class Value:
    """
    A field value tagged with its kind; NULL is the only absent kind.

    ``source`` is the input text a numeric value was parsed from. Text
    columns and the text COPY format get that text back verbatim.
    """

    kind: ValueKind
    data: Any = None
    source: Optional[str] = field(default=None, compare=False)

    @classmethod
    def parsed_number(cls, text: str) -> Optional["Value"]:
        """FLOAT64 for a numeric-looking string, None for anything else."""
        if not NUMERIC_STRING.fullmatch(text):
            return None
        return cls(ValueKind.FLOAT64, float(text), source=text)

    @property
    def present(self) -> bool:
        return self.kind is not ValueKind.NULL

    @classmethod
    def null(cls) -> "Value":
        return NULL

    @classmethod
    def of(cls, obj: Any) -> "Value":
        """Tag a Python value by its runtime type."""
        if obj is None:
            return NULL
        if isinstance(obj, Value):
            return obj
        # bool is an int subclass
        if isinstance(obj, bool):
            return cls(ValueKind.BOOL, obj)
        if isinstance(obj, int):
            kind = ValueKind.INT32 if INT32_MIN <= obj <= INT32_MAX else ValueKind.INT64
            return cls(kind, int(obj))
        if isinstance(obj, float):
            return cls(ValueKind.FLOAT64, float(obj))
        if isinstance(obj, Decimal):
            return cls(ValueKind.DECIMAL, obj)
        if isinstance(obj, str):
            return cls(ValueKind.TEXT, obj)
        if isinstance(obj, datetime):
            return cls(ValueKind.TIMESTAMP, obj)
        if isinstance(obj, (bytes, bytearray, memoryview)):
            return cls(ValueKind.BYTES, bytes(obj))
        return cls(ValueKind.OTHER, obj)

    def to_wire(self) -> Any:
        """Driver-native object, dumped by psycopg according to its Python type."""
        kind = self.kind
        if kind is ValueKind.NULL:
            return None
        if kind is ValueKind.INT32:
            return Int4(self.data)
        if kind is ValueKind.INT64:
            return Int8(self.data)
        if kind is ValueKind.FLOAT64:
            # text COPY: the server parses the original digits for the column type
            if self.source is not None:
                return self.source
            return Float8(self.data)
        if kind is ValueKind.TIMESTAMP:
            return _aware(self.data)
        if kind is ValueKind.OTHER and isinstance(self.data, (dict, list)):
            return Jsonb(self.data)
        return self.data

    def to_plain(self) -> Any:
        """Untagged Python value; numeric is narrowed to float."""
        kind = self.kind
        if kind is ValueKind.NULL:
            return None
        if kind is ValueKind.DECIMAL:
            return float(self.data)
        if kind in (ValueKind.INT32, ValueKind.INT64):
            return int(self.data)
        if kind is ValueKind.FLOAT64:
            return float(self.data)
        return self.data

    def for_column(self, type_name: str) -> Any:
        """
        Value adapted to a PostgreSQL column type (``pg_type.typname``), as
        required by binary COPY where each field must match its column exactly.
        Types without a dedicated rule are left to the psycopg dumpers.
        """
        if self.kind is ValueKind.NULL:
            return None
        try:
            if type_name in INTEGER_TYPES:
                return self._as_int()
            if type_name in FLOAT_TYPES:
                return self._as_float()
            if type_name == "numeric":
                return self._as_decimal()
            if type_name == "bool":
                return self._as_bool()
            if type_name in TEXT_TYPES:
                return self._as_text()
            if type_name == "timestamptz":
                return _aware(self._as_datetime())
            if type_name == "timestamp":
                return _naive_utc(self._as_datetime())
            if type_name == "date":
                return self._as_date()
            if type_name == "bytea":
                return self._as_bytes()
            if type_name in ("json", "jsonb"):
                return self._as_json(Jsonb if type_name == "jsonb" else Json)
            if type_name == "uuid":
                return self._as_uuid()
        except CoercionError:
            raise
        except (ValueError, TypeError, ArithmeticError) as e:
            raise CoercionError(f"cannot convert {self.kind.value} {self.data!r} to {type_name}: {e}") from e
        if self.kind is ValueKind.OTHER:
            # arrays, intervals, ranges...: left to the dumper of the column type
            return self.data
        return self.to_wire()

    def _reject(self, type_name: str):
        raise CoercionError(f"cannot convert {self.kind.value} {self.data!r} to {type_name}")

    def _as_int(self) -> int:
        kind, data = self.kind, self.data
        if kind in (ValueKind.INT32, ValueKind.INT64, ValueKind.BOOL):
            return int(data)
        if kind is ValueKind.FLOAT64:
            if self.source is not None:
                return Value(ValueKind.TEXT, self.source)._as_int()
            if not data.is_integer():
                self._reject("integer")
            return int(data)
        if kind is ValueKind.DECIMAL:
            if data != data.to_integral_value():
                self._reject("integer")
            return int(data)
        if kind is ValueKind.TEXT:
            text = data.strip()
            try:
                return int(text)
            except ValueError:
                return Value(ValueKind.DECIMAL, Decimal(text))._as_int()
        self._reject("integer")

    def _as_float(self) -> float:
        if self.kind in (ValueKind.INT32, ValueKind.INT64, ValueKind.FLOAT64, ValueKind.DECIMAL, ValueKind.TEXT):
            return float(self.data)
        self._reject("float")

    def _as_decimal(self) -> Decimal:
        kind, data = self.kind, self.data
        if kind is ValueKind.DECIMAL:
            return data
        if kind in (ValueKind.INT32, ValueKind.INT64):
            return Decimal(data)
        if kind is ValueKind.FLOAT64:
            if self.source is not None:
                return Decimal(self.source)
            # repr keeps the shortest round-tripping digits (10.5, not 10.5000000000000001)
            return Decimal(repr(data))
        if kind is ValueKind.TEXT:
            try:
                return Decimal(data.strip())
            except InvalidOperation as e:
                raise ValueError(f"invalid numeric literal {data!r}") from e
        self._reject("numeric")

    def _as_bool(self) -> bool:
        kind, data = self.kind, self.data
        if kind is ValueKind.BOOL:
            return data
        if kind in (ValueKind.INT32, ValueKind.INT64) and data in (0, 1):
            return bool(data)
        if kind is ValueKind.TEXT:
            text = data.strip().lower()
            if text in TRUE_STRINGS:
                return True
            if text in FALSE_STRINGS:
                return False
        self._reject("bool")

    def _as_text(self) -> str:
        kind, data = self.kind, self.data
        if kind is ValueKind.TEXT:
            return data
        if self.source is not None:
            return self.source
        if kind is ValueKind.BOOL:
            return "true" if data else "false"
        if kind is ValueKind.TIMESTAMP:
            return data.isoformat()
        if kind is ValueKind.BYTES:
            return data.decode("utf-8")
        if kind is ValueKind.OTHER and isinstance(data, (dict, list)):
            return json.dumps(data, default=str)
        return str(data)

    def _as_datetime(self) -> datetime:
        kind, data = self.kind, self.data
        if kind is ValueKind.TIMESTAMP:
            return data
        if kind is ValueKind.TEXT:
            return parse_timestamp(data)
        if kind is ValueKind.OTHER and isinstance(data, date):
            return datetime(data.year, data.month, data.day, tzinfo=timezone.utc)
        self._reject("timestamp")

    def _as_date(self) -> date:
        kind, data = self.kind, self.data
        if kind is ValueKind.TIMESTAMP:
            return data.date()
        if kind is ValueKind.OTHER and isinstance(data, date):
            return data
        if kind is ValueKind.TEXT:
            try:
                return date.fromisoformat(data.strip())
            except ValueError:
                return parse_timestamp(data).date()
        self._reject("date")

    def _as_bytes(self) -> bytes:
        if self.kind is ValueKind.BYTES:
            return self.data
        if self.kind is ValueKind.TEXT:
            return self.data.encode("utf-8")
        self._reject("bytea")

    def _as_json(self, wrapper):
        kind, data = self.kind, self.data
        if kind is ValueKind.TEXT:
            try:
                return wrapper(json.loads(data))
            except ValueError:
                return wrapper(data)
        if kind is ValueKind.TIMESTAMP:
            return wrapper(data.isoformat())
        if kind is ValueKind.DECIMAL:
            return wrapper(float(data))
        if kind is ValueKind.BYTES:
            self._reject("json")
        return wrapper(data)

    def _as_uuid(self) -> uuid.UUID:
        if self.kind is ValueKind.OTHER and isinstance(self.data, uuid.UUID):
            return self.data
        if self.kind is ValueKind.TEXT:
            return uuid.UUID(self.data.strip())
        self._reject("uuid")


NULL = Value(ValueKind.NULL)


def _aware(ts: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def _naive_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(text: str) -> datetime:
    """Parse an RFC3339 / ISO-8601 timestamp; naive results are taken as UTC."""
    value = text.strip()
    if not value:
        raise ValueError("empty timestamp")
    return _aware(datetime.fromisoformat(value))


def format_timestamp(ts: datetime) -> str:
    """RFC3339 text of a timestamp, keeping microseconds."""
    return _aware(ts).isoformat()


def stringify_records(
    records: Sequence[Mapping[str, Any]],
    columns: Sequence[str],
    time_column: Optional[str] = "time",
) -> List[Dict[str, Any]]:
    """
    Normalize partially formatted input before coercion.

    Timestamps become RFC3339 strings. Strings in plain numeric notation
    become FLOAT64 values carrying their source text; strings in the time
    column are left for the timestamp parser. Columns missing from a record
    stay missing.
    """
    result = []
    for record in records:
        row = {}
        for col in columns:
            if col not in record:
                continue
            value = record[col]
            if isinstance(value, datetime):
                row[col] = format_timestamp(value)
            elif isinstance(value, str) and col != time_column:
                number = Value.parsed_number(value)
                row[col] = number if number is not None else value
            else:
                row[col] = value
        result.append(row)
    return result


def coerce_value(column: str, raw: Any, time_column: Optional[str] = "time") -> Value:
    """Tag one field; strings in the time column are parsed as timestamps."""
    if isinstance(raw, datetime):
        return Value(ValueKind.TIMESTAMP, _aware(raw))
    if isinstance(raw, str) and time_column is not None and column == time_column:
        try:
            return Value(ValueKind.TIMESTAMP, parse_timestamp(raw))
        except ValueError as e:
            raise CoercionError(f"column {column!r}: invalid RFC3339 timestamp {raw!r}: {e}", column=column) from e
    return Value.of(raw)


@dataclass
class CoercedBatch:
    columns: Tuple[str, ...]
    rows: List[Tuple[Value, ...]] = field(default_factory=list)
    warnings: List[CoercionWarning] = field(default_factory=list)
    missing_fields: int = 0
    ignored_columns: Tuple[str, ...] = ()

    def __len__(self) -> int:
        return len(self.rows)


def coerce_records(
    records: Sequence[Mapping[str, Any]],
    columns: Sequence[str],
    time_column: Optional[str] = "time",
    policy: CoercionPolicy = CoercionPolicy.NULL,
) -> CoercedBatch:
    """
    Coerce every record into a row of ``Value`` ordered like ``columns``.

    Missing columns and failed coercions become NULL under ``CoercionPolicy.NULL``
    (each failure is logged and collected as a ``CoercionWarning``) or raise
    ``CoercionError`` under ``CoercionPolicy.RAISE``.
    """
    column_set = set(columns)
    batch = CoercedBatch(columns=tuple(columns))
    ignored = set()

    for index, record in enumerate(records):
        row = []
        for col in columns:
            if col not in record:
                if policy is CoercionPolicy.RAISE:
                    raise CoercionError(f"record {index} has no value for column {col!r}", column=col, row=index)
                batch.missing_fields += 1
                row.append(NULL)
                continue
            try:
                row.append(coerce_value(col, record[col], time_column))
            except CoercionError as e:
                if policy is CoercionPolicy.RAISE:
                    e.row = index
                    raise
                warning = CoercionWarning(f"record {index}: {e.message}; loading NULL", column=col, row=index)
                logger.warning(str(warning))
                batch.warnings.append(warning)
                row.append(NULL)
        ignored.update(key for key in record if key not in column_set)
        batch.rows.append(tuple(row))

    if batch.missing_fields:
        logger.debug(f"{batch.missing_fields} missing fields loaded as NULL")
    if ignored:
        batch.ignored_columns = tuple(sorted(ignored))
        logger.warning(f"Ignoring keys absent from the first record: {', '.join(batch.ignored_columns)}")
    return batch


def to_native_records(rows: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Reverse pass for fetched rows: plain Python values, numeric narrowed to float."""
    return [{col: Value.of(value).to_plain() for col, value in row.items()} for row in rows]
