"""
Canonical text encoding of row values.

Rows move between drivers as tuples of Optional[str]. Source drivers turn
driver-native Python values into that text with to_text; destination
drivers that bind parameters turn it back with from_text.
"""

import json
import math
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, localcontext
from typing import Any, Iterable, Optional, Sequence, Tuple

from dbtransit.core.type_registry import DataType, PortableType

Row = Tuple[Optional[str], ...]

_TRUE = {'true', 't', '1', 'yes', 'y', 'on'}
_FALSE = {'false', 'f', '0', 'no', 'n', 'off'}


def to_text(dtype: DataType, value: Any) -> Optional[str]:
    """Encode one driver value as canonical text (None stays None)"""
    if value is None:
        return None
    kind = dtype.kind
    if kind == PortableType.INTEGER:
        return str(int(value))
    if kind == PortableType.FLOAT:
        value = float(value)
        if math.isnan(value):
            return 'NaN'
        if math.isinf(value):
            return 'Infinity' if value > 0 else '-Infinity'
        return repr(value)
    if kind == PortableType.DECIMAL:
        return _decimal_text(dtype, value)
    if kind == PortableType.BOOLEAN:
        if isinstance(value, str):
            return 'true' if _parse_bool(value) else 'false'
        return 'true' if value else 'false'
    if kind == PortableType.DATE:
        if isinstance(value, datetime):
            value = value.date()
        return value.isoformat() if isinstance(value, date) else str(value)
    if kind == PortableType.TIMESTAMP:
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(timezone.utc)
            return value.isoformat(sep=' ')
        return str(value)
    if kind == PortableType.UUID:
        return str(uuid.UUID(str(value)))
    if kind == PortableType.JSON:
        if isinstance(value, (str, bytes)):
            return value.decode('utf-8') if isinstance(value, bytes) else value
        return json.dumps(value)
    if kind == PortableType.BINARY:
        if isinstance(value, str):
            return value
        return '\\x' + bytes(value).hex()
    if isinstance(value, bytes):
        return value.decode('utf-8')
    return str(value)


def from_text(dtype: DataType, text: Optional[str]) -> Any:
    """Decode canonical text into a Python value suitable for DB-API binding"""
    if text is None:
        return None
    kind = dtype.kind
    if kind == PortableType.INTEGER:
        return int(text)
    if kind == PortableType.FLOAT:
        return float(text)
    if kind == PortableType.DECIMAL:
        try:
            return Decimal(text)
        except InvalidOperation as e:
            raise ValueError(f"invalid decimal {text!r}") from e
    if kind == PortableType.BOOLEAN:
        return _parse_bool(text)
    if kind == PortableType.DATE:
        return date.fromisoformat(text[:10])
    if kind == PortableType.TIMESTAMP:
        parsed = datetime.fromisoformat(text)
        if dtype.with_time_zone and parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    if kind == PortableType.UUID:
        return str(uuid.UUID(text))
    if kind == PortableType.BINARY:
        if text.startswith('\\x'):
            return bytes.fromhex(text[2:])
        return text.encode('utf-8')
    return text


def encode_row(types: Sequence[DataType], values: Iterable[Any]) -> Row:
    return tuple(to_text(t, v) for t, v in zip(types, values))


def _parse_bool(text: str) -> bool:
    lowered = text.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(f"invalid boolean {text!r}")


def _decimal_text(dtype: DataType, value: Any) -> str:
    if isinstance(value, float):
        number = Decimal(repr(value))
    else:
        number = Decimal(str(value))
    if dtype.scale is not None and number.is_finite():
        with localcontext() as ctx:
            # room for every integer digit plus the scale; the default context stops at 28
            ctx.prec = max(dtype.precision or 0, number.adjusted() + 1, 1) + dtype.scale
            number = number.quantize(Decimal(1).scaleb(-dtype.scale))
    return format(number, 'f') if number.is_finite() else str(number)


# =============================================================================
# CSV line encoding (also the size measure for stream splitting)
# =============================================================================

_NEEDS_QUOTES = set(',"\r\n')


def _csv_field(value: Optional[str], delimiter: str) -> str:
    if value is None:
        return ''
    if value == '' or delimiter in value or any(ch in _NEEDS_QUOTES for ch in value) \
            or value[0].isspace() or value[-1].isspace():
        return '"' + value.replace('"', '""') + '"'
    return value


def csv_line(row: Sequence[Optional[str]], delimiter: str = ',') -> str:
    """One RFC 4180 line; NULL is an empty field and '' is a quoted empty field"""
    return delimiter.join(_csv_field(v, delimiter) for v in row) + "\n"


def row_size(row: Sequence[Optional[str]]) -> int:
    return len(csv_line(row).encode('utf-8'))


# =============================================================================
# Staged rows: temporaries the copy runner writes and reads back itself
# =============================================================================

# pandas reads "" and an empty field alike, so staged files spell NULL out
STAGED_NULL = '\\N'


def stage_row(row: Sequence[Optional[str]]) -> Row:
    """NULL becomes \\N; a value starting with a backslash gets one more"""
    return tuple(STAGED_NULL if v is None else ('\\' + v if v.startswith('\\') else v) for v in row)


def unstage_row(row: Sequence[str]) -> Row:
    return tuple(None if v == STAGED_NULL else (v[1:] if v.startswith('\\') else v) for v in row)
