#!/usr/bin/env python3
"""
dbtransit Type Registry
=======================

The closed portable type set and the per-system native type tables.

Each dialect has two tables:
- NATIVE_TO_PORTABLE: native base type -> (PortableType, fixed attributes)
- PORTABLE_TO_NATIVE: portable key -> native template, or None when the
  system has no exact representation (the LOSSY_FALLBACK table then names
  the degraded type that LossPolicy.PERMIT may use)

Conversion never guesses: native types outside the tables raise
UnsupportedTypeError, and degraded mappings fail under LossPolicy.STRICT.
"""

import re
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from dbtransit.core.errors import ConversionError, UnsupportedTypeError

logger = logging.getLogger(__name__)


class PortableType(Enum):
    INTEGER = "integer"
    FLOAT = "float"
    DECIMAL = "decimal"
    TEXT = "text"
    BOOLEAN = "boolean"
    DATE = "date"
    TIMESTAMP = "timestamp"
    UUID = "uuid"
    JSON = "json"
    GEOMETRY = "geometry"
    BINARY = "binary"


GEOMETRY_SUBTYPES = (
    'geometry', 'point', 'linestring', 'polygon', 'multipoint',
    'multilinestring', 'multipolygon', 'geometrycollection',
)

WGS84_SRID = 4326


@dataclass(frozen=True)
class DataType:
    """A portable column type"""
    kind: PortableType
    precision: Optional[int] = None
    scale: Optional[int] = None
    with_time_zone: bool = False
    subtype: Optional[str] = None
    srid: Optional[int] = None

    def __post_init__(self):
        if self.kind == PortableType.DECIMAL:
            if (self.precision is None) != (self.scale is None):
                raise ConversionError(f"decimal needs both precision and scale, got p={self.precision} s={self.scale}")
            if self.precision is not None and not (0 < self.precision and 0 <= self.scale <= self.precision):
                raise ConversionError(f"invalid decimal({self.precision},{self.scale})")
        elif self.precision is not None or self.scale is not None:
            raise ConversionError(f"{self.kind.value} takes no precision/scale")
        if self.with_time_zone and self.kind != PortableType.TIMESTAMP:
            raise ConversionError(f"{self.kind.value} cannot carry a time zone")
        if self.kind == PortableType.GEOMETRY:
            if self.subtype not in GEOMETRY_SUBTYPES:
                raise ConversionError(f"unknown geometry subtype {self.subtype!r}")
        elif self.subtype is not None or self.srid is not None:
            raise ConversionError(f"{self.kind.value} takes no geometry attributes")

    # Convenience constructors
    @classmethod
    def integer(cls) -> 'DataType':
        return cls(PortableType.INTEGER)

    @classmethod
    def float(cls) -> 'DataType':
        return cls(PortableType.FLOAT)

    @classmethod
    def decimal(cls, precision: Optional[int] = None, scale: Optional[int] = None) -> 'DataType':
        if precision is not None and scale is None:
            scale = 0
        return cls(PortableType.DECIMAL, precision, scale)

    @classmethod
    def text(cls) -> 'DataType':
        return cls(PortableType.TEXT)

    @classmethod
    def boolean(cls) -> 'DataType':
        return cls(PortableType.BOOLEAN)

    @classmethod
    def date(cls) -> 'DataType':
        return cls(PortableType.DATE)

    @classmethod
    def timestamp(cls, with_time_zone: bool = False) -> 'DataType':
        return cls(PortableType.TIMESTAMP, with_time_zone=with_time_zone)

    @classmethod
    def uuid(cls) -> 'DataType':
        return cls(PortableType.UUID)

    @classmethod
    def json(cls) -> 'DataType':
        return cls(PortableType.JSON)

    @classmethod
    def geometry(cls, subtype: str = 'geometry', srid: Optional[int] = None) -> 'DataType':
        return cls(PortableType.GEOMETRY, subtype=subtype.lower(), srid=srid)

    @classmethod
    def binary(cls) -> 'DataType':
        return cls(PortableType.BINARY)

    @property
    def key(self) -> str:
        """Lookup key used by the PORTABLE_TO_NATIVE tables"""
        if self.kind == PortableType.DECIMAL and self.precision is not None:
            return 'decimal(p,s)'
        if self.kind == PortableType.TIMESTAMP and self.with_time_zone:
            return 'timestamptz'
        return self.kind.value

    def __str__(self):
        if self.kind == PortableType.DECIMAL and self.precision is not None:
            return f"decimal({self.precision},{self.scale})"
        if self.kind == PortableType.GEOMETRY:
            if self.srid is None:
                return f"geometry({self.subtype})"
            return f"geometry({self.subtype},{self.srid})"
        return self.key

    _PORTABLE_NAME = re.compile(r'^\s*([a-z]+)\s*(?:\(\s*([^)]*?)\s*\))?\s*$')

    @classmethod
    def parse(cls, text: str) -> 'DataType':
        """Parse a canonical portable name such as 'decimal(10,2)' or 'timestamptz'"""
        match = cls._PORTABLE_NAME.match(text.lower())
        if not match:
            raise ConversionError(f"Invalid portable type name {text!r}")
        name, raw_args = match.groups()
        args = [a.strip() for a in raw_args.split(',')] if raw_args else []
        try:
            if name == 'timestamptz' and not args:
                return cls.timestamp(True)
            if name == 'decimal':
                if len(args) == 2:
                    return cls.decimal(int(args[0]), int(args[1]))
                if not args:
                    return cls.decimal()
            elif name == 'geometry':
                if not args:
                    return cls.geometry()
                if len(args) == 1:
                    return cls.geometry(args[0])
                if len(args) == 2:
                    return cls.geometry(args[0], int(args[1]))
            elif not args and name in {t.value for t in PortableType}:
                return cls(PortableType(name))
        except ValueError:
            pass
        raise ConversionError(f"Invalid portable type name {text!r}")


class LossPolicy(Enum):
    """Caller's stance on conversions that cannot be exact"""
    STRICT = "strict"    # fail with UnsupportedTypeError
    PERMIT = "permit"    # degrade and record a warning


@dataclass
class ConversionContext:
    """Carries the loss policy and collects lossy-type warnings"""
    policy: LossPolicy = LossPolicy.STRICT
    warnings: List[str] = field(default_factory=list)

    def degrade(self, dialect: str, column: Optional[str], dtype: DataType,
                fallback: str, reason: str) -> str:
        if self.policy == LossPolicy.STRICT:
            raise UnsupportedTypeError(
                f"{dialect} cannot represent {dtype} exactly for column '{column}': {reason} "
                f"(use --allow-lossy to store it as {fallback})",
                column=column, native_type=str(dtype), system=dialect,
            )
        message = f"LOSSY TYPE: {column}: {dtype} -> {dialect} {fallback} ({reason})"
        logger.warning(message)
        self.warnings.append(message)
        return fallback


_TZ = {'with_time_zone': True}
_NAIVE = {'with_time_zone': False}


class TypeRegistry:
    # Native base type -> (PortableType, fixed attributes).
    # Base types are lower case with parenthesized arguments removed.
    NATIVE_TO_PORTABLE: Dict[str, Dict[str, Tuple[PortableType, Dict[str, Any]]]] = {
        'postgres': {
            'smallint': (PortableType.INTEGER, {}),
            'integer': (PortableType.INTEGER, {}),
            'int': (PortableType.INTEGER, {}),
            'int2': (PortableType.INTEGER, {}),
            'int4': (PortableType.INTEGER, {}),
            'int8': (PortableType.INTEGER, {}),
            'bigint': (PortableType.INTEGER, {}),
            'serial': (PortableType.INTEGER, {}),
            'bigserial': (PortableType.INTEGER, {}),
            'real': (PortableType.FLOAT, {}),
            'float4': (PortableType.FLOAT, {}),
            'float8': (PortableType.FLOAT, {}),
            'double precision': (PortableType.FLOAT, {}),
            'numeric': (PortableType.DECIMAL, {}),
            'decimal': (PortableType.DECIMAL, {}),
            'text': (PortableType.TEXT, {}),
            'varchar': (PortableType.TEXT, {}),
            'character varying': (PortableType.TEXT, {}),
            'char': (PortableType.TEXT, {}),
            'character': (PortableType.TEXT, {}),
            'citext': (PortableType.TEXT, {}),
            'boolean': (PortableType.BOOLEAN, {}),
            'bool': (PortableType.BOOLEAN, {}),
            'date': (PortableType.DATE, {}),
            'timestamp': (PortableType.TIMESTAMP, _NAIVE),
            'timestamp without time zone': (PortableType.TIMESTAMP, _NAIVE),
            'timestamp with time zone': (PortableType.TIMESTAMP, _TZ),
            'timestamptz': (PortableType.TIMESTAMP, _TZ),
            'uuid': (PortableType.UUID, {}),
            'json': (PortableType.JSON, {}),
            'jsonb': (PortableType.JSON, {}),
            'bytea': (PortableType.BINARY, {}),
            'geometry': (PortableType.GEOMETRY, {}),
        },
        'redshift': {
            'smallint': (PortableType.INTEGER, {}),
            'integer': (PortableType.INTEGER, {}),
            'int2': (PortableType.INTEGER, {}),
            'int4': (PortableType.INTEGER, {}),
            'int8': (PortableType.INTEGER, {}),
            'bigint': (PortableType.INTEGER, {}),
            'real': (PortableType.FLOAT, {}),
            'float4': (PortableType.FLOAT, {}),
            'float8': (PortableType.FLOAT, {}),
            'double precision': (PortableType.FLOAT, {}),
            'numeric': (PortableType.DECIMAL, {}),
            'decimal': (PortableType.DECIMAL, {}),
            'varchar': (PortableType.TEXT, {}),
            'character varying': (PortableType.TEXT, {}),
            'char': (PortableType.TEXT, {}),
            'character': (PortableType.TEXT, {}),
            'boolean': (PortableType.BOOLEAN, {}),
            'bool': (PortableType.BOOLEAN, {}),
            'date': (PortableType.DATE, {}),
            'timestamp': (PortableType.TIMESTAMP, _NAIVE),
            'timestamp without time zone': (PortableType.TIMESTAMP, _NAIVE),
            'timestamp with time zone': (PortableType.TIMESTAMP, _TZ),
            'timestamptz': (PortableType.TIMESTAMP, _TZ),
            'super': (PortableType.JSON, {}),
            'varbyte': (PortableType.BINARY, {}),
            'binary varying': (PortableType.BINARY, {}),
            'geometry': (PortableType.GEOMETRY, {}),
        },
        'mysql': {
            'tinyint(1)': (PortableType.BOOLEAN, {}),
            'bool': (PortableType.BOOLEAN, {}),
            'boolean': (PortableType.BOOLEAN, {}),
            'tinyint': (PortableType.INTEGER, {}),
            'smallint': (PortableType.INTEGER, {}),
            'mediumint': (PortableType.INTEGER, {}),
            'int': (PortableType.INTEGER, {}),
            'integer': (PortableType.INTEGER, {}),
            'bigint': (PortableType.INTEGER, {}),
            'tinyint unsigned': (PortableType.INTEGER, {}),
            'smallint unsigned': (PortableType.INTEGER, {}),
            'mediumint unsigned': (PortableType.INTEGER, {}),
            'int unsigned': (PortableType.INTEGER, {}),
            'float': (PortableType.FLOAT, {}),
            'double': (PortableType.FLOAT, {}),
            'decimal': (PortableType.DECIMAL, {}),
            'numeric': (PortableType.DECIMAL, {}),
            'char': (PortableType.TEXT, {}),
            'varchar': (PortableType.TEXT, {}),
            'tinytext': (PortableType.TEXT, {}),
            'text': (PortableType.TEXT, {}),
            'mediumtext': (PortableType.TEXT, {}),
            'longtext': (PortableType.TEXT, {}),
            'date': (PortableType.DATE, {}),
            'datetime': (PortableType.TIMESTAMP, _NAIVE),
            'timestamp': (PortableType.TIMESTAMP, _TZ),
            'json': (PortableType.JSON, {}),
            'binary': (PortableType.BINARY, {}),
            'varbinary': (PortableType.BINARY, {}),
            'blob': (PortableType.BINARY, {}),
            'mediumblob': (PortableType.BINARY, {}),
            'longblob': (PortableType.BINARY, {}),
        },
        'sqlite': {
            'integer': (PortableType.INTEGER, {}),
            'int': (PortableType.INTEGER, {}),
            'bigint': (PortableType.INTEGER, {}),
            'smallint': (PortableType.INTEGER, {}),
            'real': (PortableType.FLOAT, {}),
            'double': (PortableType.FLOAT, {}),
            'float': (PortableType.FLOAT, {}),
            'decimal': (PortableType.DECIMAL, {}),
            'numeric': (PortableType.DECIMAL, {}),
            'text': (PortableType.TEXT, {}),
            'varchar': (PortableType.TEXT, {}),
            'char': (PortableType.TEXT, {}),
            'clob': (PortableType.TEXT, {}),
            'boolean': (PortableType.BOOLEAN, {}),
            'date': (PortableType.DATE, {}),
            'datetime': (PortableType.TIMESTAMP, _NAIVE),
            'timestamp': (PortableType.TIMESTAMP, _NAIVE),
            'timestamptz': (PortableType.TIMESTAMP, _TZ),
            'uuid': (PortableType.UUID, {}),
            'json': (PortableType.JSON, {}),
            'blob': (PortableType.BINARY, {}),
        },
        'bigquery': {
            'int64': (PortableType.INTEGER, {}),
            'integer': (PortableType.INTEGER, {}),
            'float64': (PortableType.FLOAT, {}),
            'float': (PortableType.FLOAT, {}),
            'numeric': (PortableType.DECIMAL, {}),
            'bignumeric': (PortableType.DECIMAL, {}),
            'string': (PortableType.TEXT, {}),
            'bool': (PortableType.BOOLEAN, {}),
            'boolean': (PortableType.BOOLEAN, {}),
            'date': (PortableType.DATE, {}),
            'datetime': (PortableType.TIMESTAMP, _NAIVE),
            'timestamp': (PortableType.TIMESTAMP, _TZ),
            'json': (PortableType.JSON, {}),
            'bytes': (PortableType.BINARY, {}),
            'geography': (PortableType.GEOMETRY, {}),
        },
    }

    # Portable key -> native template. None: no exact native representation.
    PORTABLE_TO_NATIVE: Dict[str, Dict[str, Optional[str]]] = {
        'postgres': {
            'integer': 'bigint',
            'float': 'double precision',
            'decimal(p,s)': 'numeric({precision},{scale})',
            'decimal': 'numeric',
            'text': 'text',
            'boolean': 'boolean',
            'date': 'date',
            'timestamp': 'timestamp without time zone',
            'timestamptz': 'timestamp with time zone',
            'uuid': 'uuid',
            'json': 'jsonb',
            'binary': 'bytea',
        },
        'redshift': {
            'integer': 'BIGINT',
            'float': 'DOUBLE PRECISION',
            'decimal(p,s)': 'NUMERIC({precision},{scale})',
            'decimal': None,
            'text': 'VARCHAR(65535)',
            'boolean': 'BOOLEAN',
            'date': 'DATE',
            'timestamp': 'TIMESTAMP',
            'timestamptz': 'TIMESTAMPTZ',
            'uuid': None,
            'json': 'SUPER',
            'binary': 'VARBYTE',
        },
        'mysql': {
            'integer': 'BIGINT',
            'float': 'DOUBLE',
            'decimal(p,s)': 'DECIMAL({precision},{scale})',
            'decimal': None,
            'text': 'LONGTEXT',
            'boolean': 'TINYINT(1)',
            'date': 'DATE',
            'timestamp': 'DATETIME(6)',
            'timestamptz': None,
            'uuid': None,
            'json': 'JSON',
            'binary': 'LONGBLOB',
        },
        'sqlite': {
            'integer': 'INTEGER',
            'float': 'REAL',
            'decimal(p,s)': 'DECIMAL({precision},{scale})',
            'decimal': None,
            'text': 'TEXT',
            'boolean': 'BOOLEAN',
            'date': 'DATE',
            'timestamp': 'TIMESTAMP',
            'timestamptz': 'TIMESTAMPTZ',
            'uuid': 'UUID',
            'json': 'JSON',
            'binary': 'BLOB',
        },
        'bigquery': {
            'integer': 'INT64',
            'float': 'FLOAT64',
            'decimal(p,s)': 'NUMERIC({precision}, {scale})',
            'decimal': 'BIGNUMERIC',
            'text': 'STRING',
            'boolean': 'BOOL',
            'date': 'DATE',
            'timestamp': 'DATETIME',
            'timestamptz': 'TIMESTAMP',
            'uuid': None,
            'json': 'JSON',
            'binary': 'BYTES',
        },
    }

    # Portable key -> (degraded native type, reason) for LossPolicy.PERMIT
    LOSSY_FALLBACK: Dict[str, Dict[str, Tuple[str, str]]] = {
        'redshift': {
            'decimal': ('NUMERIC(38,9)', "unconstrained decimal narrowed to 38 digits"),
            'uuid': ('CHAR(36)', "uuid stored as text"),
            'geometry': ('GEOMETRY', "subtype and srid are not enforced"),
        },
        'mysql': {
            'decimal': ('DECIMAL(65,30)', "unconstrained decimal narrowed to 65 digits"),
            'timestamptz': ('DATETIME(6)', "Timezone loss, values stored in UTC"),
            'uuid': ('CHAR(36)', "uuid stored as text"),
        },
        'sqlite': {
            'decimal': ('REAL', "Precision loss, stored as floating point"),
        },
        'bigquery': {
            'uuid': ('STRING', "uuid stored as text"),
            'geometry': ('STRING', "non-WGS84 geometry stored as GeoJSON text"),
        },
    }

    # Largest (precision, scale) stored exactly by the decimal template
    DECIMAL_LIMITS: Dict[str, Tuple[int, int]] = {
        'postgres': (1000, 1000),
        'redshift': (38, 37),
        'mysql': (65, 30),
        'sqlite': (15, 15),
    }

    DIALECT_ALIASES = {'postgresql': 'postgres', 'postgres-sql': 'postgres', 'bigquery-schema': 'bigquery'}

    @staticmethod
    def _dialect(name: str) -> str:
        dialect = name.lower()
        dialect = TypeRegistry.DIALECT_ALIASES.get(dialect, dialect)
        if dialect not in TypeRegistry.NATIVE_TO_PORTABLE:
            raise ConversionError(f"No type mapping for system '{name}'")
        return dialect

    @staticmethod
    def _parse_type_string(type_str: str) -> Tuple[str, List[str]]:
        """Parse 'numeric(10, 2)' -> ('numeric', ['10', '2'])
        Also handles 'timestamp(6) with time zone' -> ('timestamp with time zone', ['6'])
        """
        lowered = type_str.strip().lower()
        args: List[str] = []
        match = re.search(r'\(([^()]*)\)', lowered)
        if match:
            args = [a.strip() for a in match.group(1).split(',') if a.strip()]
            lowered = lowered[:match.start()] + ' ' + lowered[match.end():]
        base = re.sub(r'\s+', ' ', lowered).strip()
        return base, args

    @staticmethod
    def to_portable(system: str, native_type: str, column: Optional[str] = None) -> DataType:
        """Map a native type string to a portable DataType"""
        dialect = TypeRegistry._dialect(system)
        table = TypeRegistry.NATIVE_TO_PORTABLE[dialect]
        base, args = TypeRegistry._parse_type_string(native_type)

        # Exact full-string entries first (e.g. mysql "tinyint(1)")
        mapping = table.get(re.sub(r'\s+', '', native_type.strip().lower()))
        if mapping:
            args = []
        else:
            mapping = table.get(base)
        if mapping is None:
            geometry = TypeRegistry._native_geometry(dialect, base, args)
            if geometry is not None:
                return geometry
            raise UnsupportedTypeError(
                f"Unsupported {dialect} type '{native_type}' for column '{column}'",
                column=column, native_type=native_type, system=dialect,
            )

        kind, fixed = mapping
        try:
            if kind == PortableType.DECIMAL:
                if dialect == 'bigquery':
                    return TypeRegistry._bigquery_decimal(base, args)
                if len(args) == 2:
                    return DataType.decimal(int(args[0]), int(args[1]))
                if len(args) == 1:
                    return DataType.decimal(int(args[0]), 0)
                return DataType.decimal()
            if kind == PortableType.GEOMETRY:
                if dialect == 'bigquery':
                    return DataType.geometry('geometry', WGS84_SRID)
                return TypeRegistry._geometry_args(args)
        except (ValueError, ConversionError) as e:
            raise UnsupportedTypeError(
                f"Unsupported {dialect} type '{native_type}' for column '{column}': {e}",
                column=column, native_type=native_type, system=dialect,
            ) from e
        return DataType(kind, **fixed)

    @staticmethod
    def from_portable(system: str, dtype: DataType, column: Optional[str] = None,
                      context: Optional[ConversionContext] = None) -> str:
        """Map a portable DataType to a native type string"""
        dialect = TypeRegistry._dialect(system)
        context = context or ConversionContext()
        templates = TypeRegistry.PORTABLE_TO_NATIVE[dialect]

        if dtype.kind == PortableType.GEOMETRY:
            return TypeRegistry._render_geometry(dialect, dtype, column, context)

        if dtype.key == 'decimal(p,s)':
            if dialect == 'bigquery':
                return TypeRegistry._render_bigquery_decimal(dtype, column, context)
            max_p, max_s = TypeRegistry.DECIMAL_LIMITS[dialect]
            if dtype.precision > max_p or dtype.scale > max_s:
                return TypeRegistry._degrade(dialect, dtype, column, context, 'decimal',
                                             f"precision/scale above {dialect} limit ({max_p},{max_s})")

        template = templates.get(dtype.key)
        if template is None:
            return TypeRegistry._degrade(dialect, dtype, column, context, dtype.key,
                                         f"no {dialect} type for {dtype}")
        return template.format(precision=dtype.precision, scale=dtype.scale)

    @staticmethod
    def _degrade(dialect: str, dtype: DataType, column: Optional[str],
                 context: ConversionContext, key: str, reason: str) -> str:
        fallback = TypeRegistry.LOSSY_FALLBACK.get(dialect, {}).get(key)
        if fallback is None:
            raise UnsupportedTypeError(
                f"{dialect} cannot represent {dtype} for column '{column}': {reason}",
                column=column, native_type=str(dtype), system=dialect,
            )
        native, why = fallback
        return context.degrade(dialect, column, dtype, native, why)

    # ----- geometry -----

    @staticmethod
    def _geometry_args(args: List[str]) -> DataType:
        if not args:
            return DataType.geometry()
        srid = int(args[1]) if len(args) > 1 else None
        return DataType.geometry(args[0], srid)

    @staticmethod
    def _native_geometry(dialect: str, base: str, args: List[str]) -> Optional[DataType]:
        """mysql 'point' / 'point srid 4326', sqlite 'POINT(4326)'"""
        if dialect == 'mysql':
            match = re.fullmatch(r'([a-z]+)(?: srid (\d+))?', base)
            if match and match.group(1) in GEOMETRY_SUBTYPES:
                srid = int(match.group(2)) if match.group(2) else None
                return DataType.geometry(match.group(1), srid)
        if dialect == 'sqlite' and base in GEOMETRY_SUBTYPES and len(args) <= 1:
            return DataType.geometry(base, int(args[0]) if args else None)
        return None

    @staticmethod
    def _render_geometry(dialect: str, dtype: DataType, column: Optional[str],
                         context: ConversionContext) -> str:
        if dialect == 'postgres':
            name = dtype.subtype.capitalize() if dtype.subtype != 'geometrycollection' else 'GeometryCollection'
            if dtype.subtype == 'geometry' and dtype.srid is None:
                return 'geometry'
            if dtype.srid is None:
                return f"geometry({name})"
            return f"geometry({name},{dtype.srid})"
        if dialect == 'sqlite':
            if dtype.srid is None:
                return dtype.subtype.upper()
            return f"{dtype.subtype.upper()}({dtype.srid})"
        if dialect == 'mysql':
            if dtype.srid is None:
                return dtype.subtype.upper()
            return f"{dtype.subtype.upper()} SRID {dtype.srid}"
        if dialect == 'bigquery':
            if dtype.srid == WGS84_SRID and dtype.subtype == 'geometry':
                return 'GEOGRAPHY'
            if dtype.srid == WGS84_SRID:
                return context.degrade(dialect, column, dtype, 'GEOGRAPHY', "geometry subtype not enforced")
        if dialect == 'redshift' and dtype.subtype == 'geometry' and dtype.srid is None:
            return 'GEOMETRY'
        return TypeRegistry._degrade(dialect, dtype, column, context, 'geometry',
                                     f"no {dialect} type for {dtype}")

    # ----- bigquery decimals -----

    @staticmethod
    def _bigquery_decimal(base: str, args: List[str]) -> DataType:
        if len(args) == 2:
            return DataType.decimal(int(args[0]), int(args[1]))
        if len(args) == 1:
            return DataType.decimal(int(args[0]), 0)
        if base == 'numeric':
            return DataType.decimal(38, 9)
        return DataType.decimal()

    @staticmethod
    def _render_bigquery_decimal(dtype: DataType, column: Optional[str],
                                 context: ConversionContext) -> str:
        whole = dtype.precision - dtype.scale
        if whole <= 29 and dtype.scale <= 9:
            return f"NUMERIC({dtype.precision}, {dtype.scale})"
        if whole <= 38 and dtype.scale <= 38:
            return f"BIGNUMERIC({dtype.precision}, {dtype.scale})"
        raise UnsupportedTypeError(
            f"bigquery cannot represent {dtype} for column '{column}'",
            column=column, native_type=str(dtype), system='bigquery',
        )

    @staticmethod
    def representable(system: str, dtype: DataType) -> bool:
        """True when from_portable succeeds without degrading"""
        try:
            TypeRegistry.from_portable(system, dtype, context=ConversionContext(LossPolicy.STRICT))
            return True
        except ConversionError:
            return False
