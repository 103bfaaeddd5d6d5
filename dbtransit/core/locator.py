#!/usr/bin/env python3
"""
dbtransit Locator Grammar
=========================

Parses resource strings such as ``postgres://user@host:5432/db#public.users``
or ``bigquery:my-project:sales.orders`` into typed, immutable locators and
renders them back. Each scheme belongs to one grammar family; every family is
a declarative sequence of named regex segments compiled once at import time.

Round-trip guarantee: ``parse_locator(str(loc)) == loc`` for every accepted
string. Rendering reproduces the accepted text exactly except that scheme
aliases (``postgresql``) are rendered under their canonical name.
"""

import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Pattern, Tuple

from dbtransit.core.errors import LocatorSyntaxError

logger = logging.getLogger(__name__)


class GrammarKind(Enum):
    """Locator grammar families"""
    DATABASE = "database"          # scheme://[user[:pass]@]host[:port]/db[?params]#table
    SQLITE = "sqlite"              # scheme:path#table
    OBJECT_STORE = "object_store"  # scheme://bucket[/key]
    WAREHOUSE = "warehouse"        # scheme:project:dataset.table
    FILE = "file"                  # scheme:path


# Scheme -> grammar family. Aliases map onto a canonical scheme.
SCHEME_KINDS: Dict[str, GrammarKind] = {
    'postgres': GrammarKind.DATABASE,
    'redshift': GrammarKind.DATABASE,
    'mysql': GrammarKind.DATABASE,
    'sqlite': GrammarKind.SQLITE,
    's3': GrammarKind.OBJECT_STORE,
    'bigquery': GrammarKind.WAREHOUSE,
    'csv': GrammarKind.FILE,
    'postgres-sql': GrammarKind.FILE,
    'bigquery-schema': GrammarKind.FILE,
    'portable-schema': GrammarKind.FILE,
}

SCHEME_ALIASES: Dict[str, str] = {
    'postgresql': 'postgres',
}

# Segment tables: (segment name, regex). The scheme segment is filled in per
# family from SCHEME_KINDS when the grammar is compiled.
_SEGMENTS: Dict[GrammarKind, List[Tuple[str, str]]] = {
    GrammarKind.DATABASE: [
        ('scheme', r'(?P<scheme>{schemes})://'),
        ('userinfo', r'(?:(?P<user>[^:@/#?\s]+)(?::(?P<password>[^@/#?\s]*))?@)?'),
        ('host', r'(?P<host>\[[0-9A-Fa-f:.]+\]|[^:/#?@\s\[\]]+)'),
        ('port', r'(?::(?P<port>\d{1,5}))?'),
        ('database', r'/(?P<database>[^/#?\s]+)'),
        ('params', r'(?:\?(?P<params>[^#\s]*))?'),
        ('table', r'#(?P<table>[^#\s]+)'),
    ],
    GrammarKind.SQLITE: [
        ('scheme', r'(?P<scheme>{schemes}):'),
        ('path', r'(?P<path>[^#]+)'),
        ('table', r'#(?P<table>[^#\s]+)'),
    ],
    GrammarKind.OBJECT_STORE: [
        ('scheme', r'(?P<scheme>{schemes})://'),
        ('bucket', r'(?P<bucket>[a-z0-9][a-z0-9.\-]{1,61}[a-z0-9])'),
        ('key', r'(?:/(?P<key>[^\s#?]*))?'),
    ],
    GrammarKind.WAREHOUSE: [
        ('scheme', r'(?P<scheme>{schemes}):'),
        ('project', r'(?P<project>[A-Za-z][A-Za-z0-9\-]*[A-Za-z0-9])'),
        ('dataset', r':(?P<dataset>[A-Za-z_][A-Za-z0-9_]*)'),
        ('table', r'\.(?P<table>[A-Za-z0-9_\-$]+)'),
    ],
    GrammarKind.FILE: [
        ('scheme', r'(?P<scheme>{schemes}):'),
        ('path', r'(?P<path>[^\x00\n]+)'),
    ],
}

_SCHEME_PREFIX = re.compile(r'^(?P<scheme>[a-z][a-z0-9+\-]*):')


class _Grammar:
    """One compiled grammar family: a full pattern plus per-segment prefixes"""

    def __init__(self, kind: GrammarKind, schemes: List[str]):
        self.kind = kind
        alternatives = '|'.join(re.escape(s) for s in sorted(schemes, key=len, reverse=True))
        pieces = [(name, regex.replace('{schemes}', alternatives)) for name, regex in _SEGMENTS[kind]]
        self.segment_names = [name for name, _ in pieces]
        self.full: Pattern = re.compile(''.join(regex for _, regex in pieces))
        self.prefixes: List[Pattern] = [
            re.compile(''.join(regex for _, regex in pieces[:i + 1]))
            for i in range(len(pieces))
        ]

    def match(self, text: str, scheme: str) -> Dict[str, Optional[str]]:
        match = self.full.fullmatch(text)
        if match:
            return match.groupdict()
        for name, prefix in zip(self.segment_names, self.prefixes):
            if not prefix.match(text):
                raise LocatorSyntaxError(
                    f"Invalid {scheme} locator {_redact(text)!r}: malformed or missing '{name}' segment",
                    scheme=scheme, segment=name,
                )
        last = self.segment_names[-1]
        raise LocatorSyntaxError(
            f"Invalid {scheme} locator {_redact(text)!r}: unexpected characters after '{last}' segment",
            scheme=scheme, segment=last,
        )


_GRAMMARS: Dict[GrammarKind, _Grammar] = {}


def _compile_grammars():
    by_kind: Dict[GrammarKind, List[str]] = {}
    for scheme, kind in SCHEME_KINDS.items():
        by_kind.setdefault(kind, []).append(scheme)
    for alias, target in SCHEME_ALIASES.items():
        by_kind[SCHEME_KINDS[target]].append(alias)
    _GRAMMARS.clear()
    for kind, schemes in by_kind.items():
        _GRAMMARS[kind] = _Grammar(kind, schemes)


def register_scheme(scheme: str, kind: GrammarKind):
    """Attach a new scheme to an existing grammar family."""
    if not _SCHEME_PREFIX.match(f"{scheme}:"):
        raise ValueError(f"Invalid scheme name: {scheme!r}")
    SCHEME_KINDS[scheme] = kind
    _compile_grammars()


_compile_grammars()


# =============================================================================
# Locator value types
# =============================================================================

class Locator:
    """Mixin shared by all locator value types"""

    scheme: str
    kind: GrammarKind

    def render(self) -> str:
        raise NotImplementedError

    def redacted(self) -> str:
        """Rendered form safe for logs"""
        return self.render()

    def __str__(self):
        return self.render()


@dataclass(frozen=True)
class DatabaseLocator(Locator):
    """A table in a networked relational database"""
    scheme: str
    host: str
    database: str
    table: str
    user: Optional[str] = None
    password: Optional[str] = None
    port: Optional[str] = None
    params: Optional[str] = None

    kind = GrammarKind.DATABASE

    def _render(self, password: Optional[str]) -> str:
        out = f"{self.scheme}://"
        if self.user is not None:
            out += self.user
            if password is not None:
                out += f":{password}"
            out += "@"
        out += self.host
        if self.port is not None:
            out += f":{self.port}"
        out += f"/{self.database}"
        if self.params is not None:
            out += f"?{self.params}"
        return out + f"#{self.table}"

    def render(self) -> str:
        return self._render(self.password)

    def redacted(self) -> str:
        return self._render('***' if self.password is not None else None)

    @property
    def table_parts(self) -> Tuple[Optional[str], str]:
        """Split ``schema.table`` (with optional double quotes) into its parts"""
        return split_table_name(self.table)


@dataclass(frozen=True)
class SqliteLocator(Locator):
    """A table inside a local SQLite database file"""
    path: str
    table: str
    scheme: str = 'sqlite'

    kind = GrammarKind.SQLITE

    def render(self) -> str:
        return f"{self.scheme}:{self.path}#{self.table}"


@dataclass(frozen=True)
class ObjectStoreLocator(Locator):
    """An object or prefix in an object store bucket"""
    bucket: str
    key: Optional[str] = None
    scheme: str = 's3'

    kind = GrammarKind.OBJECT_STORE

    def render(self) -> str:
        if self.key is None:
            return f"{self.scheme}://{self.bucket}"
        return f"{self.scheme}://{self.bucket}/{self.key}"

    @property
    def is_directory(self) -> bool:
        return not self.key or self.key.endswith('/')

    @property
    def prefix(self) -> str:
        return self.key or ''

    def child(self, name: str) -> 'ObjectStoreLocator':
        return ObjectStoreLocator(self.bucket, f"{self.prefix}{name}", self.scheme)


@dataclass(frozen=True)
class WarehouseLocator(Locator):
    """A table in a cloud data warehouse"""
    project: str
    dataset: str
    table: str
    scheme: str = 'bigquery'

    kind = GrammarKind.WAREHOUSE

    def render(self) -> str:
        return f"{self.scheme}:{self.project}:{self.dataset}.{self.table}"

    @property
    def table_id(self) -> str:
        return f"{self.project}.{self.dataset}.{self.table}"


@dataclass(frozen=True)
class FileLocator(Locator):
    """A local file or directory; ``-`` means standard input/output"""
    scheme: str
    path: str

    kind = GrammarKind.FILE

    def render(self) -> str:
        return f"{self.scheme}:{self.path}"

    @property
    def is_stdio(self) -> bool:
        return self.path == '-'

    @property
    def is_directory(self) -> bool:
        return self.path.endswith('/')


def parse_locator(text: str) -> Locator:
    """
    Parse a locator string.

    Raises:
        LocatorSyntaxError: naming the scheme and the first segment that failed
    """
    if not isinstance(text, str):
        raise LocatorSyntaxError(f"Locator must be a string, got {type(text).__name__}")
    head = _SCHEME_PREFIX.match(text)
    if not head:
        raise LocatorSyntaxError(f"Locator {_redact(text)!r} does not start with 'scheme:'",
                                 segment='scheme')
    raw_scheme = head.group('scheme')
    scheme = SCHEME_ALIASES.get(raw_scheme, raw_scheme)
    kind = SCHEME_KINDS.get(scheme)
    if kind is None:
        raise LocatorSyntaxError(f"Unknown locator scheme '{raw_scheme}'",
                                 scheme=raw_scheme, segment='scheme')

    fields = _GRAMMARS[kind].match(text, raw_scheme)
    fields['scheme'] = scheme

    if kind == GrammarKind.DATABASE:
        if fields['port'] is not None and not 0 < int(fields['port']) < 65536:
            raise LocatorSyntaxError(f"Port out of range in {scheme} locator", scheme=scheme, segment='port')
        return DatabaseLocator(**fields)
    if kind == GrammarKind.SQLITE:
        return SqliteLocator(path=fields['path'], table=fields['table'], scheme=scheme)
    if kind == GrammarKind.OBJECT_STORE:
        return ObjectStoreLocator(bucket=fields['bucket'], key=fields['key'], scheme=scheme)
    if kind == GrammarKind.WAREHOUSE:
        return WarehouseLocator(project=fields['project'], dataset=fields['dataset'],
                                table=fields['table'], scheme=scheme)
    return FileLocator(scheme=scheme, path=fields['path'])


def split_table_name(name: str) -> Tuple[Optional[str], str]:
    """'public."My Table"' -> ('public', 'My Table')"""
    parts = re.findall(r'"((?:[^"]|"")*)"|([^.]+)', name)
    names = [quoted.replace('""', '"') if quoted else bare for quoted, bare in parts]
    if len(names) == 1:
        return None, names[0]
    if len(names) == 2:
        return names[0], names[1]
    raise LocatorSyntaxError(f"Invalid table name {name!r}", segment='table')


_PASSWORD_IN_URL = re.compile(r'(://[^:/@\s]+:)[^@/\s]*@')


def _redact(text: str) -> str:
    return _PASSWORD_IN_URL.sub(r'\1***@', text)


def sanitize_message(message: str) -> str:
    """Mask ``://user:password@`` credentials in error or log text"""
    return _redact(message)
