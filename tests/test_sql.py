#!/usr/bin/env python3
"""
SQL helper tests: quoting, CREATE TABLE rendering and parsing, partitions.
"""

import sqlite3

import pytest

from dbtransit.core.errors import ConversionError
from dbtransit.core.schema_ir import ColumnIR, NativeColumn, NativeTable, TableIR, to_portable
from dbtransit.core.type_registry import DataType
from dbtransit.drivers.sql import (
    create_table_sql, parse_create_table, partition_key, partition_predicate,
    quote_ident, quote_table, split_top_level, where_clause,
)


def test_quote_ident():
    assert quote_ident('users') == '"users"'
    assert quote_ident('a"b') == '"a""b"'
    assert quote_ident('a`b', 'mysql') == '`a``b`'


def test_quote_table():
    assert quote_table('public.users') == '"public"."users"'
    assert quote_table('"Odd.Name"') == '"Odd.Name"'
    assert quote_table('shop.orders', 'mysql') == '`shop`.`orders`'


def test_create_table_sql():
    native = NativeTable('postgres', 'users', [
        NativeColumn('id', 'bigint', False),
        NativeColumn('email', 'text'),
    ], ('id',))
    assert create_table_sql(native, 'postgres', unique_key='email') == (
        'CREATE TABLE "users" (\n'
        '    "id" bigint NOT NULL,\n'
        '    "email" text,\n'
        '    PRIMARY KEY ("id"),\n'
        '    UNIQUE ("email")\n'
        ')'
    )
    assert 'UNIQUE' not in create_table_sql(native, 'postgres', unique_key='id')


def test_where_clause():
    assert where_clause() == ''
    assert where_clause(None, 'a > 1') == ' WHERE (a > 1)'
    assert where_clause('a > 1', None, 'b = 2') == ' WHERE (a > 1) AND (b = 2)'


def test_partition_key():
    integer_pk = TableIR('t', [ColumnIR('id', DataType.integer(), False)], ['id'])
    text_pk = TableIR('t', [ColumnIR('id', DataType.text(), False)], ['id'])
    composite = TableIR('t', [ColumnIR('a', DataType.integer()), ColumnIR('b', DataType.integer())], ['a', 'b'])
    assert partition_key(integer_pk) == 'id'
    assert partition_key(text_pk) is None
    assert partition_key(composite) is None
    assert partition_key(TableIR('t', [ColumnIR('id', DataType.integer())])) is None


def test_partition_predicate_text():
    assert partition_predicate('"id"', 4, 1, 'sqlite') == '((("id") % 4) + 4) % 4 = 1'
    assert partition_predicate('"id"', 4, 1, 'postgres') == 'MOD(MOD("id", 4) + 4, 4) = 1'


def test_sqlite_partitions_cover_every_row_once():
    conn = sqlite3.connect(':memory:')
    try:
        conn.execute('CREATE TABLE t (id INTEGER PRIMARY KEY)')
        conn.executemany('INSERT INTO t VALUES (?)', [(i,) for i in range(-20, 21)])
        seen = []
        for index in range(3):
            predicate = partition_predicate('id', 3, index, 'sqlite')
            seen.extend(r[0] for r in conn.execute(f'SELECT id FROM t WHERE {predicate}'))
    finally:
        conn.close()
    assert sorted(seen) == list(range(-20, 21))


def test_split_top_level_ignores_nested_separators():
    assert split_top_level("a numeric(10, 2), b text DEFAULT 'x,y', c int", ',') == [
        'a numeric(10, 2)', "b text DEFAULT 'x,y'", 'c int',
    ]


DDL = """
-- users table
CREATE TABLE IF NOT EXISTS "public"."Users" (
    id integer NOT NULL,
    "Display Name" character varying(100),
    balance numeric(12, 2) DEFAULT 0,
    created timestamp(6) with time zone, /* set by trigger */
    CONSTRAINT users_pkey PRIMARY KEY (id)
);
CREATE INDEX users_name ON "public"."Users" ("Display Name");
"""


def test_parse_create_table():
    native = parse_create_table(DDL)
    assert native.name == 'public.Users'
    assert native.primary_key == ('id',)
    assert [(c.name, c.native_type, c.nullable) for c in native.columns] == [
        ('id', 'integer', False),
        ('Display Name', 'character varying(100)', True),
        ('balance', 'numeric(12, 2)', True),
        ('created', 'timestamp(6) with time zone', True),
    ]
    table = to_portable(native)
    assert [str(c.type) for c in table.columns] == ['integer', 'text', 'decimal(12,2)', 'timestamptz']


def test_parse_inline_primary_key():
    native = parse_create_table("CREATE TABLE t (id bigint PRIMARY KEY, v text)")
    assert native.primary_key == ('id',)
    assert not native.columns[0].nullable


def test_rendered_ddl_parses_back():
    native = NativeTable('postgres', 'events', [
        NativeColumn('id', 'bigint', False),
        NativeColumn('payload', 'jsonb'),
    ], ('id',))
    assert parse_create_table(create_table_sql(native, 'postgres') + ';') == native


@pytest.mark.parametrize("text", [
    "",
    "SELECT 1;",
    "CREATE TABLE a (x int); CREATE TABLE b (y int);",
    "CREATE TABLE a ()",
])
def test_parse_create_table_rejects(text):
    with pytest.raises(ConversionError):
        parse_create_table(text)
