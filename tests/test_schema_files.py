#!/usr/bin/env python3
"""
Schema file driver tests: postgres-sql, bigquery-schema and portable-schema.
"""

import asyncio
import io
import json
import tempfile
import unittest

from dbtransit.core.driver_registry import DestinationOptions, IfExists, IfExistsMode
from dbtransit.core.errors import (
    CapabilityError, ConversionError, SchemaConflictError, UnsupportedTypeError,
)
from dbtransit.core.locator import parse_locator
from dbtransit.core.schema_ir import ColumnIR, TableIR
from dbtransit.core.type_registry import DataType
from dbtransit.drivers.schema_files import (
    BigQuerySchemaDriver, PortableSchemaDriver, PostgresSqlDriver,
)


def orders_table() -> TableIR:
    return TableIR('orders', [
        ColumnIR('id', DataType.integer(), False),
        ColumnIR('customer', DataType.text()),
        ColumnIR('amount', DataType.decimal(10, 2)),
        ColumnIR('placed_at', DataType.timestamp(True)),
    ], ['id'])


class SchemaFileTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name

    def tearDown(self):
        self._tmp.cleanup()

    def write(self, driver, locator_text, table, mode=IfExistsMode.ERROR):
        options = DestinationOptions(schema=table, if_exists=IfExists(mode))
        return asyncio.run(driver.write_schema(parse_locator(locator_text), options))

    def read(self, driver, locator_text):
        return asyncio.run(driver.read_schema(parse_locator(locator_text), {}))


class TestPostgresSql(SchemaFileTestCase):

    def test_write_then_read(self):
        driver = PostgresSqlDriver()
        locator = f"postgres-sql:{self.tmp}/orders.sql"
        self.assertEqual(self.write(driver, locator, orders_table()), [locator])
        with open(f"{self.tmp}/orders.sql") as f:
            text = f.read()
        self.assertIn('"amount" numeric(10,2)', text)
        self.assertTrue(text.rstrip().endswith(');'))
        self.assertEqual(self.read(driver, locator), orders_table())

    def test_if_exists_modes(self):
        driver = PostgresSqlDriver()
        locator = f"postgres-sql:{self.tmp}/orders.sql"
        self.write(driver, locator, orders_table())
        with self.assertRaises(SchemaConflictError):
            self.write(driver, locator, orders_table())
        self.write(driver, locator, orders_table().renamed('orders2'), IfExistsMode.OVERWRITE)
        self.assertEqual(self.read(driver, locator).name, 'orders2')
        with self.assertRaises(CapabilityError):
            self.write(driver, locator, orders_table(), IfExistsMode.APPEND)

    def test_read_from_stdin(self):
        driver = PostgresSqlDriver(stdin=io.StringIO("CREATE TABLE t (id integer, v text);"))
        table = self.read(driver, "postgres-sql:-")
        self.assertEqual(table.column_names, ['id', 'v'])


class TestBigQuerySchema(SchemaFileTestCase):

    FIELDS = [
        {'name': 'id', 'type': 'INTEGER', 'mode': 'REQUIRED'},
        {'name': 'amount', 'type': 'NUMERIC', 'precision': '10', 'scale': '2'},
        {'name': 'placed_at', 'type': 'TIMESTAMP'},
        {'name': 'area', 'type': 'GEOGRAPHY', 'mode': 'NULLABLE'},
    ]

    def test_parse_fields(self):
        path = f"{self.tmp}/events.json"
        with open(path, 'w') as f:
            json.dump(self.FIELDS, f)
        table = self.read(BigQuerySchemaDriver(), f"bigquery-schema:{path}")
        self.assertEqual(table.name, 'events')
        self.assertEqual([str(c.type) for c in table.columns],
                         ['integer', 'decimal(10,2)', 'timestamptz', 'geometry(geometry,4326)'])
        self.assertFalse(table.columns[0].nullable)

    def test_parse_wrapped_fields(self):
        driver = BigQuerySchemaDriver(stdin=io.StringIO(json.dumps({'fields': self.FIELDS[:1]})))
        self.assertEqual(self.read(driver, "bigquery-schema:-").column_names, ['id'])

    def test_repeated_fields_are_rejected(self):
        fields = [{'name': 'tags', 'type': 'STRING', 'mode': 'REPEATED'}]
        driver = BigQuerySchemaDriver(stdin=io.StringIO(json.dumps(fields)))
        with self.assertRaises(UnsupportedTypeError) as ctx:
            self.read(driver, "bigquery-schema:-")
        self.assertEqual(ctx.exception.column, 'tags')

    def test_invalid_json(self):
        driver = BigQuerySchemaDriver(stdin=io.StringIO("{nope"))
        with self.assertRaises(ConversionError):
            self.read(driver, "bigquery-schema:-")

    def test_render(self):
        out = io.StringIO()
        self.write(BigQuerySchemaDriver(stdout=out), "bigquery-schema:-", orders_table())
        fields = json.loads(out.getvalue())
        self.assertEqual(fields[0], {'name': 'id', 'type': 'INT64', 'mode': 'REQUIRED'})
        self.assertEqual(fields[2], {'name': 'amount', 'type': 'NUMERIC', 'mode': 'NULLABLE',
                                     'precision': '10', 'scale': '2'})
        self.assertEqual(fields[3]['type'], 'TIMESTAMP')


class TestPortableSchema(SchemaFileTestCase):

    def test_stdout_and_back(self):
        out = io.StringIO()
        written = self.write(PortableSchemaDriver(stdout=out), "portable-schema:-", orders_table())
        self.assertEqual(written, ['portable-schema:-'])
        self.assertEqual(out.getvalue(), orders_table().to_json())
        driver = PortableSchemaDriver(stdin=io.StringIO(out.getvalue()))
        self.assertEqual(self.read(driver, "portable-schema:-"), orders_table())


if __name__ == '__main__':
    unittest.main()
