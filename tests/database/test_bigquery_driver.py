#!/usr/bin/env python3
"""
BigQuery driver tests with a mocked client: schemas, counts and errors.
"""

import asyncio
import unittest
from unittest.mock import MagicMock, patch

from google.api_core import exceptions as google_exceptions
from google.auth.exceptions import DefaultCredentialsError
from google.cloud import bigquery

from dbtransit.config.settings import Credentials
from dbtransit.core.driver_registry import DestinationOptions, IfExists, IfExistsMode, SourceOptions
from dbtransit.core.errors import (
    AuthenticationError, CapabilityError, FatalIOError, SchemaConflictError, TransientIOError,
)
from dbtransit.core.locator import parse_locator
from dbtransit.core.schema_ir import ColumnIR, TableIR
from dbtransit.core.type_registry import DataType
from dbtransit.drivers.bigquery import BigQueryDriver, translate_error

LOCATOR = parse_locator("bigquery:my-project:analytics.events")


def events_schema() -> TableIR:
    return TableIR('events', [
        ColumnIR('id', DataType.integer(), False),
        ColumnIR('amount', DataType.decimal(10, 2)),
        ColumnIR('seen_at', DataType.timestamp(True)),
    ])


class TestTranslateError(unittest.TestCase):

    def test_error_kinds(self):
        cases = [
            (google_exceptions.TooManyRequests('slow down'), TransientIOError),
            (google_exceptions.ServiceUnavailable('later'), TransientIOError),
            (google_exceptions.Forbidden('denied'), AuthenticationError),
            (DefaultCredentialsError('no credentials'), AuthenticationError),
            (google_exceptions.BadRequest('bad sql'), FatalIOError),
        ]
        for error, expected in cases:
            with self.subTest(error=type(error).__name__):
                self.assertIsInstance(translate_error(error, LOCATOR), expected)


class TestBigQueryDriver(unittest.TestCase):

    def setUp(self):
        patcher = patch('dbtransit.drivers.bigquery.bigquery.Client')
        self.client_cls = patcher.start()
        self.addCleanup(patcher.stop)
        self.client = self.client_cls.return_value
        self.driver = BigQueryDriver(Credentials())

    def test_read_schema(self):
        table = MagicMock()
        table.schema = [
            bigquery.SchemaField('id', 'INTEGER', mode='REQUIRED'),
            bigquery.SchemaField('amount', 'NUMERIC', precision=10, scale=2),
            bigquery.SchemaField('seen_at', 'TIMESTAMP'),
        ]
        self.client.get_table.return_value = table
        schema = asyncio.run(self.driver.read_schema(LOCATOR, {}))
        self.client.get_table.assert_called_once_with('my-project.analytics.events')
        self.client_cls.assert_called_once_with(project='my-project')
        self.assertEqual(schema, events_schema())

    def test_missing_table(self):
        self.client.get_table.side_effect = google_exceptions.NotFound('no table')
        with self.assertRaises(FatalIOError):
            asyncio.run(self.driver.read_schema(LOCATOR, {}))

    def test_write_schema_creates_table(self):
        written = asyncio.run(self.driver.write_schema(LOCATOR, DestinationOptions(events_schema())))
        self.assertEqual(written, ["bigquery:my-project:analytics.events"])
        created = self.client.create_table.call_args[0][0]
        self.assertEqual([(f.name, f.field_type, f.mode) for f in created.schema], [
            ('id', 'INT64', 'REQUIRED'),
            ('amount', 'NUMERIC', 'NULLABLE'),
            ('seen_at', 'TIMESTAMP', 'NULLABLE'),
        ])
        self.client.delete_table.assert_not_called()

    def test_overwrite_drops_first(self):
        options = DestinationOptions(events_schema(), IfExists(IfExistsMode.OVERWRITE))
        asyncio.run(self.driver.write_schema(LOCATOR, options))
        self.client.delete_table.assert_called_once_with('my-project.analytics.events', not_found_ok=True)

    def test_existing_table_conflicts(self):
        self.client.create_table.side_effect = google_exceptions.Conflict('exists')
        with self.assertRaises(SchemaConflictError):
            asyncio.run(self.driver.write_schema(LOCATOR, DestinationOptions(events_schema())))

    def test_append_is_not_supported(self):
        options = DestinationOptions(events_schema(), IfExists(IfExistsMode.APPEND))
        with self.assertRaises(CapabilityError):
            asyncio.run(self.driver.write_schema(LOCATOR, options))
        self.client.create_table.assert_not_called()

    def test_count(self):
        self.client.query.return_value.result.return_value = [{'row_count': 7}]
        total = asyncio.run(self.driver.count(LOCATOR, SourceOptions(None, where="kind = 'x'",
                                                                     args={'location': 'EU'})))
        self.assertEqual(total, 7)
        sql = self.client.query.call_args[0][0]
        self.assertEqual(sql, "SELECT COUNT(*) AS row_count FROM `my-project.analytics.events` WHERE (kind = 'x')")
        self.assertEqual(self.client.query.call_args.kwargs['location'], 'EU')

    def test_transient_api_errors_are_translated(self):
        self.client.query.side_effect = google_exceptions.ServiceUnavailable('try later')
        with self.assertRaises(TransientIOError):
            asyncio.run(self.driver.count(LOCATOR, SourceOptions(None)))

    def test_service_account_file(self):
        driver = BigQueryDriver(Credentials(google_application_credentials='/etc/sa.json'))
        driver.client('my-project')
        self.client_cls.from_service_account_json.assert_called_once_with('/etc/sa.json', project='my-project')


if __name__ == '__main__':
    unittest.main()
