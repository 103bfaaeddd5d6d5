#!/usr/bin/env python3
"""
S3 driver tests with a mocked boto3 session: error translation, destination
rules, object naming and temporary prefixes.
"""

import asyncio
import io
import unittest
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from dbtransit.config.settings import Credentials
from dbtransit.core.driver_registry import DestinationOptions, IfExists, IfExistsMode, SourceOptions
from dbtransit.core.errors import (
    AuthenticationError, CapabilityError, FatalIOError, SchemaConflictError, TransientIOError,
)
from dbtransit.core.locator import parse_locator
from dbtransit.core.schema_ir import ColumnIR, TableIR
from dbtransit.core.type_registry import DataType
from dbtransit.drivers.s3 import S3Driver, translate_error

CREDENTIALS = Credentials(aws_access_key_id='AK', aws_secret_access_key='SK', aws_region='us-east-1')
SCHEMA = TableIR('users', [ColumnIR('id', DataType.integer()), ColumnIR('name', DataType.text())])


def client_error(code: str) -> ClientError:
    return ClientError({'Error': {'Code': code, 'Message': 'boom'}}, 'PutObject')


class TestTranslateError(unittest.TestCase):

    def test_error_kinds(self):
        locator = parse_locator("s3://bucket/out/")
        cases = [
            (client_error('SlowDown'), TransientIOError),
            (client_error('503'), TransientIOError),
            (client_error('AccessDenied'), AuthenticationError),
            (client_error('NoSuchBucket'), FatalIOError),
            (EndpointConnectionError(endpoint_url='https://s3.amazonaws.com'), TransientIOError),
            (NoCredentialsError(), AuthenticationError),
            (RuntimeError('other'), FatalIOError),
        ]
        for error, expected in cases:
            with self.subTest(error=error):
                self.assertIsInstance(translate_error(error, locator, 1), expected)


class S3TestCase(unittest.TestCase):

    def setUp(self):
        patcher = patch('dbtransit.drivers.s3.boto3.session.Session')
        self.session_cls = patcher.start()
        self.addCleanup(patcher.stop)
        self.client = MagicMock()
        self.session_cls.return_value.client.return_value = self.client
        self.set_listing([])
        self.driver = S3Driver(CREDENTIALS)

    def set_listing(self, keys):
        paginator = self.client.get_paginator.return_value
        paginator.paginate.return_value = [{'Contents': [{'Key': k} for k in keys]}]

    def set_objects(self, objects):
        self.client.get_object.side_effect = lambda Bucket, Key, **kw: {'Body': io.BytesIO(objects[Key])}

    def put_keys(self):
        return [c.kwargs['Key'] for c in self.client.put_object.call_args_list]


class TestS3Driver(S3TestCase):

    def test_requires_credentials(self):
        with self.assertRaises(AuthenticationError):
            S3Driver(Credentials())
        with self.assertRaises(AuthenticationError):
            S3Driver(None)

    def test_session_uses_injected_credentials(self):
        kwargs = self.session_cls.call_args.kwargs
        self.assertEqual(kwargs['aws_access_key_id'], 'AK')
        self.assertEqual(kwargs['region_name'], 'us-east-1')

    def test_destination_must_be_a_prefix(self):
        with self.assertRaises(CapabilityError):
            self.driver.check_destination(parse_locator("s3://bucket/out.csv"), IfExists())
        with self.assertRaises(CapabilityError):
            self.driver.check_destination(parse_locator("s3://bucket/out/"), IfExists(IfExistsMode.UPSERT, 'id'))
        self.driver.check_destination(parse_locator("s3://bucket/out/"), IfExists(IfExistsMode.APPEND))

    def test_writes_one_object_per_chunk(self):
        locator = parse_locator("s3://bucket/out/")

        async def scenario():
            writer = await self.driver.prepare(locator, DestinationOptions(SCHEMA))
            first = await writer.open_stream(0)
            await first.write_chunk([('1', 'a')])
            await first.write_chunk([('2', None)])
            await first.close()
            empty = await writer.open_stream(1)
            await empty.close()
            return await writer.finish()

        written = asyncio.run(scenario())
        self.assertEqual(written, [
            "s3://bucket/out/part-00000-00000.csv",
            "s3://bucket/out/part-00000-00001.csv",
            "s3://bucket/out/part-00001-00000.csv",
        ])
        bodies = [c.kwargs['Body'] for c in self.client.put_object.call_args_list]
        self.assertEqual(bodies[0], b'id,name\n1,a\n')
        self.assertEqual(bodies[1], b'id,name\n2,\n')
        self.assertEqual(bodies[2], b'id,name\n')

    def test_append_uses_fresh_object_names(self):
        self.set_listing(['out/part-00000-00000.csv'])

        async def scenario():
            writer = await self.driver.prepare(parse_locator("s3://bucket/out/"),
                                               DestinationOptions(SCHEMA, IfExists(IfExistsMode.APPEND)))
            stream = await writer.open_stream(0)
            await stream.write_chunk([('3', 'c')])
            await stream.close()

        asyncio.run(scenario())
        key = self.put_keys()[0]
        self.assertRegex(key, r'^out/part-[0-9a-f]{8}-00000-00000\.csv$')

    def test_existing_objects_with_error_mode(self):
        self.set_listing(['out/part-00000-00000.csv'])
        with self.assertRaises(SchemaConflictError):
            asyncio.run(self.driver.prepare(parse_locator("s3://bucket/out/"), DestinationOptions(SCHEMA)))
        self.client.put_object.assert_not_called()

    def test_overwrite_deletes_existing_objects(self):
        self.set_listing(['out/a.csv', 'out/b.csv'])
        asyncio.run(self.driver.prepare(parse_locator("s3://bucket/out/"),
                                        DestinationOptions(SCHEMA, IfExists(IfExistsMode.OVERWRITE))))
        delete = self.client.delete_objects.call_args.kwargs
        self.assertEqual(delete['Delete']['Objects'], [{'Key': 'out/a.csv'}, {'Key': 'out/b.csv'}])

    def test_schema_and_count_from_objects(self):
        self.set_listing(['data/1.csv', 'data/2.csv', 'data/readme.txt'])
        self.set_objects({
            'data/1.csv': b'id,name\n1,a\n2,b\n',
            'data/2.csv': b'id,name\n3,c\n',
        })
        locator = parse_locator("s3://bucket/data/")
        schema = asyncio.run(self.driver.read_schema(locator, {}))
        self.assertEqual(schema.name, 'data')
        self.assertEqual(schema.column_names, ['id', 'name'])
        self.assertEqual(asyncio.run(self.driver.count(locator, SourceOptions(None))), 3)

    def test_source_streams_read_rows(self):
        self.set_objects({'data/users.csv': b'id,name\n1,a\n2,\n'})
        locator = parse_locator("s3://bucket/data/users.csv")

        async def scenario():
            streams = await self.driver.open_streams(locator, SourceOptions(SCHEMA))
            return [row async for row in streams[0].rows()]

        self.assertEqual(asyncio.run(scenario()), [('1', 'a'), ('2', None)])

    def test_staged_objects_keep_empty_strings(self):
        locator = parse_locator("s3://bucket/tmp/run/")

        async def write():
            writer = await self.driver.prepare(locator, DestinationOptions(SCHEMA, staged=True))
            stream = await writer.open_stream(0)
            await stream.write_chunk([('1', ''), ('2', None)])
            await stream.close()

        asyncio.run(write())
        body = self.client.put_object.call_args.kwargs['Body']
        self.assertEqual(body, b'id,name\n1,""\n2,\\N\n')

        self.set_objects({'tmp/run/part-00000-00000.csv': body})

        async def read():
            streams = await self.driver.open_streams(
                parse_locator("s3://bucket/tmp/run/part-00000-00000.csv"), SourceOptions(SCHEMA, staged=True))
            return [row async for row in streams[0].rows()]

        self.assertEqual(asyncio.run(read()), [('1', ''), ('2', None)])

    def test_empty_prefix_is_fatal(self):
        with self.assertRaises(FatalIOError):
            asyncio.run(self.driver.read_schema(parse_locator("s3://bucket/nothing/"), {}))

    def test_temporary_prefix_lifecycle(self):
        pool = parse_locator("s3://scratch/tmp")
        location = asyncio.run(self.driver.create_temporary(pool, 'dbtransit-run-0'))
        self.assertEqual(str(location), "s3://scratch/tmp/dbtransit-run-0/")
        self.set_listing(['tmp/dbtransit-run-0/part-00000-00000.csv'])
        asyncio.run(self.driver.remove_temporary(location))
        delete = self.client.delete_objects.call_args.kwargs
        self.assertEqual(delete['Bucket'], 'scratch')


if __name__ == '__main__':
    unittest.main()
