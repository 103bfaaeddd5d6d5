"""
Amazon S3 driver.

Locator: ``s3://bucket/prefix/``. Sources read every ``*.csv`` object under
the prefix (one stream per object); destinations must be a prefix ending in
``/`` and receive one CSV object (with header) per chunk, so a retried chunk
simply rewrites the same key. Also provides temporary storage: a unique
sub-prefix of a ``--temporary=s3://...`` pool, emptied on release.
"""

import io
import uuid
import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional

import boto3
from botocore.exceptions import (
    BotoCoreError, ClientError, ConnectionError as BotoConnectionError,
    EndpointConnectionError, NoCredentialsError, ReadTimeoutError,
)

from dbtransit.core.driver_registry import (
    DestinationOptions, IfExists, IfExistsMode, RowStream, SourceOptions,
    TableWriterBase, ThreadWorker, iterate_in_thread,
)
from dbtransit.core.errors import (
    AuthenticationError, CapabilityError, FatalIOError, SchemaConflictError, TransientIOError,
)
from dbtransit.core.locator import ObjectStoreLocator
from dbtransit.core.schema_ir import TableIR
from dbtransit.core.values import Row, csv_line, stage_row
from dbtransit.drivers.csv_files import count_rows, header_schema, read_batches, read_header

logger = logging.getLogger(__name__)

TRANSIENT_CODES = {
    'SlowDown', 'RequestTimeout', 'RequestTimeTooSkewed', 'InternalError',
    'ServiceUnavailable', 'Throttling', 'ThrottlingException', '503', '500',
}
AUTH_CODES = {
    'AccessDenied', 'InvalidAccessKeyId', 'SignatureDoesNotMatch', 'ExpiredToken',
    'InvalidToken', '403',
}
HEADER_BYTES = 64 * 1024


def translate_error(e: Exception, locator: Any, stream: Optional[int] = None) -> Exception:
    """Map a botocore exception onto the dbtransit taxonomy"""
    where = str(locator)
    if isinstance(e, NoCredentialsError):
        return AuthenticationError(f"No AWS credentials for {where}: {e}", scheme='s3')
    if isinstance(e, ClientError):
        code = e.response.get('Error', {}).get('Code', '')
        message = f"S3 error on {where}: {code}: {e}"
        if code in AUTH_CODES:
            return AuthenticationError(message, scheme='s3')
        if code in TRANSIENT_CODES:
            return TransientIOError(message, locator=where, stream=stream)
        return FatalIOError(message, locator=where, stream=stream)
    if isinstance(e, (EndpointConnectionError, BotoConnectionError, ReadTimeoutError)):
        return TransientIOError(f"S3 connection error on {where}: {e}", locator=where, stream=stream)
    return FatalIOError(f"S3 error on {where}: {e}", locator=where, stream=stream)


class S3Driver:
    """S3 prefixes of CSV objects"""

    def __init__(self, credentials: Any = None):
        if credentials is None or not (credentials.has_aws_keys or credentials.aws_profile):
            raise AuthenticationError(
                "s3 needs AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY (or AWS_PROFILE)", scheme='s3')
        self.credentials = credentials
        self._session = boto3.session.Session(
            aws_access_key_id=credentials.aws_access_key_id,
            aws_secret_access_key=credentials.aws_secret_access_key,
            aws_session_token=credentials.aws_session_token,
            region_name=credentials.aws_region,
            profile_name=credentials.aws_profile,
        )
        self._clients: Dict[Optional[str], Any] = {}

    def client(self, region: Optional[str] = None) -> Any:
        if region not in self._clients:
            self._clients[region] = self._session.client('s3', region_name=region or self.credentials.aws_region)
        return self._clients[region]

    async def _call(self, func, *args) -> Any:
        worker = ThreadWorker("dbtransit-s3")
        try:
            return await worker.run(func, *args)
        finally:
            worker.shutdown()

    def list_keys(self, locator: ObjectStoreLocator, region: Optional[str] = None,
                  suffix: Optional[str] = '.csv') -> List[str]:
        client = self.client(region)
        keys = []
        try:
            paginator = client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=locator.bucket, Prefix=locator.prefix):
                for item in page.get('Contents', []):
                    if suffix is None or item['Key'].endswith(suffix):
                        keys.append(item['Key'])
        except (BotoCoreError, ClientError) as e:
            raise translate_error(e, locator) from e
        return sorted(keys)

    def _source_keys(self, locator: ObjectStoreLocator, region: Optional[str]) -> List[str]:
        if not locator.is_directory:
            return [locator.key]
        keys = self.list_keys(locator, region)
        if not keys:
            raise FatalIOError(f"No .csv objects under {locator}", locator=str(locator))
        return keys

    def _body(self, locator: ObjectStoreLocator, key: str, region: Optional[str], **kwargs) -> Any:
        try:
            return self.client(region).get_object(Bucket=locator.bucket, Key=key, **kwargs)['Body']
        except (BotoCoreError, ClientError) as e:
            raise translate_error(e, locator.child(key[len(locator.prefix):])) from e

    # ----- schema / source -----

    def _read_schema_sync(self, locator: ObjectStoreLocator, region: Optional[str]) -> TableIR:
        key = self._source_keys(locator, region)[0]
        head = self._body(locator, key, region, Range=f"bytes=0-{HEADER_BYTES - 1}").read()
        first_line = head.split(b'\n', 1)[0]
        name = locator.prefix.rstrip('/').rsplit('/', 1)[-1] or locator.bucket
        return header_schema(name.rsplit('.', 1)[0], read_header(io.BytesIO(first_line)))

    async def read_schema(self, locator: ObjectStoreLocator, args: Mapping[str, str]) -> TableIR:
        return await self._call(self._read_schema_sync, locator, args.get('region'))

    async def count(self, locator: ObjectStoreLocator, options: SourceOptions) -> int:
        region = options.args.get('region')

        def run():
            total = 0
            for key in self._source_keys(locator, region):
                try:
                    total += count_rows(self._body(locator, key, region))
                except (BotoCoreError, ClientError) as e:
                    raise translate_error(e, locator) from e
            return total

        return await self._call(run)

    async def open_streams(self, locator: ObjectStoreLocator, options: SourceOptions) -> List[RowStream]:
        region = options.args.get('region')
        columns = options.schema.column_names if options.schema is not None else None
        keys = await self._call(self._source_keys, locator, region)

        def make_stream(index: int, key: str) -> RowStream:
            def batches() -> Iterator[List[Row]]:
                try:
                    yield from read_batches(self._body(locator, key, region), columns=columns,
                                            staged=options.staged)
                except (BotoCoreError, ClientError) as e:
                    raise translate_error(e, locator, index) from e
            return RowStream(index, key, lambda: iterate_in_thread(batches))

        return [make_stream(i, k) for i, k in enumerate(keys)]

    # ----- destination -----

    def check_destination(self, locator: ObjectStoreLocator, if_exists: IfExists) -> None:
        if not locator.is_directory:
            raise CapabilityError(
                f"s3 destinations must be a directory prefix ending in '/', got {locator}",
                scheme=locator.scheme, capability="single_object_destination")
        if if_exists.mode == IfExistsMode.UPSERT:
            raise CapabilityError("s3 destinations do not support --if-exists=upsert-on",
                                  scheme=locator.scheme, capability="if_exists:upsert-on")

    def accepts_multiple_streams(self, locator: ObjectStoreLocator) -> bool:
        return True

    def delete_prefix(self, locator: ObjectStoreLocator, region: Optional[str] = None) -> int:
        keys = self.list_keys(locator, region, suffix=None)
        client = self.client(region)
        try:
            for start in range(0, len(keys), 1000):
                batch = [{'Key': k} for k in keys[start:start + 1000]]
                client.delete_objects(Bucket=locator.bucket, Delete={'Objects': batch, 'Quiet': True})
        except (BotoCoreError, ClientError) as e:
            raise translate_error(e, locator) from e
        return len(keys)

    def _prepare_sync(self, locator: ObjectStoreLocator, options: DestinationOptions):
        region = options.args.get('region')
        mode = options.if_exists.mode
        if mode == IfExistsMode.APPEND:
            # new object names must not collide with earlier copies
            return uuid.uuid4().hex[:8]
        existing = self.list_keys(locator, region, suffix=None)
        if existing and mode == IfExistsMode.ERROR:
            raise SchemaConflictError(f"Destination {locator} already contains {len(existing)} object(s)",
                                      locator=str(locator))
        if existing and mode == IfExistsMode.OVERWRITE:
            removed = self.delete_prefix(locator, region)
            logger.info(f"Removed {removed} existing object(s) under {locator}")
        return None

    async def prepare(self, locator: ObjectStoreLocator, options: DestinationOptions) -> 'S3TableWriter':
        self.check_destination(locator, options.if_exists)
        token = await self._call(self._prepare_sync, locator, options)
        return S3TableWriter(self, locator, options.schema.column_names, options.args.get('region'), token,
                             options.staged)

    # ----- temporary storage -----

    async def create_temporary(self, pool: ObjectStoreLocator, name: str) -> ObjectStoreLocator:
        base = pool.prefix if not pool.prefix or pool.prefix.endswith('/') else pool.prefix + '/'
        return ObjectStoreLocator(pool.bucket, f"{base}{name}/", pool.scheme)

    async def remove_temporary(self, locator: ObjectStoreLocator) -> None:
        removed = await self._call(self.delete_prefix, locator)
        logger.debug(f"Deleted {removed} temporary object(s) under {locator}")


class S3TableWriter(TableWriterBase):
    """A prepared S3 prefix"""

    def __init__(self, driver: S3Driver, locator: ObjectStoreLocator, columns: List[str],
                 region: Optional[str] = None, token: Optional[str] = None, staged: bool = False):
        super().__init__(locator)
        self.staged = staged
        self.driver = driver
        self.columns = columns
        self.region = region
        self.token = token
        self.written: List[str] = []

    async def open_stream(self, index: int) -> 'S3StreamWriter':
        return S3StreamWriter(self, index)

    async def finish(self) -> List[str]:
        return sorted(self.written)


class S3StreamWriter:
    """Writes each chunk of one stream as its own object"""

    def __init__(self, table: S3TableWriter, index: int):
        self.table = table
        self.index = index
        self.chunks = 0
        self._worker = ThreadWorker(f"dbtransit-s3-{index}")

    def _put_sync(self, key: str, rows: List[Row]):
        header = csv_line(self.table.columns)
        if self.table.staged:
            rows = [stage_row(row) for row in rows]
        body = (header + ''.join(csv_line(row) for row in rows)).encode('utf-8')
        try:
            self.table.driver.client(self.table.region).put_object(
                Bucket=self.table.locator.bucket, Key=key, Body=body, ContentType='text/csv')
        except (BotoCoreError, ClientError) as e:
            raise translate_error(e, self.table.locator, self.index) from e

    async def write_chunk(self, rows: List[Row]) -> None:
        stem = f"part-{self.table.token}-{self.index:05d}" if self.table.token else f"part-{self.index:05d}"
        name = f"{stem}-{self.chunks:05d}.csv"
        target = self.table.locator.child(name)
        await self._worker.run(self._put_sync, target.key, rows)
        self.chunks += 1
        self.table.written.append(str(target))

    async def close(self) -> None:
        if self.chunks == 0:
            # keep the column header even when the stream was empty
            await self.write_chunk([])
        self._worker.shutdown()
