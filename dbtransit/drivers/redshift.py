"""
Amazon Redshift driver.

Locator: ``redshift://[user[:password]@]host[:port]/database[?params]#[schema.]table``.

Redshift speaks the PostgreSQL protocol, so reading, counting and schema
work reuse the postgres driver with Redshift's type table. Loading is
different: rows are first written as CSV objects into an ``s3://``
temporary location, then loaded with a single ``COPY ... FROM 's3://...'``.
Authorization for that COPY comes from ``--to-arg=iam_role=ARN`` or from
the injected AWS key triple.
"""

import logging
from typing import Any, Mapping

from dbtransit.core.driver_registry import DestinationOptions, IfExistsMode
from dbtransit.core.errors import AuthenticationError, CapabilityError
from dbtransit.core.locator import DatabaseLocator, Locator, ObjectStoreLocator
from dbtransit.core.type_registry import PortableType
from dbtransit.drivers.postgres import PostgresDriver, PostgresTableWriter
from dbtransit.drivers.sql import column_list, quote_ident, quote_table

logger = logging.getLogger(__name__)


def sql_literal(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "''") + "'"


class RedshiftDriver(PostgresDriver):
    """Redshift: postgres-protocol reads, S3-staged COPY loads"""

    dialect = 'redshift'
    default_port = 5439
    # upserts delete then insert from a staging table
    upsert_needs_unique_key = False

    async def prepare(self, locator: DatabaseLocator, options: DestinationOptions) -> 'RedshiftTableWriter':
        geometry = [c.name for c in options.schema.columns if c.type.kind == PortableType.GEOMETRY]
        if geometry:
            raise CapabilityError(
                f"redshift CSV loads cannot convert GeoJSON geometry columns: {', '.join(geometry)}",
                scheme=locator.scheme, capability="geometry_load")
        native = await self._call(locator, self._prepare_table, locator, options)
        return RedshiftTableWriter(self, locator, options, native)

    def authorization(self, args: Mapping[str, str]) -> str:
        if args.get('iam_role'):
            return f"IAM_ROLE {sql_literal(args['iam_role'])}"
        credentials = self.credentials
        if credentials is None or not credentials.has_aws_keys:
            raise AuthenticationError(
                "redshift loads need --to-arg=iam_role=ARN or AWS_ACCESS_KEY_ID/AWS_SECRET_ACCESS_KEY",
                scheme='redshift')
        auth = (f"ACCESS_KEY_ID {sql_literal(credentials.aws_access_key_id)} "
                f"SECRET_ACCESS_KEY {sql_literal(credentials.aws_secret_access_key)}")
        if credentials.aws_session_token:
            auth += f" SESSION_TOKEN {sql_literal(credentials.aws_session_token)}"
        return auth


class RedshiftTableWriter(PostgresTableWriter):
    """A prepared Redshift table; rows arrive only through load_staged"""

    def __init__(self, driver: RedshiftDriver, locator: DatabaseLocator, options: DestinationOptions, native):
        super().__init__(driver, locator, options.schema, native, options.if_exists)
        self.args = dict(options.args)

    async def open_stream(self, index: int):
        raise CapabilityError("redshift loads only from an s3 temporary location",
                              scheme=self.locator.scheme, capability="direct_load")

    def copy_sql(self, target: str, staged: ObjectStoreLocator) -> str:
        sql = (f"COPY {target} ({column_list(self.schema.column_names, 'redshift')}) "
               f"FROM {sql_literal(str(staged))} {self.driver.authorization(self.args)} "
               f"FORMAT AS CSV IGNOREHEADER 1 EMPTYASNULL DATEFORMAT 'auto' TIMEFORMAT 'auto'")
        if self.args.get('region'):
            sql += f" REGION {sql_literal(self.args['region'])}"
        return sql

    def _load(self, conn: Any, staged: ObjectStoreLocator):
        target = quote_table(self.locator.table, 'redshift')
        with conn.cursor() as cur:
            if self.if_exists.mode != IfExistsMode.UPSERT:
                cur.execute(self.copy_sql(target, staged))
                return
            key = quote_ident(self.if_exists.key, 'redshift')
            columns = column_list(self.schema.column_names, 'redshift')
            cur.execute(f"CREATE TEMP TABLE dbtransit_stage (LIKE {target})")
            cur.execute(self.copy_sql("dbtransit_stage", staged))
            cur.execute(f"DELETE FROM {target} USING dbtransit_stage WHERE {target}.{key} = dbtransit_stage.{key}")
            cur.execute(
                f"INSERT INTO {target} ({columns}) SELECT {columns} FROM ("
                f"SELECT {columns}, ROW_NUMBER() OVER (PARTITION BY {key} ORDER BY {key}) AS dbtransit_rn "
                f"FROM dbtransit_stage) s WHERE dbtransit_rn = 1"
            )

    async def load_staged(self, staged: Locator) -> None:
        if not isinstance(staged, ObjectStoreLocator):
            raise CapabilityError(f"redshift cannot load from {staged.scheme}",
                                  scheme=staged.scheme, capability="load_staged")
        logger.info(f"Loading {self.locator.redacted()} from {staged}")
        await self.driver._call(self.locator, self._load, staged)
