"""
Built-in drivers, registered by scheme.

Driver modules are imported only when a locator of their scheme is used,
so a missing client library affects only the schemes that need it.
"""

from typing import Any

from dbtransit.core.driver_registry import (
    Capability, DriverRegistry, DriverSpec, IfExistsMode,
)

NO_UPSERT = frozenset({IfExistsMode.ERROR, IfExistsMode.OVERWRITE, IfExistsMode.APPEND})
REPLACE_ONLY = frozenset({IfExistsMode.ERROR, IfExistsMode.OVERWRITE})

DATABASE_ROLES = frozenset({
    Capability.SOURCE, Capability.DESTINATION, Capability.SCHEMA_SOURCE,
    Capability.SCHEMA_DESTINATION, Capability.COUNT,
})
SCHEMA_FILE_ROLES = frozenset({Capability.SCHEMA_SOURCE, Capability.SCHEMA_DESTINATION})


def _postgres(credentials: Any):
    from dbtransit.drivers.postgres import PostgresDriver
    return PostgresDriver(credentials)


def _redshift(credentials: Any):
    from dbtransit.drivers.redshift import RedshiftDriver
    return RedshiftDriver(credentials)


def _mysql(credentials: Any):
    from dbtransit.drivers.mysql import MysqlDriver
    return MysqlDriver(credentials)


def _sqlite(credentials: Any):
    from dbtransit.drivers.sqlite import SqliteDriver
    return SqliteDriver(credentials)


def _csv(credentials: Any):
    from dbtransit.drivers.csv_files import CsvDriver
    return CsvDriver(credentials)


def _s3(credentials: Any):
    from dbtransit.drivers.s3 import S3Driver
    return S3Driver(credentials)


def _bigquery(credentials: Any):
    from dbtransit.drivers.bigquery import BigQueryDriver
    return BigQueryDriver(credentials)


def _postgres_sql(credentials: Any):
    from dbtransit.drivers.schema_files import PostgresSqlDriver
    return PostgresSqlDriver(credentials)


def _bigquery_schema(credentials: Any):
    from dbtransit.drivers.schema_files import BigQuerySchemaDriver
    return BigQuerySchemaDriver(credentials)


def _portable_schema(credentials: Any):
    from dbtransit.drivers.schema_files import PortableSchemaDriver
    return PortableSchemaDriver(credentials)


BUILTIN_DRIVERS = [
    DriverSpec('postgres', _postgres, DATABASE_ROLES, supports_where=True, advisory_count=True),
    DriverSpec('redshift', _redshift, DATABASE_ROLES, destination_args=frozenset({'iam_role', 'region'}),
               staging=('s3',), supports_where=True, advisory_count=True),
    DriverSpec('mysql', _mysql, DATABASE_ROLES, supports_where=True, advisory_count=True),
    DriverSpec('sqlite', _sqlite, DATABASE_ROLES, supports_where=True, advisory_count=True),
    DriverSpec('csv', _csv,
               frozenset({Capability.SOURCE, Capability.DESTINATION, Capability.SCHEMA_SOURCE,
                          Capability.COUNT, Capability.TEMPORARY}),
               source_args=frozenset({'delimiter'}), destination_args=frozenset({'delimiter'}),
               if_exists=NO_UPSERT),
    DriverSpec('s3', _s3,
               frozenset({Capability.SOURCE, Capability.DESTINATION, Capability.COUNT, Capability.TEMPORARY}),
               source_args=frozenset({'region'}), destination_args=frozenset({'region'}),
               if_exists=NO_UPSERT),
    DriverSpec('bigquery', _bigquery,
               frozenset({Capability.SCHEMA_SOURCE, Capability.SCHEMA_DESTINATION, Capability.COUNT}),
               source_args=frozenset({'location'}), if_exists=REPLACE_ONLY, supports_where=True),
    DriverSpec('postgres-sql', _postgres_sql, SCHEMA_FILE_ROLES, if_exists=REPLACE_ONLY),
    DriverSpec('bigquery-schema', _bigquery_schema, SCHEMA_FILE_ROLES, if_exists=REPLACE_ONLY),
    DriverSpec('portable-schema', _portable_schema, SCHEMA_FILE_ROLES, if_exists=REPLACE_ONLY),
]


def register_builtin_drivers(registry: DriverRegistry) -> DriverRegistry:
    for spec in BUILTIN_DRIVERS:
        registry.register(spec)
    return registry


def default_registry(credentials: Any = None) -> DriverRegistry:
    return register_builtin_drivers(DriverRegistry(credentials))
