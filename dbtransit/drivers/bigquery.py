"""
Google BigQuery driver.

Locator: ``bigquery:project:dataset.table``.

Roles: schema source, schema destination and count. Credentials come from
GOOGLE_APPLICATION_CREDENTIALS (a service account file) in the injected
credentials, or from the application-default chain; missing credentials
are an AuthenticationError.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from google.api_core import exceptions as google_exceptions
from google.auth.exceptions import DefaultCredentialsError
from google.cloud import bigquery

from dbtransit.core.driver_registry import DestinationOptions, IfExistsMode, SourceOptions, ThreadWorker
from dbtransit.core.errors import (
    AuthenticationError, CapabilityError, FatalIOError, SchemaConflictError, TransientIOError,
)
from dbtransit.core.locator import WarehouseLocator
from dbtransit.core.schema_ir import TableIR, from_portable, to_portable
from dbtransit.drivers.schema_files import fields_from_native, native_from_fields
from dbtransit.drivers.sql import where_clause

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    google_exceptions.TooManyRequests,
    google_exceptions.ServiceUnavailable,
    google_exceptions.InternalServerError,
    google_exceptions.GatewayTimeout,
    google_exceptions.BadGateway,
)
AUTH_ERRORS = (google_exceptions.Unauthorized, google_exceptions.Forbidden)


def translate_error(e: Exception, locator: WarehouseLocator) -> Exception:
    """Map google-cloud exceptions onto the dbtransit taxonomy"""
    message = f"BigQuery error on {locator}: {e}"
    if isinstance(e, (DefaultCredentialsError,) + AUTH_ERRORS):
        return AuthenticationError(message, scheme=locator.scheme)
    if isinstance(e, TRANSIENT_ERRORS):
        return TransientIOError(message, locator=str(locator))
    return FatalIOError(message, locator=str(locator))


class BigQueryDriver:
    """BigQuery tables: schemas and counts"""

    def __init__(self, credentials: Any = None):
        self.credentials = credentials
        self._clients: Dict[str, Any] = {}

    def client(self, project: str) -> Any:
        if project not in self._clients:
            path = self.credentials.google_application_credentials if self.credentials else None
            if path:
                self._clients[project] = bigquery.Client.from_service_account_json(path, project=project)
            else:
                self._clients[project] = bigquery.Client(project=project)
        return self._clients[project]

    async def _call(self, locator: WarehouseLocator, func, *args) -> Any:
        def run():
            try:
                return func(self.client(locator.project), *args)
            except (google_exceptions.GoogleAPIError, DefaultCredentialsError) as e:
                raise translate_error(e, locator) from e

        worker = ThreadWorker("dbtransit-bigquery")
        try:
            return await worker.run(run)
        finally:
            worker.shutdown()

    # ----- schema -----

    @staticmethod
    def _read_schema(client: Any, locator: WarehouseLocator) -> TableIR:
        try:
            table = client.get_table(locator.table_id)
        except google_exceptions.NotFound as e:
            raise FatalIOError(f"Table {locator} does not exist", locator=str(locator)) from e
        fields = [f.to_api_repr() for f in table.schema]
        return to_portable(native_from_fields(locator.table, fields))

    async def read_schema(self, locator: WarehouseLocator, args: Mapping[str, str]) -> TableIR:
        return await self._call(locator, self._read_schema, locator)

    @staticmethod
    def _write_schema(client: Any, locator: WarehouseLocator, fields: List[Dict[str, Any]],
                      mode: IfExistsMode):
        schema = [bigquery.SchemaField.from_api_repr(f) for f in fields]
        if mode == IfExistsMode.OVERWRITE:
            client.delete_table(locator.table_id, not_found_ok=True)
        try:
            client.create_table(bigquery.Table(locator.table_id, schema=schema))
        except google_exceptions.Conflict as e:
            raise SchemaConflictError(f"Destination {locator} already exists", locator=str(locator)) from e

    async def write_schema(self, locator: WarehouseLocator, options: DestinationOptions) -> List[str]:
        mode = options.if_exists.mode
        if mode not in (IfExistsMode.ERROR, IfExistsMode.OVERWRITE):
            raise CapabilityError("bigquery schema output supports --if-exists=error or overwrite only",
                                  scheme=locator.scheme, capability=f"if_exists:{mode.value}")
        native = from_portable('bigquery', options.schema.renamed(locator.table), options.context)
        await self._call(locator, self._write_schema, locator, fields_from_native(native), mode)
        logger.info(f"Created BigQuery table {locator}")
        return [str(locator)]

    # ----- count -----

    @staticmethod
    def _count(client: Any, locator: WarehouseLocator, where: Optional[str], location: Optional[str]) -> int:
        sql = f"SELECT COUNT(*) AS row_count FROM `{locator.table_id}`{where_clause(where)}"
        rows = list(client.query(sql, location=location).result())
        if len(rows) != 1:
            raise FatalIOError(f"COUNT(*) on {locator} returned {len(rows)} rows", locator=str(locator))
        return int(rows[0]['row_count'])

    async def count(self, locator: WarehouseLocator, options: SourceOptions) -> int:
        return await self._call(locator, self._count, locator, options.where, options.args.get('location'))
