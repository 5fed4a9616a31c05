"""
Transfer module for ContentVersion Transfer Tool.
Runs CSV driven imports and exports against an org.
"""

import logging
from typing import List, Optional, Sequence, Tuple, Union

import httpx

from cvtt.core.batch import BatchConfig, plan_batches
from cvtt.core.errors import RowError, SizeProbeError, SourceReadError
from cvtt.core.filesystem import FileStore, FileSystemError
from cvtt.core.limiter import ConcurrencyLimiter
from cvtt.core.manifest import (
    DEFAULT_ID_COLUMN,
    TITLE_COLUMN,
    VERSION_DATA_COLUMN,
    ExportRecord,
    ImportRecord,
    import_field_specs,
    open_manifest,
    parse_export_record,
    parse_import_record,
    require_column,
)
from cvtt.core.org import OrgConnection
from cvtt.core.progress import ProgressSink
from cvtt.core.results import (
    AggregateResult,
    ErrorKind,
    ResultAggregator,
    RunPhase,
    TransferOutcome,
    write_failure_ledger,
)
from cvtt.core.transfer_log import TransferLogEntry, TransferLogger
from cvtt.core.units import DownloadUnit, UploadUnit

logger = logging.getLogger(__name__)

# Row number of the first data row; the header is row 1
FIRST_ROW = 2

Unit = Union[UploadUnit, DownloadUnit]


class TransferManager:
    """Manages import and export runs"""

    def __init__(
        self,
        connection: OrgConnection,
        store: Optional[FileStore] = None,
        transfer_logger: Optional[TransferLogger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize transfer manager

        Args:
            connection: Resolved org connection
            store: File store for local binaries (default: relative to cwd)
            transfer_logger: Run history logger (default: TransferLogger())
            transport: Custom httpx transport, mainly for tests
        """
        self._connection = connection
        self._store = store or FileStore()
        self._logger = transfer_logger if transfer_logger is not None else TransferLogger()
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers=self._connection.headers,
            timeout=httpx.Timeout(timeout),
            transport=self._transport,
        )

    @staticmethod
    def _row_failure(error: RowError, label: str) -> TransferOutcome:
        logger.warning(str(error))
        return TransferOutcome.failed(label, ErrorKind.ROW, str(error), row_number=error.row_number)

    @staticmethod
    def _start_transfer(
        aggregator: ResultAggregator,
        progress: Optional[ProgressSink],
        row_failures: List[TransferOutcome],
        item_count: int,
    ):
        aggregator.advance(RunPhase.TRANSFERRING)
        if progress is not None:
            progress.start(len(row_failures) + item_count)
        for outcome in row_failures:
            aggregator.record(outcome)

    async def _run_units(
        self,
        units: Sequence[Unit],
        concurrency: int,
    ):
        """Execute units through one limiter and wait for all of them"""
        limiter = ConcurrencyLimiter(concurrency)
        results = await limiter.run_all(unit.execute for unit in units)
        for unit, result in zip(units, results):
            if isinstance(result, BaseException):
                # Units record their own expected failures; records without an outcome yet fail here
                logger.error("Transfer unit failed unexpectedly: %r", result)
                unit.fail_all(f"Unexpected error: {result}")

    def _finish(
        self,
        aggregator: ResultAggregator,
        command: str,
        manifest: str,
        target: str,
        progress: Optional[ProgressSink],
        error_file: Optional[str],
    ) -> AggregateResult:
        aggregator.advance(RunPhase.FINALIZING)
        if progress is not None:
            progress.finish()
        result = aggregator.finalize()

        if error_file and result.failures:
            ledger = write_failure_ledger(result, error_file)
            logger.info("Wrote %d failure(s) to %s", result.failed, ledger)

        self._logger.add_entry(TransferLogEntry.from_result(command, manifest, target, result))
        aggregator.advance(RunPhase.DONE)
        logger.info(
            "%s complete. %d total, %d succeeded, %d failed.",
            command.capitalize(), result.total, result.succeeded, result.failed,
        )
        return result

    def _read_import_records(
        self, manifest: str
    ) -> Tuple[List[ImportRecord], List[TransferOutcome], dict]:
        records: List[ImportRecord] = []
        row_failures: List[TransferOutcome] = []
        fields = None
        with open_manifest(manifest) as rows:
            for row_number, row in enumerate(rows, FIRST_ROW):
                if fields is None:
                    headers = list(row)
                    require_column(headers, VERSION_DATA_COLUMN, manifest)
                    fields = import_field_specs(headers)
                try:
                    records.append(parse_import_record(row, row_number, fields))
                except RowError as e:
                    row_failures.append(
                        self._row_failure(e, row.get(TITLE_COLUMN) or f"row {row_number}")
                    )
        return records, row_failures, fields or {}

    async def import_files(
        self,
        manifest: str,
        max_batch_size: int = BatchConfig.MAX_BATCH_SIZE,
        concurrency: int = BatchConfig.DEFAULT_CONCURRENCY,
        timeout: float = BatchConfig.DEFAULT_TIMEOUT,
        progress: Optional[ProgressSink] = None,
        error_file: Optional[str] = None,
    ) -> AggregateResult:
        """
        Upload the files listed in a manifest as ContentVersion records

        Args:
            manifest: CSV with VersionData, Title, PathOnClient and extra columns
            max_batch_size: Byte ceiling for one collections request
            concurrency: Maximum requests in flight
            timeout: Per-request timeout in seconds
            progress: Sink receiving one tick per file
            error_file: Optional CSV path for the failure ledger

        Returns:
            AggregateResult of the run

        Raises:
            SourceReadError: If the manifest cannot be read
            SizeProbeError: If a referenced file cannot be stat'ed
        """
        aggregator = ResultAggregator(progress)
        aggregator.advance(RunPhase.READING)
        try:
            records, row_failures, fields = self._read_import_records(manifest)
        except SourceReadError:
            aggregator.advance(RunPhase.FAILED)
            raise

        aggregator.advance(RunPhase.BATCHING)
        try:
            batches = await plan_batches(records, self._store, max_batch_size)
        except SizeProbeError:
            aggregator.advance(RunPhase.FAILED)
            raise

        logger.info(
            "Importing %d file(s) in %d batch(es) from %s", len(records), len(batches), manifest
        )
        self._start_transfer(aggregator, progress, row_failures, len(records))
        async with self._client(timeout) as client:
            units = [
                UploadUnit(batch, self._connection, client, self._store, aggregator, fields, timeout)
                for batch in batches
            ]
            await self._run_units(units, concurrency)

        return self._finish(
            aggregator, "import", manifest, self._connection.instance_url, progress, error_file
        )

    def _read_export_records(
        self, manifest: str, id_field: str, ext_field: Optional[str]
    ) -> Tuple[List[ExportRecord], List[TransferOutcome]]:
        records: List[ExportRecord] = []
        row_failures: List[TransferOutcome] = []
        checked = False
        with open_manifest(manifest) as rows:
            for row_number, row in enumerate(rows, FIRST_ROW):
                if not checked:
                    headers = list(row)
                    require_column(headers, id_field, manifest)
                    if ext_field:
                        require_column(headers, ext_field, manifest)
                    checked = True
                try:
                    records.append(parse_export_record(row, row_number, id_field, ext_field))
                except RowError as e:
                    row_failures.append(self._row_failure(e, f"row {row_number}"))
        return records, row_failures

    async def export_files(
        self,
        manifest: str,
        output_dir: str,
        id_field: str = DEFAULT_ID_COLUMN,
        ext_field: Optional[str] = None,
        concurrency: int = BatchConfig.DEFAULT_CONCURRENCY,
        timeout: float = BatchConfig.DEFAULT_TIMEOUT,
        progress: Optional[ProgressSink] = None,
        error_file: Optional[str] = None,
    ) -> AggregateResult:
        """
        Download the ContentVersion bodies listed in a manifest

        Existing files with the same name in output_dir are overwritten.

        Args:
            manifest: CSV holding an id column and optionally an extension column
            output_dir: Directory receiving the files (created if missing)
            id_field: Name of the id column
            ext_field: Name of the extension hint column
            concurrency: Maximum downloads in flight
            timeout: Per-request timeout in seconds
            progress: Sink receiving one tick per file
            error_file: Optional CSV path for the failure ledger

        Raises:
            SourceReadError: If the manifest cannot be read or the output
                directory cannot be created
        """
        aggregator = ResultAggregator(progress)
        aggregator.advance(RunPhase.READING)
        try:
            destination = self._store.ensure_directory(output_dir)
            records, row_failures = self._read_export_records(manifest, id_field, ext_field)
        except FileSystemError as e:
            aggregator.advance(RunPhase.FAILED)
            raise SourceReadError(str(e)) from e
        except SourceReadError:
            aggregator.advance(RunPhase.FAILED)
            raise

        logger.info("Exporting %d file(s) to %s", len(records), destination)
        self._start_transfer(aggregator, progress, row_failures, len(records))
        async with self._client(timeout) as client:
            units = [
                DownloadUnit(record, self._connection, client, self._store, aggregator, destination, timeout)
                for record in records
            ]
            await self._run_units(units, concurrency)

        return self._finish(aggregator, "export", manifest, str(destination), progress, error_file)
