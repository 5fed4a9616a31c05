"""
Transfer units: one collections upload per batch, one download per record.
"""

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Set

import httpx

from cvtt.core.batch import Batch
from cvtt.core.errors import SinkWriteError
from cvtt.core.fields import FieldSpec, render_fields
from cvtt.core.filesystem import FileStore, FileSystemError
from cvtt.core.manifest import ExportRecord
from cvtt.core.multipart import FilePart, MultipartBody
from cvtt.core.org import OrgConnection
from cvtt.core.results import ErrorKind, ResultAggregator, TransferOutcome

logger = logging.getLogger(__name__)

SOBJECT_TYPE = "ContentVersion"
BINARY_FIELD = "VersionData"

# Name of the JSON part in a multipart collections request
COLLECTION_PART = "collection"


def _error_details(response: httpx.Response) -> Dict[str, Any]:
    """Pull message/errorCode out of a Salesforce error body"""
    try:
        body = response.json()
    except ValueError:
        return {"message": response.text.strip() or response.reason_phrase}
    if isinstance(body, list) and body and isinstance(body[0], dict):
        body = body[0]
    if isinstance(body, dict):
        return {
            "message": body.get("message") or response.reason_phrase,
            "fields": tuple(body.get("fields") or ()),
        }
    return {"message": response.reason_phrase}


def _describe_transport_error(error: Exception, timeout: Optional[float]) -> Dict[str, Any]:
    """Map a request-level exception to outcome message/status fields"""
    if isinstance(error, httpx.HTTPStatusError):
        details = _error_details(error.response)
        message = details.get("message") or str(error)
        return {
            "message": message,
            "status_code": str(error.response.status_code),
            "fields": details.get("fields", ()),
        }
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)):
        limit = f" after {timeout:g}s" if timeout else ""
        return {"message": f"Request timed out{limit}"}
    return {"message": str(error) or type(error).__name__}


def _first_error(errors: Any) -> Dict[str, Any]:
    """First entry of a per-record errors value, whatever its shape"""
    if isinstance(errors, list) and errors:
        errors = errors[0]
    if isinstance(errors, dict):
        return errors
    if isinstance(errors, str) and errors:
        return {"message": errors}
    return {}


async def _with_deadline(operation, timeout: Optional[float]):
    """Await operation() with an overall deadline covering the whole exchange"""
    if not timeout:
        return await operation()
    return await asyncio.wait_for(operation(), timeout)


class UploadUnit:
    """Uploads one batch through a single multipart collections request"""

    def __init__(
        self,
        batch: Batch,
        connection: OrgConnection,
        client: httpx.AsyncClient,
        store: FileStore,
        aggregator: ResultAggregator,
        fields: Optional[Dict[str, FieldSpec]] = None,
        timeout: Optional[float] = None,
    ):
        self.batch = batch
        self._connection = connection
        self._client = client
        self._store = store
        self._aggregator = aggregator
        self._fields = fields or {}
        self._timeout = timeout
        # Positions of the batch that already have an outcome
        self._recorded: Set[int] = set()
        # One unique part name per record, in batch order
        self.part_names = [f"binary_{i}_{uuid.uuid4().hex[:12]}" for i in range(len(batch))]

    def build_descriptor(self) -> Dict[str, Any]:
        """Build the JSON part describing every record of the batch"""
        records = []
        for part_name, sized in zip(self.part_names, self.batch):
            record = sized.record
            descriptor = {
                "attributes": {
                    "type": SOBJECT_TYPE,
                    "binaryPartName": part_name,
                    "binaryPartNameAlias": BINARY_FIELD,
                },
                "Title": record.title,
                "PathOnClient": record.path_on_client,
            }
            descriptor.update(render_fields(self._fields, record.extra))
            records.append(descriptor)
        return {"allOrNone": False, "records": records}

    def build_body(self) -> MultipartBody:
        """Multipart body: the JSON descriptor, then one part per file"""
        body = MultipartBody(self._store)
        body.add_field(COLLECTION_PART, json.dumps(self.build_descriptor()), "application/json")
        for part_name, sized in zip(self.part_names, self.batch):
            body.add_file(FilePart(
                name=part_name,
                filename=Path(sized.record.path_on_client).name,
                path=sized.record.version_data,
                size=sized.size,
            ))
        return body

    def _record(self, index: int, outcome: TransferOutcome):
        if index in self._recorded:
            return
        self._recorded.add(index)
        self._aggregator.record(outcome)

    def _record_results(self, results: Any):
        if not isinstance(results, list):
            raise ValueError("Expected a JSON array in the collections response")

        for index, sized in enumerate(self.batch):
            record = sized.record
            item = results[index] if index < len(results) else None
            if not isinstance(item, dict):
                self._record(index, TransferOutcome.failed(
                    record.title,
                    ErrorKind.ITEM,
                    "No result returned for this record",
                    row_number=record.row_number,
                ))
                continue

            if item.get("success") is True:
                self._record(index, TransferOutcome.succeeded(
                    record.title,
                    record_id=item.get("id"),
                    row_number=record.row_number,
                    size=sized.size,
                ))
                logger.debug("Uploaded: %s (%s)", record.title, item.get("id"))
            else:
                first = _first_error(item.get("errors"))
                status = first.get("statusCode")
                fields = first.get("fields")
                self._record(index, TransferOutcome.failed(
                    record.title,
                    ErrorKind.ITEM,
                    str(first.get("message") or "Unknown error"),
                    status_code=str(status) if status is not None else None,
                    fields=tuple(str(f) for f in fields) if isinstance(fields, list) else (),
                    row_number=record.row_number,
                ))

    def fail_all(self, message: str, status_code: Optional[str] = None, fields=()):
        """Mark every record of the batch without an outcome yet as failed"""
        for index, sized in enumerate(self.batch):
            self._record(index, TransferOutcome.failed(
                sized.record.title,
                ErrorKind.TRANSPORT,
                message,
                status_code=status_code,
                fields=fields,
                row_number=sized.record.row_number,
            ))

    async def _send(self) -> Any:
        body = self.build_body()
        response = await self._client.post(
            self._connection.collections_url, content=body, headers=body.headers
        )
        response.raise_for_status()
        return response.json()

    async def execute(self):
        """Send the batch and record one outcome per record"""
        logger.debug(
            "Uploading batch of %d file(s) (%d bytes)", len(self.batch), self.batch.total_size
        )
        try:
            results = await _with_deadline(self._send, self._timeout)
            self._record_results(results)
        except (httpx.HTTPError, FileSystemError, ValueError, asyncio.TimeoutError) as e:
            details = _describe_transport_error(e, self._timeout)
            logger.warning("Batch of %d file(s) failed: %s", len(self.batch), details["message"])
            self.fail_all(**details)


def export_file_name(record: ExportRecord) -> str:
    """
    File name for a downloaded record

    Only the text after the last dot of the extension hint is used, so both
    "pdf" and "report.pdf" give "<id>.pdf".
    """
    ext = record.extension.strip()
    if "." in ext:
        ext = ext.rsplit(".", 1)[1]
    return f"{record.record_id}.{ext}" if ext else record.record_id


class DownloadUnit:
    """Streams one ContentVersion body to a file"""

    def __init__(
        self,
        record: ExportRecord,
        connection: OrgConnection,
        client: httpx.AsyncClient,
        store: FileStore,
        aggregator: ResultAggregator,
        output_dir: Path,
        timeout: Optional[float] = None,
    ):
        self.record = record
        self._connection = connection
        self._client = client
        self._store = store
        self._aggregator = aggregator
        self._timeout = timeout
        self._recorded = False
        self._opened = False
        self.destination = Path(output_dir) / export_file_name(record)

    @property
    def url(self) -> str:
        return self._connection.sobject_url(SOBJECT_TYPE, self.record.record_id, BINARY_FIELD)

    def _record(self, outcome: TransferOutcome):
        if self._recorded:
            return
        self._recorded = True
        self._aggregator.record(outcome)

    def _failed(self, kind: ErrorKind, message: str, status_code: Optional[str] = None, fields=()):
        self._record(TransferOutcome.failed(
            self.record.record_id,
            kind,
            message,
            status_code=status_code,
            fields=fields,
            row_number=self.record.row_number,
            record_id=self.record.record_id,
        ))

    def fail_all(self, message: str, status_code: Optional[str] = None, fields=()):
        self._failed(ErrorKind.ITEM, message, status_code, fields)

    async def _write_body(self, response: httpx.Response) -> int:
        written = 0
        with self._store.open_write(self.destination) as sink:
            async for chunk in response.aiter_bytes(FileStore.CHUNK_SIZE):
                try:
                    sink.write(chunk)
                except OSError as e:
                    raise SinkWriteError(
                        f"Failed to write {self.destination}: {e.strerror or e}",
                        path=str(self.destination),
                    ) from e
                written += len(chunk)
        return written

    async def _fetch(self) -> int:
        async with self._client.stream("GET", self.url) as response:
            if response.is_error:
                # Error bodies are small, read them for the message
                await response.aread()
                response.raise_for_status()
            expected = response.headers.get("content-length")
            self._opened = True
            written = await self._write_body(response)
        if expected is not None and expected.isdigit() and int(expected) != written:
            logger.debug(
                "%s: content-length %s but %d bytes written", self.record.record_id, expected, written
            )
        return written

    async def execute(self):
        """Download the record and record its outcome"""
        try:
            written = await _with_deadline(self._fetch, self._timeout)
        except SinkWriteError as e:
            self._discard_partial()
            logger.warning("Failed to save %s: %s", self.record.record_id, e)
            self._failed(ErrorKind.SINK_WRITE, str(e))
            return
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            self._discard_partial()
            details = _describe_transport_error(e, self._timeout)
            logger.warning("Failed to download %s: %s", self.record.record_id, details["message"])
            self.fail_all(**details)
            return

        self._record(TransferOutcome.succeeded(
            self.record.record_id,
            record_id=self.record.record_id,
            row_number=self.record.row_number,
            size=written,
        ))

    def _discard_partial(self):
        if not self._opened:
            return
        try:
            self._store.remove(self.destination)
        except FileSystemError as e:
            logger.debug("Could not remove partial file: %s", e)
