"""
Batch configuration and planning for file imports
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Generator, List, Sequence, Tuple

from cvtt.core.errors import SizeProbeError
from cvtt.core.filesystem import FileStore, FileSystemError
from cvtt.core.manifest import ImportRecord

logger = logging.getLogger(__name__)


class BatchConfig:
    """Configuration for batch transfers"""
    # Maximum size of a single batch (30MB by default)
    MAX_BATCH_SIZE = 30 * 1024 * 1024

    # Bounds for the --batch-size option, in MB
    MIN_BATCH_SIZE_MB = 1
    MAX_BATCH_SIZE_MB = 50

    # The collections endpoint accepts 200 subrequests; stay below it
    MAX_SUBREQUESTS = 200
    MAX_FILES_PER_BATCH = 190

    # Simultaneous requests in flight
    DEFAULT_CONCURRENCY = 3
    MIN_CONCURRENCY = 1
    MAX_CONCURRENCY = 12

    # Per-request timeout in seconds
    DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class SizedRecord:
    """Import record with the size of its binary"""

    record: ImportRecord
    size: int


@dataclass(frozen=True)
class Batch:
    """Closed group of records sent in one collections request"""

    records: Tuple[SizedRecord, ...]

    @property
    def total_size(self) -> int:
        return sum(r.size for r in self.records)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)


async def probe_sizes(records: Sequence[ImportRecord], store: FileStore) -> List[SizedRecord]:
    """
    Stat every referenced file concurrently

    Args:
        records: Import records in manifest order
        store: File store used to resolve VersionData paths

    Returns:
        SizedRecord list in the same order as records

    Raises:
        SizeProbeError: On the first file that cannot be stat'ed; the
            remaining probes are cancelled
    """

    async def _probe(record: ImportRecord) -> SizedRecord:
        try:
            size = await store.stat_size(record.version_data)
        except FileSystemError as e:
            raise SizeProbeError(
                f"Row {record.row_number}: cannot read {record.version_data}: {e}",
                row_number=record.row_number,
                path=record.version_data,
            ) from e
        return SizedRecord(record, size)

    tasks = [
        asyncio.create_task(_probe(r), name=f"probe:{r.row_number}") for r in records
    ]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def create_batches(
    records: Sequence[SizedRecord],
    max_batch_size: int = BatchConfig.MAX_BATCH_SIZE,
    max_files: int = BatchConfig.MAX_FILES_PER_BATCH,
) -> Generator[Batch, None, None]:
    """
    Create batches of records for upload

    A record whose file alone exceeds max_batch_size still gets a batch of
    its own; the size limit only bounds what gets grouped together.

    Args:
        records: Sized records in manifest order
        max_batch_size: Byte ceiling for the files of one batch
        max_files: Item ceiling for one batch

    Yields:
        Batch for each group
    """
    if max_files < 1 or max_files > BatchConfig.MAX_SUBREQUESTS:
        raise ValueError(
            f"max_files must be between 1 and {BatchConfig.MAX_SUBREQUESTS}"
        )

    current_batch: List[SizedRecord] = []
    current_batch_size = 0

    for sized in records:
        # If adding this file would exceed batch limits, close current batch
        if current_batch and (
            current_batch_size + sized.size > max_batch_size
            or len(current_batch) >= max_files
        ):
            yield Batch(tuple(current_batch))
            current_batch = []
            current_batch_size = 0

        current_batch.append(sized)
        current_batch_size += sized.size

    if current_batch:
        yield Batch(tuple(current_batch))


async def plan_batches(
    records: Sequence[ImportRecord],
    store: FileStore,
    max_batch_size: int = BatchConfig.MAX_BATCH_SIZE,
    max_files: int = BatchConfig.MAX_FILES_PER_BATCH,
) -> List[Batch]:
    """Probe file sizes and group the records into batches"""
    sized = await probe_sizes(records, store)
    batches = list(create_batches(sized, max_batch_size, max_files))
    logger.debug(
        "Planned %d batch(es) for %d file(s) (limit %d bytes / %d files)",
        len(batches),
        len(sized),
        max_batch_size,
        max_files,
    )
    return batches
