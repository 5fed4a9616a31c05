"""
CSV manifest reading for ContentVersion Transfer Tool.
Turns manifest rows into import and export records.
"""

import csv
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, TextIO

from cvtt.core.errors import RowError, SourceReadError
from cvtt.core.fields import FieldSpec, parse_fields

# Column holding the local path of the binary to upload
VERSION_DATA_COLUMN = "VersionData"
TITLE_COLUMN = "Title"
PATH_ON_CLIENT_COLUMN = "PathOnClient"

RESERVED_COLUMNS = (VERSION_DATA_COLUMN, TITLE_COLUMN, PATH_ON_CLIENT_COLUMN)

DEFAULT_ID_COLUMN = "Id"


@dataclass
class ImportRecord:
    """One file to upload as a new ContentVersion"""

    row_number: int
    version_data: str
    title: str
    path_on_client: str
    extra: Dict[str, str] = field(default_factory=dict)


@dataclass
class ExportRecord:
    """One ContentVersion to download"""

    row_number: int
    record_id: str
    extension: str = ""


def read_rows(stream: TextIO) -> Iterator[Dict[str, str]]:
    """
    Lazily decode rows from a CSV stream with a header row

    Args:
        stream: Readable text stream

    Yields:
        Mapping of trimmed column name to trimmed value for every row

    Raises:
        SourceReadError: If the stream cannot be read or parsed
    """
    try:
        reader = csv.DictReader(stream, strict=True)
        if reader.fieldnames is None:
            return
        headers = [name.strip() for name in reader.fieldnames]
        reader.fieldnames = headers
        for row in reader:
            yield {
                key: (value or "").strip()
                for key, value in row.items()
                if key is not None
            }
    except (csv.Error, UnicodeDecodeError, OSError) as e:
        raise SourceReadError(f"Failed to read CSV manifest: {e}") from e


@contextmanager
def open_manifest(path: str) -> Iterator[Iterator[Dict[str, str]]]:
    """Open a manifest file and yield its row iterator"""
    try:
        f = open(path, "r", encoding="utf-8-sig", newline="")
    except OSError as e:
        raise SourceReadError(f"Failed to open CSV manifest {path}: {e}") from e
    with f:
        yield read_rows(f)


def require_column(headers: List[str], column: str, path: str = "manifest"):
    if column not in headers:
        raise SourceReadError(f"Column '{column}' not found in {path}")


def import_field_specs(headers: List[str]) -> Dict[str, FieldSpec]:
    """Parse the non-reserved columns of an import manifest"""
    extra = [h for h in headers if h and h not in RESERVED_COLUMNS]
    try:
        return parse_fields(extra)
    except ValueError as e:
        raise SourceReadError(str(e)) from e


def parse_import_record(
    row: Dict[str, str], row_number: int, fields: Dict[str, FieldSpec]
) -> ImportRecord:
    """
    Build an import record from a manifest row

    Title falls back to the stem of PathOnClient, PathOnClient falls back to
    the file name of VersionData.

    Raises:
        RowError: If VersionData is missing
    """
    version_data = row.get(VERSION_DATA_COLUMN, "")
    if not version_data:
        raise RowError(f"Row {row_number}: missing {VERSION_DATA_COLUMN}", row_number)

    path_on_client = row.get(PATH_ON_CLIENT_COLUMN) or os.path.basename(version_data)
    title = row.get(TITLE_COLUMN) or Path(path_on_client).stem

    return ImportRecord(
        row_number=row_number,
        version_data=version_data,
        title=title,
        path_on_client=path_on_client,
        extra={column: row.get(column, "") for column in fields},
    )


def parse_export_record(
    row: Dict[str, str],
    row_number: int,
    id_field: str = DEFAULT_ID_COLUMN,
    ext_field: Optional[str] = None,
) -> ExportRecord:
    """
    Build an export record from a manifest row

    Raises:
        RowError: If the id column is empty
    """
    record_id = row.get(id_field, "")
    if not record_id:
        raise RowError(f"Row {row_number}: missing ContentVersion ID", row_number)

    extension = row.get(ext_field, "") if ext_field else ""
    return ExportRecord(row_number=row_number, record_id=record_id, extension=extension)
