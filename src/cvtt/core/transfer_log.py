"""
Run history for ContentVersion Transfer Tool.
Every finished import or export appends one entry to a per-day JSON file.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from cvtt.core.config import CONFIG_DIR_ENV
from cvtt.core.results import AggregateResult

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d"
FILE_PREFIX = "runs_"


@dataclass
class TransferLogEntry:
    """Summary of one finished run"""
    timestamp: str
    command: str  # "import" or "export"
    manifest: str
    target: str  # Org instance URL or output directory
    total: int
    succeeded: int
    failed: int
    total_size: int
    duration: float
    failures: List[str] = field(default_factory=list)

    @classmethod
    def from_result(cls, command: str, manifest: str, target: str, result: AggregateResult) -> "TransferLogEntry":
        return cls(
            timestamp=datetime.now().isoformat(),
            command=command,
            manifest=manifest,
            target=target,
            total=result.total,
            succeeded=result.succeeded,
            failed=result.failed,
            total_size=result.total_size,
            duration=result.duration,
            failures=[f"{f.label}: {f.message}" for f in result.failures],
        )


def parse_log_date(value: str) -> str:
    """
    Normalize a YYYY-MM-DD string

    Raises:
        ValueError: If value is not a valid date
    """
    return datetime.strptime(value.strip(), DATE_FORMAT).strftime(DATE_FORMAT)


class TransferLogger:
    """Reads and appends the run history"""

    def __init__(self, log_dir: Optional[str] = None):
        """
        Args:
            log_dir: Directory holding the history files
                (default: <config dir>/logs)
        """
        if log_dir is None:
            config_dir = os.environ.get(CONFIG_DIR_ENV) or os.path.expanduser("~/.config/cvtt")
            log_dir = os.path.join(config_dir, "logs")

        self.log_dir = Path(log_dir)

    def _log_file(self, day: str) -> Path:
        return self.log_dir / f"{FILE_PREFIX}{day}.json"

    def _read(self, path: Path) -> List[dict]:
        if not path.exists():
            return []
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable run history %s: %s", path, e)
            return []
        return data if isinstance(data, list) else []

    def add_entry(self, entry: TransferLogEntry):
        """Append an entry to today's file"""
        path = self._log_file(datetime.now().strftime(DATE_FORMAT))
        entries = self._read(path)
        entries.append(asdict(entry))
        self.log_dir.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(entries, f, indent=2, ensure_ascii=False)

    def get_entries(self, day: Optional[str] = None, command: Optional[str] = None) -> List[TransferLogEntry]:
        """
        Entries recorded on one day, oldest first

        Args:
            day: Date in YYYY-MM-DD format (default: today)
            command: Only keep runs of this command

        Raises:
            ValueError: If day is not a valid date
        """
        day = parse_log_date(day) if day else datetime.now().strftime(DATE_FORMAT)
        entries = []
        for raw in self._read(self._log_file(day)):
            try:
                entry = TransferLogEntry(**raw)
            except TypeError:
                logger.debug("Skipping malformed history entry in %s", day)
                continue
            if command is None or entry.command == command:
                entries.append(entry)
        return entries

    def get_log_dates(self) -> List[str]:
        """Days that have a history file, oldest first"""
        return sorted(
            path.stem[len(FILE_PREFIX):] for path in self.log_dir.glob(f"{FILE_PREFIX}*.json")
        )
