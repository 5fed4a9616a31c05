"""
Per-item outcomes and run aggregation for ContentVersion Transfer Tool.
"""

import csv
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import List, Optional, Tuple

from cvtt.core.errors import RunStateError
from cvtt.core.progress import NullProgress, ProgressSink

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """Classification of a failed item"""

    ROW = auto()          # manifest row is missing required data
    ITEM = auto()         # remote rejected the item or the fetch failed
    TRANSPORT = auto()    # whole request failed before any per-item result
    SINK_WRITE = auto()   # downloaded data could not be written locally


@dataclass(frozen=True)
class TransferOutcome:
    """Result of transferring one logical item"""

    label: str
    success: bool
    record_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    status_code: Optional[str] = None
    fields: Tuple[str, ...] = ()
    row_number: Optional[int] = None
    size: int = 0

    @classmethod
    def succeeded(
        cls,
        label: str,
        record_id: Optional[str] = None,
        row_number: Optional[int] = None,
        size: int = 0,
    ) -> "TransferOutcome":
        return cls(label=label, success=True, record_id=record_id, row_number=row_number, size=size)

    @classmethod
    def failed(
        cls,
        label: str,
        kind: ErrorKind,
        message: str,
        status_code: Optional[str] = None,
        fields: Tuple[str, ...] = (),
        row_number: Optional[int] = None,
        record_id: Optional[str] = None,
    ) -> "TransferOutcome":
        return cls(
            label=label,
            success=False,
            record_id=record_id,
            error_kind=kind,
            message=message,
            status_code=status_code,
            fields=tuple(fields),
            row_number=row_number,
        )


@dataclass
class AggregateResult:
    """Totals and failure ledger of one run"""

    total: int = 0
    succeeded: int = 0
    failures: List[TransferOutcome] = field(default_factory=list)
    total_size: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def duration(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()


class RunPhase(Enum):
    """Lifecycle of one import or export run"""

    IDLE = auto()
    READING = auto()
    BATCHING = auto()
    TRANSFERRING = auto()
    FINALIZING = auto()
    DONE = auto()
    FAILED = auto()


_TRANSITIONS = {
    RunPhase.IDLE: {RunPhase.READING},
    RunPhase.READING: {RunPhase.BATCHING, RunPhase.TRANSFERRING, RunPhase.FAILED},
    RunPhase.BATCHING: {RunPhase.TRANSFERRING, RunPhase.FAILED},
    RunPhase.TRANSFERRING: {RunPhase.FINALIZING},
    RunPhase.FINALIZING: {RunPhase.DONE},
    RunPhase.DONE: set(),
    RunPhase.FAILED: set(),
}


@dataclass
class RunState:
    """Mutable state shared by every unit of a run"""

    phase: RunPhase = RunPhase.IDLE
    result: AggregateResult = field(default_factory=AggregateResult)
    processed: int = 0


class ResultAggregator:
    """
    Merges unit outcomes into the run state.

    record() has no suspension point, so concurrent asyncio units can never
    interleave a partial update.
    """

    def __init__(self, progress: Optional[ProgressSink] = None, state: Optional[RunState] = None):
        self.progress = progress or NullProgress()
        self.state = state or RunState()

    @property
    def phase(self) -> RunPhase:
        return self.state.phase

    @property
    def processed(self) -> int:
        return self.state.processed

    def advance(self, phase: RunPhase):
        """Move the run to the next phase"""
        if phase not in _TRANSITIONS[self.state.phase]:
            raise RunStateError(
                f"Cannot move from {self.state.phase.name} to {phase.name}"
            )
        logger.debug("Run phase %s -> %s", self.state.phase.name, phase.name)
        self.state.phase = phase

    def record(self, outcome: TransferOutcome):
        """Merge one completed item"""
        result = self.state.result
        result.total += 1
        if outcome.success:
            result.succeeded += 1
            result.total_size += outcome.size
        else:
            result.failures.append(outcome)
            logger.debug("Failed %s: %s", outcome.label, outcome.message)
        self.state.processed += 1
        self.progress.increment()

    def finalize(self) -> AggregateResult:
        """Return a snapshot of the aggregate result"""
        if self.state.phase not in (RunPhase.FINALIZING, RunPhase.DONE):
            raise RunStateError(
                f"Cannot finalize a run in phase {self.state.phase.name}"
            )
        result = self.state.result
        if result.completed_at is None:
            result.completed_at = datetime.now()
        return replace(result, failures=list(result.failures))


LEDGER_COLUMNS = ["row", "label", "kind", "status_code", "message", "fields"]


def write_failure_ledger(result: AggregateResult, path: str) -> Path:
    """
    Write the failures of a run to a CSV file

    Args:
        result: Finalized run result
        path: Destination CSV path

    Returns:
        Path of the written file
    """
    ledger = Path(path)
    ledger.parent.mkdir(parents=True, exist_ok=True)
    with open(ledger, "w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(LEDGER_COLUMNS)
        for failure in result.failures:
            writer.writerow([
                failure.row_number if failure.row_number is not None else "",
                failure.label,
                failure.error_kind.name if failure.error_kind else "",
                failure.status_code or "",
                failure.message,
                ";".join(failure.fields),
            ])
    return ledger
