import csv
from unittest.mock import Mock

import pytest

from cvtt.core.errors import RunStateError
from cvtt.core.results import (
    LEDGER_COLUMNS,
    ErrorKind,
    ResultAggregator,
    RunPhase,
    TransferOutcome,
    write_failure_ledger,
)


def _running_aggregator(progress=None):
    aggregator = ResultAggregator(progress)
    aggregator.advance(RunPhase.READING)
    aggregator.advance(RunPhase.TRANSFERRING)
    return aggregator


def test_counts_add_up():
    aggregator = _running_aggregator()
    aggregator.record(TransferOutcome.succeeded("a.pdf", record_id="068A", size=10))
    aggregator.record(TransferOutcome.succeeded("b.pdf", record_id="068B", size=5))
    aggregator.record(TransferOutcome.failed("c.pdf", ErrorKind.ITEM, "bad", status_code="400"))
    aggregator.advance(RunPhase.FINALIZING)

    result = aggregator.finalize()

    assert result.total == 3
    assert result.succeeded == 2
    assert result.failed == 1
    assert result.succeeded + result.failed == result.total
    assert result.total_size == 15
    assert result.failures[0].message == "bad"
    assert aggregator.processed == 3


def test_finalize_returns_a_snapshot():
    aggregator = _running_aggregator()
    aggregator.advance(RunPhase.FINALIZING)
    result = aggregator.finalize()

    result.failures.append(TransferOutcome.failed("x", ErrorKind.ROW, "late"))

    assert aggregator.state.result.failures == []
    assert result.completed_at is not None
    assert result.duration >= 0


def test_finalize_before_transfer_finishes():
    aggregator = _running_aggregator()

    with pytest.raises(RunStateError):
        aggregator.finalize()


def test_illegal_transition():
    aggregator = ResultAggregator()

    with pytest.raises(RunStateError):
        aggregator.advance(RunPhase.TRANSFERRING)
    assert aggregator.phase == RunPhase.IDLE


def test_no_transition_out_of_done():
    aggregator = _running_aggregator()
    aggregator.advance(RunPhase.FINALIZING)
    aggregator.advance(RunPhase.DONE)

    with pytest.raises(RunStateError):
        aggregator.advance(RunPhase.READING)


def test_failed_is_terminal():
    aggregator = ResultAggregator()
    aggregator.advance(RunPhase.READING)
    aggregator.advance(RunPhase.FAILED)

    with pytest.raises(RunStateError):
        aggregator.advance(RunPhase.TRANSFERRING)


def test_record_ticks_progress():
    progress = Mock()
    aggregator = _running_aggregator(progress)

    aggregator.record(TransferOutcome.succeeded("a"))
    aggregator.record(TransferOutcome.failed("b", ErrorKind.TRANSPORT, "down"))

    assert progress.increment.call_count == 2


def test_failed_outcome_copies_fields():
    outcome = TransferOutcome.failed("a", ErrorKind.ITEM, "bad", fields=["Title", "Description"])

    assert outcome.fields == ("Title", "Description")
    assert not outcome.success


def test_write_failure_ledger(tmp_path):
    aggregator = _running_aggregator()
    aggregator.record(TransferOutcome.succeeded("ok"))
    aggregator.record(TransferOutcome.failed(
        "Report", ErrorKind.ITEM, "Required fields are missing",
        status_code="REQUIRED_FIELD_MISSING", fields=("Title", "PathOnClient"), row_number=3,
    ))
    aggregator.record(TransferOutcome.failed("row 4", ErrorKind.ROW, "Row 4: missing VersionData", row_number=4))
    aggregator.advance(RunPhase.FINALIZING)

    path = write_failure_ledger(aggregator.finalize(), str(tmp_path / "out" / "errors.csv"))

    with open(path, newline="", encoding="utf-8") as f:
        rows = list(csv.reader(f))
    assert rows[0] == LEDGER_COLUMNS
    assert rows[1] == [
        "3", "Report", "ITEM", "REQUIRED_FIELD_MISSING", "Required fields are missing", "Title;PathOnClient",
    ]
    assert rows[2] == ["4", "row 4", "ROW", "", "Row 4: missing VersionData", ""]
