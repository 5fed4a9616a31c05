from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from cvtt.cli.commands import cli, format_size
from cvtt.core.config import ConfigManager, OrgConfig, TransferDefaults
from cvtt.core.errors import OrgConnectionError, SizeProbeError, SourceReadError
from cvtt.core.results import AggregateResult, ErrorKind, TransferOutcome
from cvtt.core.transfer_log import TransferLogEntry, TransferLogger


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config(tmp_path):
    return ConfigManager(str(tmp_path / "config"))


@pytest.fixture
def invoke(runner, config):
    def _invoke(args):
        return runner.invoke(cli, args, obj={"config": config})
    return _invoke


@pytest.fixture
def manifest(tmp_path):
    path = tmp_path / "files.csv"
    path.write_text("VersionData\na.pdf\n")
    return str(path)


@pytest.fixture
def mock_resolver():
    with patch("cvtt.cli.commands.OrgResolver") as mock:
        yield mock


@pytest.fixture
def mock_manager():
    with patch("cvtt.cli.commands.TransferManager") as mock:
        mock.return_value.import_files = AsyncMock()
        mock.return_value.export_files = AsyncMock()
        yield mock.return_value


def _result(failures=()):
    failures = list(failures)
    return AggregateResult(total=2, succeeded=2 - len(failures), failures=failures, total_size=2048)


def test_import_success(invoke, manifest, mock_resolver, mock_manager):
    mock_manager.import_files.return_value = _result()

    result = invoke(["import", "-f", manifest, "-o", "my-org"])

    assert result.exit_code == 0
    assert "Import complete. 2 total, 2 succeeded, 0 failed." in result.output
    mock_resolver.return_value.resolve.assert_called_once_with("my-org", None)
    kwargs = mock_manager.import_files.call_args.kwargs
    assert kwargs["max_batch_size"] == 30 * 1024 * 1024
    assert kwargs["concurrency"] == 3
    assert kwargs["timeout"] == 30.0


def test_import_options(invoke, manifest, mock_resolver, mock_manager):
    mock_manager.import_files.return_value = _result()

    result = invoke([
        "import", "-f", manifest, "-b", "10", "-c", "6", "--timeout", "90", "--api-version", "60.0",
    ])

    assert result.exit_code == 0
    mock_resolver.return_value.resolve.assert_called_once_with(None, "60.0")
    kwargs = mock_manager.import_files.call_args.kwargs
    assert kwargs["max_batch_size"] == 10 * 1024 * 1024
    assert kwargs["concurrency"] == 6
    assert kwargs["timeout"] == 90.0


def test_import_uses_saved_defaults(invoke, config, manifest, mock_resolver, mock_manager):
    config.update_defaults(TransferDefaults(batch_size_mb=5, concurrency=8, timeout=45.0))
    mock_manager.import_files.return_value = _result()

    invoke(["import", "-f", manifest])

    kwargs = mock_manager.import_files.call_args.kwargs
    assert kwargs["max_batch_size"] == 5 * 1024 * 1024
    assert kwargs["concurrency"] == 8


def test_import_with_failures_exits_1(invoke, manifest, mock_resolver, mock_manager):
    mock_manager.import_files.return_value = _result([
        TransferOutcome.failed("Report", ErrorKind.ITEM, "bad", status_code="400", row_number=2),
    ])

    result = invoke(["import", "-f", manifest])

    assert result.exit_code == 1
    assert "1 failed" in result.output
    assert "Report" in result.output


def test_import_unreadable_manifest_exits_2(invoke, manifest, mock_resolver, mock_manager):
    mock_manager.import_files.side_effect = SourceReadError("Column 'VersionData' not found")

    result = invoke(["import", "-f", manifest])

    assert result.exit_code == 2
    assert "Failed to read CSV file" in result.output


def test_import_missing_binary_exits_2(invoke, manifest, mock_resolver, mock_manager):
    mock_manager.import_files.side_effect = SizeProbeError("Row 2: cannot read a.pdf", 2, "a.pdf")

    result = invoke(["import", "-f", manifest])

    assert result.exit_code == 2
    assert "Row 2" in result.output


def test_import_without_org_exits_2(invoke, manifest, mock_resolver, mock_manager):
    mock_resolver.return_value.resolve.side_effect = OrgConnectionError("Could not resolve a connection")

    result = invoke(["import", "-f", manifest])

    assert result.exit_code == 2
    assert "Could not resolve" in result.output
    mock_manager.import_files.assert_not_called()


@pytest.mark.parametrize("args", [["-c", "13"], ["-c", "0"], ["-b", "51"], ["--timeout", "0"]])
def test_import_rejects_out_of_range_options(invoke, manifest, mock_resolver, mock_manager, args):
    result = invoke(["import", "-f", manifest, *args])

    assert result.exit_code == 2
    mock_manager.import_files.assert_not_called()


def test_import_requires_existing_file(invoke, tmp_path, mock_resolver, mock_manager):
    result = invoke(["import", "-f", str(tmp_path / "missing.csv")])

    assert result.exit_code == 2
    mock_manager.import_files.assert_not_called()


def test_export_success(invoke, manifest, tmp_path, mock_resolver, mock_manager):
    mock_manager.export_files.return_value = _result()
    out = str(tmp_path / "out")

    result = invoke(["export", "-f", manifest, "-d", out, "-i", "ContentVersionId", "-e", "FileExtension"])

    assert result.exit_code == 0
    assert "Export complete" in result.output
    args, kwargs = mock_manager.export_files.call_args
    assert args == (manifest, out)
    assert kwargs["id_field"] == "ContentVersionId"
    assert kwargs["ext_field"] == "FileExtension"


def test_export_defaults_to_id_column(invoke, manifest, tmp_path, mock_resolver, mock_manager):
    mock_manager.export_files.return_value = _result()

    invoke(["export", "-f", manifest, "-d", str(tmp_path / "out")])

    kwargs = mock_manager.export_files.call_args.kwargs
    assert kwargs["id_field"] == "Id"
    assert kwargs["ext_field"] is None


def test_export_failure_with_error_file(invoke, manifest, tmp_path, mock_resolver, mock_manager):
    mock_manager.export_files.return_value = _result([
        TransferOutcome.failed("068X", ErrorKind.ITEM, "Not found", status_code="404", row_number=3),
    ])
    ledger = str(tmp_path / "failed.csv")

    result = invoke(["export", "-f", manifest, "-d", str(tmp_path / "out"), "--error-file", ledger])

    assert result.exit_code == 1
    assert mock_manager.export_files.call_args.kwargs["error_file"] == ledger
    assert "Failures written to" in result.output


def test_export_unreadable_manifest_exits_2(invoke, manifest, tmp_path, mock_resolver, mock_manager):
    mock_manager.export_files.side_effect = SourceReadError("Column 'Id' not found")

    result = invoke(["export", "-f", manifest, "-d", str(tmp_path / "out")])

    assert result.exit_code == 2


def test_orgs_add_list_remove(invoke, config):
    result = invoke(["orgs", "add", "prod", "https://prod.my.salesforce.com", "--access-token", "tok"])
    assert result.exit_code == 0
    assert config.get_org("prod").access_token == "tok"

    result = invoke(["orgs", "list"])
    assert result.exit_code == 0
    assert "prod" in result.output

    result = invoke(["orgs", "remove", "prod"])
    assert result.exit_code == 0
    assert config.get_org("prod") is None


def test_orgs_add_rejects_http(invoke):
    result = invoke(["orgs", "add", "bad", "http://example.com"])

    assert result.exit_code == 1
    assert "https://" in result.output


def test_orgs_list_empty(invoke):
    result = invoke(["orgs", "list"])

    assert result.exit_code == 0
    assert "No saved orgs" in result.output


def test_orgs_default(invoke, config):
    config.add_org(OrgConfig("prod", "https://prod.my.salesforce.com"))
    config.add_org(OrgConfig("dev", "https://dev.my.salesforce.com"))

    assert invoke(["orgs", "default", "dev"]).exit_code == 0
    assert config.config.default_org == "dev"
    assert invoke(["orgs", "default", "nope"]).exit_code == 1


def test_orgs_remove_unknown(invoke):
    result = invoke(["orgs", "remove", "nope"])

    assert result.exit_code == 1
    assert "no saved org" in result.output


def test_defaults_update(invoke, config):
    result = invoke(["defaults", "-c", "5", "--timeout", "60"])

    assert result.exit_code == 0
    assert config.defaults.concurrency == 5
    assert config.defaults.timeout == 60.0
    assert "Concurrency: 5" in result.output


def test_defaults_show(invoke, config):
    result = invoke(["defaults"])

    assert result.exit_code == 0
    assert "Batch size:  30 MB" in result.output
    assert not config.config_file.exists()


def test_logs_empty(invoke, monkeypatch, tmp_path):
    monkeypatch.setenv("CVTT_CONFIG_DIR", str(tmp_path))

    result = invoke(["logs"])

    assert result.exit_code == 0
    assert "No transfer logs found" in result.output


def test_logs_with_failures(invoke, monkeypatch, tmp_path):
    monkeypatch.setenv("CVTT_CONFIG_DIR", str(tmp_path))
    TransferLogger().add_entry(TransferLogEntry.from_result(
        "export", "ids.csv", "out",
        _result([TransferOutcome.failed("068X", ErrorKind.ITEM, "Not found")]),
    ))

    result = invoke(["logs", "--show-failures"])

    assert result.exit_code == 0
    assert "068X: Not found" in result.output


def test_format_size():
    assert format_size(512) == "512.0 B"
    assert format_size(2048) == "2.0 KB"
    assert format_size(3 * 1024 * 1024) == "3.0 MB"


def test_logs_rejects_bad_date(invoke):
    result = invoke(["logs", "--date", "yesterday"])

    assert result.exit_code == 2
    assert "YYYY-MM-DD" in result.output
