"""
Implements command-line commands and user interaction.
"""

import asyncio
import logging
import sys
from datetime import datetime
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn

from cvtt.core.batch import BatchConfig
from cvtt.core.config import DEFAULT_API_VERSION, ConfigManager, OrgConfig, TransferDefaults
from cvtt.core.errors import OrgConnectionError, SizeProbeError, SourceReadError
from cvtt.core.manifest import DEFAULT_ID_COLUMN
from cvtt.core.org import OrgResolver
from cvtt.core.results import AggregateResult
from cvtt.core.transfer import TransferManager
from cvtt.core.transfer_log import TransferLogger, parse_log_date

# Rich console for pretty output
console = Console()

# Exit code when the run could not start or aborted before transferring
EXIT_FATAL = 2


def setup_logging(verbose: bool = False):
    """Route library logging through rich"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def format_size(size: int) -> str:
    """Format size in bytes to human readable string"""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} PB"


class RichProgressSink:
    """Progress sink drawing a rich progress bar"""

    def __init__(self, description: str):
        self._description = description
        self._progress: Optional[Progress] = None
        self._task = None

    def start(self, total: int):
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console
        )
        self._progress.start()
        self._task = self._progress.add_task(self._description, total=total)

    def increment(self):
        if self._progress is not None:
            self._progress.advance(self._task)

    def finish(self):
        if self._progress is not None:
            self._progress.stop()
            self._progress = None


def _resolve_defaults(
    config_manager: ConfigManager,
    batch_size: Optional[int] = None,
    concurrency: Optional[int] = None,
    timeout: Optional[float] = None,
) -> TransferDefaults:
    """Command-line options win over saved defaults"""
    saved = config_manager.defaults
    return TransferDefaults(
        batch_size_mb=batch_size if batch_size is not None else saved.batch_size_mb,
        concurrency=concurrency if concurrency is not None else saved.concurrency,
        timeout=timeout if timeout is not None else saved.timeout,
    )


def _print_summary(command: str, result: AggregateResult, error_file: Optional[str]):
    """Print the final counts and exit with 1 if anything failed"""
    style = "green" if result.failed == 0 else "yellow"
    console.print(
        f"\n[{style}]{command} complete. {result.total} total, "
        f"{result.succeeded} succeeded, {result.failed} failed.[/{style}]"
    )
    if result.total_size:
        console.print(
            f"Transferred {format_size(result.total_size)} in {result.duration:.1f} seconds"
        )

    if result.failures:
        table = Table(title="Failures")
        table.add_column("Row", justify="right", style="cyan")
        table.add_column("Item", style="blue")
        table.add_column("Status", style="magenta")
        table.add_column("Error", style="red")
        for failure in result.failures[:20]:
            table.add_row(
                str(failure.row_number or ""),
                failure.label,
                failure.status_code or failure.error_kind.name.lower(),
                failure.message,
            )
        console.print(table)
        if len(result.failures) > 20:
            console.print(f"... and {len(result.failures) - 20} more")
        if error_file:
            console.print(f"Failures written to {error_file}")
        sys.exit(1)


def _get_manager(ctx: click.Context, target_org: Optional[str], api_version: Optional[str]) -> TransferManager:
    """Resolve the org connection or exit"""
    resolver = OrgResolver(ctx.obj["config"])
    try:
        connection = resolver.resolve(target_org, api_version)
    except OrgConnectionError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(EXIT_FATAL)
    return TransferManager(connection)


concurrency_option = click.option(
    "--concurrency", "-c",
    type=click.IntRange(BatchConfig.MIN_CONCURRENCY, BatchConfig.MAX_CONCURRENCY),
    default=None,
    help=f"Number of requests in flight (default: {BatchConfig.DEFAULT_CONCURRENCY})"
)
target_org_option = click.option(
    "--target-org", "-o",
    type=str,
    default=None,
    help="Org alias or username (default: the default saved org)"
)
api_version_option = click.option(
    "--api-version",
    type=str,
    default=None,
    help="Override the API version used for requests"
)
timeout_option = click.option(
    "--timeout",
    type=click.FloatRange(min=1, max=600),
    default=None,
    help=f"Per-request timeout in seconds (default: {BatchConfig.DEFAULT_TIMEOUT:g})"
)
error_file_option = click.option(
    "--error-file",
    type=click.Path(dir_okay=False, writable=True),
    default=None,
    help="Write failed rows to this CSV file"
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Show debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool):
    """ContentVersion Transfer Tool - move files in and out of Salesforce

    Files are described by a CSV manifest and transferred with several
    requests in flight.

    Common commands:
    \b
    - import         Upload files listed in a CSV as ContentVersions
    - export         Download ContentVersions listed in a CSV
    - logs           Show the history of past runs
    - orgs           Manage saved org connections
    """
    setup_logging(verbose)
    ctx.ensure_object(dict)
    if "config" not in ctx.obj:
        ctx.obj["config"] = ConfigManager()


@cli.command("import")
@click.option("--file", "-f", "file", type=click.Path(exists=True, dir_okay=False), required=True,
              help="CSV with VersionData, Title, PathOnClient and optional extra columns")
@click.option(
    "--batch-size", "-b",
    type=click.IntRange(BatchConfig.MIN_BATCH_SIZE_MB, BatchConfig.MAX_BATCH_SIZE_MB),
    default=None,
    help="Maximum size of each batch in MB (default: 30MB)"
)
@concurrency_option
@target_org_option
@api_version_option
@timeout_option
@error_file_option
@click.pass_context
def import_(ctx: click.Context, file: str, batch_size: Optional[int], concurrency: Optional[int],
            target_org: Optional[str], api_version: Optional[str], timeout: Optional[float],
            error_file: Optional[str]):
    """Upload files as ContentVersion records

    Files are grouped into batches of at most --batch-size MB and 190 files,
    each sent in one request. A failed file does not stop the others.

    Examples:
    \b
    - Import with defaults:
      cvtt import -f files.csv -o my-org

    - Smaller batches, more requests in flight:
      cvtt import -f files.csv -b 10 -c 6 --error-file failed.csv
    """
    settings = _resolve_defaults(ctx.obj["config"], batch_size, concurrency, timeout)
    manager = _get_manager(ctx, target_org, api_version)

    try:
        result = asyncio.run(manager.import_files(
            file,
            max_batch_size=settings.batch_size_mb * 1024 * 1024,
            concurrency=settings.concurrency,
            timeout=settings.timeout,
            progress=RichProgressSink("Importing files..."),
            error_file=error_file,
        ))
    except SourceReadError as e:
        console.print(f"[red]Failed to read CSV file: {e}[/red]")
        sys.exit(EXIT_FATAL)
    except SizeProbeError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(EXIT_FATAL)

    _print_summary("Import", result, error_file)


@cli.command("export")
@click.option("--file", "-f", "file", type=click.Path(exists=True, dir_okay=False), required=True,
              help="CSV listing the ContentVersion IDs to download")
@click.option("--output-dir", "-d", type=click.Path(file_okay=False), required=True,
              help="Directory to save the files to")
@click.option("--id", "-i", "id_field", default=DEFAULT_ID_COLUMN, show_default=True,
              help="Name of the column holding the ContentVersion ID")
@click.option("--ext-col-name", "-e", "ext_field", default=None,
              help="Column holding the file extension or file name")
@concurrency_option
@target_org_option
@api_version_option
@timeout_option
@error_file_option
@click.pass_context
def export(ctx: click.Context, file: str, output_dir: str, id_field: str, ext_field: Optional[str],
           concurrency: Optional[int], target_org: Optional[str], api_version: Optional[str],
           timeout: Optional[float], error_file: Optional[str]):
    """Download ContentVersion files

    Each file is saved as <ID>.<extension> in the output directory; files
    that already exist are overwritten.

    Examples:
    \b
    - Export by Id:
      cvtt export -f ids.csv -d ./files -o my-org

    - Use another ID column and name files after FileExtension:
      cvtt export -f ids.csv -d ./files -i ContentVersionId -e FileExtension
    """
    settings = _resolve_defaults(ctx.obj["config"], concurrency=concurrency, timeout=timeout)
    manager = _get_manager(ctx, target_org, api_version)

    try:
        result = asyncio.run(manager.export_files(
            file,
            output_dir,
            id_field=id_field,
            ext_field=ext_field,
            concurrency=settings.concurrency,
            timeout=settings.timeout,
            progress=RichProgressSink("Exporting files..."),
            error_file=error_file,
        ))
    except SourceReadError as e:
        console.print(f"[red]Failed to read CSV file: {e}[/red]")
        sys.exit(EXIT_FATAL)

    _print_summary("Export", result, error_file)


def _validate_date(ctx: click.Context, param: click.Parameter, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    try:
        return parse_log_date(value)
    except ValueError:
        raise click.BadParameter("expected YYYY-MM-DD")


@cli.command()
@click.option(
    "--date",
    type=str,
    callback=_validate_date,
    help="Show runs of a specific day (YYYY-MM-DD, default: most recent)"
)
@click.option(
    "--command",
    type=click.Choice(["import", "export"]),
    default=None,
    help="Only show runs of this command"
)
@click.option(
    "--show-failures",
    is_flag=True,
    help="List the failed items of each run"
)
def logs(date: Optional[str], command: Optional[str], show_failures: bool):
    """View the history of import and export runs

    Examples:
    \b
    - Most recent day:
      cvtt logs

    - Exports of a given day with their failures:
      cvtt logs --date 2025-03-22 --command export --show-failures
    """
    history = TransferLogger()

    if date is None:
        dates = history.get_log_dates()
        if not dates:
            console.print("[yellow]No transfer logs found[/yellow]")
            return
        date = dates[-1]

    entries = history.get_entries(date, command)
    if not entries:
        console.print(f"[yellow]No transfer logs found for {date}[/yellow]")
        return

    table = Table(title=f"Runs on {date}")
    table.add_column("Time", style="cyan")
    table.add_column("Command", style="blue")
    table.add_column("Manifest", style="green")
    table.add_column("Target")
    table.add_column("Succeeded", justify="right", style="yellow")
    table.add_column("Size", justify="right", style="magenta")
    table.add_column("Duration", justify="right")

    failed_runs = []
    for entry in entries:
        time = datetime.fromisoformat(entry.timestamp).strftime("%H:%M:%S")
        ok = f"{entry.succeeded}/{entry.total}" if entry.total else "-"
        table.add_row(
            time, entry.command, entry.manifest, entry.target, ok,
            format_size(entry.total_size), f"{entry.duration:.1f}s",
        )
        if entry.failures:
            failed_runs.append((time, entry))

    console.print(table)

    if show_failures:
        for time, entry in failed_runs:
            console.print(f"\n[red]{entry.command} of {entry.manifest} at {time}:[/red]")
            for failure in entry.failures:
                console.print(f"  ✗ {failure}")


@click.group()
def orgs():
    """Manage saved org connections"""
    pass


@orgs.command("list")
@click.pass_context
def list_orgs(ctx: click.Context):
    """List saved orgs"""
    config_manager: ConfigManager = ctx.obj["config"]
    saved = config_manager.list_orgs()
    if not saved:
        console.print("[yellow]No saved orgs. Add one with 'cvtt orgs add'.[/yellow]")
        return

    table = Table(title="Saved Orgs")
    table.add_column("Alias", style="cyan")
    table.add_column("Instance URL", style="green")
    table.add_column("API Version", style="blue")
    table.add_column("Token", style="magenta")
    table.add_column("Default")

    for org in saved:
        table.add_row(
            org.alias,
            org.instance_url,
            org.api_version,
            "saved" if org.access_token else "sf CLI",
            "✓" if org.alias == config_manager.config.default_org else ""
        )

    console.print(table)


@orgs.command()
@click.argument("alias")
@click.argument("instance_url")
@click.option("--access-token", default="", help="Access token; omit to fetch one from the sf CLI")
@click.option("--api-version", default=DEFAULT_API_VERSION, show_default=True)
@click.pass_context
def add(ctx: click.Context, alias: str, instance_url: str, access_token: str, api_version: str):
    """Save an org connection"""
    try:
        ctx.obj["config"].add_org(OrgConfig(alias, instance_url, access_token, api_version))
        console.print(f"[green]Saved org: {alias}[/green]")
    except ValueError as e:
        console.print(f"[red]Error: {str(e)}[/red]")
        sys.exit(1)


@orgs.command()
@click.argument("alias")
@click.pass_context
def remove(ctx: click.Context, alias: str):
    """Remove a saved org"""
    try:
        ctx.obj["config"].remove_org(alias)
        console.print(f"[green]Removed org: {alias}[/green]")
    except KeyError:
        console.print(f"[red]Error: no saved org named {alias}[/red]")
        sys.exit(1)


@orgs.command()
@click.argument("alias")
@click.pass_context
def default(ctx: click.Context, alias: str):
    """Use ALIAS when --target-org is not given"""
    try:
        ctx.obj["config"].set_default_org(alias)
        console.print(f"[green]Default org set to {alias}[/green]")
    except KeyError:
        console.print(f"[red]Error: no saved org named {alias}[/red]")
        sys.exit(1)


@cli.command()
@click.option(
    "--batch-size", "-b",
    type=click.IntRange(BatchConfig.MIN_BATCH_SIZE_MB, BatchConfig.MAX_BATCH_SIZE_MB),
    default=None,
    help="Default batch size in MB"
)
@concurrency_option
@timeout_option
@click.pass_context
def defaults(ctx: click.Context, batch_size: Optional[int], concurrency: Optional[int], timeout: Optional[float]):
    """Show or change default transfer settings"""
    config_manager: ConfigManager = ctx.obj["config"]
    settings = _resolve_defaults(config_manager, batch_size, concurrency, timeout)
    if any(value is not None for value in (batch_size, concurrency, timeout)):
        config_manager.update_defaults(settings)
        console.print("[green]Defaults updated[/green]")

    console.print(f"Batch size:  {settings.batch_size_mb} MB")
    console.print(f"Concurrency: {settings.concurrency}")
    console.print(f"Timeout:     {settings.timeout:g}s")


# Register command groups
cli.add_command(orgs)

if __name__ == "__main__":
    cli()
