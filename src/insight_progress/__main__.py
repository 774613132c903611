"""
Command-line interface for the INSIGHT study-progress dashboard.
Downloads the three REDCap projects, audits them, and computes the dashboard
tables from a data snapshot.
"""

import click
import datetime
import json
import logging
import pathlib
import sys
import typing

from collections import namedtuple
from stairval.notepad import create_notepad

from .followup import TIMEPOINTS
from .loader import ID_FIELDS, load_table
from .mapper import EXCLUSION_KEY_FIELDS, FOLLOWUP_KEY_FIELDS, INHOSP_KEY_FIELDS
from .redcap import RedcapError, export_records, get_token
from .summary import StructuralError, build_dashboard, write_dashboard
from .timeline import ENROLLMENT_EVENT

logger = logging.getLogger(__name__)

AuditEntry = namedtuple("AuditEntry", ["step", "table", "message", "level"])

# Table kind → file name inside the data directory
TABLE_FILES = {
    "exclusion": "exclusion.csv",
    "inhosp": "inhosp.csv",
    "followup": "followup.csv",
}

REQUIRED_FIELDS = {
    "exclusion": EXCLUSION_KEY_FIELDS,
    "inhosp": INHOSP_KEY_FIELDS,
    "followup": FOLLOWUP_KEY_FIELDS,
}


@click.group()
def main():
    """INSIGHT study progress: screening, in-hospital and follow-up dashboard tables."""
    pass


@main.command(name="download")
@click.option(
    "-d",
    "--data-path",
    "data_dir",
    default="data",
    type=click.Path(file_okay=False),
    help="where to save the exported CSV files (default: data)",
)
@click.option("--api-url", default=None, type=str, help="REDCap API endpoint (default: $REDCAP_API_URL)")
def download(data_dir: str, api_url: typing.Optional[str]):
    """
    Export the exclusion, in-hospital and follow-up projects from REDCap as CSV.
    """
    datadir = pathlib.Path(data_dir)
    datadir.mkdir(parents=True, exist_ok=True)
    for kind, file_name in TABLE_FILES.items():
        click.echo(f"Exporting {kind} records …")
        try:
            body = export_records(get_token(kind), api_url=api_url)
        except RedcapError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        out = datadir / file_name
        with open(out, "w", encoding="utf-8") as f:
            f.write(body)
        click.echo(f"Saved {kind} records to {out}")


@main.command(name="summarize")
@click.option(
    "-d",
    "--data-path",
    "data_dir",
    default="data",
    type=click.Path(exists=True, file_okay=False),
    help="directory holding exclusion.csv, inhosp.csv and followup.csv",
)
@click.option(
    "--as-of",
    "as_of",
    default=None,
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="date follow-up windows are evaluated against (default: today)",
)
@click.option(
    "-t",
    "--timepoint",
    "timepoints",
    multiple=True,
    type=int,
    default=(3, 12),
    show_default=True,
    help="follow-up month to monitor; repeat for several",
)
@click.option(
    "-o",
    "--output-dir",
    "output_dir",
    default=None,
    type=click.Path(file_okay=False),
    help="where to write the tables (default: timestamped folder under ./dashboard_tables)",
)
@click.option("--verbose-logging", is_flag=True, help="Also emit debug logs to stderr")
@click.option(
    "--log-file-path",
    type=click.Path(dir_okay=False, writable=True),
    help="Append timestamped logs to this file",
)
def summarize(
    data_dir: str,
    as_of: typing.Optional[datetime.datetime],
    timepoints: tuple[int, ...],
    output_dir: typing.Optional[str],
    verbose_logging: bool = False,
    log_file_path: typing.Optional[str] = None,
):
    """
    Read the three exported tables, compute every dashboard table and write
    them as CSV files plus one workbook.
    """
    _configure_logging(verbose_logging, log_file_path)

    unknown = sorted(set(timepoints) - set(TIMEPOINTS))
    if unknown:
        raise click.BadParameter(f"no follow-up window defined for month(s) {unknown}", param_hint="--timepoint")
    as_of_date = as_of.date() if as_of else datetime.date.today()

    # 1) Read and normalize the exported tables
    tables = _read_tables(pathlib.Path(data_dir))

    # 2) Map and aggregate, collecting issues
    notepad = create_notepad("dashboard")
    try:
        summary = build_dashboard(
            tables,
            notepad,
            as_of=as_of_date,
            timepoints=[TIMEPOINTS[m] for m in sorted(set(timepoints))],
        )
    except StructuralError:
        _report_issues(notepad)
        sys.exit(1)

    # 3) Report any warnings
    _report_issues(notepad)

    # 4) Write the tables
    out_dir = pathlib.Path(output_dir) if output_dir else _prepare_output_dir()
    written = write_dashboard(summary, out_dir)

    click.echo(f"Wrote {len(written)} files to {out_dir}")
    click.echo(f"Enrolled {int(summary.screening_metrics.set_index('metric').loc['n_enrolled', 'value'])} patients")


@main.command(name="audit")
@click.option(
    "-d",
    "--data-path",
    "data_dir",
    default="data",
    type=click.Path(exists=True, file_okay=False),
    help="directory holding exclusion.csv, inhosp.csv and followup.csv",
)
@click.option("-r", "--raw", is_flag=True, help="emit the audit as JSON")
def audit(data_dir: str, raw: bool):
    """
    Lightweight checks of the exported tables before summarizing.
    """
    entries = preprocess(_read_tables(pathlib.Path(data_dir)))
    if raw:
        click.echo(json.dumps([entry._asdict() for entry in entries], indent=2))
        return
    click.echo(f"{'TABLE':12}  {'STEP':18}  {'LEVEL':7}  MESSAGE")
    for entry in entries:
        line = f"{entry.table:12}  {entry.step:18}  {entry.level:7}  {entry.message}"
        if entry.level == "error":
            line = click.style(line, fg="red")
        elif entry.level == "warning":
            line = click.style(line, fg="yellow")
        click.echo(line)


def _configure_logging(verbose_logging: bool, log_file_path: typing.Optional[str]) -> None:
    handlers: list[logging.Handler] = []
    if log_file_path:
        handlers.append(logging.FileHandler(log_file_path, mode="a", encoding="utf-8"))
    if verbose_logging:
        handlers.append(logging.StreamHandler(sys.stderr))
    if handlers:
        logging.basicConfig(
            level=logging.DEBUG if verbose_logging else logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            handlers=handlers,
            force=True,
        )


def _read_tables(data_dir: pathlib.Path) -> dict:
    # read each exported project into a normalized DataFrame
    tables = {}
    for kind, file_name in TABLE_FILES.items():
        path = data_dir / file_name
        if not path.is_file():
            click.echo(f"Error: {kind} export not found at {path}", err=True)
            sys.exit(1)
        logger.info(f"Reading {kind} table from {path}")
        tables[kind] = load_table(path, kind)
    return tables


def _report_issues(notepad):
    # if there were errors, show them
    if notepad.has_errors(include_subsections=True):
        click.echo("Errors found in input tables:")
        for err in notepad.errors():
            click.echo(f"- {err.message}")
    # show any warnings but keep going
    if notepad.has_warnings(include_subsections=True):
        click.echo("Warnings found in input tables:")
        for w in notepad.warnings():
            click.echo(f"- {w.message}")


def _prepare_output_dir() -> pathlib.Path:
    # use YYYY-MM-DD_HH-MM-SS for human-readable timestamps
    timestamp = datetime.datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    output_dir = pathlib.Path.cwd() / "dashboard_tables" / timestamp
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def preprocess(tables: dict) -> list[AuditEntry]:
    """
    Run lightweight audits on each table:
      - field/row counts after normalization
      - required-field presence
      - records that still need a date entered
    """
    entries: list[AuditEntry] = []

    # Step 1: counts
    for name, df in tables.items():
        entries.append(AuditEntry(
            step="normalize-fields",
            table=name,
            message=f"{len(df.columns)} fields, {len(df)} rows",
            level="info",
        ))

    # Step 2: required fields
    for name, df in tables.items():
        missing = sorted(REQUIRED_FIELDS[name] - set(df.columns))
        entries.append(AuditEntry(
            step="required-fields",
            table=name,
            message=f"missing {missing}" if missing else "all present",
            level="error" if missing else "info",
        ))

    # Step 3: data entry follow-up
    exclusion = tables.get("exclusion")
    if exclusion is not None and "exc_date" in exclusion.columns:
        n = int(exclusion["exc_date"].isna().sum())
        if n:
            entries.append(AuditEntry(
                step="data-entry",
                table="exclusion",
                message=f"{n} record(s) need an exclusion date",
                level="warning",
            ))
    inhosp = tables.get("inhosp")
    if inhosp is not None and {"redcap_event_name", "enroll_date", ID_FIELDS["inhosp"]} <= set(inhosp.columns):
        enrollment = inhosp.loc[inhosp["redcap_event_name"] == ENROLLMENT_EVENT]
        n = int(enrollment["enroll_date"].isna().sum())
        if n:
            entries.append(AuditEntry(
                step="data-entry",
                table="inhosp",
                message=f"{n} patient(s) need an enrollment date",
                level="warning",
            ))
    return entries


if __name__ == "__main__":
    main()
