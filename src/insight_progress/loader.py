import io
import logging
import pathlib
import typing

import pandas as pd

logger = logging.getLogger(__name__)

# Fields that need renaming → names the mapper expects
RENAME_MAP = {
    # follow-up project keys its records by the general-questions study id
    "gq_study_id": "id",
}

# Identifier field per table kind
ID_FIELDS = {
    "exclusion": "exc_id",
    "inhosp": "id",
    "followup": "id",
}

# Timestamp fields (date + HH:MM); each gets a `<stem>_date` companion
TIMESTAMP_FIELDS = {
    "inhosp": ("enroll_dttm", "death_dttm", "hospdis_dttm"),
}

# Calendar-date fields; a field ending in `_dttm` is stored under `<stem>_date`
DATE_FIELDS = {
    "exclusion": ("exc_date",),
    "inhosp": ("daily_date", "studywd_dttm", "specimen_date"),
    "followup": (),
}

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M"
DATE_FORMAT = "%Y-%m-%d"

TEST_RECORD_MARKER = "test"


def read_csv_table(source: typing.Union[str, pathlib.Path, io.StringIO]) -> pd.DataFrame:
    """
    Read a REDCap CSV export. Empty cells become NA and every column is kept as
    text so that the normalizer decides how each field is parsed.
    """
    return pd.read_csv(source, na_values=[""], keep_default_na=False, dtype=str)


def normalize_field_names(columns: typing.Iterable[str]) -> list[str]:
    """
    REDCap loves underscores; one per instance is plenty.
    """
    normalized = (
        pd.Index([str(c) for c in columns])
        .str.strip()
        .str.replace(r"_+", "_", regex=True)
    )
    return [RENAME_MAP.get(c, c) for c in normalized]


def drop_test_records(df: pd.DataFrame, id_field: str) -> pd.DataFrame:
    """Remove rows whose identifier contains the test marker (case-insensitive)."""
    if id_field not in df.columns:
        return df
    ids = df[id_field].fillna("").astype(str).str.lower()
    is_test = ids.str.contains(TEST_RECORD_MARKER, regex=False)
    if is_test.any():
        logger.debug(f"Dropped {int(is_test.sum())} test record(s) by {id_field!r}")
    return df.loc[~is_test].reset_index(drop=True)


def parse_timestamp(values: pd.Series) -> pd.Series:
    # unparsable text is accepted noise → NaT
    return pd.to_datetime(values, format=TIMESTAMP_FORMAT, errors="coerce")


def parse_date(values: pd.Series) -> pd.Series:
    # REDCap sometimes exports a time part on date-validated fields; keep the date
    text = values.astype("string").str.strip().str.slice(0, 10)
    return pd.to_datetime(text, format=DATE_FORMAT, errors="coerce")


def _date_field_name(field: str) -> str:
    if field.endswith("_dttm"):
        return field[: -len("_dttm")] + "_date"
    return field


def normalize_table(df: pd.DataFrame, kind: str) -> pd.DataFrame:
    """
    Produce a typed table from a raw export:
      - collapse repeated underscores in field names (and apply RENAME_MAP)
      - drop test records
      - parse timestamp fields and add a calendar-date companion
      - parse calendar-date fields
    Fields not present in the table are skipped here.
    """
    if kind not in ID_FIELDS:
        raise ValueError(f"Unknown table kind: {kind!r}")

    working = df.copy()
    working.columns = normalize_field_names(working.columns)
    working = drop_test_records(working, ID_FIELDS[kind])

    for field in TIMESTAMP_FIELDS.get(kind, ()):
        if field not in working.columns:
            continue
        working[field] = parse_timestamp(working[field])
        working[_date_field_name(field)] = working[field].dt.normalize()

    date_fields = list(DATE_FIELDS.get(kind, ()))
    if kind == "followup":
        # assessment dates: every `<asmt>_date` field
        date_fields.extend(c for c in working.columns if c.endswith("_date"))
    for field in date_fields:
        if field not in working.columns:
            continue
        parsed = parse_date(working[field])
        target = _date_field_name(field)
        if target != field:
            working = working.drop(columns=[field])
        working[target] = parsed

    return working


def load_table(source: typing.Union[str, pathlib.Path, io.StringIO], kind: str) -> pd.DataFrame:
    """Read and normalize one exported table."""
    return normalize_table(read_csv_table(source), kind)
