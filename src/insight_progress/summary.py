"""
Dashboard summary builder.

Runs the mapper and every engine over one data snapshot and collects the
tables the dashboard renders. Aggregation only; derivation lives in the
engine modules. Every time axis is emitted in calendar order.
"""

import datetime
import logging
import math
import pathlib
import typing

from collections import Counter
from dataclasses import dataclass, fields

import pandas as pd
from stairval.notepad import Notepad

from .followup import (
    MONITORED_TIMEPOINTS,
    Timepoint,
    evaluate_followup,
    followup_assessment_rates,
    followup_table,
    followup_totals,
)
from .mapper import DefaultMapper, TableMapper
from .patient import CAREGIVER_ASSESSMENTS, PREHOSPITAL_SUFFIX, SURROGATE_ASSESSMENTS, AttitudeStatus, EnrolledPatient
from .rules import UNMAPPED, is_unmapped
from .screening import (
    case_mix,
    cumulative_exclusions,
    exclusions_over_time,
    monthly_summary,
    needs_exclusion_date,
    screening_metrics,
    screening_table,
)
from .specimen import evaluate_compliance
from .timeline import build_timeline, status_distribution, timeline_table

logger = logging.getLogger(__name__)

# Clearer battery names for the dashboard; anything else is upper-cased
ASSESSMENT_DISPLAY_NAMES = {
    "memory": "M/B",
    "gq": "Gen.",
    "emp": "Emp.",
    "zarit": "Zarit",
    "grit": "Grit",
    "income": "Income",
    "attitude_pt_ever": "Att., Pt",
    "attitude_surr": "Att., Surr",
}

EXCELLENT_THRESHOLD = 0.90
OKAY_THRESHOLD = 0.80

WORKBOOK_NAME = "dashboard.xlsx"


class StructuralError(ValueError):
    """Raised when an input table lacks fields the pipeline cannot do without."""


def completion_quality(prop_comp: float) -> str:
    if prop_comp > EXCELLENT_THRESHOLD:
        return "Excellent"
    if prop_comp > OKAY_THRESHOLD:
        return "Okay"
    return "Uh-oh"


def _mean(values: typing.Sequence[bool]) -> float:
    return sum(values) / len(values) if values else float("nan")


def battery_completion(patients: typing.Sequence[EnrolledPatient]) -> pd.DataFrame:
    """
    Pre-hospital battery completion.

    Surrogate assessments and attitude toward donation are measured over patients
    eligible for the attitude questions; caregiver assessments over patients
    eligible for caregiver assessment. Attitude rows go last, everything else is
    sorted by descending completion.
    """
    elig_attitude = [p for p in patients if p.elig_attitude]
    elig_cg = [p for p in patients if p.elig_cg]

    rows = []
    for key in SURROGATE_ASSESSMENTS:
        rows.append((f"{key}{PREHOSPITAL_SUFFIX}", key, _mean([p.prehospital.get(key, False) for p in elig_attitude])))
    rows.append(("attitude_pt_ever", "attitude_pt_ever", _mean([bool(p.attitude_pt_ever) for p in elig_attitude])))
    rows.append(("attitude_surr", "attitude_surr", _mean([bool(p.attitude_surr) for p in elig_attitude])))
    for key in CAREGIVER_ASSESSMENTS:
        rows.append((f"{key}{PREHOSPITAL_SUFFIX}", key, _mean([p.prehospital.get(key, False) for p in elig_cg])))

    def sort_key(row):
        _, key, prop = row
        return key.startswith("attitude"), -prop if not math.isnan(prop) else math.inf

    table = []
    for asmt_key, key, prop in sorted(rows, key=sort_key):
        name = ASSESSMENT_DISPLAY_NAMES.get(key, key.upper())
        percent = "NA" if math.isnan(prop) else f"{prop:.0%}"
        table.append(
            {
                "asmt_key": asmt_key,
                "asmt_type": name,
                "prop_comp": prop,
                "htext": f"{name}: {percent}",
                "comp_ok": completion_quality(prop),
            }
        )
    return pd.DataFrame(table, columns=["asmt_key", "asmt_type", "prop_comp", "htext", "comp_ok"])


def attitude_distribution(patients: typing.Iterable[EnrolledPatient]) -> pd.DataFrame:
    """Patient attitude-toward-donation status among eligible patients, unmapped kept visible."""
    counts: Counter = Counter()
    for patient in patients:
        status = patient.attitude_pt_status
        if status is None:
            continue
        counts[str(UNMAPPED) if is_unmapped(status) else status.value] += 1
    labels = [s.value for s in AttitudeStatus]
    if counts[str(UNMAPPED)]:
        labels.append(str(UNMAPPED))
    return pd.DataFrame({"status": labels, "n_status": [counts[label] for label in labels]})


@dataclass
class DashboardSummary:
    screening_monthly: pd.DataFrame
    exclusion_cumulative: pd.DataFrame
    exclusions_over_time: pd.DataFrame
    screening_metrics: pd.DataFrame
    case_mix: pd.DataFrame
    inhosp_status: pd.DataFrame
    inhosp_timeline: pd.DataFrame
    battery_completion: pd.DataFrame
    attitude_status: pd.DataFrame
    specimen_compliance: pd.DataFrame
    followup_totals: pd.DataFrame
    followup_assessments: pd.DataFrame
    followup_records: pd.DataFrame
    needs_exclusion_date: pd.DataFrame
    needs_enrollment_date: pd.DataFrame

    def tables(self) -> dict[str, pd.DataFrame]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def build_dashboard(
    tables: dict[str, pd.DataFrame],
    notepad: Notepad,
    as_of: datetime.date,
    timepoints: typing.Sequence[Timepoint] = MONITORED_TIMEPOINTS,
    mapper: typing.Optional[TableMapper] = None,
) -> DashboardSummary:
    """
    Compute every dashboard table from normalized exclusion, in-hospital and
    follow-up tables. Data-quality issues are recorded in `notepad`; a missing
    table or required field raises StructuralError.
    """
    mapper = mapper or DefaultMapper()
    records = mapper.apply_mapping(tables, notepad)
    if notepad.has_errors(include_subsections=True):
        messages = "; ".join(issue.message for issue in notepad.errors())
        raise StructuralError(f"Input tables do not satisfy the export contract: {messages}")

    screened = screening_table(records.candidates, records.patients)
    timeline = build_timeline(records.patients)
    followup = evaluate_followup(records.patients, records.followup, as_of, timepoints)

    summary = DashboardSummary(
        screening_monthly=monthly_summary(screened),
        exclusion_cumulative=cumulative_exclusions(records.candidates, notepad),
        exclusions_over_time=exclusions_over_time(records.candidates),
        screening_metrics=screening_metrics(screened).to_frame(),
        case_mix=case_mix(records.patients),
        inhosp_status=status_distribution(records.patients),
        inhosp_timeline=timeline_table(timeline),
        battery_completion=battery_completion(records.patients),
        attitude_status=attitude_distribution(records.patients),
        specimen_compliance=evaluate_compliance(records.draws, timeline),
        followup_totals=followup_totals(followup),
        followup_assessments=followup_assessment_rates(followup),
        followup_records=followup_table(followup),
        needs_exclusion_date=pd.DataFrame({"id": needs_exclusion_date(records.candidates)}, dtype=object),
        needs_enrollment_date=pd.DataFrame({"id": records.needs_enrollment_date}, dtype=object),
    )
    logger.info(f"Built {len(summary.tables())} dashboard tables as of {as_of}")
    return summary


def write_dashboard(summary: DashboardSummary, output_dir: pathlib.Path) -> list[pathlib.Path]:
    """Write one CSV per table plus a workbook with one sheet per table."""
    output_dir.mkdir(parents=True, exist_ok=True)
    written = []
    for name, table in summary.tables().items():
        path = output_dir / f"{name}.csv"
        table.to_csv(path, index=False)
        written.append(path)

    workbook = output_dir / WORKBOOK_NAME
    with pd.ExcelWriter(workbook, engine="openpyxl") as writer:
        for name, table in summary.tables().items():
            # sheet names are limited to 31 characters
            table.to_excel(writer, sheet_name=name[:31], index=False)
    written.append(workbook)
    return written
