"""
Follow-up window and completion engine.

Every enrolled patient is expected at every monitored timepoint, so records
are materialized as a dense patient × timepoint cross product: a missing
follow-up record is an eligible-but-unassessed row, not an absent one.

Statuses are derived per (patient, timepoint) and separately for the patient
and caregiver assessment sets by an ordered rule list evaluated against an
explicit as-of date.
"""

import datetime
import logging
import re
import typing

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum

import pandas as pd

from .patient import EnrolledPatient
from .rules import UNMAPPED, Rule, first_match, is_unmapped
from .timeline import InHospitalStatus, current_status

logger = logging.getLogger(__name__)

# Patient assessments at each timepoint
PATIENT_ASSESSMENTS = (
    "gq", "biadl", "cog", "emp", "driving", "hus", "sppb", "hand", "eq5d", "gose",
    "nida", "audit", "bpi", "bdi", "pcl", "cd", "social",
)
# Caregiver assessments at each timepoint
CAREGIVER_ASSESSMENTS = ("cg", "zarit", "mb", "driving_care")

COMPLETION_SUFFIX = "_comp"
# CD-RISC has inconsistent field names
DATE_FIELD_STEMS = {"cd": "cdrisc"}

PATIENT_REFUSAL = "Patient refusal"


def completion_field(key: str) -> str:
    return f"{key}{COMPLETION_SUFFIX}"


def date_field(key: str) -> str:
    return f"{DATE_FIELD_STEMS.get(key, key)}_date"


@dataclass(frozen=True)
class Timepoint:
    """
    A follow-up visit and its eligibility window.

    Attributes:
        month: months after discharge.
        days_to_window: days from discharge to the start of the window.
        window_length: days from the start to the end of the window.
    """

    month: int
    days_to_window: int
    window_length: int

    @property
    def label(self) -> str:
        return f"{self.month} Month Assessment"

    def enter_window(self, discharge: typing.Optional[datetime.date]) -> typing.Optional[datetime.date]:
        if discharge is None:
            return None
        return discharge + datetime.timedelta(days=self.days_to_window)

    def exit_window(self, discharge: typing.Optional[datetime.date]) -> typing.Optional[datetime.date]:
        entry = self.enter_window(discharge)
        if entry is None:
            return None
        return entry + datetime.timedelta(days=self.window_length)

    @classmethod
    def from_label(cls, label: str) -> "Timepoint":
        """
        Look up a timepoint by its REDCap event name ("3 Month Assessment", "1 Month Phone") or month ("3").
        """
        m = re.match(r"^\s*(\d+)(?:\s+Month(?:\s+(?:Assessment|Phone))?)?\s*$", str(label), re.IGNORECASE)
        if not m or int(m.group(1)) not in TIMEPOINTS:
            raise ValueError(f"Unknown follow-up timepoint: {label!r}")
        return TIMEPOINTS[int(m.group(1))]


TIMEPOINTS = {
    1: Timepoint(month=1, days_to_window=30, window_length=14),
    2: Timepoint(month=2, days_to_window=60, window_length=14),
    3: Timepoint(month=3, days_to_window=83, window_length=56),
    6: Timepoint(month=6, days_to_window=180, window_length=30),
    12: Timepoint(month=12, days_to_window=335, window_length=90),
}

# Phone-only timepoints (1, 2, 6 months) are not monitored by default
MONITORED_TIMEPOINTS = (TIMEPOINTS[3], TIMEPOINTS[12])


class FollowUpStatus(Enum):
    COMPLETED = "Assessment fully or partially completed"
    DIED = "Died before follow-up window ended"
    WITHDREW = "Withdrew before follow-up window ended"
    NOT_YET_ELIGIBLE = "Not yet eligible for follow-up"
    REFUSED = "Refused assessment (but did not withdraw)"
    ELIGIBLE_NOT_ASSESSED = "Eligible, but not yet assessed"


ELIGIBLE_STATUSES = frozenset(
    {FollowUpStatus.COMPLETED, FollowUpStatus.REFUSED, FollowUpStatus.ELIGIBLE_NOT_ASSESSED}
)


@dataclass
class FollowUpRecord:
    """
    Follow-up data entered for one patient at one timepoint.

    Assessment mappings hold True/False when the completion field was entered and
    None when it was left blank.
    """

    patient_ID: str
    timepoint: Timepoint
    patient_assessments: dict[str, typing.Optional[bool]] = field(default_factory=dict)
    caregiver_assessments: dict[str, typing.Optional[bool]] = field(default_factory=dict)
    assessment_dates: dict[str, typing.Optional[datetime.date]] = field(default_factory=dict)
    refusal_reason: typing.Optional[str] = None

    def __post_init__(self):
        unknown = (set(self.patient_assessments) - set(PATIENT_ASSESSMENTS)) | (
            set(self.caregiver_assessments) - set(CAREGIVER_ASSESSMENTS)
        )
        if unknown:
            raise ValueError(f"Unknown follow-up assessment(s): {sorted(unknown)}")

    @classmethod
    def empty(cls, patient_id: str, timepoint: Timepoint) -> "FollowUpRecord":
        """Placeholder for a patient with no follow-up data entered yet."""
        return cls(
            patient_ID=patient_id,
            timepoint=timepoint,
            patient_assessments={key: None for key in PATIENT_ASSESSMENTS},
            caregiver_assessments={key: None for key in CAREGIVER_ASSESSMENTS},
        )

    @property
    def n_asmts_pt(self) -> int:
        return sum(bool(self.patient_assessments.get(key)) for key in PATIENT_ASSESSMENTS)

    @property
    def n_asmts_cg(self) -> int:
        return sum(bool(self.caregiver_assessments.get(key)) for key in CAREGIVER_ASSESSMENTS)

    @property
    def any_pt(self) -> bool:
        return self.n_asmts_pt > 0

    @property
    def any_cg(self) -> bool:
        return self.n_asmts_cg > 0

    @property
    def all_pt(self) -> bool:
        return self.n_asmts_pt == len(PATIENT_ASSESSMENTS)

    @property
    def all_cg(self) -> bool:
        return self.n_asmts_cg == len(CAREGIVER_ASSESSMENTS)

    @property
    def refused_gq(self) -> bool:
        # general questions refusal stands in for refusal of the whole assessment
        return self.refusal_reason == PATIENT_REFUSAL

    @property
    def first_asmt(self) -> typing.Optional[datetime.date]:
        dates = [d for d in self.assessment_dates.values() if d is not None]
        return min(dates) if dates else None

    @property
    def last_asmt(self) -> typing.Optional[datetime.date]:
        dates = [d for d in self.assessment_dates.values() if d is not None]
        return max(dates) if dates else None


def materialize_records(
    patients: typing.Iterable[EnrolledPatient],
    records: typing.Iterable[FollowUpRecord],
    timepoints: typing.Sequence[Timepoint] = MONITORED_TIMEPOINTS,
) -> typing.Iterator[tuple[EnrolledPatient, FollowUpRecord]]:
    """
    One (patient, record) pair per enrolled patient per timepoint, in patient then
    chronological order. Records of patients who are not enrolled are ignored.
    """
    by_key: dict[tuple[str, int], FollowUpRecord] = {}
    for r in records:
        key = (r.patient_ID, r.timepoint.month)
        if key in by_key:
            logger.warning(f"Duplicate {r.timepoint.label!r} record for {r.patient_ID!r}; keeping the first")
            continue
        by_key[key] = r
    for patient in sorted(patients, key=lambda p: p.patient_ID):
        for timepoint in sorted(timepoints, key=lambda t: t.month):
            record = by_key.get((patient.patient_ID, timepoint.month))
            yield patient, record if record is not None else FollowUpRecord.empty(patient.patient_ID, timepoint)


@dataclass(frozen=True)
class _StatusContext:
    patient: EnrolledPatient
    record: FollowUpRecord
    inhosp_status: InHospitalStatus
    enter_window: typing.Optional[datetime.date]
    exit_window: typing.Optional[datetime.date]
    as_of: datetime.date
    assessed: bool


def _before_exit(event_date: typing.Optional[datetime.date], c: _StatusContext) -> bool:
    return event_date is not None and c.exit_window is not None and event_date < c.exit_window


FOLLOW_UP_STATUS_RULES: list[Rule[_StatusContext, FollowUpStatus]] = [
    Rule(lambda c: c.assessed, FollowUpStatus.COMPLETED),
    Rule(
        lambda c: c.patient.death_date is not None
        and (c.inhosp_status is InHospitalStatus.DIED or _before_exit(c.patient.death_date, c)),
        FollowUpStatus.DIED,
    ),
    Rule(
        lambda c: c.patient.studywd_date is not None
        and (c.inhosp_status is InHospitalStatus.WITHDREW or _before_exit(c.patient.studywd_date, c)),
        FollowUpStatus.WITHDREW,
    ),
    Rule(lambda c: c.enter_window is not None and c.as_of < c.enter_window, FollowUpStatus.NOT_YET_ELIGIBLE),
    # not classifiable until the patient leaves the hospital
    Rule(lambda c: c.inhosp_status is InHospitalStatus.STILL_IN_HOSPITAL, None),
    Rule(lambda c: c.record.refused_gq, FollowUpStatus.REFUSED),
    Rule(lambda c: True, FollowUpStatus.ELIGIBLE_NOT_ASSESSED),
]


def status_label(status) -> typing.Optional[str]:
    if status is None:
        return None
    if is_unmapped(status):
        return str(UNMAPPED)
    return status.value


@dataclass(frozen=True)
class FollowUpAssessment:
    """
    Derived follow-up state for one patient at one timepoint.

    `fu_comp_*` is None where the patient/caregiver is not eligible. Assessment
    mappings have blanks coerced to False where the respective party is eligible.
    """

    patient_ID: str
    timepoint: Timepoint
    inhosp_status: InHospitalStatus
    enter_window: typing.Optional[datetime.date]
    exit_window: typing.Optional[datetime.date]
    in_window: typing.Optional[bool]
    status_pt: typing.Any
    status_cg: typing.Any
    fu_elig_pt: bool
    fu_comp_pt: typing.Optional[bool]
    fu_elig_cg: bool
    fu_comp_cg: typing.Optional[bool]
    patient_assessments: dict[str, typing.Optional[bool]]
    caregiver_assessments: dict[str, typing.Optional[bool]]
    first_asmt: typing.Optional[datetime.date]
    last_asmt: typing.Optional[datetime.date]
    n_asmts_pt: int
    n_asmts_cg: int
    all_pt: bool
    all_cg: bool
    refused_gq: bool


def _coerce_blanks(assessments: dict[str, typing.Optional[bool]], keys: typing.Sequence[str], eligible: bool) -> dict[str, typing.Optional[bool]]:
    # eligible but nothing entered yet counts as not done
    values = {key: assessments.get(key) for key in keys}
    if not eligible:
        return values
    return {key: False if value is None else value for key, value in values.items()}


def assess(patient: EnrolledPatient, record: FollowUpRecord, as_of: datetime.date) -> FollowUpAssessment:
    """Derive the follow-up state of one patient at one timepoint as of a given date."""
    inhosp = current_status(patient)
    entry = record.timepoint.enter_window(patient.hospdis_date)
    exit_ = record.timepoint.exit_window(patient.hospdis_date)

    def context(assessed: bool) -> _StatusContext:
        return _StatusContext(
            patient=patient,
            record=record,
            inhosp_status=inhosp,
            enter_window=entry,
            exit_window=exit_,
            as_of=as_of,
            assessed=assessed,
        )

    status_pt = first_match(FOLLOW_UP_STATUS_RULES, context(record.any_pt))
    status_cg = first_match(FOLLOW_UP_STATUS_RULES, context(record.any_cg))
    for who, status in (("patient", status_pt), ("caregiver", status_cg)):
        if is_unmapped(status):
            logger.warning(f"Unmapped {who} follow-up status for {patient.patient_ID!r} at {record.timepoint.label!r}")

    elig_pt = status_pt in ELIGIBLE_STATUSES
    elig_cg = status_cg in ELIGIBLE_STATUSES
    return FollowUpAssessment(
        patient_ID=patient.patient_ID,
        timepoint=record.timepoint,
        inhosp_status=inhosp,
        enter_window=entry,
        exit_window=exit_,
        in_window=None if entry is None else entry <= as_of,
        status_pt=status_pt,
        status_cg=status_cg,
        fu_elig_pt=elig_pt,
        fu_comp_pt=(status_pt is FollowUpStatus.COMPLETED) if elig_pt else None,
        fu_elig_cg=elig_cg,
        fu_comp_cg=(status_cg is FollowUpStatus.COMPLETED) if elig_cg else None,
        patient_assessments=_coerce_blanks(record.patient_assessments, PATIENT_ASSESSMENTS, elig_pt),
        caregiver_assessments=_coerce_blanks(record.caregiver_assessments, CAREGIVER_ASSESSMENTS, elig_cg),
        first_asmt=record.first_asmt,
        last_asmt=record.last_asmt,
        n_asmts_pt=record.n_asmts_pt,
        n_asmts_cg=record.n_asmts_cg,
        all_pt=record.all_pt,
        all_cg=record.all_cg,
        refused_gq=record.refused_gq,
    )


def evaluate_followup(
    patients: typing.Iterable[EnrolledPatient],
    records: typing.Iterable[FollowUpRecord],
    as_of: datetime.date,
    timepoints: typing.Sequence[Timepoint] = MONITORED_TIMEPOINTS,
) -> list[FollowUpAssessment]:
    results = [assess(patient, record, as_of) for patient, record in materialize_records(patients, records, timepoints)]
    logger.debug(f"Evaluated {len(results)} patient/timepoint follow-up records as of {as_of}")
    return results


FOLLOWUP_RECORD_COLUMNS = [
    "id", "timepoint", "inhosp_status", "enter_window", "exit_window", "in_window",
    "fu_status_pt", "fu_status_cg", "fu_elig_pt", "fu_comp_pt", "fu_elig_cg", "fu_comp_cg",
    "n_asmts_pt", "all_pt", "n_asmts_cg", "all_cg", "refused_gq", "first_asmt", "last_asmt",
] + [completion_field(k) for k in PATIENT_ASSESSMENTS + CAREGIVER_ASSESSMENTS]


def followup_table(results: typing.Sequence[FollowUpAssessment]) -> pd.DataFrame:
    """One row per patient and timepoint, for review of individual statuses."""
    rows = []
    for r in results:
        row = {
            "id": r.patient_ID,
            "timepoint": r.timepoint.label,
            "inhosp_status": r.inhosp_status.value,
            "enter_window": r.enter_window,
            "exit_window": r.exit_window,
            "in_window": r.in_window,
            "fu_status_pt": status_label(r.status_pt),
            "fu_status_cg": status_label(r.status_cg),
            "fu_elig_pt": r.fu_elig_pt,
            "fu_comp_pt": r.fu_comp_pt,
            "fu_elig_cg": r.fu_elig_cg,
            "fu_comp_cg": r.fu_comp_cg,
            "n_asmts_pt": r.n_asmts_pt,
            "all_pt": r.all_pt,
            "n_asmts_cg": r.n_asmts_cg,
            "all_cg": r.all_cg,
            "refused_gq": r.refused_gq,
            "first_asmt": r.first_asmt,
            "last_asmt": r.last_asmt,
        }
        row.update({completion_field(k): v for k, v in r.patient_assessments.items()})
        row.update({completion_field(k): v for k, v in r.caregiver_assessments.items()})
        rows.append(row)
    return pd.DataFrame(rows, columns=FOLLOWUP_RECORD_COLUMNS)


def _proportion(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator else float("nan")


def followup_totals(results: typing.Sequence[FollowUpAssessment]) -> pd.DataFrame:
    """Eligible and completed counts per timepoint, for patients and caregivers."""
    grouped: dict[Timepoint, list[FollowUpAssessment]] = defaultdict(list)
    for r in results:
        grouped[r.timepoint].append(r)

    rows = []
    for timepoint in sorted(grouped, key=lambda t: t.month):
        group = grouped[timepoint]
        n_elig_pt = sum(r.fu_elig_pt for r in group)
        n_comp_pt = sum(bool(r.fu_comp_pt) for r in group)
        n_elig_cg = sum(r.fu_elig_cg for r in group)
        n_comp_cg = sum(bool(r.fu_comp_cg) for r in group)
        rows.append(
            {
                "timepoint": timepoint.label,
                "n_elig_pt": n_elig_pt,
                "n_comp_pt": n_comp_pt,
                "prop_comp_pt": _proportion(n_comp_pt, n_elig_pt),
                "n_elig_cg": n_elig_cg,
                "n_comp_cg": n_comp_cg,
                "prop_comp_cg": _proportion(n_comp_cg, n_elig_cg),
            }
        )
    columns = ["timepoint", "n_elig_pt", "n_comp_pt", "prop_comp_pt", "n_elig_cg", "n_comp_cg", "prop_comp_cg"]
    return pd.DataFrame(rows, columns=columns)


def followup_assessment_rates(results: typing.Sequence[FollowUpAssessment]) -> pd.DataFrame:
    """
    Completion of each instrument, only among records where the overall
    patient (or caregiver) assessment was at least partially done.
    """
    counts: dict[tuple[int, str], list[bool]] = defaultdict(list)
    for r in results:
        if r.fu_comp_pt:
            for key in PATIENT_ASSESSMENTS:
                counts[(r.timepoint.month, key)].append(bool(r.patient_assessments.get(key)))
        if r.fu_comp_cg:
            for key in CAREGIVER_ASSESSMENTS:
                counts[(r.timepoint.month, key)].append(bool(r.caregiver_assessments.get(key)))

    order = {key: i for i, key in enumerate(PATIENT_ASSESSMENTS + CAREGIVER_ASSESSMENTS)}
    rows = []
    for month, key in sorted(counts, key=lambda k: (k[0], order[k[1]])):
        done = counts[(month, key)]
        rows.append(
            {
                "timepoint": TIMEPOINTS[month].label,
                "asmt_type": completion_field(key),
                "n_elig": len(done),
                "n_comp": sum(done),
                "prop_comp": _proportion(sum(done), len(done)),
            }
        )
    return pd.DataFrame(rows, columns=["timepoint", "asmt_type", "n_elig", "n_comp", "prop_comp"])
