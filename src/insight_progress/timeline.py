"""
In-hospital status derivation.

Two distinct labels are derived from the same terminal-event dates:

- the *current* status, one per patient, where presence of a discharge date
  wins over everything else (records are corrected after the fact, so a
  discharge entered after a death date is the one to believe);
- the per-day *study* status on a 30-day timeline, where the earliest
  reached terminal event sticks and death outranks discharge outranks
  withdrawal on the same day.
"""

import datetime
import logging
import typing

from dataclasses import dataclass
from enum import Enum

import pandas as pd

from .patient import EnrolledPatient
from .rules import Rule, first_match, is_unmapped

logger = logging.getLogger(__name__)

TIMELINE_DAYS = 30
ENROLLMENT_EVENT = "Enrollment /Study Day 1"


class InHospitalStatus(Enum):
    DISCHARGED = "Discharged alive"
    DIED = "Died in hospital"
    WITHDREW = "Withdrew in hospital"
    STILL_IN_HOSPITAL = "Still in hospital"


class StudyStatus(Enum):
    IN_HOSPITAL = "In hospital"
    WITHDRAWN = "Withdrawn"
    DISCHARGED = "Discharged"
    DECEASED = "Deceased"


CURRENT_STATUS_RULES: list[Rule[EnrolledPatient, InHospitalStatus]] = [
    Rule(lambda p: p.hospdis_date is not None, InHospitalStatus.DISCHARGED),
    Rule(lambda p: p.death_date is not None, InHospitalStatus.DIED),
    Rule(lambda p: p.studywd_date is not None, InHospitalStatus.WITHDREW),
    Rule(
        lambda p: p.hospdis_date is None and p.death_date is None and p.studywd_date is None,
        InHospitalStatus.STILL_IN_HOSPITAL,
    ),
]


def current_status(patient: EnrolledPatient) -> InHospitalStatus:
    status = first_match(CURRENT_STATUS_RULES, patient)
    if is_unmapped(status):
        # the rules above are exhaustive
        raise RuntimeError(f"No in-hospital status derived for {patient.patient_ID!r}")
    return status


def event_name(study_day: int) -> str:
    """REDCap event name for a study day."""
    if study_day == 1:
        return ENROLLMENT_EVENT
    return f"Study Day {study_day}"


def _reached(event_date: typing.Optional[datetime.date], day: datetime.date) -> bool:
    return event_date is not None and day >= event_date


def study_status_on(patient: EnrolledPatient, day: datetime.date) -> StudyStatus:
    """Status of the patient on a given calendar day."""
    if _reached(patient.death_date, day):
        return StudyStatus.DECEASED
    if _reached(patient.hospdis_date, day):
        return StudyStatus.DISCHARGED
    if _reached(patient.studywd_date, day):
        return StudyStatus.WITHDRAWN
    return StudyStatus.IN_HOSPITAL


def is_transition_day(patient: EnrolledPatient, day: datetime.date) -> bool:
    """True on the day of death, withdrawal or discharge (data may or may not exist)."""
    return day in {d for d in (patient.death_date, patient.studywd_date, patient.hospdis_date) if d is not None}


@dataclass(frozen=True)
class TimelineDay:
    """
    One projected study day for a patient.

    Attributes:
        patient_ID: study identifier.
        study_day: 1..30; day 1 is the enrollment date.
        study_date: calendar date of the study day.
        study_status: per-day status label.
        transition_day: the date is a death, withdrawal or discharge date.
    """

    patient_ID: str
    study_day: int
    study_date: datetime.date
    study_status: StudyStatus
    transition_day: bool

    @property
    def event_name(self) -> str:
        return event_name(self.study_day)


def generate_timeline(patient: EnrolledPatient, n_days: int = TIMELINE_DAYS) -> typing.Iterator[TimelineDay]:
    for offset in range(n_days):
        day = patient.enroll_date + datetime.timedelta(days=offset)
        yield TimelineDay(
            patient_ID=patient.patient_ID,
            study_day=offset + 1,
            study_date=day,
            study_status=study_status_on(patient, day),
            transition_day=is_transition_day(patient, day),
        )


def build_timeline(patients: typing.Iterable[EnrolledPatient], n_days: int = TIMELINE_DAYS) -> list[TimelineDay]:
    """Timeline for every patient, ordered by patient id then study day."""
    days: list[TimelineDay] = []
    for patient in sorted(patients, key=lambda p: p.patient_ID):
        days.extend(generate_timeline(patient, n_days))
    logger.debug(f"Projected {len(days)} timeline days")
    return days


def timeline_table(days: typing.Sequence[TimelineDay]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "id": [d.patient_ID for d in days],
            "study_day": [d.study_day for d in days],
            "redcap_event_name": [d.event_name for d in days],
            "study_date": [d.study_date for d in days],
            "study_status": [d.study_status.value for d in days],
            "transition_day": [d.transition_day for d in days],
        }
    )


def status_distribution(patients: typing.Iterable[EnrolledPatient]) -> pd.DataFrame:
    """Count of patients per current status, every level listed in level order."""
    counts = {status: 0 for status in InHospitalStatus}
    for patient in patients:
        counts[current_status(patient)] += 1
    return pd.DataFrame(
        {
            "status": [status.value for status in counts],
            "n_status": list(counts.values()),
        }
    )
