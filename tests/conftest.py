import datetime

import pandas as pd
import pytest

from insight_progress.followup import CAREGIVER_ASSESSMENTS, PATIENT_ASSESSMENTS
from insight_progress.loader import normalize_table
from insight_progress.patient import EnrolledPatient

REFUSAL_LABEL = "Inability to obtain informed consent: Patient and/or surrogate refusal"
FOLLOW_UP_AS_OF = datetime.date(2024, 6, 1)


def d(text: str) -> datetime.date:
    return datetime.date.fromisoformat(text)


def make_patient(patient_id: str = "P1", enroll: str = "2024-01-01", **kwargs) -> EnrolledPatient:
    """EnrolledPatient with ISO date strings accepted for every date field."""
    for name in ("death_date", "hospdis_date", "studywd_date"):
        if isinstance(kwargs.get(name), str):
            kwargs[name] = d(kwargs[name])
    return EnrolledPatient(patient_ID=patient_id, enroll_date=d(enroll), **kwargs)


def followup_row(patient_id: str, event: str, done_pt=(), done_cg=(), **extra) -> dict:
    """Raw follow-up export row; listed assessments are "Yes", the rest blank."""
    row = {"gq_study_id": patient_id, "redcap_event_name": event, "gq_rsn": None}
    for key in PATIENT_ASSESSMENTS:
        row[f"{key}_comp"] = "Yes" if key in done_pt else None
    for key in CAREGIVER_ASSESSMENTS:
        row[f"{key}_comp"] = "Yes" if key in done_cg else None
    row.update(extra)
    return row


@pytest.fixture
def raw_exclusion() -> pd.DataFrame:
    return pd.DataFrame(
        [
            {"exc_id": "E1", "exc_date": "2023-09-12", "exc_rsn_2": "Severe cognitive/neuro disorder"},
            {"exc_id": "E2", "exc_date": "2023-10-03", "exc_rsn_11": REFUSAL_LABEL},
            {"exc_id": "E3", "exc_date": None, "exc_rsn_2": "Severe cognitive/neuro disorder"},
            {"exc_id": "E4", "exc_date": "2023-10-20", "exc_rsn_99": "Other", "exc_rsn_15": "New reason"},
            {"exc_id": "Test-1", "exc_date": "2023-10-20", "exc_rsn_99": "Other"},
        ],
        columns=["exc_id", "exc_date", "exc_rsn_2", "exc_rsn_11", "exc_rsn_99", "exc_rsn_15"],
    )


def _enrollment(patient_id: str, enroll: str | None, **extra) -> dict:
    row = {
        "id": patient_id,
        "redcap_event_name": "Enrollment /Study Day 1",
        "enroll_dttm": enroll,
        "trauma_blunt_enr": "Yes",
        "trauma_penetrate_enr": "No",
        "burn_enr": "No",
        "tbi_enr": "No",
    }
    for key in ("gq", "adl", "nida", "ls", "emp", "income", "grit", "bdi", "iqcode", "zarit", "memory"):
        row[f"{key}_comp_ph"] = "Yes, fully completed"
    row.update(extra)
    return row


def _draw(patient_id: str, event: str, checked: str, blue=1, purple=1, green=1, red=None) -> dict:
    return {
        "id": patient_id,
        "redcap_event_name": event,
        "study_day_specimen_1": checked,
        "blue__microtubes": blue,
        "purple__microtubes": purple,
        "green__microtubes": green,
        "red__microtubes": red,
    }


@pytest.fixture
def raw_inhosp() -> pd.DataFrame:
    # the day 1 specimen log lives on the enrollment event row
    day_1 = "Enrollment /Study Day 1"
    rows = [
        # discharged on day 9
        {
            **_enrollment("P1", "2023-10-02 08:30", **{"hospdis__dttm": "2023-10-10 14:00", "attitude_comp_pt": "Yes"}),
            **_draw("P1", day_1, "Enrollment/Day 1 only", red=2),
        },
        _draw("P1", "Study Day 3", "Day 3 only"),
        _draw("P1", "Study Day 5", "Day 5 only"),
        _draw("P1", "Study Day 9", "Discharge only", red=1),
        # died on day 3; the day 5 entry was filled in after death
        {
            **_enrollment("P2", "2023-09-28 10:00", death_dttm="2023-09-30 05:00", trauma_blunt_enr="No", tbi_enr="Yes"),
            **_draw("P2", day_1, "Enrollment/Day 1 only", red=1),
        },
        _draw("P2", "Study Day 5", "Day 5 only"),
        # still in hospital
        _enrollment("P3", "2023-10-15 09:15", zarit_comp_ph=None, memory_comp_ph=None),
        # enrollment date not entered
        _enrollment("P4", None),
        # discharged, no follow-up entered yet
        _enrollment("P5", "2023-09-05 16:45", **{"hospdis__dttm": "2023-09-20 11:00"}),
        _enrollment("TEST-9", "2023-09-05 16:45"),
    ]
    columns = [
        "id", "redcap_event_name", "enroll_dttm", "death_dttm", "hospdis__dttm", "studywd_dttm", "studywd_who",
        "trauma_blunt_enr", "trauma_penetrate_enr", "burn_enr", "tbi_enr",
        "gq_comp_ph", "adl_comp_ph", "nida_comp_ph", "ls_comp_ph", "emp_comp_ph", "income_comp_ph",
        "grit_comp_ph", "bdi_comp_ph", "iqcode_comp_ph", "zarit_comp_ph", "memory_comp_ph", "zarit_comp_ph_rsn",
        "attitude_comp_sur", "attitude_comp_pt", "attitude_comp_fu_pt", "attitude_rsn_pt", "attitude_rsn_fu_pt",
        "study_day_specimen_1", "blue__microtubes", "purple__microtubes", "green__microtubes", "red__microtubes",
    ]
    return pd.DataFrame(rows, columns=columns)


@pytest.fixture
def raw_followup() -> pd.DataFrame:
    rows = [
        followup_row("P1", "3 Month Assessment", done_pt=("gq", "biadl"), done_cg=("zarit",), gq_date="2024-01-05", biadl_date="2024-01-09"),
        followup_row("P2", "3 Month Assessment"),
        followup_row("P1", "1 Month Phone"),
    ]
    return pd.DataFrame(rows)


@pytest.fixture
def normalized_tables(raw_exclusion, raw_inhosp, raw_followup) -> dict[str, pd.DataFrame]:
    return {
        "exclusion": normalize_table(raw_exclusion, "exclusion"),
        "inhosp": normalize_table(raw_inhosp, "inhosp"),
        "followup": normalize_table(raw_followup, "followup"),
    }


@pytest.fixture
def data_dir(tmp_path, raw_exclusion, raw_inhosp, raw_followup):
    """The three exports written as CSV, as `download` would leave them."""
    path = tmp_path / "data"
    path.mkdir()
    raw_exclusion.to_csv(path / "exclusion.csv", index=False)
    raw_inhosp.to_csv(path / "inhosp.csv", index=False)
    raw_followup.to_csv(path / "followup.csv", index=False)
    return path
