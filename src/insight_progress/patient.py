"""
Enrolled patient domain model.

Defines the EnrolledPatient dataclass with terminal-event dates, injury
flags, pre-hospital battery completion and the attitude-toward-brain-donation
fields, plus the eligibility flags derived from them.
"""

import datetime
import typing

from dataclasses import dataclass, field
from enum import Enum

from .rules import Rule, first_match

# Pre-hospital batteries; completion fields are `<key>_comp_ph`
PREHOSPITAL_SUFFIX = "_comp_ph"
SURROGATE_ASSESSMENTS = ("gq", "adl", "nida", "ls", "emp", "income", "grit", "bdi", "iqcode")
CAREGIVER_ASSESSMENTS = ("zarit", "memory")

# Injury flag field → label used on the dashboard
INJURY_FLAGS = {
    "trauma_blunt_enr": "Blunt trauma",
    "trauma_penetrate_enr": "Penetrating trauma",
    "burn_enr": "Burn",
    "tbi_enr": "TBI",
}

ATTITUDE_FIELDS = (
    "attitude_comp_sur",
    "attitude_comp_pt",
    "attitude_comp_fu_pt",
    "attitude_rsn_pt",
    "attitude_rsn_fu_pt",
)

IQCODE_WITHDRAWAL = "Study staff b/c patient scored IQCODE>3.8"
NO_CAREGIVER_AVAILABLE = "No one available that meets the caregiver definition"
NEVER_ABLE_INHOSP = "Patient never cognitively able by hospital discharge"
NEVER_ABLE_FU = "Patient never cognitively able"
DIED_OR_WITHDREW = "Patient died or withdrew prior to completing"


class AttitudeStatus(Enum):
    """Where (or why not) the patient answered the attitude-toward-donation questions."""

    YES_IN_HOSPITAL = "Yes, in hospital"
    YES_FOLLOW_UP = "Yes, during follow-up"
    DIED_WITHDREW = "No, died/withdrew"
    NEVER_ABLE = "Never cognitively able"
    MISSED = "No, missed"


def is_yes(value: typing.Any) -> bool:
    """REDCap label exports: a field counts as done when its text starts with "Yes"."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).startswith("Yes")


@dataclass
class EnrolledPatient:
    """
    One enrolled patient, taken from the enrollment event of the in-hospital project.

    Attributes:
        patient_ID: study identifier.
        enroll_date: calendar date of enrollment (study day 1).
        enroll_dttm: enrollment timestamp, when entered with a time.
        death_date: date of death, if any.
        hospdis_date: date of hospital discharge, if any.
        studywd_date: date of study withdrawal, if any.
        studywd_who: who initiated the withdrawal.
        injuries: injury flag field → recorded as "Yes"; None when left blank.
        prehospital: pre-hospital assessment key → completed.
        zarit_reason: reason the Zarit was not done, if recorded.
        attitude: raw attitude-toward-donation fields (completion and reason text).
    """

    patient_ID: str
    enroll_date: datetime.date
    enroll_dttm: typing.Optional[datetime.datetime] = None
    death_date: typing.Optional[datetime.date] = None
    hospdis_date: typing.Optional[datetime.date] = None
    studywd_date: typing.Optional[datetime.date] = None
    studywd_who: typing.Optional[str] = None
    injuries: dict[str, typing.Optional[bool]] = field(default_factory=dict)
    prehospital: dict[str, bool] = field(default_factory=dict)
    zarit_reason: typing.Optional[str] = None
    attitude: dict[str, typing.Optional[str]] = field(default_factory=dict)

    def __post_init__(self):
        if not self.patient_ID:
            raise ValueError("Patient ID must not be empty")
        if not isinstance(self.enroll_date, datetime.date):
            raise ValueError(f"Invalid enrollment date for {self.patient_ID!r}: {self.enroll_date!r}")
        for key in self.prehospital:
            if key not in SURROGATE_ASSESSMENTS and key not in CAREGIVER_ASSESSMENTS:
                raise ValueError(f"Unknown pre-hospital assessment: {key!r}")

    # eligibility

    @property
    def elig_attitude(self) -> bool:
        # everyone except patients withdrawn by staff due to high IQCODE
        return self.studywd_who != IQCODE_WITHDRAWAL

    @property
    def elig_cg(self) -> bool:
        # some patients have no one who meets the caregiver definition
        return self.elig_attitude and self.zarit_reason != NO_CAREGIVER_AVAILABLE

    # attitude toward brain donation; None when not eligible

    def _if_eligible(self, value: bool) -> typing.Optional[bool]:
        return value if self.elig_attitude else None

    @property
    def attitude_surr(self) -> typing.Optional[bool]:
        return self._if_eligible(self.attitude.get("attitude_comp_sur") == "Yes")

    @property
    def attitude_pt_inhosp(self) -> typing.Optional[bool]:
        return self._if_eligible(self.attitude.get("attitude_comp_pt") == "Yes")

    @property
    def attitude_pt_fu(self) -> typing.Optional[bool]:
        return self._if_eligible(self.attitude.get("attitude_comp_fu_pt") == "Yes")

    @property
    def attitude_pt_ever(self) -> typing.Optional[bool]:
        return self._if_eligible(bool(self.attitude_pt_inhosp or self.attitude_pt_fu))

    @property
    def attitude_pt_cogunable(self) -> typing.Optional[bool]:
        never_able = (
            self.attitude.get("attitude_rsn_pt") == NEVER_ABLE_INHOSP
            or self.attitude.get("attitude_rsn_fu_pt") == NEVER_ABLE_FU
        )
        return self._if_eligible(not self.attitude_pt_ever and never_able)

    @property
    def attitude_pt_died(self) -> typing.Optional[bool]:
        died = (
            self.attitude.get("attitude_rsn_pt") == DIED_OR_WITHDREW
            or self.attitude.get("attitude_rsn_fu_pt") == DIED_OR_WITHDREW
        )
        return self._if_eligible(not self.attitude_pt_ever and died)

    @property
    def attitude_pt_missed(self) -> typing.Optional[bool]:
        return self._if_eligible(
            not (self.attitude_pt_ever or self.attitude_pt_cogunable or self.attitude_pt_died)
        )

    @property
    def attitude_pt_status(self):
        """AttitudeStatus, None when not eligible, or UNMAPPED."""
        return first_match(ATTITUDE_STATUS_RULES, self)


ATTITUDE_STATUS_RULES: list[Rule[EnrolledPatient, AttitudeStatus]] = [
    Rule(lambda p: bool(p.attitude_pt_inhosp), AttitudeStatus.YES_IN_HOSPITAL),
    Rule(lambda p: bool(p.attitude_pt_fu), AttitudeStatus.YES_FOLLOW_UP),
    Rule(lambda p: bool(p.attitude_pt_died), AttitudeStatus.DIED_WITHDREW),
    Rule(lambda p: bool(p.attitude_pt_cogunable), AttitudeStatus.NEVER_ABLE),
    Rule(lambda p: bool(p.attitude_pt_missed), AttitudeStatus.MISSED),
    Rule(lambda p: not p.elig_attitude, None),
]
