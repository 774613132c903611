"""
Specimen log compliance.

Compliance = at least one tube of a color drawn at a scheduled collection
(days 1, 3, 5 and discharge), among patients for whom that collection was
expected.
"""

import dataclasses
import logging
import re
import typing

from collections import defaultdict
from dataclasses import dataclass
from enum import Enum

import pandas as pd

from .timeline import StudyStatus, TimelineDay

logger = logging.getLogger(__name__)


class SpecimenEvent(Enum):
    DAY_1 = "Day 1"
    DAY_3 = "Day 3"
    DAY_5 = "Day 5"
    DISCHARGE = "Discharge"

    @classmethod
    def from_label(cls, label: str) -> "SpecimenEvent":
        key = label.strip().casefold()
        for event in cls:
            if event.value.casefold() == key:
                return event
        raise ValueError(f"Unknown specimen event: {label!r}")


TUBE_COLORS = ("blue", "purple", "green", "red")
TUBE_SUFFIX = "_microtubes"
SPECIMEN_EVENT_PREFIX = "study_day_specimen"

# red tubes are only drawn on day 1 and at discharge
EXPECTED_COLORS = {
    SpecimenEvent.DAY_1: TUBE_COLORS,
    SpecimenEvent.DAY_3: ("blue", "purple", "green"),
    SpecimenEvent.DAY_5: ("blue", "purple", "green"),
    SpecimenEvent.DISCHARGE: TUBE_COLORS,
}

# timeline day each collection is checked against; discharge uses the last day
EVENT_STUDY_DAY = {
    SpecimenEvent.DAY_1: 1,
    SpecimenEvent.DAY_3: 3,
    SpecimenEvent.DAY_5: 5,
    SpecimenEvent.DISCHARGE: 30,
}

_EVENT_NOISE = re.compile(r"Enrollment/| only")


@dataclass(frozen=True)
class SpecimenDraw:
    """
    Tubes of one color drawn for a patient at one scheduled collection.

    Attributes:
        patient_ID: study identifier.
        event: scheduled collection the draw was logged against.
        color: tube color.
        quantity: number of tubes drawn; None when not entered.
        double_duty: the draw also served as the discharge collection.
    """

    patient_ID: str
    event: SpecimenEvent
    color: str
    quantity: typing.Optional[float]
    double_duty: bool = False

    def __post_init__(self):
        if self.color not in TUBE_COLORS:
            raise ValueError(f"Unknown tube color: {self.color!r}")

    @property
    def drawn(self) -> bool:
        return self.quantity is not None and self.quantity > 0


def parse_specimen_event(values: typing.Iterable[typing.Any]) -> tuple[typing.Optional[SpecimenEvent], bool]:
    """
    Turn the specimen-time checkbox labels of one record into (event, double_duty).

    Labels look like "Enrollment/Day 1 only", "Day 3 only" or "Day 5 and Discharge";
    a second part after " and " means the draw did double duty as the discharge draw.
    Returns (None, False) when nothing was checked.
    """
    text = "".join(str(v).strip() for v in values if v is not None and not pd.isna(v))
    text = _EVENT_NOISE.sub("", text).strip()
    if not text:
        return None, False
    parts = text.split(" and ", 1)
    return SpecimenEvent.from_label(parts[0]), len(parts) > 1


def expand_double_duty(draws: typing.Iterable[SpecimenDraw]) -> list[SpecimenDraw]:
    """Add a Discharge draw mirroring every double-duty draw."""
    expanded: list[SpecimenDraw] = []
    for draw in draws:
        expanded.append(draw)
        if draw.double_duty and draw.event is not SpecimenEvent.DISCHARGE:
            expanded.append(dataclasses.replace(draw, event=SpecimenEvent.DISCHARGE, double_duty=False))
    return expanded


def is_collection_expected(event: SpecimenEvent, day: TimelineDay) -> bool:
    """
    Days 1/3/5: patient still hospitalized, or it is the day they left.
    Discharge: patient neither died nor withdrew by the end of the timeline.
    """
    if event is SpecimenEvent.DISCHARGE:
        return day.study_status not in (StudyStatus.DECEASED, StudyStatus.WITHDRAWN)
    return day.study_status is StudyStatus.IN_HOSPITAL or day.transition_day


def expected_collections(timeline: typing.Iterable[TimelineDay]) -> list[tuple[str, SpecimenEvent]]:
    """(patient, event) pairs for which a specimen collection was expected, in schedule order."""
    by_key = {(day.patient_ID, day.study_day): day for day in timeline}
    expected = []
    for patient_id in sorted({pid for pid, _ in by_key}):
        for event, study_day in EVENT_STUDY_DAY.items():
            day = by_key.get((patient_id, study_day))
            if day is not None and is_collection_expected(event, day):
                expected.append((patient_id, event))
    return expected


def evaluate_compliance(draws: typing.Iterable[SpecimenDraw], timeline: typing.Iterable[TimelineDay]) -> pd.DataFrame:
    """
    Compliance per (event, color) over patients for whom the collection was expected.

    Draws logged against collections that were not expected (e.g., filled in after
    death or withdrawal) are discarded. Colors not expected at an event never get a cell.
    """
    drawn: dict[tuple[str, SpecimenEvent, str], bool] = defaultdict(bool)
    for draw in expand_double_duty(draws):
        key = (draw.patient_ID, draw.event, draw.color)
        drawn[key] = drawn[key] or draw.drawn

    expected = expected_collections(timeline)
    expected_keys = set(expected)
    discarded = {(pid, event) for pid, event, _ in drawn if (pid, event) not in expected_keys}
    if discarded:
        logger.debug(f"Discarded specimen entries for {len(discarded)} unexpected collection(s)")

    rows = []
    for event in SpecimenEvent:
        patients = [pid for pid, e in expected if e is event]
        if not patients:
            continue
        for color in EXPECTED_COLORS[event]:
            n_compliant = sum(drawn.get((pid, event, color), False) for pid in patients)
            rows.append(
                {
                    "day": event.value,
                    "color": color,
                    "n_eligible": len(patients),
                    "n_compliant": n_compliant,
                    "compliance": n_compliant / len(patients),
                }
            )
    return pd.DataFrame(rows, columns=["day", "color", "n_eligible", "n_compliant", "compliance"])
