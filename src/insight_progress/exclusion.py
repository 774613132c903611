"""
Exclusion domain model.

Defines the Candidate dataclass for screened-but-excluded patients and the
fixed vocabulary of exclusion reasons.
"""

import datetime
import re
import typing

from dataclasses import dataclass, field

# Reason code → human label. Codes are the `exc_rsn_<n>` checkbox fields.
EXCLUSION_REASONS = {
    "exc_rsn_2": "Severe cognitive/neuro disorder",
    "exc_rsn_3": "Co-enrollment forbidden",
    "exc_rsn_4": "Substance abuse, psych disorder",
    "exc_rsn_5": "Blind, deaf, English",
    "exc_rsn_6": "Death within 24h/hospice",
    "exc_rsn_7": "Prisoner",
    "exc_rsn_8": "Lives >200 miles from VUMC",
    "exc_rsn_9": "Homeless",
    "exc_rsn_10": "Attending refusal",
    "exc_rsn_11": "Patient/surrogate refusal",
    "exc_rsn_12": "No surrogate within 72h",
    "exc_rsn_13": ">72h eligibility prior to screening",
    "exc_rsn_14": "Research leadership refusal",
    "exc_rsn_99": "Other",
}

# Patient and/or surrogate refusal; marks a candidate as approached and refused
REFUSAL_REASON = "exc_rsn_11"

PATIENT_CHARACTERISTICS = "Patient characteristics"
CONSENT_RESEARCH = "Informed consent/research"
OTHER_EXCLUSIONS = "Other exclusions"

REASON_CATEGORIES = {
    "Severe cognitive/neuro disorder": PATIENT_CHARACTERISTICS,
    "Substance abuse, psych disorder": PATIENT_CHARACTERISTICS,
    "Blind, deaf, English": PATIENT_CHARACTERISTICS,
    "Prisoner": PATIENT_CHARACTERISTICS,
    "Homeless": PATIENT_CHARACTERISTICS,
    "Attending refusal": CONSENT_RESEARCH,
    "Patient/surrogate refusal": CONSENT_RESEARCH,
    "Research leadership refusal": CONSENT_RESEARCH,
    "No surrogate within 72h": CONSENT_RESEARCH,
    ">72h eligibility prior to screening": CONSENT_RESEARCH,
    "Co-enrollment forbidden": CONSENT_RESEARCH,
    "Death within 24h/hospice": OTHER_EXCLUSIONS,
    "Lives >200 miles from VUMC": OTHER_EXCLUSIONS,
    "Other": OTHER_EXCLUSIONS,
}

REASON_CODE_PATTERN = re.compile(r"^exc_rsn_\d+$")


def reason_label(code: str) -> typing.Optional[str]:
    """Human label for a reason code, or None when the code is not in the vocabulary."""
    return EXCLUSION_REASONS.get(code)


def reason_category(label: typing.Optional[str]) -> typing.Optional[str]:
    """Category bucket for a reason label; None for unmapped labels."""
    if label is None:
        return None
    return REASON_CATEGORIES.get(label)


def reason_sort_key(code: str) -> int:
    return int(code.rsplit("_", 1)[1])


def sort_reason_codes(codes: typing.Iterable[str]) -> list[str]:
    # numeric order: exc_rsn_10 after exc_rsn_9
    return sorted(codes, key=reason_sort_key)


@dataclass
class Candidate:
    """
    A screened patient who was excluded from enrollment.

    Attributes:
        candidate_ID: exclusion-log identifier.
        exclusion_date: date of the exclusion decision; None when not entered.
        reasons: reason code → checked.
    """

    candidate_ID: str
    exclusion_date: typing.Optional[datetime.date]
    reasons: dict[str, bool] = field(default_factory=dict)

    def __post_init__(self):
        if not self.candidate_ID:
            raise ValueError("Candidate ID must not be empty")
        for code in self.reasons:
            if not REASON_CODE_PATTERN.match(code):
                raise ValueError(f"Invalid exclusion reason code: {code!r}")

    @property
    def has_date(self) -> bool:
        return self.exclusion_date is not None

    @property
    def refused(self) -> bool:
        return self.reasons.get(REFUSAL_REASON, False)

    def checked_reasons(self) -> list[str]:
        return sort_reason_codes(code for code, checked in self.reasons.items() if checked)
