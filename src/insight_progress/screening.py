"""
Screening, exclusion and enrollment summaries.

Screened: everyone recorded (exclusion log + enrolled).
Approached: enrolled + patient/surrogate refusals.
Refused: exclusion reason 11 checked.
Enrolled: present in the in-hospital project.
"""

import logging
import typing

from collections import Counter, defaultdict
from dataclasses import asdict, dataclass

import pandas as pd
from stairval.notepad import Notepad

from .exclusion import Candidate, reason_category, reason_label, reason_sort_key, sort_reason_codes
from .patient import INJURY_FLAGS, EnrolledPatient

logger = logging.getLogger(__name__)

ENROLLMENT_GOAL = 900

FLAG_COLUMNS = ["Screened", "Approached", "Refused", "Enrolled"]

MONTH_ABBREVIATIONS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def month_key(year: int, month: int) -> str:
    # zero-padded so that text order agrees with calendar order
    return f"{year:04d}-{month:02d}"


def month_label(year: int, month: int, first: bool = False) -> str:
    """Month abbreviation; the year is added in January and on the first month shown."""
    abbr = MONTH_ABBREVIATIONS[month - 1]
    return f"{abbr} {year}" if first or month == 1 else abbr


def needs_exclusion_date(candidates: typing.Iterable[Candidate]) -> list[str]:
    """Candidates with no exclusion date entered; left out of every exclusion summary."""
    return sorted(c.candidate_ID for c in candidates if not c.has_date)


def screening_table(candidates: typing.Iterable[Candidate], patients: typing.Iterable[EnrolledPatient]) -> pd.DataFrame:
    """One row per screened person with integer year/month and the four flags."""
    rows = []
    for c in candidates:
        if not c.has_date:
            continue
        rows.append(
            {
                "id": c.candidate_ID,
                "year": c.exclusion_date.year,
                "month": c.exclusion_date.month,
                "Screened": True,
                "Approached": c.refused,
                "Refused": c.refused,
                "Enrolled": False,
            }
        )
    for p in patients:
        rows.append(
            {
                "id": p.patient_ID,
                "year": p.enroll_date.year,
                "month": p.enroll_date.month,
                "Screened": True,
                "Approached": True,
                "Refused": False,
                "Enrolled": True,
            }
        )
    table = pd.DataFrame(rows, columns=["id", "year", "month"] + FLAG_COLUMNS)
    return table.astype({"year": int, "month": int, **{c: bool for c in FLAG_COLUMNS}})


def monthly_summary(table: pd.DataFrame) -> pd.DataFrame:
    """Sums of the four flags per month, in calendar order."""
    columns = ["myear", "myear_label", "year", "month"] + FLAG_COLUMNS
    if table.empty:
        return pd.DataFrame(columns=columns)
    summary = (
        table.groupby(["year", "month"], sort=True)[FLAG_COLUMNS]
        .sum()
        .astype(int)
        .reset_index()
        .sort_values(["year", "month"])
        .reset_index(drop=True)
    )
    summary["myear"] = [month_key(y, m) for y, m in zip(summary["year"], summary["month"])]
    summary["myear_label"] = [
        month_label(y, m, first=(i == 0)) for i, (y, m) in enumerate(zip(summary["year"], summary["month"]))
    ]
    return summary[columns]


@dataclass
class ScreeningMetrics:
    n_screened: int
    pct_approached: float
    pct_excluded: float
    pct_refused: float
    n_enrolled: int
    pct_enrolled: float
    n_goal: int = ENROLLMENT_GOAL

    def to_frame(self) -> pd.DataFrame:
        items = asdict(self)
        return pd.DataFrame({"metric": list(items), "value": list(items.values())})


def screening_metrics(table: pd.DataFrame) -> ScreeningMetrics:
    nan = float("nan")
    approached = table.loc[table["Approached"]]
    pct_approached = float(table["Approached"].mean()) if len(table) else nan
    return ScreeningMetrics(
        n_screened=int(table["Screened"].sum()),
        pct_approached=pct_approached,
        pct_excluded=1 - pct_approached,
        pct_refused=float(approached["Refused"].mean()) if len(approached) else nan,
        n_enrolled=int(table["Enrolled"].sum()),
        pct_enrolled=float(approached["Enrolled"].mean()) if len(approached) else nan,
    )


def _dated_reasons(candidates: typing.Iterable[Candidate]) -> list[tuple[Candidate, str]]:
    return [(c, code) for c in candidates if c.has_date for code in c.checked_reasons()]


def cumulative_exclusions(candidates: typing.Sequence[Candidate], notepad: typing.Optional[Notepad] = None) -> pd.DataFrame:
    """
    Number of times each reason was checked among dated candidates, with its category.
    Codes outside the vocabulary stay in the table with an empty reason and category.
    """
    counts = Counter(code for _, code in _dated_reasons(candidates))
    rows = []
    for code in sort_reason_codes(counts):
        label = reason_label(code)
        if label is None:
            message = f"Exclusion reason {code!r} has no label; checked {counts[code]} time(s)"
            logger.warning(message)
            if notepad is not None:
                notepad.add_warning(message)
        rows.append(
            {
                "code": code,
                "reason": label,
                "n_reason": counts[code],
                "n_patients_exc": len(candidates),
                "reason_type": reason_category(label),
            }
        )
    return pd.DataFrame(rows, columns=["code", "reason", "n_reason", "n_patients_exc", "reason_type"])


def exclusions_over_time(candidates: typing.Iterable[Candidate]) -> pd.DataFrame:
    """Share of each month's excluded candidates excluded for each reason."""
    per_month: dict[tuple[int, int], set[str]] = defaultdict(set)
    per_reason: Counter = Counter()
    for c, code in _dated_reasons(candidates):
        ym = (c.exclusion_date.year, c.exclusion_date.month)
        per_month[ym].add(c.candidate_ID)
        per_reason[(ym, code)] += 1

    months = sorted(per_month)
    rows = []
    for ym, code in sorted(per_reason, key=lambda k: (k[0], reason_sort_key(k[1]))):
        n_all = len(per_month[ym])
        n_this = per_reason[(ym, code)]
        rows.append(
            {
                "myear": month_key(*ym),
                "myear_label": month_label(*ym, first=(ym == months[0])),
                "code": code,
                "reason": reason_label(code),
                "n_this_exclusion": n_this,
                "n_all_exclusions": n_all,
                "percent": round(n_this / n_all * 100),
            }
        )
    columns = ["myear", "myear_label", "code", "reason", "n_this_exclusion", "n_all_exclusions", "percent"]
    return pd.DataFrame(rows, columns=columns)


def case_mix(patients: typing.Sequence[EnrolledPatient]) -> pd.DataFrame:
    """How many enrolled patients had each injury type."""
    rows = []
    for flag, label in INJURY_FLAGS.items():
        recorded = [p.injuries[flag] for p in patients if p.injuries.get(flag) is not None]
        n = sum(recorded)
        rows.append(
            {
                "injury": label,
                "n": n,
                "proportion": n / len(recorded) if recorded else float("nan"),
            }
        )
    return pd.DataFrame(rows, columns=["injury", "n", "proportion"])
