import abc
import datetime
import logging
import typing

from dataclasses import dataclass, field

import pandas as pd
from stairval.notepad import Notepad

from .exclusion import REASON_CODE_PATTERN, Candidate
from .followup import (
    CAREGIVER_ASSESSMENTS,
    PATIENT_ASSESSMENTS,
    FollowUpRecord,
    Timepoint,
    completion_field,
    date_field,
)
from .patient import (
    ATTITUDE_FIELDS,
    CAREGIVER_ASSESSMENTS as PREHOSPITAL_CAREGIVER,
    INJURY_FLAGS,
    PREHOSPITAL_SUFFIX,
    SURROGATE_ASSESSMENTS,
    EnrolledPatient,
    is_yes,
)
from .specimen import SPECIMEN_EVENT_PREFIX, TUBE_COLORS, TUBE_SUFFIX, SpecimenDraw, parse_specimen_event
from .timeline import ENROLLMENT_EVENT

logger = logging.getLogger(__name__)

# Minimal required fields (after normalization) for each table
EXCLUSION_KEY_FIELDS = {"exc_id", "exc_date"}
INHOSP_KEY_FIELDS = {"id", "redcap_event_name", "enroll_dttm", "enroll_date", "death_date", "hospdis_date", "studywd_date"}
FOLLOWUP_KEY_FIELDS = (
    {"id", "redcap_event_name", "gq_rsn"}
    | {completion_field(key) for key in PATIENT_ASSESSMENTS}
    | {completion_field(key) for key in CAREGIVER_ASSESSMENTS}
)

# Friendly aliases for the three exported projects
KNOWN_TABLE_ALIASES: dict[str, set[str]] = {
    "exclusion": {"exclusion", "exclusions", "exc", "screening"},
    "inhosp": {"inhosp", "in_hospital", "in-hospital", "ih"},
    "followup": {"followup", "follow_up", "follow-up", "fu"},
}

ZARIT_REASON_FIELD = "zarit_comp_ph_rsn"


@dataclass
class TypedTables:
    """
    Explicit, typed access to the normalized project tables.
    Any field can be `None`, meaning that the table was not provided.
    """
    exclusion: pd.DataFrame | None
    inhosp: pd.DataFrame | None
    followup: pd.DataFrame | None


@dataclass
class MappedRecords:
    """Domain records produced from one data snapshot."""
    candidates: list[Candidate] = field(default_factory=list)
    patients: list[EnrolledPatient] = field(default_factory=list)
    draws: list[SpecimenDraw] = field(default_factory=list)
    followup: list[FollowUpRecord] = field(default_factory=list)
    needs_enrollment_date: list[str] = field(default_factory=list)


class TableMapper(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def apply_mapping(self, tables: dict[str, pd.DataFrame], notepad: Notepad) -> MappedRecords:
        raise NotImplementedError


class DefaultMapper(TableMapper):
    def apply_mapping(self, tables: dict[str, pd.DataFrame], notepad: Notepad) -> MappedRecords:
        """
        Process:
        1) choose/validate input tables
        2) map rows to domain records
        Missing required fields are reported as errors; data-entry gaps as warnings.
        """
        typed_tables = self._choose_named_tables(tables, notepad)
        candidates = self._map_exclusion_table(typed_tables.exclusion, notepad)
        patients, needs_enrollment_date = self._map_inhosp_table(typed_tables.inhosp, notepad)
        draws = self._map_specimen_table(typed_tables.inhosp, notepad)
        followup = self._map_followup_table(typed_tables.followup, notepad)
        logger.info(
            f"Mapped {len(candidates)} candidates, {len(patients)} enrolled patients, "
            f"{len(draws)} specimen draws, {len(followup)} follow-up records"
        )
        return MappedRecords(
            candidates=candidates,
            patients=patients,
            draws=draws,
            followup=followup,
            needs_enrollment_date=needs_enrollment_date,
        )

    @staticmethod
    def _is_missing(value: typing.Any) -> bool:
        if value is None:
            return True
        if isinstance(value, str):
            return not value.strip()
        return bool(pd.isna(value))

    @staticmethod
    def _to_text(value: typing.Any) -> typing.Optional[str]:
        if DefaultMapper._is_missing(value):
            return None
        return str(value).strip()

    @staticmethod
    def _to_date(value: typing.Any) -> typing.Optional[datetime.date]:
        """
        Normalized tables hold pandas Timestamps; anything else is parsed leniently.
        Missing or unparsable values → None.
        """
        if DefaultMapper._is_missing(value):
            return None
        if isinstance(value, pd.Timestamp):
            return value.date()
        if isinstance(value, datetime.datetime):
            return value.date()
        if isinstance(value, datetime.date):
            return value
        parsed = pd.to_datetime(str(value).strip()[:10], format="%Y-%m-%d", errors="coerce")
        return None if pd.isna(parsed) else parsed.date()

    @staticmethod
    def _to_timestamp(value: typing.Any) -> typing.Optional[datetime.datetime]:
        if DefaultMapper._is_missing(value):
            return None
        if isinstance(value, pd.Timestamp):
            return value.to_pydatetime()
        if isinstance(value, datetime.datetime):
            return value
        return None

    @staticmethod
    def _to_float(value: typing.Any) -> typing.Optional[float]:
        if DefaultMapper._is_missing(value):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _completion(value: typing.Any) -> typing.Optional[bool]:
        """Follow-up completion field: None when blank, otherwise whether it reads "Yes…"."""
        if DefaultMapper._is_missing(value):
            return None
        return is_yes(value)

    def _choose_named_tables(self, tables: dict[str, pd.DataFrame], notepad: Notepad) -> TypedTables:
        """
        Prefer explicit table names (plus common aliases). All three projects are required.
        """

        def by_alias(kind: str) -> pd.DataFrame | None:
            aliases = KNOWN_TABLE_ALIASES[kind]
            for table_name, df in tables.items():
                if table_name.strip().casefold() in aliases:
                    return df
            return None

        selected = TypedTables(
            exclusion=by_alias("exclusion"),
            inhosp=by_alias("inhosp"),
            followup=by_alias("followup"),
        )
        for kind in KNOWN_TABLE_ALIASES:
            if getattr(selected, kind) is None:
                notepad.add_error(f"Missing required table: {kind!r}")
        return selected

    @staticmethod
    def _check_required(df: pd.DataFrame, required: set[str], table_name: str, notepad: Notepad) -> bool:
        missing = sorted(required - set(df.columns))
        if missing:
            notepad.add_error(f"Table {table_name!r}: missing required fields: {missing}")
            return False
        return True

    # Exclusion log

    @staticmethod
    def parse_candidate_row(row: pd.Series, reason_fields: typing.Sequence[str], notepad: Notepad) -> list[Candidate]:
        """
        Parse one exclusion-log row. A checked reason exports as its label; blank = unchecked.
        Returns [] if the row cannot form a Candidate.
        """
        try:
            return [
                Candidate(
                    candidate_ID=DefaultMapper._to_text(row.get("exc_id")) or "",
                    exclusion_date=DefaultMapper._to_date(row.get("exc_date")),
                    reasons={code: not DefaultMapper._is_missing(row.get(code)) for code in reason_fields},
                )
            ]
        except (ValueError, TypeError) as e:
            notepad.add_warning(f"Table 'exclusion': {e}")
            return []

    def _map_exclusion_table(self, df: pd.DataFrame | None, notepad: Notepad) -> list[Candidate]:
        if df is None or not self._check_required(df, EXCLUSION_KEY_FIELDS, "exclusion", notepad):
            return []
        reason_fields = [c for c in df.columns if REASON_CODE_PATTERN.match(c)]
        if not reason_fields:
            notepad.add_warning("Table 'exclusion': no exclusion reason fields (exc_rsn_<n>) found")

        records: list[Candidate] = []
        for _, row in df.iterrows():
            records.extend(self.parse_candidate_row(row, reason_fields, notepad))

        missing_date = sorted(c.candidate_ID for c in records if not c.has_date)
        if missing_date:
            notepad.add_warning(f"Table 'exclusion': {len(missing_date)} record(s) need an exclusion date: {missing_date}")
        return records

    # In-hospital project: enrollment event

    @staticmethod
    def parse_patient_row(row: pd.Series, notepad: Notepad) -> list[EnrolledPatient]:
        """
        Parse one enrollment-event row into an EnrolledPatient.
        Returns [] when the row cannot form a patient (the caller tracks missing enrollment dates).
        """
        prehospital = {
            key: is_yes(DefaultMapper._to_text(row.get(f"{key}{PREHOSPITAL_SUFFIX}")))
            for key in SURROGATE_ASSESSMENTS + PREHOSPITAL_CAREGIVER
        }
        injuries = {}
        for flag in INJURY_FLAGS:
            text = DefaultMapper._to_text(row.get(flag))
            injuries[flag] = None if text is None else text == "Yes"
        try:
            return [
                EnrolledPatient(
                    patient_ID=DefaultMapper._to_text(row.get("id")) or "",
                    enroll_date=DefaultMapper._to_date(row.get("enroll_date")),
                    enroll_dttm=DefaultMapper._to_timestamp(row.get("enroll_dttm")),
                    death_date=DefaultMapper._to_date(row.get("death_date")),
                    hospdis_date=DefaultMapper._to_date(row.get("hospdis_date")),
                    studywd_date=DefaultMapper._to_date(row.get("studywd_date")),
                    studywd_who=DefaultMapper._to_text(row.get("studywd_who")),
                    injuries=injuries,
                    prehospital=prehospital,
                    zarit_reason=DefaultMapper._to_text(row.get(ZARIT_REASON_FIELD)),
                    attitude={name: DefaultMapper._to_text(row.get(name)) for name in ATTITUDE_FIELDS},
                )
            ]
        except (ValueError, TypeError) as e:
            notepad.add_warning(f"Table 'inhosp': {e}")
            return []

    def _map_inhosp_table(self, df: pd.DataFrame | None, notepad: Notepad) -> tuple[list[EnrolledPatient], list[str]]:
        """
        Enrolled patients come from the enrollment event only. Rows without an
        enrollment date are listed for data entry and left out of every timeline.
        """
        if df is None or not self._check_required(df, INHOSP_KEY_FIELDS, "inhosp", notepad):
            return [], []
        enrollment = df.loc[df["redcap_event_name"] == ENROLLMENT_EVENT]

        patients: list[EnrolledPatient] = []
        needs_date: list[str] = []
        seen: set[str] = set()
        for _, row in enrollment.iterrows():
            patient_id = self._to_text(row.get("id"))
            if patient_id is None:
                continue
            if self._to_date(row.get("enroll_date")) is None:
                needs_date.append(patient_id)
                continue
            if patient_id in seen:
                notepad.add_warning(f"Table 'inhosp': duplicate enrollment record for {patient_id!r}; keeping the first")
                continue
            parsed = self.parse_patient_row(row, notepad)
            seen.update(p.patient_ID for p in parsed)
            patients.extend(parsed)

        needs_date = sorted(set(needs_date))
        if needs_date:
            notepad.add_warning(f"Table 'inhosp': {len(needs_date)} patient(s) need an enrollment date: {needs_date}")
        return sorted(patients, key=lambda p: p.patient_ID), needs_date

    # In-hospital project: specimen log

    @staticmethod
    def parse_specimen_row(row: pd.Series, event_fields: typing.Sequence[str], color_fields: dict[str, str]) -> list[SpecimenDraw]:
        """
        Parse one specimen-log row into one draw per tube color.
        Rows with no specimen time checked yield [].
        """
        patient_id = DefaultMapper._to_text(row.get("id"))
        if patient_id is None:
            return []
        event, double_duty = parse_specimen_event(row.get(f) for f in event_fields)
        if event is None:
            return []
        return [
            SpecimenDraw(
                patient_ID=patient_id,
                event=event,
                color=color,
                quantity=DefaultMapper._to_float(row.get(column)),
                double_duty=double_duty,
            )
            for color, column in color_fields.items()
        ]

    def _map_specimen_table(self, df: pd.DataFrame | None, notepad: Notepad) -> list[SpecimenDraw]:
        if df is None:
            return []
        event_fields = [c for c in df.columns if c.startswith(SPECIMEN_EVENT_PREFIX)]
        color_fields = {color: f"{color}{TUBE_SUFFIX}" for color in TUBE_COLORS if f"{color}{TUBE_SUFFIX}" in df.columns}
        if not event_fields or not color_fields:
            notepad.add_warning("Table 'inhosp': no specimen log fields found; specimen compliance will be empty")
            return []

        records: list[SpecimenDraw] = []
        for _, row in df.iterrows():
            try:
                records.extend(self.parse_specimen_row(row, event_fields, color_fields))
            except ValueError as e:
                notepad.add_warning(f"Table 'inhosp', specimen log: {e}")
        return records

    # Follow-up project

    @staticmethod
    def parse_followup_row(row: pd.Series, timepoint: Timepoint, notepad: Notepad) -> list[FollowUpRecord]:
        dates = {}
        for key in PATIENT_ASSESSMENTS + CAREGIVER_ASSESSMENTS:
            dates[key] = DefaultMapper._to_date(row.get(date_field(key)))
        try:
            return [
                FollowUpRecord(
                    patient_ID=DefaultMapper._to_text(row.get("id")) or "",
                    timepoint=timepoint,
                    patient_assessments={
                        key: DefaultMapper._completion(row.get(completion_field(key))) for key in PATIENT_ASSESSMENTS
                    },
                    caregiver_assessments={
                        key: DefaultMapper._completion(row.get(completion_field(key))) for key in CAREGIVER_ASSESSMENTS
                    },
                    assessment_dates=dates,
                    refusal_reason=DefaultMapper._to_text(row.get("gq_rsn")),
                )
            ]
        except (ValueError, TypeError) as e:
            notepad.add_warning(f"Table 'followup': {e}")
            return []

    def _map_followup_table(self, df: pd.DataFrame | None, notepad: Notepad) -> list[FollowUpRecord]:
        if df is None or not self._check_required(df, FOLLOWUP_KEY_FIELDS, "followup", notepad):
            return []
        records: list[FollowUpRecord] = []
        seen: set[tuple[str, int]] = set()
        skipped: set[str] = set()
        for _, row in df.iterrows():
            event = self._to_text(row.get("redcap_event_name")) or ""
            try:
                timepoint = Timepoint.from_label(event)
            except ValueError:
                # baseline and other events carry no follow-up window
                skipped.add(event)
                continue
            patient_id = self._to_text(row.get("id"))
            if patient_id is None:
                continue
            if (patient_id, timepoint.month) in seen:
                notepad.add_warning(
                    f"Table 'followup': duplicate {timepoint.label!r} record for {patient_id!r}; keeping the first"
                )
                continue
            parsed = self.parse_followup_row(row, timepoint, notepad)
            seen.update((r.patient_ID, r.timepoint.month) for r in parsed)
            records.extend(parsed)
        if skipped:
            logger.debug(f"Skipped follow-up events without a window: {sorted(skipped)}")
        return records
