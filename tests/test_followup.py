import datetime

import pytest

from conftest import d, make_patient
from insight_progress.followup import (
    CAREGIVER_ASSESSMENTS,
    PATIENT_ASSESSMENTS,
    TIMEPOINTS,
    FollowUpRecord,
    FollowUpStatus,
    Timepoint,
    assess,
    date_field,
    evaluate_followup,
    followup_assessment_rates,
    followup_table,
    followup_totals,
    materialize_records,
)

THREE_MONTH = TIMEPOINTS[3]
TWELVE_MONTH = TIMEPOINTS[12]


def record(patient_id="P1", timepoint=THREE_MONTH, done_pt=(), done_cg=(), refusal=None) -> FollowUpRecord:
    return FollowUpRecord(
        patient_ID=patient_id,
        timepoint=timepoint,
        patient_assessments={key: (True if key in done_pt else None) for key in PATIENT_ASSESSMENTS},
        caregiver_assessments={key: (True if key in done_cg else None) for key in CAREGIVER_ASSESSMENTS},
        refusal_reason=refusal,
    )


def test_window_from_discharge():
    discharge = d("2024-01-10")
    assert THREE_MONTH.enter_window(discharge) == d("2024-04-02")
    assert THREE_MONTH.exit_window(discharge) == d("2024-05-28")
    assert THREE_MONTH.enter_window(None) is None
    assert THREE_MONTH.exit_window(None) is None


@pytest.mark.parametrize("label", ["3 Month Assessment", "3", " 3 month ", "3 Month Phone"])
def test_timepoint_from_label(label):
    assert Timepoint.from_label(label) is THREE_MONTH


@pytest.mark.parametrize("label", ["Enrollment /Study Day 1", "4 Month Assessment", ""])
def test_timepoint_from_unknown_label(label):
    with pytest.raises(ValueError):
        Timepoint.from_label(label)


def test_cdrisc_date_field():
    assert date_field("cd") == "cdrisc_date"
    assert date_field("gq") == "gq_date"


def test_record_rejects_unknown_assessment():
    with pytest.raises(ValueError):
        FollowUpRecord("P1", THREE_MONTH, patient_assessments={"zarit": True})


def test_record_counts_and_dates():
    r = record(done_pt=("gq", "cd"), done_cg=("cg",))
    r.assessment_dates.update({"gq": d("2024-04-10"), "cd": d("2024-04-03"), "cg": None})
    assert r.n_asmts_pt == 2
    assert r.any_pt and not r.all_pt
    assert r.n_asmts_cg == 1
    assert r.first_asmt == d("2024-04-03")
    assert r.last_asmt == d("2024-04-10")


def test_dense_cross_product_fills_missing_records():
    patients = [make_patient("P2"), make_patient("P1")]
    pairs = list(materialize_records(patients, [record("P1")], [TWELVE_MONTH, THREE_MONTH]))
    assert [(p.patient_ID, r.timepoint.month) for p, r in pairs] == [("P1", 3), ("P1", 12), ("P2", 3), ("P2", 12)]
    assert pairs[0][1].patient_assessments["gq"] is None
    # P2 has no record at all, yet still gets a row per timepoint
    assert pairs[2][1].n_asmts_pt == 0


def test_records_for_unknown_patients_are_ignored():
    pairs = list(materialize_records([make_patient("P1")], [record("X9")], [THREE_MONTH]))
    assert [p.patient_ID for p, _ in pairs] == ["P1"]


def test_completed_assessment():
    p = make_patient(hospdis_date="2024-01-10")
    a = assess(p, record(done_pt=("gq",), done_cg=("zarit",)), as_of=d("2024-04-15"))
    assert a.status_pt is FollowUpStatus.COMPLETED
    assert a.status_cg is FollowUpStatus.COMPLETED
    assert a.fu_comp_pt is True
    assert a.fu_comp_cg is True


def test_caregiver_completion_keyed_on_caregiver_status():
    p = make_patient(hospdis_date="2024-01-10")
    a = assess(p, record(done_pt=("gq",)), as_of=d("2024-04-15"))
    assert a.status_pt is FollowUpStatus.COMPLETED
    assert a.status_cg is FollowUpStatus.ELIGIBLE_NOT_ASSESSED
    assert a.fu_elig_cg
    assert a.fu_comp_cg is False


def test_death_without_discharge_date():
    p = make_patient(enroll="2024-01-20", death_date="2024-02-05")
    a = assess(p, record(), as_of=d("2024-06-01"))
    assert a.enter_window is None
    assert a.exit_window is None
    assert a.in_window is None
    assert a.status_pt is FollowUpStatus.DIED
    assert not a.fu_elig_pt
    assert a.fu_comp_pt is None


def test_death_after_discharge_before_window_end():
    p = make_patient(hospdis_date="2024-01-10", death_date="2024-03-01")
    assert assess(p, record(), as_of=d("2024-06-01")).status_pt is FollowUpStatus.DIED


def test_death_after_window_end_keeps_eligibility():
    p = make_patient(hospdis_date="2024-01-10", death_date="2024-06-15")
    a = assess(p, record(), as_of=d("2024-07-01"))
    assert a.status_pt is FollowUpStatus.ELIGIBLE_NOT_ASSESSED


def test_withdrawal_before_window_end():
    p = make_patient(hospdis_date="2024-01-10", studywd_date="2024-02-01")
    assert assess(p, record(), as_of=d("2024-06-01")).status_pt is FollowUpStatus.WITHDREW


def test_not_yet_eligible_before_window_opens():
    p = make_patient(hospdis_date="2024-01-10")
    a = assess(p, record(), as_of=d("2024-04-01"))
    assert a.status_pt is FollowUpStatus.NOT_YET_ELIGIBLE
    assert a.in_window is False
    assert not a.fu_elig_pt


def test_still_in_hospital_is_not_classified():
    a = assess(make_patient(), record(), as_of=d("2024-06-01"))
    assert a.status_pt is None
    assert a.status_cg is None
    assert not a.fu_elig_pt


def test_refused_general_questions():
    p = make_patient(hospdis_date="2024-01-10")
    a = assess(p, record(refusal="Patient refusal"), as_of=d("2024-04-15"))
    assert a.status_pt is FollowUpStatus.REFUSED
    assert a.fu_elig_pt
    assert a.fu_comp_pt is False


def test_blank_instruments_coerce_to_false_when_eligible():
    p = make_patient(hospdis_date="2024-01-10")
    a = assess(p, FollowUpRecord.empty("P1", THREE_MONTH), as_of=d("2024-04-15"))
    assert a.fu_elig_pt
    assert set(a.patient_assessments.values()) == {False}
    assert set(a.caregiver_assessments.values()) == {False}


def test_blank_instruments_stay_blank_when_not_eligible():
    p = make_patient(hospdis_date="2024-01-10")
    a = assess(p, FollowUpRecord.empty("P1", THREE_MONTH), as_of=d("2024-02-01"))
    assert set(a.patient_assessments.values()) == {None}


@pytest.fixture
def results():
    patients = [
        make_patient("P1", hospdis_date="2024-01-10"),
        make_patient("P2", hospdis_date="2024-01-10"),
        make_patient("P3", death_date="2024-01-04"),
    ]
    records = [record("P1", done_pt=("gq", "biadl"), done_cg=("zarit",))]
    return evaluate_followup(patients, records, as_of=datetime.date(2024, 6, 1))


def test_followup_totals(results):
    totals = followup_totals(results).set_index("timepoint")
    assert list(totals.index) == ["3 Month Assessment", "12 Month Assessment"]
    three = totals.loc["3 Month Assessment"]
    assert (three["n_elig_pt"], three["n_comp_pt"]) == (2, 1)
    assert (three["n_elig_cg"], three["n_comp_cg"]) == (2, 1)
    assert three["prop_comp_pt"] == pytest.approx(0.5)
    twelve = totals.loc["12 Month Assessment"]
    assert twelve["n_elig_pt"] == 0
    assert twelve["prop_comp_pt"] != twelve["prop_comp_pt"]


def test_followup_assessment_rates_only_over_completed(results):
    rates = followup_assessment_rates(results)
    assert set(rates["timepoint"]) == {"3 Month Assessment"}
    by_type = rates.set_index("asmt_type")
    assert by_type.loc["gq_comp", "n_comp"] == 1
    assert by_type.loc["gq_comp", "n_elig"] == 1
    assert by_type.loc["eq5d_comp", "prop_comp"] == 0.0
    assert by_type.loc["zarit_comp", "prop_comp"] == 1.0
    assert len(rates) == len(PATIENT_ASSESSMENTS) + len(CAREGIVER_ASSESSMENTS)


def test_followup_table_labels(results):
    table = followup_table(results)
    assert len(table) == 6
    row = table.loc[(table["id"] == "P3") & (table["timepoint"] == "3 Month Assessment")].iloc[0]
    assert row["fu_status_pt"] == "Died before follow-up window ended"
    assert row["inhosp_status"] == "Died in hospital"


def test_followup_table_review_fields(results):
    table = followup_table(results)
    row = table.loc[(table["id"] == "P1") & (table["timepoint"] == "3 Month Assessment")].iloc[0]
    assert row["n_asmts_pt"] == 2
    assert not row["all_pt"]
    assert row["n_asmts_cg"] == 1
    assert not row["refused_gq"]
    assert row["in_window"]
    assert {"first_asmt", "last_asmt", "gq_comp", "driving_care_comp"} <= set(table.columns)


def test_followup_table_empty_keeps_columns():
    table = followup_table([])
    assert table.empty
    assert list(table.columns[:2]) == ["id", "timepoint"]


def test_phone_timepoint_uses_its_own_window():
    one_month = Timepoint.from_label("1 Month Phone")
    assert one_month is TIMEPOINTS[1]
    p = make_patient(hospdis_date="2024-01-10")
    a = assess(p, record(timepoint=one_month, done_pt=("gq",)), as_of=d("2024-02-15"))
    assert a.enter_window == d("2024-02-09")
    assert a.status_pt is FollowUpStatus.COMPLETED


def test_duplicate_records_keep_the_first(caplog):
    done = record("P1", done_pt=("gq",))
    blank = record("P1")
    with caplog.at_level("WARNING", logger="insight_progress.followup"):
        pairs = list(materialize_records([make_patient("P1")], [done, blank], [THREE_MONTH]))
    assert pairs[0][1] is done
    assert "Duplicate" in caplog.text
