import pytest

from conftest import make_patient
from insight_progress.specimen import (
    SpecimenDraw,
    SpecimenEvent,
    evaluate_compliance,
    expand_double_duty,
    expected_collections,
    parse_specimen_event,
)
from insight_progress.timeline import build_timeline


def draws_for(patient_id, event, colors, double_duty=False):
    return [SpecimenDraw(patient_id, event, color, 1.0, double_duty) for color in colors]


@pytest.mark.parametrize(
    "values, expected",
    [
        (["Enrollment/Day 1 only"], (SpecimenEvent.DAY_1, False)),
        (["Day 3 only"], (SpecimenEvent.DAY_3, False)),
        ([None, "Day 5 and Discharge"], (SpecimenEvent.DAY_5, True)),
        (["Discharge only"], (SpecimenEvent.DISCHARGE, False)),
        ([None, float("nan")], (None, False)),
    ],
)
def test_parse_specimen_event(values, expected):
    assert parse_specimen_event(values) == expected


def test_parse_specimen_event_unknown_label():
    with pytest.raises(ValueError):
        parse_specimen_event(["Day 7 only"])


def test_draw_rejects_unknown_color():
    with pytest.raises(ValueError):
        SpecimenDraw("P1", SpecimenEvent.DAY_1, "orange", 1.0)


def test_drawn_needs_positive_quantity():
    assert SpecimenDraw("P1", SpecimenEvent.DAY_1, "blue", 2.0).drawn
    assert not SpecimenDraw("P1", SpecimenEvent.DAY_1, "blue", 0.0).drawn
    assert not SpecimenDraw("P1", SpecimenEvent.DAY_1, "blue", None).drawn


def test_double_duty_adds_discharge_draw():
    expanded = expand_double_duty(draws_for("P1", SpecimenEvent.DAY_5, ["blue"], double_duty=True))
    assert [d.event for d in expanded] == [SpecimenEvent.DAY_5, SpecimenEvent.DISCHARGE]


def test_full_compliance_without_red_on_days_3_and_5():
    patient = make_patient("P1", enroll="2024-01-01", hospdis_date="2024-01-10")
    all_colors = ["red", "blue", "green", "purple"]
    draws = (
        draws_for("P1", SpecimenEvent.DAY_1, all_colors)
        + draws_for("P1", SpecimenEvent.DAY_3, ["blue", "green", "purple"])
        + draws_for("P1", SpecimenEvent.DAY_5, ["blue", "green", "purple"])
        + draws_for("P1", SpecimenEvent.DISCHARGE, all_colors)
    )
    table = evaluate_compliance(draws, build_timeline([patient]))
    assert (table["compliance"] == 1.0).all()
    cells = set(zip(table["day"], table["color"]))
    assert ("Day 3", "red") not in cells
    assert ("Day 5", "red") not in cells
    assert len(cells) == 14


def test_red_draw_on_day_3_has_no_bucket():
    patient = make_patient("P1", hospdis_date="2024-01-10")
    table = evaluate_compliance(draws_for("P1", SpecimenEvent.DAY_3, ["red"]), build_timeline([patient]))
    day_3 = table.loc[table["day"] == "Day 3"]
    assert "red" not in day_3["color"].tolist()
    assert (day_3["n_compliant"] == 0).all()


def test_collections_after_death_are_not_expected():
    # died on study day 3: day 1 and 3 expected, day 5 and discharge are not
    patient = make_patient("P1", enroll="2024-01-01", death_date="2024-01-03")
    expected = expected_collections(build_timeline([patient]))
    assert expected == [("P1", SpecimenEvent.DAY_1), ("P1", SpecimenEvent.DAY_3)]

    table = evaluate_compliance(draws_for("P1", SpecimenEvent.DAY_5, ["blue"]), build_timeline([patient]))
    assert "Day 5" not in table["day"].tolist()
    assert "Discharge" not in table["day"].tolist()


def test_discharge_day_counts_for_scheduled_day():
    # discharged on day 3 itself: the day 3 draw is still expected
    patient = make_patient("P1", enroll="2024-01-01", hospdis_date="2024-01-03")
    expected = expected_collections(build_timeline([patient]))
    assert ("P1", SpecimenEvent.DAY_3) in expected
    assert ("P1", SpecimenEvent.DAY_5) not in expected
    assert ("P1", SpecimenEvent.DISCHARGE) in expected


def test_double_duty_counts_toward_discharge():
    patient = make_patient("P1", enroll="2024-01-01", hospdis_date="2024-01-05")
    draws = draws_for("P1", SpecimenEvent.DAY_5, ["blue"], double_duty=True)
    table = evaluate_compliance(draws, build_timeline([patient])).set_index(["day", "color"])
    assert table.loc[("Discharge", "blue"), "n_compliant"] == 1
    assert table.loc[("Discharge", "red"), "n_compliant"] == 0
