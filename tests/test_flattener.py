import pytest

from course_chatbot.core.flattener import (
    FlattenStats,
    MalformedRecordError,
    duration_months,
    flatten_provider,
    start_month_code,
)

from conftest import make_course, make_provider


def test_one_record_per_course_option():
    course = make_course("BA History", "BA (Hons)", "York", "15/09/2025")
    course["options"].append(dict(course["options"][0], location={"name": "Scarborough"}))
    provider = make_provider("Minster University", "York", [course])

    records = list(flatten_provider(provider))

    assert [r.raw["campus"] for r in records] == ["York", "Scarborough"]
    assert all(r.id is None for r in records)


def test_raw_display_fields():
    provider = make_provider(
        "Northern University",
        "Manchester",
        [make_course("MSc Computer Science", "MSc", "Manchester", "01/09/2025", "G400", fee="£9,250")],
    )
    (record,) = list(flatten_provider(provider))

    assert record.raw == {
        "course_title": "MSc Computer Science",
        "qualification": "MSc",
        "campus": "Manchester",
        "start_date_raw": "01/09/2025",
        "start_month": "sep",
        "application_code": "G400",
        "academic_year": "2025",
        "provider": "Northern University",
        "study_mode": "Full-time",
        "duration": "1 Year",
        "duration_months": "12",
        "fee": "£9,250",
    }
    assert "computer science" in record.blob
    assert "northern university" in record.blob
    assert record.public() == {"id": None, "raw": record.raw}
    assert "blob" not in record.public()


def test_course_without_options_gets_placeholder():
    course = {"courseTitle": "PhD Physics", "outcomeQualification": {"caption": "PhD"}, "options": []}
    (record,) = list(flatten_provider(make_provider("Lab Uni", "Bristol", [course])))
    assert record.raw["course_title"] == "PhD Physics"
    assert record.raw["campus"] == ""
    assert record.raw["start_month"] == ""


def test_empty_blob_is_dropped():
    stats = FlattenStats()
    records = list(flatten_provider({"courses": [{}]}, stats))
    assert records == []
    assert stats.empty == 1
    assert stats.records == 0


def test_malformed_course_and_option_are_skipped_and_counted():
    good = make_course("BSc Biology", "BSc", "Leeds", "01/09/2025")
    bad_options = {"courseTitle": "Broken", "options": "not-a-list"}
    bad_option_entry = dict(good, options=[42, good["options"][0]])
    provider = make_provider("Mixed Uni", "Leeds", [good, "junk", bad_options, bad_option_entry])

    stats = FlattenStats()
    records = list(flatten_provider(provider, stats))

    assert len(records) == 2
    assert stats.malformed == 3
    assert stats.providers == 1
    assert len(stats.malformed_samples) == 3


@pytest.mark.parametrize("provider", ["junk", 7, None, {"courses": "nope"}])
def test_malformed_provider_raises(provider):
    with pytest.raises(MalformedRecordError):
        list(flatten_provider(provider))


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("01/09/2025", "sep"),
        ("2026-01-12", "jan"),
        ("2025-02-03T00:00:00", "feb"),
        ("2025-10-01T09:00:00.000+01:00", "oct"),
        ("15 March 2025", "mar"),
        ("September 2025", "sep"),
        ("soon", ""),
        ("", ""),
    ],
)
def test_start_month_code(raw, expected):
    assert start_month_code(raw) == expected


@pytest.mark.parametrize(
    "quantity, unit, expected",
    [
        (3, "Years", "36"),
        (1.0, "Year", "12"),
        (18, "Months", "18"),
        (18, "Weeks", "4.2"),
        ("", "Years", ""),
        (2, "Semesters", ""),
    ],
)
def test_duration_months(quantity, unit, expected):
    assert duration_months(quantity, unit) == expected
