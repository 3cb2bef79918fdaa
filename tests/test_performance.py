from datetime import datetime, timedelta, timezone

import pytest

from performance import (
    AssigneeName,
    DateRange,
    HouseSale,
    client_packages,
    filter_by_window,
    in_window,
    parse_timestamp,
    resolve_assignee,
    revenue_series,
    revenue_totals,
    summarize_performance,
    target_progress,
)

NOW = datetime(2026, 10, 18, 12, 0)

DIRECTORY = [
    {"id": "a1", "name": "Anne Smith"},
    {"id": "b2", "name": "Bob Kumar"},
]


def _target(staff_id, amount, created_at="2026-10-05T09:00:00"):
    return {"staff_id": staff_id, "target_amount": amount, "created_at": created_at}


def _bill(name, paid, created_at="2026-10-06T09:00:00"):
    return {"assigned_staff": name, "amount_paid": paid, "created_at": created_at}


def test_parse_range_falls_back_to_all_time():
    assert DateRange.parse("ThisQuarter") is DateRange.THIS_QUARTER
    assert DateRange.parse("Fortnight") is DateRange.ALL_TIME
    assert DateRange.parse(None) is DateRange.ALL_TIME


def test_parse_timestamp_converts_aware_values():
    now = datetime(2026, 10, 18, tzinfo=timezone.utc)
    ts = parse_timestamp("2026-10-01T00:00:00Z", now)
    assert ts == datetime(2026, 10, 1)
    assert ts.tzinfo is None
    assert parse_timestamp("not a date") is None
    assert parse_timestamp(None) is None


def test_this_month_excludes_prior_calendar_month():
    assert in_window(datetime(2026, 10, 1), "ThisMonth", NOW)
    assert not in_window(datetime(2026, 9, 30, 23, 0), "ThisMonth", NOW)


def test_last_month():
    assert in_window(datetime(2026, 9, 2), "LastMonth", NOW)
    assert not in_window(datetime(2026, 10, 2), "LastMonth", NOW)
    january = datetime(2026, 1, 15)
    assert in_window(datetime(2025, 12, 31), "LastMonth", january)
    assert not in_window(datetime(2026, 12, 1), "LastMonth", january)


def test_this_quarter_is_calendar_aligned():
    assert in_window(datetime(2026, 10, 1, 0, 0), "ThisQuarter", NOW)
    assert in_window(datetime(2026, 12, 31, 23, 59), "ThisQuarter", NOW)
    assert not in_window(datetime(2026, 9, 30, 23, 59), "ThisQuarter", NOW)
    assert in_window(datetime(2026, 1, 1), "ThisQuarter", datetime(2026, 3, 31))


def test_half_year_is_trailing_six_months():
    assert in_window(datetime(2026, 5, 18, 12, 0), "HalfYear", NOW)
    assert not in_window(datetime(2026, 3, 18, 12, 0), "HalfYear", NOW)
    assert not in_window(datetime(2026, 4, 18, 12, 0), "HalfYear", NOW)


def test_this_year():
    assert in_window(datetime(2026, 1, 1), "ThisYear", NOW)
    assert not in_window(datetime(2025, 12, 31, 23, 59), "ThisYear", NOW)


def test_missing_timestamp_only_survives_all_time():
    assert in_window(None, DateRange.ALL_TIME, NOW)
    assert not in_window(None, DateRange.THIS_YEAR, NOW)
    assert not in_window("garbage", DateRange.THIS_MONTH, NOW)


def test_filter_by_window():
    records = [{"created_at": "2026-10-02T00:00:00"}, {"created_at": "2026-08-02T00:00:00"}, {}]
    assert filter_by_window(records, "ThisMonth", NOW) == [records[0]]
    assert filter_by_window(records, "AllTime", NOW) == records


def test_resolve_assignee():
    assert resolve_assignee("Clinic Sale") == HouseSale()
    assert resolve_assignee("Anne Smith") == AssigneeName("Anne Smith")
    assert resolve_assignee("") is None
    assert resolve_assignee(None) is None


def test_summarize_groups_targets_by_id_and_bills_by_name():
    targets = [_target("a1", 5000), _target("a1", 3000), _target("b2", 2000)]
    bills = [_bill("Anne Smith", 1000), _bill("Anne Smith", 2000), _bill("Carol", 700)]

    rows = summarize_performance(targets, bills, DIRECTORY, now=NOW)

    assert [(r["name"], r["target"], r["achieved"], r["remaining"]) for r in rows] == [
        ("Anne Smith", 8000.0, 3000.0, 5000.0),
        ("Bob Kumar", 2000.0, 0.0, 2000.0),
    ]


def test_bill_name_match_is_exact_and_case_sensitive():
    bills = [_bill("anne smith", 400), _bill("Anne Smith ", 400), _bill("Clinic Sale", 900)]
    rows = summarize_performance([], bills, DIRECTORY, now=NOW)
    assert all(r["achieved"] == 0 for r in rows)


def test_malformed_amounts_contribute_nothing():
    targets = [_target("a1", None), _target("a1", "oops"), _target("a1", 100)]
    bills = [_bill("Anne Smith", "abc"), {"assigned_staff": "Anne Smith"}, _bill("Anne Smith", "25.5")]
    [anne, _] = summarize_performance(targets, bills, DIRECTORY, now=NOW)
    assert anne["target"] == 100.0
    assert anne["achieved"] == 25.5


def test_remaining_goes_negative_on_over_achievement():
    rows = summarize_performance([_target("b2", 1000)], [_bill("Bob Kumar", 1500)], DIRECTORY, now=NOW)
    assert rows[1]["remaining"] == -500.0


def test_zero_rows_kept_and_empty_directory():
    rows = summarize_performance([], [], DIRECTORY, now=NOW)
    assert [r["remaining"] for r in rows] == [0.0, 0.0]
    assert summarize_performance([_target("a1", 10)], [_bill("Anne Smith", 5)], [], now=NOW) == []


def test_name_filter_is_case_insensitive_substring():
    rows = summarize_performance([], [], DIRECTORY, name_filter="ann", now=NOW)
    assert [r["name"] for r in rows] == ["Anne Smith"]


def test_date_window_applies_to_targets_and_bills():
    targets = [_target("a1", 5000), _target("a1", 9000, created_at="2026-09-28T10:00:00")]
    bills = [_bill("Anne Smith", 1000), _bill("Anne Smith", 4000, created_at="2026-09-29T10:00:00")]
    [anne, _] = summarize_performance(targets, bills, DIRECTORY, DateRange.THIS_MONTH, now=NOW)
    assert anne["target"] == 5000.0
    assert anne["achieved"] == 1000.0


def test_populated_target_reference_and_doctor_fields():
    doctors = [{"_id": "d1", "name": "Dr. Rao"}]
    targets = [{"doctor_id": {"id": "d1", "name": "Dr. Rao"}, "target_amount": 700}]
    bills = [{"assigned_doctor": "Dr. Rao", "amount_paid": 0.1}, {"assigned_doctor": "Dr. Rao", "amount_paid": 0.2}]
    [row] = summarize_performance(targets, bills, doctors, target_ref="doctor_id", bill_ref="assigned_doctor")
    assert row["id"] == "d1"
    assert row["achieved"] == 0.3
    assert row["remaining"] == 699.7


def test_revenue_totals():
    bills = [
        {"total_amount": 1180, "amount_paid": 500},
        {"total_amount": 200, "amount_paid": 200},
        {"total_amount": "bad", "amount_paid": None},
    ]
    assert revenue_totals(bills) == {"revenue": 700.0, "pending": 680.0}


def test_revenue_series_this_month_has_fifth_week():
    bills = [
        {"amount_paid": 100, "created_at": "2026-10-03T10:00:00"},
        {"amount_paid": 50, "created_at": "2026-10-30T10:00:00"},
        {"amount_paid": 999, "created_at": "2026-09-30T10:00:00"},
    ]
    series = revenue_series(bills, "ThisMonth", datetime(2026, 10, 31))
    assert series["labels"] == ["Week 1", "Week 2", "Week 3", "Week 4", "Week 5"]
    assert series["data"] == [100.0, 0.0, 0.0, 0.0, 50.0]


def test_revenue_series_this_year_and_quarter():
    bills = [
        {"amount_paid": 10, "created_at": "2026-01-10T10:00:00"},
        {"amount_paid": 20, "created_at": "2026-10-10T10:00:00"},
    ]
    year = revenue_series(bills, "ThisYear", NOW)
    assert year["labels"][0] == "Jan" and year["labels"][-1] == "Oct"
    assert year["data"][0] == 10.0 and year["data"][9] == 20.0

    quarter = revenue_series(bills, "ThisQuarter", NOW)
    assert quarter == {"labels": ["Oct", "Nov", "Dec"], "data": [20.0, 0.0, 0.0]}


def test_revenue_series_half_year_and_week():
    bills = [
        {"amount_paid": 5, "created_at": "2026-05-02T10:00:00"},
        {"amount_paid": 7, "created_at": "2026-10-12T08:00:00"},
    ]
    half = revenue_series(bills, "HalfYear", NOW)
    assert half["labels"] == ["May", "Jun", "Jul", "Aug", "Sep", "Oct"]
    assert half["data"] == [5.0, 0.0, 0.0, 0.0, 0.0, 7.0]

    week = revenue_series(bills, "ThisWeek", NOW)
    assert week["data"][0] == 7.0


def test_revenue_series_buckets_in_the_zone_of_now():
    ist = timezone(timedelta(hours=5, minutes=30))
    now = datetime(2026, 11, 5, 10, 0, tzinfo=ist)
    bills = [{"amount_paid": 300, "created_at": "2026-10-31T20:00:00Z"}]
    assert revenue_series(bills, "ThisMonth", now)["data"] == [300.0, 0.0, 0.0, 0.0, 0.0]
    assert revenue_series(bills, "LastMonth", now)["data"] == [0.0] * 5


def test_revenue_series_unknown_period_is_empty():
    assert revenue_series([{"amount_paid": 1, "created_at": "2026-10-10"}], "Forever", NOW) == {"labels": [], "data": []}


@pytest.mark.parametrize("achieved, target, expected", [
    (50, 200, 25.0),
    (300, 200, 150.0),
    (10, 0, 0.0),
    (10, None, 0.0),
])
def test_target_progress(achieved, target, expected):
    assert target_progress(achieved, target) == expected


def test_client_packages_rows():
    bills = [
        {"_id": "x1", "client_name": "Jane Doe", "services": "Laser hair removal", "total_sessions": 6,
         "sessions_completed": 2, "total_amount": 1180, "amount_paid": 500},
        {"_id": "x2", "client_name": "Neha Sharma", "services": "Slim Fit", "total_sessions": "oops",
         "sessions_completed": None, "total_amount": "bad", "amount_paid": 100},
        {"_id": "x3", "client_name": "jane austen", "total_sessions": 3, "sessions_completed": 3,
         "total_amount": 0.1, "amount_paid": 0.3},
    ]
    rows = client_packages(bills)

    assert [r["id"] for r in rows] == ["x1", "x2", "x3"]
    assert rows[0] == {
        "id": "x1", "client_name": "Jane Doe", "package": "Laser hair removal", "total_sessions": 6,
        "sessions_completed": 2, "pending_sessions": 4, "total_amount": 1180.0, "amount_paid": 500.0,
        "balance": 680.0,
    }
    assert (rows[1]["total_sessions"], rows[1]["pending_sessions"], rows[1]["balance"]) == (0, 0, -100.0)
    assert rows[2]["package"] == ""
    assert rows[2]["balance"] == -0.2


def test_client_packages_name_filter():
    bills = [{"client_name": "Jane Doe"}, {"client_name": "Neha"}, {"client_name": "JANE Austen"}, {}]
    assert [r["client_name"] for r in client_packages(bills, "jane")] == ["Jane Doe", "JANE Austen"]
    assert len(client_packages(bills, "")) == 4
