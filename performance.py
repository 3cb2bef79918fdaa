"""
Target-vs-achieved reporting over staff / doctor targets and bills.

Everything here works on plain documents (dicts) as they come out of the
database or the list endpoints, and never raises on malformed amounts: a bad
number contributes nothing instead of failing the whole report.
"""
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Iterable, List, Mapping, Optional, Sequence, Union

from dateutil.relativedelta import relativedelta

from billing import round2
from schemas import HOUSE_SALE

logger = logging.getLogger(__name__)

MONTH_LABELS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
WEEKDAY_LABELS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


class DateRange(str, Enum):
    ALL_TIME = "AllTime"
    THIS_MONTH = "ThisMonth"
    LAST_MONTH = "LastMonth"
    THIS_QUARTER = "ThisQuarter"
    HALF_YEAR = "HalfYear"
    THIS_YEAR = "ThisYear"

    @classmethod
    def parse(cls, value) -> "DateRange":
        """Unknown or missing values mean no filtering."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.ALL_TIME


# ---------- Assignee references ----------
@dataclass(frozen=True)
class AssigneeName:
    name: str


@dataclass(frozen=True)
class HouseSale:
    """A bill credited to the clinic rather than to a staff member."""
    label: str = HOUSE_SALE


def resolve_assignee(name) -> Optional[Union[AssigneeName, HouseSale]]:
    if not isinstance(name, str) or not name:
        return None
    if name == HOUSE_SALE:
        return HouseSale()
    return AssigneeName(name)


# ---------- Numbers and timestamps ----------
def as_number(value) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip())
        except ValueError:
            return None
    if not math.isfinite(number):
        return None
    return number


def parse_timestamp(value, now: Optional[datetime] = None) -> Optional[datetime]:
    """datetime or ISO-8601 string -> datetime in the same frame as `now`.

    Aware timestamps are converted to `now`'s zone, or to the local zone when
    `now` is naive, and returned naive so the calendar comparisons below see
    local wall-clock dates.
    """
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, date):
        ts = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if ts.tzinfo is not None:
        if now is not None and now.tzinfo is not None:
            ts = ts.astimezone(now.tzinfo)
        else:
            ts = ts.astimezone()
        ts = ts.replace(tzinfo=None)
    return ts


def _local_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now()
    if now.tzinfo is not None:
        return now.replace(tzinfo=None)
    return now


def quarter_bounds(now: datetime):
    quarter_start = date(now.year, (now.month - 1) // 3 * 3 + 1, 1)
    quarter_end = quarter_start + relativedelta(months=3) - timedelta(days=1)
    return quarter_start, quarter_end


def in_window(timestamp, date_range, now: Optional[datetime] = None) -> bool:
    date_range = DateRange.parse(date_range)
    if date_range is DateRange.ALL_TIME:
        return True

    ts = parse_timestamp(timestamp, now)
    if ts is None:
        return False
    now = _local_now(now)

    if date_range is DateRange.THIS_MONTH:
        return (ts.year, ts.month) == (now.year, now.month)
    if date_range is DateRange.LAST_MONTH:
        last = now - relativedelta(months=1)
        return (ts.year, ts.month) == (last.year, last.month)
    if date_range is DateRange.THIS_QUARTER:
        start, end = quarter_bounds(now)
        return start <= ts.date() <= end
    if date_range is DateRange.HALF_YEAR:
        return ts > now - relativedelta(months=6)
    if date_range is DateRange.THIS_YEAR:
        return ts.year == now.year
    return True


def filter_by_window(records: Iterable[Mapping], date_range, now: Optional[datetime] = None,
                     field: str = "created_at") -> List[Mapping]:
    return [r for r in records if in_window(r.get(field), date_range, now)]


# ---------- Aggregation ----------
def _ref_id(value) -> Optional[str]:
    # A populated reference arrives as {"id": ..., "name": ...}
    if isinstance(value, Mapping):
        value = value.get("id", value.get("_id"))
    if value is None:
        return None
    return str(value)


def _entry_id(entry: Mapping) -> Optional[str]:
    return _ref_id(entry.get("id", entry.get("_id")))


def summarize_performance(
    targets: Sequence[Mapping],
    bills: Sequence[Mapping],
    directory: Sequence[Mapping],
    date_range=DateRange.ALL_TIME,
    name_filter: str = "",
    *,
    target_ref: str = "staff_id",
    bill_ref: str = "assigned_staff",
    now: Optional[datetime] = None,
) -> List[dict]:
    """Per-assignee target, achieved and remaining amounts.

    Targets are attributed by id (`target_ref`), bills by the exact assignee
    name stored on the bill (`bill_ref`). Bills naming nobody in the
    directory, house sales included, count toward no one. Rows come back in
    directory order, zero rows included.
    """
    targets = filter_by_window(targets, date_range, now)
    bills = filter_by_window(bills, date_range, now)

    rows = []
    by_id = {}
    by_name = {}
    for entry in directory:
        row = {"id": _entry_id(entry), "name": entry.get("name") or "", "target": 0.0, "achieved": 0.0}
        rows.append(row)
        if row["id"] is not None:
            by_id.setdefault(row["id"], row)
        by_name.setdefault(row["name"], row)

    for target in targets:
        row = by_id.get(_ref_id(target.get(target_ref)))
        amount = as_number(target.get("target_amount"))
        if row is None or amount is None:
            continue
        row["target"] += amount

    unattributed = 0
    for bill in bills:
        assignee = resolve_assignee(bill.get(bill_ref))
        row = by_name.get(assignee.name) if isinstance(assignee, AssigneeName) else None
        if row is None:
            unattributed += 1
            continue
        row["achieved"] += as_number(bill.get("amount_paid")) or 0.0

    if unattributed:
        logger.debug(f"{unattributed} bill(s) not attributed to any assignee")

    needle = (name_filter or "").lower()
    result = []
    for row in rows:
        if needle and needle not in row["name"].lower():
            continue
        row["target"] = round2(row["target"])
        row["achieved"] = round2(row["achieved"])
        row["remaining"] = round2(row["target"] - row["achieved"])
        result.append(row)
    return result


def _count(value):
    number = as_number(value) or 0
    return int(number) if float(number).is_integer() else number


def client_packages(bills: Iterable[Mapping], name_filter: str = "") -> List[dict]:
    """One row per bill: a client's package with sessions and money outstanding.

    Rows keep bill order; `name_filter` matches the client name
    case-insensitively.
    """
    needle = (name_filter or "").lower()
    rows = []
    for bill in bills:
        client_name = bill.get("client_name") or ""
        if needle and needle not in client_name.lower():
            continue
        total_sessions = _count(bill.get("total_sessions"))
        completed = _count(bill.get("sessions_completed"))
        total_amount = as_number(bill.get("total_amount")) or 0.0
        paid = as_number(bill.get("amount_paid")) or 0.0
        rows.append({
            "id": _entry_id(bill),
            "client_name": client_name,
            "package": bill.get("services") or "",
            "total_sessions": total_sessions,
            "sessions_completed": completed,
            "pending_sessions": total_sessions - completed,
            "total_amount": round2(total_amount),
            "amount_paid": round2(paid),
            "balance": round2(total_amount - paid),
        })
    return rows


# ---------- Dashboard ----------
def revenue_totals(bills: Iterable[Mapping]) -> dict:
    revenue = 0.0
    pending = 0.0
    for bill in bills:
        paid = as_number(bill.get("amount_paid")) or 0.0
        total = as_number(bill.get("total_amount")) or 0.0
        revenue += paid
        pending += total - paid
    return {"revenue": round2(revenue), "pending": round2(pending)}


def _month_index(ts: datetime) -> int:
    return ts.year * 12 + ts.month - 1


def revenue_series(bills: Iterable[Mapping], period: str, now: Optional[datetime] = None) -> dict:
    """Amount paid per chart bucket for the dashboard's revenue chart.

    `period` is one of Today, ThisWeek, ThisMonth, LastMonth, ThisQuarter,
    HalfYear or ThisYear; anything else yields an empty chart.
    """
    reference = now
    now = _local_now(now)
    labels: List[str] = []
    bucket_of = None

    if period == "Today":
        labels = [f"{h % 12 or 12} {'AM' if h < 12 else 'PM'}" for h in range(24)]

        def bucket_of(ts):
            return ts.hour if ts.date() == now.date() else None

    elif period == "ThisWeek":
        labels = list(WEEKDAY_LABELS)
        week_start = now.date() - timedelta(days=now.weekday())

        def bucket_of(ts):
            offset = (ts.date() - week_start).days
            return offset if 0 <= offset < 7 else None

    elif period in ("ThisMonth", "LastMonth"):
        month = now if period == "ThisMonth" else now - relativedelta(months=1)
        labels = [f"Week {i}" for i in range(1, 6)]

        def bucket_of(ts):
            if (ts.year, ts.month) != (month.year, month.month):
                return None
            return math.ceil(ts.day / 7) - 1

    elif period == "ThisQuarter":
        start, _ = quarter_bounds(now)
        labels = [MONTH_LABELS[start.month - 1 + i] for i in range(3)]

        def bucket_of(ts):
            offset = _month_index(ts) - (start.year * 12 + start.month - 1)
            return offset if 0 <= offset < 3 else None

    elif period == "HalfYear":
        first = now - relativedelta(months=5)
        labels = [MONTH_LABELS[(first + relativedelta(months=i)).month - 1] for i in range(6)]

        def bucket_of(ts):
            offset = _month_index(ts) - _month_index(first)
            return offset if 0 <= offset < 6 else None

    elif period == "ThisYear":
        labels = MONTH_LABELS[: now.month]

        def bucket_of(ts):
            return ts.month - 1 if ts.year == now.year and ts.month <= now.month else None

    data = [0.0] * len(labels)
    if bucket_of is not None:
        for bill in bills:
            ts = parse_timestamp(bill.get("created_at"), reference)
            if ts is None:
                continue
            index = bucket_of(ts)
            if index is not None:
                data[index] += as_number(bill.get("amount_paid")) or 0.0

    return {"labels": labels, "data": [round2(v) for v in data]}


def target_progress(achieved, target) -> float:
    """Percentage of `target` reached; 0 when there is no positive target."""
    target = as_number(target)
    if not target or target <= 0:
        return 0.0
    return round2((as_number(achieved) or 0.0) / target * 100)
