from __future__ import annotations

import calendar
import logging
from datetime import date, timedelta
from typing import TYPE_CHECKING, Any, Iterable

try:
    import holidays as holidays_lib  # type: ignore
except Exception:  # pragma: no cover - optional for local tests
    holidays_lib = None

if TYPE_CHECKING:
    from sitelog.store import SiteLogStore


log = logging.getLogger("sitelog.workdays")

SOURCE_PROJECT = "project"
SOURCE_OVERRIDE = "override"
SOURCE_NATIONAL = "national"
SOURCE_WEEKEND = "weekend"
SOURCE_WORKDAY = "workday"

WEEKEND_REMARK = "週末"
JS_WEEKDAY_NAMES = ["日", "一", "二", "三", "四", "五", "六"]


def js_weekday(d: date) -> int:
    """Weekday with Sunday as 0, the numbering browser clients use."""
    return (d.weekday() + 1) % 7


def date_range(start: date, end: date) -> list[date]:
    if end < start:
        return []
    days = (end - start).days
    return [start + timedelta(days=i) for i in range(days + 1)]


def month_bounds(year: int, month: int) -> tuple[date, date]:
    last = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last)


class WorkCalendar:
    """Decides whether a date requires a daily log.

    Resolution order: project-scoped override, global override, national
    holiday, configured non-working weekday.
    """

    def __init__(self, store: "SiteLogStore", *, country: str = "TW", non_working_weekdays: Iterable[int] = (0, 6)) -> None:
        self._store = store
        self._country = country
        self._non_working = frozenset(int(x) for x in non_working_weekdays)
        self._national: dict[int, dict[date, str]] = {}

    def _national_for_year(self, year: int) -> dict[date, str]:
        cached = self._national.get(year)
        if cached is not None:
            return cached
        out: dict[date, str] = {}
        if holidays_lib is not None and self._country:
            try:
                for dt, name in holidays_lib.country_holidays(self._country, years=[year]).items():
                    out[dt] = str(name)
            except NotImplementedError:
                log.warning("No national holiday data for country %s", self._country)
        self._national[year] = out
        return out

    def resolve(self, d: date, *, project_seq_no: str = "", overrides: dict[tuple[str, str], dict[str, Any]] | None = None) -> dict[str, Any]:
        table = overrides if overrides is not None else self._store.holiday_overrides()
        key = d.isoformat()
        if project_seq_no:
            hit = table.get((key, str(project_seq_no)))
            if hit is not None:
                return {"date": key, "isHoliday": bool(hit["is_holiday"]), "remark": hit["remark"], "source": SOURCE_PROJECT}
        hit = table.get((key, ""))
        if hit is not None:
            return {"date": key, "isHoliday": bool(hit["is_holiday"]), "remark": hit["remark"], "source": SOURCE_OVERRIDE}
        name = self._national_for_year(d.year).get(d)
        if name:
            return {"date": key, "isHoliday": True, "remark": name, "source": SOURCE_NATIONAL}
        if js_weekday(d) in self._non_working:
            return {"date": key, "isHoliday": True, "remark": WEEKEND_REMARK, "source": SOURCE_WEEKEND}
        return {"date": key, "isHoliday": False, "remark": "", "source": SOURCE_WORKDAY}

    def is_project_non_working(self, d: date, project_seq_no: str, overrides: dict[tuple[str, str], dict[str, Any]] | None = None) -> bool:
        """True only for an explicit project-scoped non-working override."""
        table = overrides if overrides is not None else self._store.holiday_overrides()
        hit = table.get((d.isoformat(), str(project_seq_no)))
        return bool(hit and hit["is_holiday"])

    def month(self, year: int, month: int) -> dict[str, dict[str, Any]]:
        if not 1 <= int(month) <= 12:
            raise ValueError("invalid_month")
        start, end = month_bounds(int(year), int(month))
        overrides = self._store.holiday_overrides()
        out: dict[str, dict[str, Any]] = {}
        for d in date_range(start, end):
            info = self.resolve(d, overrides=overrides)
            out[d.isoformat()] = {
                "isHoliday": info["isHoliday"],
                "remark": info["remark"],
                "source": info["source"],
                "weekday": JS_WEEKDAY_NAMES[js_weekday(d)],
            }
        return out
