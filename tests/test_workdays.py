from __future__ import annotations

from datetime import date

import pytest

from sitelog.sheets import MemoryTableGateway
from sitelog.store import SiteLogStore
from sitelog.workdays import (
    SOURCE_NATIONAL,
    SOURCE_OVERRIDE,
    SOURCE_PROJECT,
    SOURCE_WEEKEND,
    SOURCE_WORKDAY,
    WorkCalendar,
    date_range,
    js_weekday,
    month_bounds,
)


def _calendar() -> tuple[SiteLogStore, WorkCalendar]:
    store = SiteLogStore(MemoryTableGateway(), bootstrap_admin={"account": "admin", "password": "ChangeMe123!"})
    store.create_project({"seqNo": "P001", "shortName": "工程"})
    return store, WorkCalendar(store, country="TW", non_working_weekdays=(0, 6))


def test_weekday_helpers() -> None:
    assert js_weekday(date(2024, 6, 16)) == 0
    assert js_weekday(date(2024, 6, 15)) == 6
    assert js_weekday(date(2024, 6, 10)) == 1
    assert len(date_range(date(2024, 6, 10), date(2024, 6, 16))) == 7
    assert date_range(date(2024, 6, 16), date(2024, 6, 10)) == []
    assert month_bounds(2024, 2) == (date(2024, 2, 1), date(2024, 2, 29))


def test_resolution_order() -> None:
    store, calendar = _calendar()

    assert calendar.resolve(date(2024, 6, 12))["source"] == SOURCE_WORKDAY
    assert calendar.resolve(date(2024, 6, 15))["source"] == SOURCE_WEEKEND
    new_year = calendar.resolve(date(2024, 1, 1))
    assert new_year["source"] == SOURCE_NATIONAL
    assert new_year["isHoliday"] is True

    store.set_holiday(day=date(2024, 6, 12), is_holiday=True, remark="颱風假")
    info = calendar.resolve(date(2024, 6, 12))
    assert (info["source"], info["isHoliday"], info["remark"]) == (SOURCE_OVERRIDE, True, "颱風假")

    store.set_holiday(day=date(2024, 6, 15), is_holiday=False, remark="趕工", project_seq_no="P001")
    assert calendar.resolve(date(2024, 6, 15))["isHoliday"] is True
    project_view = calendar.resolve(date(2024, 6, 15), project_seq_no="P001")
    assert (project_view["source"], project_view["isHoliday"]) == (SOURCE_PROJECT, False)
    assert calendar.is_project_non_working(date(2024, 6, 15), "P001") is False


def test_month_listing() -> None:
    _, calendar = _calendar()
    month = calendar.month(2024, 6)
    assert len(month) == 30
    assert month["2024-06-15"]["isHoliday"] is True
    assert month["2024-06-15"]["weekday"] == "六"
    assert month["2024-06-12"]["isHoliday"] is False

    with pytest.raises(ValueError, match="invalid_month"):
        calendar.month(2024, 13)
