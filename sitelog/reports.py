from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any, Iterable

from sitelog.notifiers.base import Notification
from sitelog.store import ROLE_FILLER, STATUS_ACTIVE, SiteLogStore
from sitelog.workdays import JS_WEEKDAY_NAMES, WorkCalendar, date_range, js_weekday


log = logging.getLogger("sitelog.reports")

MAX_BATCH_DAYS = 366
STATUS_ALL = "all"


def _mask_phone(value: str) -> str:
    text = str(value or "").strip()
    if not text:
        return ""
    if len(text) < 7:
        return "*" * len(text)
    return text[:4] + "*" * (len(text) - 7) + text[-3:]


def _project_brief(project: dict[str, Any]) -> dict[str, Any]:
    return {
        "projectSeqNo": project["seqNo"],
        "projectName": project["shortName"] or project["fullName"],
        "fullName": project["fullName"],
        "contractor": project["contractor"],
        "dept": project["dept"],
    }


class ReportAggregator:
    def __init__(self, store: SiteLogStore, calendar: WorkCalendar) -> None:
        self._store = store
        self._calendar = calendar

    def tomorrow(self) -> date:
        return self._store.today() + timedelta(days=1)

    def unfilled_projects_for(self, d: date) -> list[dict[str, Any]]:
        """Active projects with no log for ``d``, minus projects marked non-working that day."""
        overrides = self._store.holiday_overrides()
        logged = self._store.logged_keys()
        key = d.isoformat()
        out: list[dict[str, Any]] = []
        for project in self._store.list_projects(status=STATUS_ACTIVE):
            seq_no = project["seqNo"]
            if (seq_no, key) in logged:
                continue
            if self._calendar.is_project_non_working(d, seq_no, overrides):
                continue
            info = self._calendar.resolve(d, project_seq_no=seq_no, overrides=overrides)
            entry = _project_brief(project)
            entry.update({"date": key, "isHoliday": info["isHoliday"], "holidayRemark": info["remark"]})
            out.append(entry)
        return out

    def unfilled_count(self, d: date) -> int:
        return len(self.unfilled_projects_for(d))

    def daily_summary(
        self,
        d: date,
        *,
        filter_status: str = "",
        filter_dept: str = "",
        filter_inspector: str = "",
        guest: bool = False,
        allowed_projects: Iterable[str] | None = None,
    ) -> dict[str, Any]:
        status = str(filter_status or STATUS_ACTIVE).strip()
        dept = str(filter_dept or "").strip()
        inspector = str(filter_inspector or "").strip()
        allowed = None if allowed_projects is None else {str(x) for x in allowed_projects}

        names = self._store.inspector_names()
        logs = {row["projectSeqNo"]: row for row in self._store.list_logs(log_date=d)}
        holiday = self._calendar.resolve(d)

        rows: list[dict[str, Any]] = []
        for project in self._store.list_projects():
            seq_no = project["seqNo"]
            if status != STATUS_ALL and project["projectStatus"] != status:
                continue
            if dept and project["dept"] != dept:
                continue
            if allowed is not None and seq_no not in allowed:
                continue
            entry = logs.get(seq_no)
            inspector_ids = entry["inspectorIds"] if entry else project["defaultInspectors"]
            if inspector and inspector not in inspector_ids and inspector not in {names.get(i) for i in inspector_ids}:
                continue

            row = _project_brief(project)
            row.update(
                {
                    "projectStatus": project["projectStatus"],
                    "statusRemark": project["statusRemark"],
                    "address": project["address"],
                    "respName": project["respName"],
                    "respPhone": _mask_phone(project["respPhone"]) if guest else project["respPhone"],
                    "safetyOfficer": project["safetyOfficer"],
                    "safetyPhone": _mask_phone(project["safetyPhone"]) if guest else project["safetyPhone"],
                    "hasFilled": entry is not None,
                    "isHolidayNoWork": bool(entry and entry["isHolidayNoWork"]),
                    "isHolidayWork": bool(entry and entry["isHolidayWork"]),
                    "workersCount": entry["workersCount"] if entry else 0,
                    "inspectors": [{"id": i, "name": names.get(i, i)} for i in inspector_ids],
                    "inspectorNames": "、".join(names.get(i, i) for i in inspector_ids),
                    "workItems": entry["workItems"] if entry else [],
                    "filledBy": "" if guest or not entry else entry["filledBy"],
                    "updatedAt": entry["updatedAt"] if entry else "",
                }
            )
            rows.append(row)

        rows.sort(key=lambda r: r["projectSeqNo"])
        filled = [r for r in rows if r["hasFilled"]]
        return {
            "date": d.isoformat(),
            "isHoliday": holiday["isHoliday"],
            "holidayRemark": holiday["remark"],
            "rows": rows,
            "summary": {
                "total": len(rows),
                "filled": len(filled),
                "unfilled": len(rows) - len(filled),
                "holidayNoWork": sum(1 for r in filled if r["isHolidayNoWork"]),
                "totalWorkers": sum(int(r["workersCount"]) for r in filled),
            },
        }

    def filled_dates(self, project_seq_no: str | None = None) -> dict[str, list[str]]:
        out: dict[str, set[str]] = {}
        for seq_no, day in self._store.logged_keys():
            if project_seq_no and seq_no != str(project_seq_no):
                continue
            out.setdefault(seq_no, set()).add(day)
        return {seq_no: sorted(days) for seq_no, days in sorted(out.items())}

    def daily_log_status(self, start: date, end: date) -> list[dict[str, Any]]:
        if end < start:
            raise ValueError("invalid_date_range")
        if (end - start).days >= MAX_BATCH_DAYS:
            raise ValueError("date_range_too_long")
        overrides = self._store.holiday_overrides()
        logged = self._store.logged_keys()
        active = [p["seqNo"] for p in self._store.list_projects(status=STATUS_ACTIVE)]

        out: list[dict[str, Any]] = []
        for d in date_range(start, end):
            key = d.isoformat()
            info = self._calendar.resolve(d, overrides=overrides)
            required = [s for s in active if not self._calendar.is_project_non_working(d, s, overrides)]
            filled = sum(1 for s in required if (s, key) in logged)
            out.append(
                {
                    "date": key,
                    "weekday": JS_WEEKDAY_NAMES[js_weekday(d)],
                    "isHoliday": info["isHoliday"],
                    "remark": info["remark"],
                    "activeProjects": len(required),
                    "filled": filled,
                    "unfilled": len(required) - filled,
                    "complete": filled >= len(required),
                }
            )
        return out

    def filler_reminders(self, managed_projects: Iterable[str]) -> dict[str, Any]:
        managed = {str(x) for x in managed_projects}
        today = self._store.today()
        tomorrow = today + timedelta(days=1)
        due_tomorrow = [p for p in self.unfilled_projects_for(tomorrow) if p["projectSeqNo"] in managed]
        # A missing log for today only matters on a working day.
        due_today = [
            p for p in self.unfilled_projects_for(today) if p["projectSeqNo"] in managed and not p["isHoliday"]
        ]
        return {
            "today": {"date": today.isoformat(), "projects": due_today},
            "tomorrow": {"date": tomorrow.isoformat(), "projects": due_tomorrow},
            "total": len(due_today) + len(due_tomorrow),
        }

    def holiday_filled_status(self, d: date, project_seq_nos: Iterable[str] | None = None) -> list[dict[str, Any]]:
        wanted = None if project_seq_nos is None else [str(x) for x in project_seq_nos]
        projects = {p["seqNo"]: p for p in self._store.list_projects()}
        if wanted is None:
            wanted = [s for s, p in projects.items() if p["projectStatus"] == STATUS_ACTIVE]
        logs = {row["projectSeqNo"]: row for row in self._store.list_logs(log_date=d)}
        info = self._calendar.resolve(d)
        out: list[dict[str, Any]] = []
        for seq_no in wanted:
            project = projects.get(seq_no)
            if project is None:
                raise ValueError("project_not_found")
            entry = logs.get(seq_no)
            out.append(
                {
                    "projectSeqNo": seq_no,
                    "projectName": project["shortName"] or project["fullName"],
                    "date": d.isoformat(),
                    "isHoliday": info["isHoliday"],
                    "hasFilled": entry is not None,
                    "isHolidayNoWork": bool(entry and entry["isHolidayNoWork"]),
                }
            )
        return out

    def batch_submit_holiday_logs(
        self,
        *,
        start: date,
        end: date,
        target_days: Iterable[int],
        project_seq_nos: Iterable[str],
        filled_by: str,
    ) -> dict[str, Any]:
        """Create holiday-no-work logs on every matching weekday; existing logs are left alone."""
        if end < start:
            raise ValueError("invalid_date_range")
        if (end - start).days >= MAX_BATCH_DAYS:
            raise ValueError("date_range_too_long")
        try:
            days = {int(x) for x in target_days}
        except (TypeError, ValueError) as exc:
            raise ValueError("invalid_target_days") from exc
        if not days or any(x < 0 or x > 6 for x in days):
            raise ValueError("invalid_target_days")
        projects = list(dict.fromkeys(str(x).strip() for x in project_seq_nos if str(x).strip()))
        if not projects:
            raise ValueError("projects_required")
        for seq_no in projects:
            if self._store.get_project(seq_no) is None:
                raise ValueError("project_not_found")

        dates = [d for d in date_range(start, end) if js_weekday(d) in days]
        pairs = [(seq_no, d) for d in dates for seq_no in projects]
        created = self._store.create_holiday_logs(pairs, filled_by=filled_by)
        log.info("Holiday batch %s..%s: created=%s skipped=%s", start, end, len(created), len(pairs) - len(created))
        return {
            "created": len(created),
            "skipped": len(pairs) - len(created),
            "dates": [d.isoformat() for d in dates],
            "createdEntries": [{"projectSeqNo": s, "date": day} for s, day in created],
        }

    def reminder_notifications(self) -> list[Notification]:
        """One notice per filler with managed projects still unfilled for tomorrow."""
        tomorrow = self.tomorrow()
        unfilled = {p["projectSeqNo"]: p for p in self.unfilled_projects_for(tomorrow)}
        out: list[Notification] = []
        for user in self._store.list_users():
            if user["role"] != ROLE_FILLER or not user["email"]:
                continue
            due = [unfilled[s] for s in user["managedProjects"] if s in unfilled]
            if not due:
                continue
            lines = [f"- {p['projectSeqNo']} {p['projectName']}（{p['contractor']}）" for p in due]
            out.append(
                Notification(
                    title=f"施工日誌填報提醒 {tomorrow.isoformat()}",
                    message=f"{user['name']} 您好：\n\n以下工程尚未填寫 {tomorrow.isoformat()} 的施工日誌：\n" + "\n".join(lines),
                    recipients=(user["email"],),
                    cc=(user["supervisorEmail"],) if user["supervisorEmail"] else (),
                )
            )
        return out
