from __future__ import annotations

import logging
import re
import uuid
from datetime import date
from pathlib import Path
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, Side

from sitelog.store import SiteLogStore


log = logging.getLogger("sitelog.tbm")

MODE_MERGED = "merged"
MODE_SEPARATE = "separate"
MODES = (MODE_MERGED, MODE_SEPARATE)

TITLE = "TBM-KY 工具箱會議暨危險預知活動紀錄"
ITEM_HEADERS = ["項次", "作業項目", "作業地點", "可能危害類型", "防災對策"]
COLUMN_WIDTHS = {"A": 8, "B": 30, "C": 20, "D": 26, "E": 40}

_thin = Side(style="thin")
_BORDER = Border(left=_thin, right=_thin, top=_thin, bottom=_thin)
_WRAP = Alignment(wrap_text=True, vertical="top")
_UNSAFE = re.compile(r"[\\/:*?\"<>|\s]+")


def _safe_name(text: str) -> str:
    return _UNSAFE.sub("_", str(text or "").strip()) or "unnamed"


class TbmGenerator:
    def __init__(self, store: SiteLogStore, output_dir: Path) -> None:
        self._store = store
        self._out = Path(output_dir)

    @property
    def output_dir(self) -> Path:
        return self._out

    def generate(self, d: date, project_seq_no: str, *, mode: str = MODE_MERGED) -> dict[str, Any]:
        mode = str(mode or MODE_MERGED).strip().lower()
        if mode not in MODES:
            raise ValueError("invalid_tbm_mode")
        project = self._store.get_project(project_seq_no)
        if project is None:
            raise ValueError("project_not_found")
        entry = self._store.get_log(project_seq_no, d)
        if entry is None:
            raise ValueError("log_not_found")
        if entry["isHolidayNoWork"]:
            raise ValueError("holiday_no_work_log")

        names = self._store.inspector_names()
        inspectors = [{"id": i, "name": names.get(i, i)} for i in dict.fromkeys(entry["inspectorIds"])]
        self._out.mkdir(parents=True, exist_ok=True)
        stem = f"TBM-KY_{_safe_name(project['seqNo'])}_{d.isoformat()}"

        files: list[dict[str, Any]] = []
        if mode == MODE_MERGED:
            path = self._out / f"{stem}.xlsx"
            self._write(path, project=project, entry=entry, d=d, inspectors=inspectors)
            files.append({"fileName": path.name, "path": str(path)})
        else:
            if not inspectors:
                raise ValueError("inspectors_required")
            # Display names can repeat; the inspector id keeps each file distinct.
            for inspector in inspectors:
                path = self._out / f"{stem}_{_safe_name(inspector['id'])}_{_safe_name(inspector['name'])}.xlsx"
                self._write(path, project=project, entry=entry, d=d, inspectors=[inspector])
                files.append(
                    {
                        "fileName": path.name,
                        "path": str(path),
                        "inspector": inspector["name"],
                        "inspectorId": inspector["id"],
                    }
                )

        log.info("Generated %s TBM-KY file(s) for %s on %s", len(files), project_seq_no, d)
        return {"mode": mode, "date": d.isoformat(), "projectSeqNo": project["seqNo"], "files": files}

    def _write(
        self,
        path: Path,
        *,
        project: dict[str, Any],
        entry: dict[str, Any],
        d: date,
        inspectors: list[dict[str, str]],
    ) -> None:
        wb = Workbook()
        ws = wb.active
        ws.title = "TBM-KY"
        for col, width in COLUMN_WIDTHS.items():
            ws.column_dimensions[col].width = width

        ws.merge_cells("A1:E1")
        ws["A1"] = TITLE
        ws["A1"].font = Font(bold=True, size=14)
        ws["A1"].alignment = Alignment(horizontal="center")

        info = [
            ("工程名稱", project["fullName"] or project["shortName"]),
            ("工程序號", project["seqNo"]),
            ("承攬廠商", project["contractor"]),
            ("日期", d.isoformat()),
            ("工地地址", project["address"]),
            ("工地負責人", f"{project['respName']} {project['respPhone']}".strip()),
            ("職安人員", f"{project['safetyOfficer']} {project['safetyPhone']}".strip()),
            ("檢查員", "、".join(i["name"] for i in inspectors)),
            ("出工人數", str(entry["workersCount"])),
            ("假日施工", "是" if entry["isHolidayWork"] else "否"),
        ]
        row = 3
        for label, value in info:
            ws.cell(row=row, column=1, value=label).font = Font(bold=True)
            ws.merge_cells(start_row=row, start_column=2, end_row=row, end_column=5)
            ws.cell(row=row, column=2, value=value)
            row += 1

        row += 1
        for col, header in enumerate(ITEM_HEADERS, start=1):
            cell = ws.cell(row=row, column=col, value=header)
            cell.font = Font(bold=True)
            cell.border = _BORDER
        for n, item in enumerate(entry["workItems"], start=1):
            row += 1
            values = [n, item["workItem"], item["workLocation"], "、".join(item["disasterTypes"]), item["countermeasures"]]
            for col, value in enumerate(values, start=1):
                cell = ws.cell(row=row, column=col, value=value)
                cell.border = _BORDER
                cell.alignment = _WRAP

        row += 2
        ws.cell(row=row, column=1, value="與會人員簽名").font = Font(bold=True)
        ws.merge_cells(start_row=row + 1, start_column=1, end_row=row + 4, end_column=5)
        wb.save(path)

    def check_permissions(self) -> dict[str, Any]:
        """Verify that documents can be written to the output directory."""
        marker = self._out / f".marker-{uuid.uuid4().hex}"
        try:
            self._out.mkdir(parents=True, exist_ok=True)
            marker.write_text("ok", encoding="utf-8")
            marker.unlink()
        except OSError as exc:
            log.warning("TBM output directory is not writable: %s", exc)
            return {"writable": False, "directory": str(self._out), "error": str(exc)}
        return {"writable": True, "directory": str(self._out)}
