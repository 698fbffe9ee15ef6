from __future__ import annotations

import base64
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable

try:
    import gspread  # type: ignore
except Exception:  # pragma: no cover - optional for local tests
    gspread = None


log = logging.getLogger("sitelog.sheets")

# Row 1 of every sheet holds the header, so the first record lives on row 2.
FIRST_DATA_ROW = 2

SHEETS_SCHEMA: dict[str, list[str]] = {
    "Users": [
        "user_id",
        "account",
        "email",
        "name",
        "dept",
        "role",
        "managed_projects_json",
        "supervisor_email",
        "password_hash",
        "version",
        "created_at",
        "updated_at",
        "last_login_at",
    ],
    "Projects": [
        "seq_no",
        "short_name",
        "full_name",
        "contractor",
        "dept",
        "address",
        "gps",
        "resp_name",
        "resp_phone",
        "safety_officer",
        "safety_phone",
        "status",
        "status_remark",
        "default_inspectors_json",
        "version",
        "updated_at",
    ],
    "Inspectors": [
        "inspector_id",
        "name",
        "title",
        "dept",
        "phone",
        "is_active",
    ],
    "DailyLogs": [
        "log_id",
        "log_date",
        "project_seq_no",
        "is_holiday_no_work",
        "is_holiday_work",
        "inspector_ids_json",
        "workers_count",
        "work_items_json",
        "filled_by",
        "created_at",
        "updated_at",
    ],
    "Holidays": [
        "date",
        "project_seq_no",
        "is_holiday",
        "remark",
        "updated_by",
        "updated_at",
    ],
    "DisasterTypes": [
        "category",
        "type_label",
        "is_custom",
        "created_at",
    ],
    "ModificationLogs": [
        "log_id",
        "timestamp",
        "modified_by",
        "type",
        "project_seq_no",
        "old_data",
        "new_data",
        "reason",
        "action_type",
    ],
}


class StorageError(RuntimeError):
    pass


class BaseTableGateway:
    """Row-level access to one spreadsheet.

    ``row_index`` arguments are sheet row numbers (header is row 1).
    """

    def read_rows(self, tab: str) -> list[dict[str, str]]:  # pragma: no cover - interface
        raise NotImplementedError

    def append_row(self, tab: str, row: dict[str, str]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def append_rows(self, tab: str, rows: list[dict[str, str]]) -> None:
        for row in rows:
            self.append_row(tab, row)

    def update_row(self, tab: str, row_index: int, row: dict[str, str]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def delete_row(self, tab: str, row_index: int) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class MemoryTableGateway(BaseTableGateway):
    def __init__(self) -> None:
        self._rows: dict[str, list[dict[str, str]]] = {tab: [] for tab in SHEETS_SCHEMA}

    def _position(self, tab: str, row_index: int) -> int:
        pos = int(row_index) - FIRST_DATA_ROW
        if pos < 0 or pos >= len(self._rows[tab]):
            raise StorageError(f"row_out_of_range: {tab}!{row_index}")
        return pos

    def read_rows(self, tab: str) -> list[dict[str, str]]:
        return [dict(row) for row in self._rows[tab]]

    def append_row(self, tab: str, row: dict[str, str]) -> None:
        headers = SHEETS_SCHEMA[tab]
        self._rows[tab].append({h: str(row.get(h, "")) for h in headers})

    def update_row(self, tab: str, row_index: int, row: dict[str, str]) -> None:
        headers = SHEETS_SCHEMA[tab]
        self._rows[tab][self._position(tab, row_index)] = {h: str(row.get(h, "")) for h in headers}

    def delete_row(self, tab: str, row_index: int) -> None:
        del self._rows[tab][self._position(tab, row_index)]


def _is_transient(exc: Exception) -> bool:
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status in {429, 500, 502, 503, 504}


class GoogleSheetsGateway(BaseTableGateway):
    def __init__(self, spreadsheet_id: str, credentials_path: str, *, attempts: int = 3, backoff_seconds: float = 1.0) -> None:
        if gspread is None:
            raise StorageError("gspread is not installed")

        self._attempts = max(1, int(attempts))
        self._backoff = float(backoff_seconds)
        self._client = gspread.service_account(filename=credentials_path)
        self._book = self._call(self._client.open_by_key, spreadsheet_id)
        self._ensure_tabs()

    def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        delay = self._backoff
        for attempt in range(1, self._attempts + 1):
            try:
                return fn(*args, **kwargs)
            except gspread.exceptions.APIError as exc:
                if attempt >= self._attempts or not _is_transient(exc):
                    raise StorageError(f"sheets_api_error: {exc}") from exc
                log.warning("Sheets API transient error (attempt %s/%s): %s", attempt, self._attempts, exc)
                time.sleep(delay)
                delay *= 2
        raise StorageError("sheets_api_unreachable")  # pragma: no cover

    def _ensure_tabs(self) -> None:
        sheets = {ws.title: ws for ws in self._call(self._book.worksheets)}
        for tab, headers in SHEETS_SCHEMA.items():
            ws = sheets.get(tab)
            if ws is None:
                ws = self._call(self._book.add_worksheet, title=tab, rows=2000, cols=max(8, len(headers)))
            current_header = self._call(ws.row_values, 1)
            if current_header != headers:
                self._call(ws.update, "A1", [headers])

    def _ws(self, tab: str):
        return self._call(self._book.worksheet, tab)

    def read_rows(self, tab: str) -> list[dict[str, str]]:
        ws = self._ws(tab)
        headers = SHEETS_SCHEMA[tab]
        values = self._call(ws.get_all_values)
        if not values:
            self._call(ws.update, "A1", [headers])
            return []
        rows: list[dict[str, str]] = []
        # Blank lines still occupy a sheet row; keep them so row numbers stay aligned.
        for line in values[1:]:
            normalized = list(line) + [""] * (len(headers) - len(line))
            rows.append({headers[i]: str(normalized[i]) for i in range(len(headers))})
        while rows and not any(v.strip() for v in rows[-1].values()):
            rows.pop()
        return rows

    def append_row(self, tab: str, row: dict[str, str]) -> None:
        ws = self._ws(tab)
        headers = SHEETS_SCHEMA[tab]
        self._call(ws.append_row, [str(row.get(h, "")) for h in headers], value_input_option="RAW")

    def append_rows(self, tab: str, rows: list[dict[str, str]]) -> None:
        if not rows:
            return
        ws = self._ws(tab)
        headers = SHEETS_SCHEMA[tab]
        self._call(ws.append_rows, [[str(r.get(h, "")) for h in headers] for r in rows], value_input_option="RAW")

    def update_row(self, tab: str, row_index: int, row: dict[str, str]) -> None:
        ws = self._ws(tab)
        headers = SHEETS_SCHEMA[tab]
        self._call(ws.update, f"A{int(row_index)}", [[str(row.get(h, "")) for h in headers]])

    def delete_row(self, tab: str, row_index: int) -> None:
        ws = self._ws(tab)
        self._call(ws.delete_rows, int(row_index))


def resolve_google_credentials_path() -> str:
    existing = (os.getenv("GOOGLE_APPLICATION_CREDENTIALS", "") or "").strip()
    if existing:
        p = Path(existing)
        if p.exists():
            return str(p)

    b64 = (os.getenv("GOOGLE_SERVICE_ACCOUNT_JSON_BASE64", "") or "").strip()
    if not b64:
        raise StorageError("Google credentials are missing. Set GOOGLE_APPLICATION_CREDENTIALS or GOOGLE_SERVICE_ACCOUNT_JSON_BASE64")

    target = Path(tempfile.gettempdir()) / "sitelog-google-service-account.json"
    target.write_bytes(base64.b64decode(b64))
    os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = str(target)
    return str(target)
