from __future__ import annotations

import json
import logging
import threading
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable

from sitelog.auth import MIN_PASSWORD_LENGTH, hash_password, verify_password
from sitelog.config import Settings
from sitelog.sheets import (
    FIRST_DATA_ROW,
    BaseTableGateway,
    GoogleSheetsGateway,
    MemoryTableGateway,
    StorageError,
    resolve_google_credentials_path,
)


log = logging.getLogger("sitelog.store")

ROLE_ADMIN = "管理員"
ROLE_FILLER = "填表人"
ROLE_LIAISON = "聯絡員"
ROLES = (ROLE_ADMIN, ROLE_FILLER, ROLE_LIAISON)

STATUS_ACTIVE = "施工中"
STATUS_SUSPENDED = "停工"
STATUS_COMPLETED = "完工"
STATUS_DEREGISTERED = "解除列管"
PROJECT_STATUSES = (STATUS_ACTIVE, STATUS_SUSPENDED, STATUS_COMPLETED, STATUS_DEREGISTERED)

CUSTOM_DISASTER_CATEGORY = "自訂"
DEFAULT_DISASTER_TYPES: dict[str, list[str]] = {
    "墜落、滾落": ["墜落", "滾落"],
    "物體飛落、倒塌": ["物體飛落", "物體倒塌、崩塌"],
    "感電": ["感電"],
    "被夾、被捲": ["被夾", "被捲"],
    "被撞、衝撞": ["被撞", "衝撞"],
    "火災、爆炸": ["火災", "爆炸"],
    "其他": ["跌倒", "切割、擦傷", "與高溫低溫接觸", "與有害物接觸"],
}

MOD_TYPE_PROJECT = "工程資訊"
MOD_TYPE_DAILY_LOG = "施工日誌"

# camelCase API field -> sheet column
USER_FIELDS = {
    "account": "account",
    "email": "email",
    "name": "name",
    "dept": "dept",
    "role": "role",
    "supervisorEmail": "supervisor_email",
}
PROJECT_FIELDS = {
    "shortName": "short_name",
    "fullName": "full_name",
    "contractor": "contractor",
    "dept": "dept",
    "address": "address",
    "gps": "gps",
    "respName": "resp_name",
    "respPhone": "resp_phone",
    "safetyOfficer": "safety_officer",
    "safetyPhone": "safety_phone",
    "projectStatus": "status",
    "statusRemark": "status_remark",
}
PROJECT_ALIASES = {"name": "shortName", "resp": "respName", "remark": "statusRemark", "status": "projectStatus"}
INSPECTOR_FIELDS = {"name": "name", "title": "title", "dept": "dept", "phone": "phone"}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value or "").strip().lower()
    return text in {"1", "true", "yes", "on"}


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return int(default)


def _to_csv_bool(value: bool) -> str:
    return "true" if value else "false"


def _parse_json(value: Any, default: Any) -> Any:
    text = str(value or "").strip()
    if not text:
        return default
    try:
        return json.loads(text)
    except ValueError:
        return default


def _parse_json_list(value: Any) -> list[Any]:
    loaded = _parse_json(value, [])
    return loaded if isinstance(loaded, list) else []


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        if text.startswith("["):
            loaded = _parse_json(text, None)
            if isinstance(loaded, list):
                return [str(x).strip() for x in loaded if str(x).strip()]
        return [p.strip() for p in text.split(",") if p.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(x).strip() for x in value if str(x).strip()]
    raise ValueError("invalid_list")


def parse_date(raw: Any, tz: timezone | None = None) -> date:
    if isinstance(raw, datetime):
        return raw.astimezone(tz).date() if tz and raw.tzinfo else raw.date()
    if isinstance(raw, date):
        return raw
    text = str(raw or "").strip().replace("/", "-")
    if not text:
        raise ValueError("date_required")
    try:
        if "T" in text:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
            if dt.tzinfo is not None and tz is not None:
                return dt.astimezone(tz).date()
            return dt.date()
        return date.fromisoformat(text)
    except ValueError as exc:
        raise ValueError("invalid_date") from exc


class ConflictError(ValueError):
    """A row changed since the caller read it."""


def normalize_work_items(raw: Any) -> list[dict[str, Any]]:
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        raw = _parse_json(raw, None)
        if raw is None:
            raise ValueError("invalid_work_items")
    if not isinstance(raw, list):
        raise ValueError("invalid_work_items")
    items: list[dict[str, Any]] = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValueError("invalid_work_items")
        item = {
            "workItem": str(entry.get("workItem") or "").strip(),
            "workLocation": str(entry.get("workLocation") or "").strip(),
            "disasterTypes": _str_list(entry.get("disasterTypes")),
            "countermeasures": str(entry.get("countermeasures") or "").strip(),
        }
        if not any([item["workItem"], item["workLocation"], item["disasterTypes"], item["countermeasures"]]):
            continue
        items.append(item)
    return items


class SiteLogStore:
    def __init__(
        self,
        gateway: BaseTableGateway,
        *,
        utc_offset_hours: int = 8,
        bootstrap_admin: dict[str, str] | None = None,
    ) -> None:
        self._gw = gateway
        self._lock = threading.RLock()
        self._tz = timezone(timedelta(hours=int(utc_offset_hours)))
        self._init_defaults(bootstrap_admin or {})

    @classmethod
    def from_settings(cls, settings: Settings) -> "SiteLogStore":
        bootstrap = {
            "account": settings.bootstrap_admin_account,
            "password": settings.bootstrap_admin_password,
            "email": settings.bootstrap_admin_email,
        }
        if settings.storage in {"memory", "inmemory"} or not settings.spreadsheet_id:
            if settings.storage == "google_sheets":
                log.warning("No spreadsheet id configured; using in-memory storage.")
            gateway: BaseTableGateway = MemoryTableGateway()
        else:
            gateway = GoogleSheetsGateway(
                spreadsheet_id=settings.spreadsheet_id,
                credentials_path=resolve_google_credentials_path(),
            )
        return cls(gateway, utc_offset_hours=settings.utc_offset_hours, bootstrap_admin=bootstrap)

    @property
    def tz(self) -> timezone:
        return self._tz

    def now(self) -> datetime:
        return datetime.now(tz=self._tz)

    def today(self) -> date:
        return self.now().date()

    def _iso_now(self) -> str:
        return self.now().isoformat(timespec="seconds")

    def _init_defaults(self, bootstrap: dict[str, str]) -> None:
        with self._lock:
            if not self._gw.read_rows("DisasterTypes"):
                now = self._iso_now()
                self._gw.append_rows(
                    "DisasterTypes",
                    [
                        {"category": cat, "type_label": label, "is_custom": "false", "created_at": now}
                        for cat, labels in DEFAULT_DISASTER_TYPES.items()
                        for label in labels
                    ],
                )
            if not self._gw.read_rows("Users"):
                account = (bootstrap.get("account") or "admin").strip()
                self.create_user(
                    account=account,
                    email=(bootstrap.get("email") or "").strip().lower(),
                    name="系統管理員",
                    role=ROLE_ADMIN,
                    password=bootstrap.get("password") or "ChangeMe123!",
                )
                log.info("Bootstrapped admin account %s", account)

    def _indexed(self, tab: str, key: str) -> list[tuple[int, dict[str, str]]]:
        out: list[tuple[int, dict[str, str]]] = []
        for i, row in enumerate(self._gw.read_rows(tab)):
            if not str(row.get(key) or "").strip():
                continue
            out.append((FIRST_DATA_ROW + i, row))
        return out

    # ---------- Users ----------

    def _user_view(self, row: dict[str, str], row_index: int) -> dict[str, Any]:
        return {
            "userId": str(row.get("user_id") or ""),
            "account": str(row.get("account") or ""),
            "email": str(row.get("email") or ""),
            "name": str(row.get("name") or ""),
            "dept": str(row.get("dept") or ""),
            "role": str(row.get("role") or ROLE_FILLER),
            "managedProjects": _str_list(_parse_json_list(row.get("managed_projects_json"))),
            "supervisorEmail": str(row.get("supervisor_email") or ""),
            "hasPassword": bool(str(row.get("password_hash") or "")),
            "version": _as_int(row.get("version"), 1),
            "rowIndex": row_index,
            "createdAt": str(row.get("created_at") or ""),
            "updatedAt": str(row.get("updated_at") or ""),
            "lastLoginAt": str(row.get("last_login_at") or ""),
        }

    def _find_user_row(self, identifier: str) -> tuple[int, dict[str, str]] | None:
        needle = str(identifier or "").strip().lower()
        if not needle:
            return None
        for row_index, row in self._indexed("Users", "user_id"):
            if str(row.get("account") or "").strip().lower() == needle:
                return row_index, row
            if str(row.get("email") or "").strip().lower() == needle:
                return row_index, row
        return None

    def _user_row_by_id(self, user_id: str) -> tuple[int, dict[str, str]] | None:
        for row_index, row in self._indexed("Users", "user_id"):
            if str(row.get("user_id")) == str(user_id):
                return row_index, row
        return None

    def list_users(self) -> list[dict[str, Any]]:
        with self._lock:
            return [self._user_view(row, i) for i, row in self._indexed("Users", "user_id")]

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            hit = self._user_row_by_id(user_id)
            return self._user_view(hit[1], hit[0]) if hit else None

    def find_user(self, identifier: str) -> dict[str, Any] | None:
        """Look up a user by account or e-mail (case-insensitive)."""
        with self._lock:
            hit = self._find_user_row(identifier)
            return self._user_view(hit[1], hit[0]) if hit else None

    def get_user_by_account(self, account: str) -> dict[str, Any] | None:
        needle = str(account or "").strip().lower()
        with self._lock:
            for row_index, row in self._indexed("Users", "user_id"):
                if str(row.get("account") or "").strip().lower() == needle:
                    return self._user_view(row, row_index)
            return None

    def _check_unique_user(self, *, account: str, email: str, exclude_user_id: str = "") -> None:
        for _, row in self._indexed("Users", "user_id"):
            if exclude_user_id and str(row.get("user_id")) == exclude_user_id:
                continue
            if account and str(row.get("account") or "").strip().lower() == account.lower():
                raise ValueError("duplicate_account")
            if email and str(row.get("email") or "").strip().lower() == email.lower():
                raise ValueError("duplicate_email")

    def create_user(
        self,
        *,
        account: str,
        email: str = "",
        name: str = "",
        dept: str = "",
        role: str = ROLE_FILLER,
        managed_projects: Iterable[str] | str | None = None,
        supervisor_email: str = "",
        password: str = "",
    ) -> dict[str, Any]:
        account = str(account or "").strip()
        email = str(email or "").strip().lower()
        if not account:
            raise ValueError("account_required")
        if role not in ROLES:
            raise ValueError("invalid_role")
        if len(str(password or "")) < MIN_PASSWORD_LENGTH:
            raise ValueError("password_too_short")
        with self._lock:
            self._check_unique_user(account=account, email=email)
            now = self._iso_now()
            row = {
                "user_id": str(uuid.uuid4()),
                "account": account,
                "email": email,
                "name": str(name or account),
                "dept": str(dept or ""),
                "role": role,
                "managed_projects_json": _dump(_str_list(managed_projects)),
                "supervisor_email": str(supervisor_email or "").strip().lower(),
                "password_hash": hash_password(password),
                "version": "1",
                "created_at": now,
                "updated_at": now,
                "last_login_at": "",
            }
            self._gw.append_row("Users", row)
            created = self.get_user(row["user_id"])
            if created is None:
                raise StorageError("failed_to_create_user")
            return created

    def update_user(self, *, user_id: str, changes: dict[str, Any], expected_version: int | None = None) -> dict[str, Any]:
        with self._lock:
            hit = self._user_row_by_id(user_id)
            if hit is None:
                raise ValueError("user_not_found")
            row_index, row = hit
            if expected_version is not None and _as_int(row.get("version"), 1) != int(expected_version):
                raise ConflictError("version_conflict")

            updated = dict(row)
            for key, column in USER_FIELDS.items():
                if key in changes and changes[key] is not None:
                    updated[column] = str(changes[key]).strip()
            updated["email"] = updated["email"].lower()
            updated["supervisor_email"] = updated["supervisor_email"].lower()
            if not updated["account"]:
                raise ValueError("account_required")
            if updated["role"] not in ROLES:
                raise ValueError("invalid_role")
            if "managedProjects" in changes and changes["managedProjects"] is not None:
                updated["managed_projects_json"] = _dump(_str_list(changes["managedProjects"]))
            password = str(changes.get("password") or "")
            if password:
                if len(password) < MIN_PASSWORD_LENGTH:
                    raise ValueError("password_too_short")
                updated["password_hash"] = hash_password(password)
            self._check_unique_user(account=updated["account"], email=updated["email"], exclude_user_id=str(user_id))

            updated["version"] = str(_as_int(row.get("version"), 1) + 1)
            updated["updated_at"] = self._iso_now()
            self._gw.update_row("Users", row_index, updated)
            return self._user_view(updated, row_index)

    def delete_user(
        self,
        *,
        user_id: str = "",
        row_index: int | None = None,
        expected_account: str = "",
        protected_user_id: str = "",
    ) -> dict[str, Any]:
        with self._lock:
            if user_id:
                hit = self._user_row_by_id(user_id)
            elif row_index is not None:
                hit = next(((i, r) for i, r in self._indexed("Users", "user_id") if i == int(row_index)), None)
            else:
                raise ValueError("user_id_required")
            if hit is None:
                raise ValueError("user_not_found")
            idx, row = hit
            if expected_account and str(row.get("account") or "").strip().lower() != expected_account.strip().lower():
                raise ConflictError("stale_row_index")
            if protected_user_id and str(row.get("user_id")) == protected_user_id:
                raise ValueError("cannot_delete_self")
            view = self._user_view(row, idx)
            self._gw.delete_row("Users", idx)
            return view

    def set_password(self, *, user_id: str, new_password: str) -> None:
        if len(str(new_password or "")) < MIN_PASSWORD_LENGTH:
            raise ValueError("password_too_short")
        with self._lock:
            hit = self._user_row_by_id(user_id)
            if hit is None:
                raise ValueError("user_not_found")
            row_index, row = hit
            row = dict(row)
            row["password_hash"] = hash_password(new_password)
            row["version"] = str(_as_int(row.get("version"), 1) + 1)
            row["updated_at"] = self._iso_now()
            self._gw.update_row("Users", row_index, row)

    def change_password(self, *, account: str, old_password: str, new_password: str) -> dict[str, Any]:
        with self._lock:
            hit = self._find_user_row(account)
            if hit is None or not verify_password(str(old_password or ""), str(hit[1].get("password_hash") or "")):
                raise ValueError("invalid_old_password")
            self.set_password(user_id=str(hit[1]["user_id"]), new_password=new_password)
            user = self.get_user(str(hit[1]["user_id"]))
            if user is None:
                raise StorageError("failed_to_update_user")
            return user

    def authenticate(self, identifier: str, password: str) -> dict[str, Any] | None:
        with self._lock:
            hit = self._find_user_row(identifier)
            if hit is None:
                return None
            row_index, row = hit
            if not verify_password(str(password or ""), str(row.get("password_hash") or "")):
                return None
            row = dict(row)
            row["last_login_at"] = self._iso_now()
            self._gw.update_row("Users", row_index, row)
            return self._user_view(row, row_index)

    # ---------- Projects ----------

    def _project_view(self, row: dict[str, str]) -> dict[str, Any]:
        view: dict[str, Any] = {"seqNo": str(row.get("seq_no") or "")}
        for key, column in PROJECT_FIELDS.items():
            view[key] = str(row.get(column) or "")
        view["projectStatus"] = view["projectStatus"] or STATUS_ACTIVE
        view["defaultInspectors"] = _str_list(_parse_json_list(row.get("default_inspectors_json")))
        view["version"] = _as_int(row.get("version"), 1)
        view["updatedAt"] = str(row.get("updated_at") or "")
        return view

    def _project_row(self, seq_no: str) -> tuple[int, dict[str, str]] | None:
        for row_index, row in self._indexed("Projects", "seq_no"):
            if str(row.get("seq_no")).strip() == str(seq_no).strip():
                return row_index, row
        return None

    def list_projects(self, *, status: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = [self._project_view(row) for _, row in self._indexed("Projects", "seq_no")]
        if status:
            rows = [p for p in rows if p["projectStatus"] == status]
        rows.sort(key=lambda p: p["seqNo"])
        return rows

    def get_project(self, seq_no: str) -> dict[str, Any] | None:
        with self._lock:
            hit = self._project_row(seq_no)
            return self._project_view(hit[1]) if hit else None

    @staticmethod
    def _canonical_project_changes(changes: dict[str, Any]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key, value in changes.items():
            out[PROJECT_ALIASES.get(key, key)] = value
        return out

    def create_project(self, data: dict[str, Any]) -> dict[str, Any]:
        fields = self._canonical_project_changes(data)
        seq_no = str(fields.get("seqNo") or "").strip()
        if not seq_no:
            raise ValueError("seq_no_required")
        status = str(fields.get("projectStatus") or STATUS_ACTIVE).strip()
        remark = str(fields.get("statusRemark") or "").strip()
        if status not in PROJECT_STATUSES:
            raise ValueError("invalid_status")
        if status != STATUS_ACTIVE and not remark:
            raise ValueError("remark_required")
        with self._lock:
            if self._project_row(seq_no) is not None:
                raise ValueError("duplicate_project")
            row = {"seq_no": seq_no}
            for key, column in PROJECT_FIELDS.items():
                row[column] = str(fields.get(key) or "").strip()
            row["status"] = status
            row["default_inspectors_json"] = _dump(_str_list(fields.get("defaultInspectors")))
            row["version"] = "1"
            row["updated_at"] = self._iso_now()
            self._gw.append_row("Projects", row)
            return self._project_view(row)

    def update_project_info(
        self,
        *,
        seq_no: str,
        changes: dict[str, Any],
        reason: str,
        modified_by: str,
        expected_version: int | None = None,
    ) -> dict[str, Any]:
        fields = self._canonical_project_changes(changes)
        with self._lock:
            hit = self._project_row(seq_no)
            if hit is None:
                raise ValueError("project_not_found")
            row_index, row = hit
            if expected_version is not None and _as_int(row.get("version"), 1) != int(expected_version):
                raise ConflictError("version_conflict")

            before = self._project_view(row)
            updated = dict(row)
            for key, column in PROJECT_FIELDS.items():
                if key in fields and fields[key] is not None:
                    updated[column] = str(fields[key]).strip()
            if "defaultInspectors" in fields and fields["defaultInspectors"] is not None:
                updated["default_inspectors_json"] = _dump(_str_list(fields["defaultInspectors"]))
            status = updated.get("status") or STATUS_ACTIVE
            if status not in PROJECT_STATUSES:
                raise ValueError("invalid_status")
            if status != STATUS_ACTIVE and not str(updated.get("status_remark") or "").strip():
                raise ValueError("remark_required")
            updated["status"] = status
            updated["version"] = str(_as_int(row.get("version"), 1) + 1)
            updated["updated_at"] = self._iso_now()
            self._gw.update_row("Projects", row_index, updated)
            after = self._project_view(updated)

            self.log_modification(
                type_=MOD_TYPE_PROJECT,
                project_seq_no=str(seq_no),
                old_data=before,
                new_data=after,
                reason=str(reason or "").strip(),
                action_type="更新",
                modified_by=modified_by,
            )
            return after

    def departments(self) -> list[str]:
        with self._lock:
            projects = self._indexed("Projects", "seq_no")
            users = self._indexed("Users", "user_id")
        depts = {str(r.get("dept") or "").strip() for _, r in projects}
        depts |= {str(r.get("dept") or "").strip() for _, r in users}
        return sorted(d for d in depts if d)

    # ---------- Inspectors ----------

    def _inspector_view(self, row: dict[str, str]) -> dict[str, Any]:
        return {
            "id": str(row.get("inspector_id") or ""),
            "name": str(row.get("name") or ""),
            "title": str(row.get("title") or ""),
            "dept": str(row.get("dept") or ""),
            "phone": str(row.get("phone") or ""),
            "isActive": _as_bool(row.get("is_active", "true")),
        }

    def list_inspectors(self, *, active_only: bool = False) -> list[dict[str, Any]]:
        with self._lock:
            rows = [self._inspector_view(r) for _, r in self._indexed("Inspectors", "inspector_id")]
        if active_only:
            rows = [r for r in rows if r["isActive"]]
        return rows

    def inspector_names(self) -> dict[str, str]:
        return {i["id"]: i["name"] for i in self.list_inspectors()}

    def create_inspector(self, *, name: str, title: str = "", dept: str = "", phone: str = "") -> dict[str, Any]:
        name = str(name or "").strip()
        if not name:
            raise ValueError("name_required")
        with self._lock:
            existing = self._indexed("Inspectors", "inspector_id")
            numbers = [_as_int(str(r.get("inspector_id") or "")[3:], 0) for _, r in existing]
            row = {
                "inspector_id": f"INS{max(numbers + [0]) + 1:03d}",
                "name": name,
                "title": str(title or "").strip(),
                "dept": str(dept or "").strip(),
                "phone": str(phone or "").strip(),
                "is_active": "true",
            }
            self._gw.append_row("Inspectors", row)
            return self._inspector_view(row)

    def update_inspector(self, *, inspector_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            for row_index, row in self._indexed("Inspectors", "inspector_id"):
                if str(row.get("inspector_id")) != str(inspector_id):
                    continue
                updated = dict(row)
                for key, column in INSPECTOR_FIELDS.items():
                    if key in changes and changes[key] is not None:
                        updated[column] = str(changes[key]).strip()
                if "isActive" in changes and changes["isActive"] is not None:
                    updated["is_active"] = _to_csv_bool(_as_bool(changes["isActive"]))
                if not updated["name"]:
                    raise ValueError("name_required")
                self._gw.update_row("Inspectors", row_index, updated)
                return self._inspector_view(updated)
        raise ValueError("inspector_not_found")

    # ---------- Daily logs ----------

    def _log_view(self, row: dict[str, str]) -> dict[str, Any]:
        return {
            "logId": str(row.get("log_id") or ""),
            "logDate": str(row.get("log_date") or ""),
            "projectSeqNo": str(row.get("project_seq_no") or ""),
            "isHolidayNoWork": _as_bool(row.get("is_holiday_no_work")),
            "isHolidayWork": _as_bool(row.get("is_holiday_work")),
            "inspectorIds": _str_list(_parse_json_list(row.get("inspector_ids_json"))),
            "workersCount": _as_int(row.get("workers_count"), 0),
            "workItems": normalize_work_items(_parse_json_list(row.get("work_items_json"))),
            "filledBy": str(row.get("filled_by") or ""),
            "createdAt": str(row.get("created_at") or ""),
            "updatedAt": str(row.get("updated_at") or ""),
        }

    def _log_row(self, seq_no: str, log_date: date) -> tuple[int, dict[str, str]] | None:
        key = log_date.isoformat()
        for row_index, row in self._indexed("DailyLogs", "log_id"):
            if str(row.get("project_seq_no")) == str(seq_no) and str(row.get("log_date")) == key:
                return row_index, row
        return None

    def list_logs(
        self,
        *,
        log_date: date | None = None,
        project_seq_no: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = [self._log_view(r) for _, r in self._indexed("DailyLogs", "log_id")]
        out: list[dict[str, Any]] = []
        for row in rows:
            try:
                d = date.fromisoformat(row["logDate"])
            except ValueError:
                continue
            if log_date and d != log_date:
                continue
            if start and d < start:
                continue
            if end and d > end:
                continue
            if project_seq_no and row["projectSeqNo"] != str(project_seq_no):
                continue
            out.append(row)
        out.sort(key=lambda r: (r["logDate"], r["projectSeqNo"]))
        return out

    def logged_keys(self) -> set[tuple[str, str]]:
        """(project_seq_no, iso date) for every stored log."""
        with self._lock:
            return {
                (str(r.get("project_seq_no")), str(r.get("log_date")))
                for _, r in self._indexed("DailyLogs", "log_id")
            }

    def get_log(self, seq_no: str, log_date: date) -> dict[str, Any] | None:
        with self._lock:
            hit = self._log_row(seq_no, log_date)
            return self._log_view(hit[1]) if hit else None

    def submit_daily_log(
        self,
        *,
        log_date: date,
        project_seq_no: str,
        is_holiday_no_work: bool = False,
        is_holiday_work: bool = False,
        inspector_ids: Iterable[str] | str | None = None,
        workers_count: Any = 0,
        work_items: Any = None,
        filled_by: str = "",
    ) -> tuple[dict[str, Any], bool]:
        """Create or overwrite the log for (project, date). Returns (log, created)."""
        if is_holiday_no_work and is_holiday_work:
            raise ValueError("conflicting_holiday_flags")
        try:
            workers = int(str(workers_count if workers_count not in (None, "") else 0).strip())
        except ValueError as exc:
            raise ValueError("invalid_workers_count") from exc
        if workers < 0:
            raise ValueError("invalid_workers_count")
        items = normalize_work_items(work_items)
        inspectors = _str_list(inspector_ids)
        if is_holiday_no_work:
            items, inspectors, workers = [], [], 0
        elif not any(item["workItem"] for item in items):
            raise ValueError("work_items_required")

        with self._lock:
            if self._project_row(project_seq_no) is None:
                raise ValueError("project_not_found")
            now = self._iso_now()
            row = {
                "log_date": log_date.isoformat(),
                "project_seq_no": str(project_seq_no),
                "is_holiday_no_work": _to_csv_bool(is_holiday_no_work),
                "is_holiday_work": _to_csv_bool(is_holiday_work),
                "inspector_ids_json": _dump(inspectors),
                "workers_count": str(workers),
                "work_items_json": _dump(items),
                "filled_by": str(filled_by or ""),
                "updated_at": now,
            }
            hit = self._log_row(project_seq_no, log_date)
            if hit is None:
                row["log_id"] = str(uuid.uuid4())
                row["created_at"] = now
                self._gw.append_row("DailyLogs", row)
                return self._log_view(row), True
            row_index, existing = hit
            row["log_id"] = existing["log_id"]
            row["created_at"] = existing.get("created_at") or now
            self._gw.update_row("DailyLogs", row_index, row)
            return self._log_view(row), False

    def create_holiday_logs(self, pairs: Iterable[tuple[str, date]], *, filled_by: str) -> list[tuple[str, str]]:
        """Append holiday-no-work logs for pairs that have no log yet."""
        with self._lock:
            existing = self.logged_keys()
            now = self._iso_now()
            rows: list[dict[str, str]] = []
            created: list[tuple[str, str]] = []
            for seq_no, d in pairs:
                key = (str(seq_no), d.isoformat())
                if key in existing:
                    continue
                existing.add(key)
                created.append(key)
                rows.append(
                    {
                        "log_id": str(uuid.uuid4()),
                        "log_date": key[1],
                        "project_seq_no": key[0],
                        "is_holiday_no_work": "true",
                        "is_holiday_work": "false",
                        "inspector_ids_json": "[]",
                        "workers_count": "0",
                        "work_items_json": "[]",
                        "filled_by": str(filled_by or ""),
                        "created_at": now,
                        "updated_at": now,
                    }
                )
            self._gw.append_rows("DailyLogs", rows)
            return created

    def last_log_for_project(self, seq_no: str) -> dict[str, Any] | None:
        rows = self.list_logs(project_seq_no=seq_no)
        return rows[-1] if rows else None

    def previous_day_log(self, seq_no: str, current_date: date) -> dict[str, Any] | None:
        """Most recent log before ``current_date`` that carries work content."""
        rows = [r for r in self.list_logs(project_seq_no=seq_no, end=current_date - timedelta(days=1)) if not r["isHolidayNoWork"]]
        return rows[-1] if rows else None

    def update_log(
        self,
        *,
        project_seq_no: str,
        log_date: date,
        changes: dict[str, Any],
        reason: str,
        modified_by: str,
    ) -> dict[str, Any]:
        with self._lock:
            before = self.get_log(project_seq_no, log_date)
            if before is None:
                raise ValueError("log_not_found")
            merged = {
                "is_holiday_no_work": _as_bool(changes.get("isHolidayNoWork", before["isHolidayNoWork"])),
                "is_holiday_work": _as_bool(changes.get("isHolidayWork", before["isHolidayWork"])),
                "inspector_ids": changes.get("inspectorIds", before["inspectorIds"]),
                "workers_count": changes.get("workersCount", before["workersCount"]),
                "work_items": changes.get("workItems", before["workItems"]),
            }
            after, _ = self.submit_daily_log(
                log_date=log_date,
                project_seq_no=project_seq_no,
                filled_by=before["filledBy"],
                **merged,
            )
            self.log_modification(
                type_=MOD_TYPE_DAILY_LOG,
                project_seq_no=str(project_seq_no),
                old_data=before,
                new_data=after,
                reason=str(reason or "").strip(),
                action_type="更新",
                modified_by=modified_by,
            )
            return after

    # ---------- Calendar overrides ----------

    def holiday_overrides(self) -> dict[tuple[str, str], dict[str, Any]]:
        with self._lock:
            rows = self._indexed("Holidays", "date")
        out: dict[tuple[str, str], dict[str, Any]] = {}
        for _, row in rows:
            key = (str(row.get("date")).strip(), str(row.get("project_seq_no") or "").strip())
            out[key] = {"is_holiday": _as_bool(row.get("is_holiday")), "remark": str(row.get("remark") or "")}
        return out

    def set_holiday(self, *, day: date, is_holiday: bool, remark: str = "", project_seq_no: str = "", updated_by: str = "") -> dict[str, Any]:
        seq_no = str(project_seq_no or "").strip()
        with self._lock:
            if seq_no and self._project_row(seq_no) is None:
                raise ValueError("project_not_found")
            row = {
                "date": day.isoformat(),
                "project_seq_no": seq_no,
                "is_holiday": _to_csv_bool(is_holiday),
                "remark": str(remark or "").strip(),
                "updated_by": str(updated_by or ""),
                "updated_at": self._iso_now(),
            }
            for row_index, existing in self._indexed("Holidays", "date"):
                if str(existing.get("date")) == row["date"] and str(existing.get("project_seq_no") or "") == seq_no:
                    self._gw.update_row("Holidays", row_index, row)
                    break
            else:
                self._gw.append_row("Holidays", row)
        return {"date": row["date"], "projectSeqNo": seq_no, "isHoliday": is_holiday, "remark": row["remark"]}

    # ---------- Disaster types ----------

    def disaster_types(self) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._indexed("DisasterTypes", "type_label")
        grouped: dict[str, list[str]] = {}
        for _, row in rows:
            cat = str(row.get("category") or "").strip() or CUSTOM_DISASTER_CATEGORY
            label = str(row.get("type_label") or "").strip()
            labels = grouped.setdefault(cat, [])
            if label not in labels:
                labels.append(label)
        return [{"category": cat, "types": labels} for cat, labels in grouped.items()]

    def add_custom_disaster_type(self, label: str) -> bool:
        label = str(label or "").strip()
        if not label:
            raise ValueError("disaster_type_required")
        with self._lock:
            for _, row in self._indexed("DisasterTypes", "type_label"):
                if str(row.get("type_label") or "").strip() == label:
                    return False
            self._gw.append_row(
                "DisasterTypes",
                {"category": CUSTOM_DISASTER_CATEGORY, "type_label": label, "is_custom": "true", "created_at": self._iso_now()},
            )
            return True

    # ---------- Modification log ----------

    def log_modification(
        self,
        *,
        type_: str,
        project_seq_no: str,
        old_data: Any,
        new_data: Any,
        reason: str,
        action_type: str,
        modified_by: str,
    ) -> dict[str, Any]:
        row = {
            "log_id": str(uuid.uuid4()),
            "timestamp": self._iso_now(),
            "modified_by": str(modified_by or ""),
            "type": str(type_ or ""),
            "project_seq_no": str(project_seq_no or ""),
            "old_data": old_data if isinstance(old_data, str) else _dump(old_data),
            "new_data": new_data if isinstance(new_data, str) else _dump(new_data),
            "reason": str(reason or ""),
            "action_type": str(action_type or ""),
        }
        with self._lock:
            self._gw.append_row("ModificationLogs", row)
        return {
            "logId": row["log_id"],
            "timestamp": row["timestamp"],
            "modifiedBy": row["modified_by"],
            "type": row["type"],
            "projectSeqNo": row["project_seq_no"],
            "reason": row["reason"],
            "actionType": row["action_type"],
        }

    def list_modifications(self, *, project_seq_no: str | None = None) -> list[dict[str, str]]:
        with self._lock:
            rows = [dict(r) for _, r in self._indexed("ModificationLogs", "log_id")]
        if project_seq_no:
            rows = [r for r in rows if r.get("project_seq_no") == str(project_seq_no)]
        return rows
