from __future__ import annotations

import json
import logging
import traceback
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable

from sitelog.auth import (
    PermissionDenied,
    SessionInfo,
    SessionRegistry,
    generate_temporary_password,
    verify_google_id_token,
)
from sitelog.config import Settings
from sitelog.lock import LockTimeout, RequestLock
from sitelog.notifiers import Notification, Notifier
from sitelog.reports import ReportAggregator
from sitelog.store import ROLE_ADMIN, ROLE_FILLER, ROLE_LIAISON, STATUS_ACTIVE, SiteLogStore, parse_date
from sitelog.tbm import TbmGenerator
from sitelog.workdays import WorkCalendar, month_bounds


log = logging.getLogger("sitelog.dispatcher")


class Action(str, Enum):
    AUTHENTICATE_USER = "authenticateUser"
    CHANGE_USER_PASSWORD = "changeUserPassword"
    GET_CURRENT_SESSION = "getCurrentSession"
    LOGOUT_USER = "logoutUser"
    GET_ALL_USERS = "getAllUsers"
    GET_USER_BY_ACCOUNT = "getUserByAccount"
    ADD_USER = "addUser"
    UPDATE_USER = "updateUser"
    DELETE_USER = "deleteUser"
    SEND_TEMPORARY_PASSWORD = "sendTemporaryPassword"
    GET_ALL_PROJECTS = "getAllProjects"
    GET_ACTIVE_PROJECTS = "getActiveProjects"
    ADD_PROJECT = "addProject"
    UPDATE_PROJECT_INFO = "updateProjectInfo"
    GET_UNFILLED_PROJECTS_FOR_TOMORROW = "getUnfilledProjectsForTomorrow"
    SUBMIT_DAILY_LOG = "submitDailyLog"
    GET_LAST_LOG_FOR_PROJECT = "getLastLogForProject"
    GET_DAILY_SUMMARY_REPORT = "getDailySummaryReport"
    UPDATE_DAILY_SUMMARY_LOG = "updateDailySummaryLog"
    GET_PREVIOUS_DAY_LOG = "getPreviousDayLog"
    GET_UNFILLED_COUNT = "getUnfilledCount"
    GET_FILLED_DATES = "getFilledDates"
    GET_DAILY_LOG_STATUS = "getDailyLogStatus"
    GET_FILLER_REMINDERS = "getFillerReminders"
    GET_ALL_INSPECTORS = "getAllInspectors"
    ADD_INSPECTOR = "addInspector"
    UPDATE_INSPECTOR = "updateInspector"
    CHECK_HOLIDAY_FILLED_STATUS = "checkHolidayFilledStatus"
    BATCH_SUBMIT_HOLIDAY_LOGS = "batchSubmitHolidayLogs"
    CHECK_HOLIDAY = "checkHoliday"
    GET_MONTH_HOLIDAYS = "getMonthHolidays"
    SET_HOLIDAY = "setHoliday"
    GET_ALL_DEPARTMENTS = "getAllDepartments"
    GET_DISASTER_TYPES = "getDisasterTypes"
    SAVE_CUSTOM_DISASTER_TYPE = "saveCustomDisasterType"
    GENERATE_TBMKY = "generateTBMKY"
    TEST_TBMKY_PERMISSIONS = "testTBMKYPermissions"
    LOG_MODIFICATION = "logModification"


ACCESS_PUBLIC = "public"
ACCESS_USER = "user"
ACCESS_EDITOR = "editor"
ACCESS_ADMIN = "admin"

ACTION_ACCESS: dict[Action, str] = {
    Action.AUTHENTICATE_USER: ACCESS_PUBLIC,
    Action.SEND_TEMPORARY_PASSWORD: ACCESS_PUBLIC,
    # Guest mode is public; the handler demands a session otherwise.
    Action.GET_DAILY_SUMMARY_REPORT: ACCESS_PUBLIC,
    Action.CHANGE_USER_PASSWORD: ACCESS_USER,
    Action.GET_CURRENT_SESSION: ACCESS_USER,
    Action.LOGOUT_USER: ACCESS_USER,
    Action.GET_USER_BY_ACCOUNT: ACCESS_USER,
    Action.GET_ALL_PROJECTS: ACCESS_USER,
    Action.GET_ACTIVE_PROJECTS: ACCESS_USER,
    Action.GET_UNFILLED_PROJECTS_FOR_TOMORROW: ACCESS_USER,
    Action.SUBMIT_DAILY_LOG: ACCESS_USER,
    Action.GET_LAST_LOG_FOR_PROJECT: ACCESS_USER,
    Action.GET_PREVIOUS_DAY_LOG: ACCESS_USER,
    Action.GET_UNFILLED_COUNT: ACCESS_USER,
    Action.GET_FILLED_DATES: ACCESS_USER,
    Action.GET_DAILY_LOG_STATUS: ACCESS_USER,
    Action.GET_FILLER_REMINDERS: ACCESS_USER,
    Action.GET_ALL_INSPECTORS: ACCESS_USER,
    Action.CHECK_HOLIDAY: ACCESS_USER,
    Action.GET_MONTH_HOLIDAYS: ACCESS_USER,
    Action.GET_ALL_DEPARTMENTS: ACCESS_USER,
    Action.GET_DISASTER_TYPES: ACCESS_USER,
    Action.GENERATE_TBMKY: ACCESS_USER,
    Action.LOG_MODIFICATION: ACCESS_USER,
    Action.UPDATE_DAILY_SUMMARY_LOG: ACCESS_EDITOR,
    Action.GET_ALL_USERS: ACCESS_ADMIN,
    Action.ADD_USER: ACCESS_ADMIN,
    Action.UPDATE_USER: ACCESS_ADMIN,
    Action.DELETE_USER: ACCESS_ADMIN,
    Action.ADD_PROJECT: ACCESS_ADMIN,
    Action.UPDATE_PROJECT_INFO: ACCESS_ADMIN,
    Action.ADD_INSPECTOR: ACCESS_ADMIN,
    Action.UPDATE_INSPECTOR: ACCESS_ADMIN,
    Action.CHECK_HOLIDAY_FILLED_STATUS: ACCESS_ADMIN,
    Action.BATCH_SUBMIT_HOLIDAY_LOGS: ACCESS_ADMIN,
    Action.SET_HOLIDAY: ACCESS_ADMIN,
    Action.SAVE_CUSTOM_DISASTER_TYPE: ACCESS_ADMIN,
    Action.TEST_TBMKY_PERMISSIONS: ACCESS_ADMIN,
}

# Actions that write to the store or the filesystem run under the request lock.
MUTATING_ACTIONS = frozenset(
    {
        Action.AUTHENTICATE_USER,
        Action.CHANGE_USER_PASSWORD,
        Action.ADD_USER,
        Action.UPDATE_USER,
        Action.DELETE_USER,
        Action.SEND_TEMPORARY_PASSWORD,
        Action.ADD_PROJECT,
        Action.UPDATE_PROJECT_INFO,
        Action.SUBMIT_DAILY_LOG,
        Action.UPDATE_DAILY_SUMMARY_LOG,
        Action.ADD_INSPECTOR,
        Action.UPDATE_INSPECTOR,
        Action.BATCH_SUBMIT_HOLIDAY_LOGS,
        Action.SET_HOLIDAY,
        Action.SAVE_CUSTOM_DISASTER_TYPE,
        Action.GENERATE_TBMKY,
        Action.LOG_MODIFICATION,
    }
)

JSON_FIELDS = frozenset(
    {
        "userData",
        "postData",
        "projectData",
        "updatedData",
        "disasterTypes",
        "targetDays",
        "projectSeqNos",
        "projects",
        "inspectorIds",
        "workItems",
        "managedProjects",
        "managedProjectsStr",
        "userInfo",
        "oldData",
        "newData",
    }
)

DEFAULT_EDIT_REASON = "管理員修改"

MESSAGES: dict[str, str] = {
    "authentication_required": "請先登入",
    "forbidden": "權限不足，無法執行此操作",
    "invalid_credentials": "帳號或密碼錯誤",
    "invalid_old_password": "舊密碼不正確",
    "password_too_short": "密碼長度至少需 6 個字元",
    "duplicate_account": "帳號已存在",
    "duplicate_email": "電子郵件已被使用",
    "account_required": "請輸入帳號",
    "invalid_role": "角色不正確",
    "user_not_found": "找不到使用者",
    "user_id_required": "缺少使用者識別碼",
    "stale_row_index": "使用者列表已變更，請重新整理後再試",
    "version_conflict": "資料已被其他人修改，請重新整理後再試",
    "invalid_version": "資料版本格式不正確",
    "cannot_delete_self": "無法刪除自己的帳號",
    "seq_no_required": "請輸入工程序號",
    "duplicate_project": "工程序號已存在",
    "project_not_found": "找不到工程",
    "invalid_status": "工程狀態不正確",
    "remark_required": "工程狀態非施工中時，必須填寫狀態說明",
    "name_required": "請輸入姓名",
    "inspector_not_found": "找不到檢查員",
    "date_required": "請提供日期",
    "invalid_date": "日期格式不正確",
    "invalid_date_range": "結束日期不可早於開始日期",
    "date_range_too_long": "日期範圍過長",
    "invalid_target_days": "星期選擇不正確",
    "projects_required": "請至少選擇一個工程",
    "conflicting_holiday_flags": "「假日不施工」與「假日施工」不可同時勾選",
    "invalid_workers_count": "施工人數不正確",
    "invalid_work_items": "施工項目格式不正確",
    "work_items_required": "請至少填寫一項施工項目",
    "invalid_list": "清單格式不正確",
    "log_not_found": "找不到該日的施工日誌",
    "holiday_no_work_log": "該日為假日不施工，無法產生 TBM-KY",
    "invalid_tbm_mode": "TBM-KY 產生模式不正確",
    "inspectors_required": "該日誌未指定檢查員",
    "disaster_type_required": "請輸入災害類型",
    "invalid_month": "月份不正確",
    "invalid_json": "參數格式不正確",
    "missing_param": "缺少必要參數",
    "invalid_param": "參數值不正確",
    "malformed_body": "請求內容不是有效的 JSON",
    "lock_timeout": "系統忙碌中，請稍後再試",
}


def message_for(code: str) -> str:
    return MESSAGES.get(code, code)


def failure(code: str, **extra: Any) -> dict[str, Any]:
    out: dict[str, Any] = {"success": False, "message": message_for(code), "code": code}
    out.update(extra)
    return out


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, (str, int)):
        return [p.strip() for p in str(value).split(",") if p.strip()]
    raise ValueError("invalid_list")


def _as_version(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise ValueError("invalid_version") from exc


def decode_params(params: dict[str, Any]) -> dict[str, Any]:
    """Second decode step for sub-fields that clients send as JSON text."""
    out = dict(params)
    for key in JSON_FIELDS:
        value = out.get(key)
        if not isinstance(value, str):
            continue
        text = value.strip()
        if not text:
            out[key] = None
            continue
        # Plain scalars such as "P001" or "0,6" are left for the handler.
        if text[0] not in "[{":
            continue
        try:
            out[key] = json.loads(text)
        except ValueError as exc:
            raise ValueError("invalid_json") from exc
    return out


@dataclass
class RequestContext:
    action: Action
    params: dict[str, Any]
    token: str = ""
    session: SessionInfo | None = None
    user: dict[str, Any] | None = None

    def get(self, *names: str, default: Any = None) -> Any:
        for name in names:
            value = self.params.get(name)
            if value is not None and value != "":
                return value
        return default

    def text(self, *names: str, default: str = "") -> str:
        return str(self.get(*names, default=default) or "").strip()

    def mapping(self, *names: str) -> dict[str, Any]:
        value = self.get(*names)
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("invalid_json")
        return value

    @property
    def account(self) -> str:
        return str((self.user or {}).get("account") or "")

    @property
    def is_admin(self) -> bool:
        return bool(self.user and self.user["role"] == ROLE_ADMIN)


Handler = Callable[[RequestContext], dict[str, Any]]


class Dispatcher:
    def __init__(
        self,
        *,
        settings: Settings,
        store: SiteLogStore,
        calendar: WorkCalendar,
        reports: ReportAggregator,
        tbm: TbmGenerator,
        sessions: SessionRegistry,
        lock: RequestLock,
        notifier: Notifier,
    ) -> None:
        self._settings = settings
        self._store = store
        self._calendar = calendar
        self._reports = reports
        self._tbm = tbm
        self._sessions = sessions
        self._lock = lock
        self._notifier = notifier
        self._handlers: dict[Action, Handler] = {
            Action.AUTHENTICATE_USER: self._authenticate_user,
            Action.CHANGE_USER_PASSWORD: self._change_user_password,
            Action.GET_CURRENT_SESSION: self._get_current_session,
            Action.LOGOUT_USER: self._logout_user,
            Action.GET_ALL_USERS: self._get_all_users,
            Action.GET_USER_BY_ACCOUNT: self._get_user_by_account,
            Action.ADD_USER: self._add_user,
            Action.UPDATE_USER: self._update_user,
            Action.DELETE_USER: self._delete_user,
            Action.SEND_TEMPORARY_PASSWORD: self._send_temporary_password,
            Action.GET_ALL_PROJECTS: self._get_all_projects,
            Action.GET_ACTIVE_PROJECTS: self._get_active_projects,
            Action.ADD_PROJECT: self._add_project,
            Action.UPDATE_PROJECT_INFO: self._update_project_info,
            Action.GET_UNFILLED_PROJECTS_FOR_TOMORROW: self._get_unfilled_projects_for_tomorrow,
            Action.SUBMIT_DAILY_LOG: self._submit_daily_log,
            Action.GET_LAST_LOG_FOR_PROJECT: self._get_last_log_for_project,
            Action.GET_DAILY_SUMMARY_REPORT: self._get_daily_summary_report,
            Action.UPDATE_DAILY_SUMMARY_LOG: self._update_daily_summary_log,
            Action.GET_PREVIOUS_DAY_LOG: self._get_previous_day_log,
            Action.GET_UNFILLED_COUNT: self._get_unfilled_count,
            Action.GET_FILLED_DATES: self._get_filled_dates,
            Action.GET_DAILY_LOG_STATUS: self._get_daily_log_status,
            Action.GET_FILLER_REMINDERS: self._get_filler_reminders,
            Action.GET_ALL_INSPECTORS: self._get_all_inspectors,
            Action.ADD_INSPECTOR: self._add_inspector,
            Action.UPDATE_INSPECTOR: self._update_inspector,
            Action.CHECK_HOLIDAY_FILLED_STATUS: self._check_holiday_filled_status,
            Action.BATCH_SUBMIT_HOLIDAY_LOGS: self._batch_submit_holiday_logs,
            Action.CHECK_HOLIDAY: self._check_holiday,
            Action.GET_MONTH_HOLIDAYS: self._get_month_holidays,
            Action.SET_HOLIDAY: self._set_holiday,
            Action.GET_ALL_DEPARTMENTS: self._get_all_departments,
            Action.GET_DISASTER_TYPES: self._get_disaster_types,
            Action.SAVE_CUSTOM_DISASTER_TYPE: self._save_custom_disaster_type,
            Action.GENERATE_TBMKY: self._generate_tbmky,
            Action.TEST_TBMKY_PERMISSIONS: self._test_tbmky_permissions,
            Action.LOG_MODIFICATION: self._log_modification,
        }
        missing = [a.value for a in Action if a not in self._handlers or a not in ACTION_ACCESS]
        if missing:
            raise RuntimeError(f"Actions without a handler or access rule: {', '.join(missing)}")

    @property
    def store(self) -> SiteLogStore:
        return self._store

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    @property
    def lock(self) -> RequestLock:
        return self._lock

    def dispatch(self, action_name: str, params: dict[str, Any], *, session_token: str = "") -> dict[str, Any]:
        try:
            action = Action(str(action_name or ""))
        except ValueError:
            return {"success": False, "message": f"Unknown action: {action_name}"}

        token = str(session_token or params.get("sessionToken") or "").strip()
        try:
            ctx = self._context(action, decode_params(params), token)
            self._authorize(ctx)
            handler = self._handlers[action]
            if action in MUTATING_ACTIONS:
                with self._lock.acquired():
                    return handler(ctx)
            return handler(ctx)
        except PermissionDenied as exc:
            log.warning("Denied %s (%s)", action.value, exc.code)
            return failure(exc.code)
        except LockTimeout:
            return failure("lock_timeout", retryable=True)
        except ValueError as exc:
            code = str(exc)
            if code not in MESSAGES:
                log.warning("Action %s rejected a parameter: %s", action.value, code)
                return failure("invalid_param")
            return failure(code)
        except Exception as exc:
            log.exception("Action %s failed", action.value)
            out: dict[str, Any] = {"success": False, "message": str(exc) or exc.__class__.__name__}
            if self._settings.expose_stack:
                out["stack"] = traceback.format_exc()
            return out

    def _context(self, action: Action, params: dict[str, Any], token: str) -> RequestContext:
        ctx = RequestContext(action=action, params=params, token=token)
        session = self._sessions.resolve(token)
        if session is None:
            return ctx
        user = self._store.get_user(session.user_id)
        if user is None:
            self._sessions.revoke_user(session.user_id)
            return ctx
        ctx.session = session
        ctx.user = user
        return ctx

    @staticmethod
    def _authorize(ctx: RequestContext) -> None:
        level = ACTION_ACCESS[ctx.action]
        if level == ACCESS_PUBLIC:
            return
        if ctx.user is None:
            raise PermissionDenied("authentication_required")
        role = ctx.user["role"]
        if level == ACCESS_ADMIN and role != ROLE_ADMIN:
            raise PermissionDenied("forbidden")
        if level == ACCESS_EDITOR and role not in {ROLE_ADMIN, ROLE_LIAISON}:
            raise PermissionDenied("forbidden")

    def _date(self, ctx: RequestContext, *names: str, default: date | None = None) -> date:
        raw = ctx.get(*names)
        if raw is None:
            if default is None:
                raise ValueError("date_required")
            return default
        return parse_date(raw, self._store.tz)

    @staticmethod
    def _require_managed(ctx: RequestContext, seq_no: str) -> None:
        user = ctx.user or {}
        if user.get("role") == ROLE_FILLER and seq_no not in user.get("managedProjects", []):
            raise PermissionDenied("forbidden")

    # ---------- User / auth ----------

    def _authenticate_user(self, ctx: RequestContext) -> dict[str, Any]:
        id_token = ctx.text("idToken", "credential")
        if id_token:
            claims = verify_google_id_token(id_token, client_id=self._settings.google_client_id)
            user = self._store.find_user(str(claims.get("email") or "")) if claims else None
        else:
            identifier = ctx.text("account", "email", "username", "identifier")
            user = self._store.authenticate(identifier, str(ctx.get("password", default="")))
        if user is None:
            log.info("Login failed")
            return failure("invalid_credentials")

        session = self._sessions.issue(user["userId"])
        log.info("Login succeeded for %s", user["account"])
        return {
            "success": True,
            "message": "登入成功",
            "user": user,
            "sessionToken": session.token,
            "expiresAt": int(session.expires_at),
        }

    def _change_user_password(self, ctx: RequestContext) -> dict[str, Any]:
        account = ctx.text("account", default=ctx.account)
        if account.lower() != ctx.account.lower() and not ctx.is_admin:
            raise PermissionDenied("forbidden")
        self._store.change_password(
            account=account,
            old_password=str(ctx.get("oldPassword", default="")),
            new_password=str(ctx.get("newPassword", default="")),
        )
        return {"success": True, "message": "密碼已更新"}

    def _get_current_session(self, ctx: RequestContext) -> dict[str, Any]:
        expires_at = int(ctx.session.expires_at) if ctx.session else 0
        return {"success": True, "data": {"user": ctx.user, "expiresAt": expires_at}}

    def _logout_user(self, ctx: RequestContext) -> dict[str, Any]:
        self._sessions.revoke(ctx.token)
        return {"success": True, "message": "已登出"}

    def _get_all_users(self, ctx: RequestContext) -> dict[str, Any]:
        return {"success": True, "data": self._store.list_users()}

    def _get_user_by_account(self, ctx: RequestContext) -> dict[str, Any]:
        account = ctx.text("account", default=ctx.account)
        if account.lower() != ctx.account.lower() and not ctx.is_admin:
            raise PermissionDenied("forbidden")
        user = self._store.get_user_by_account(account)
        if user is None:
            raise ValueError("user_not_found")
        return {"success": True, "data": user}

    def _add_user(self, ctx: RequestContext) -> dict[str, Any]:
        data = ctx.mapping("userData")
        user = self._store.create_user(
            account=str(data.get("account") or ""),
            email=str(data.get("email") or ""),
            name=str(data.get("name") or ""),
            dept=str(data.get("dept") or ""),
            role=str(data.get("role") or ROLE_FILLER),
            managed_projects=data.get("managedProjects"),
            supervisor_email=str(data.get("supervisorEmail") or ""),
            password=str(data.get("password") or ""),
        )
        log.info("User %s created by %s", user["account"], ctx.account)
        return {"success": True, "message": "使用者已新增", "data": user}

    def _update_user(self, ctx: RequestContext) -> dict[str, Any]:
        data = ctx.mapping("userData")
        user_id = str(data.get("userId") or ctx.text("userId"))
        if not user_id:
            raise ValueError("user_id_required")
        user = self._store.update_user(
            user_id=user_id,
            changes=data,
            expected_version=_as_version(data.get("version")),
        )
        if data.get("password"):
            self._sessions.revoke_user(user_id)
        return {"success": True, "message": "使用者已更新", "data": user}

    def _delete_user(self, ctx: RequestContext) -> dict[str, Any]:
        user_id = ctx.text("userId")
        raw_index = ctx.get("rowIndex")
        try:
            row_index = int(raw_index) if raw_index is not None and not user_id else None
        except (TypeError, ValueError) as exc:
            raise ValueError("user_id_required") from exc
        deleted = self._store.delete_user(
            user_id=user_id,
            row_index=row_index,
            expected_account=ctx.text("account"),
            protected_user_id=str((ctx.user or {}).get("userId") or ""),
        )
        self._sessions.revoke_user(deleted["userId"])
        log.info("User %s deleted by %s", deleted["account"], ctx.account)
        return {"success": True, "message": "使用者已刪除", "data": {"userId": deleted["userId"]}}

    def _send_temporary_password(self, ctx: RequestContext) -> dict[str, Any]:
        identifier = ctx.text("input", "account", "email")
        if not identifier:
            raise ValueError("missing_param")
        user = self._store.find_user(identifier)
        if user is not None and user["email"]:
            temporary = generate_temporary_password()
            self._store.set_password(user_id=user["userId"], new_password=temporary)
            self._sessions.revoke_user(user["userId"])
            try:
                self._notifier.send(
                    Notification(
                        title="施工日誌系統 臨時密碼",
                        message=f"{user['name']} 您好：\n\n您的臨時密碼為 {temporary}\n請登入後立即變更密碼。",
                        recipients=(user["email"],),
                    )
                )
            except Exception:
                log.exception("Failed to deliver temporary password")
        return {"success": True, "message": "若帳號存在，臨時密碼已寄送至登記的電子郵件"}

    # ---------- Projects ----------

    def _get_all_projects(self, ctx: RequestContext) -> dict[str, Any]:
        return {"success": True, "data": self._store.list_projects()}

    def _get_active_projects(self, ctx: RequestContext) -> dict[str, Any]:
        return {"success": True, "data": self._store.list_projects(status=STATUS_ACTIVE)}

    def _add_project(self, ctx: RequestContext) -> dict[str, Any]:
        data = ctx.mapping("projectData", "postData") or dict(ctx.params)
        project = self._store.create_project(data)
        return {"success": True, "message": "工程已新增", "data": project}

    def _update_project_info(self, ctx: RequestContext) -> dict[str, Any]:
        changes = ctx.mapping("projectData", "postData") or dict(ctx.params)
        seq_no = ctx.text("seqNo", "projectSeqNo") or str(changes.get("seqNo") or changes.get("projectSeqNo") or "")
        if not seq_no:
            raise ValueError("seq_no_required")
        version = changes.get("version", ctx.get("version"))
        project = self._store.update_project_info(
            seq_no=seq_no,
            changes={k: v for k, v in changes.items() if k not in {"seqNo", "projectSeqNo", "version"}},
            reason=ctx.text("reason") or str(changes.get("reason") or DEFAULT_EDIT_REASON),
            modified_by=ctx.account,
            expected_version=_as_version(version),
        )
        return {"success": True, "message": "工程資訊已更新", "data": project}

    def _get_unfilled_projects_for_tomorrow(self, ctx: RequestContext) -> dict[str, Any]:
        return {"success": True, "data": self._reports.unfilled_projects_for(self._reports.tomorrow())}

    # ---------- Daily logs ----------

    def _submit_daily_log(self, ctx: RequestContext) -> dict[str, Any]:
        data = ctx.mapping("postData") or dict(ctx.params)
        seq_no = str(data.get("projectSeqNo") or "").strip()
        if not seq_no:
            raise ValueError("missing_param")
        self._require_managed(ctx, seq_no)
        entry, created = self._store.submit_daily_log(
            log_date=parse_date(data.get("logDate"), self._store.tz),
            project_seq_no=seq_no,
            is_holiday_no_work=_truthy(data.get("isHolidayNoWork")),
            is_holiday_work=_truthy(data.get("isHolidayWork")),
            inspector_ids=data.get("inspectorIds"),
            workers_count=data.get("workersCount"),
            work_items=data.get("workItems"),
            filled_by=ctx.account,
        )
        return {"success": True, "message": "日誌已提交" if created else "日誌已更新", "data": entry}

    def _get_last_log_for_project(self, ctx: RequestContext) -> dict[str, Any]:
        seq_no = ctx.text("projectSeqNo")
        if not seq_no:
            raise ValueError("missing_param")
        return {"success": True, "data": self._store.last_log_for_project(seq_no)}

    def _get_daily_summary_report(self, ctx: RequestContext) -> dict[str, Any]:
        guest = _truthy(ctx.get("isGuestMode"))
        allowed = None
        if not guest:
            if ctx.user is None:
                raise PermissionDenied("authentication_required")
            if ctx.user["role"] == ROLE_FILLER:
                allowed = ctx.user["managedProjects"]
        report = self._reports.daily_summary(
            self._date(ctx, "dateString", "date", "logDate", default=self._store.today()),
            filter_status=ctx.text("filterStatus"),
            filter_dept=ctx.text("filterDept"),
            filter_inspector=ctx.text("filterInspector"),
            guest=guest,
            allowed_projects=allowed,
        )
        return {"success": True, "data": report}

    def _update_daily_summary_log(self, ctx: RequestContext) -> dict[str, Any]:
        changes = ctx.mapping("updatedData", "postData")
        seq_no = ctx.text("projectSeqNo") or str(changes.get("projectSeqNo") or "")
        if not seq_no:
            raise ValueError("missing_param")
        entry = self._store.update_log(
            project_seq_no=seq_no,
            log_date=parse_date(ctx.get("logDate", "dateString", "date", default=changes.get("logDate")), self._store.tz),
            changes=changes,
            reason=ctx.text("reason") or DEFAULT_EDIT_REASON,
            modified_by=ctx.account,
        )
        return {"success": True, "message": "日誌已更新", "data": entry}

    def _get_previous_day_log(self, ctx: RequestContext) -> dict[str, Any]:
        seq_no = ctx.text("projectSeqNo")
        if not seq_no:
            raise ValueError("missing_param")
        current = self._date(ctx, "currentDate", "date", default=self._store.today())
        return {"success": True, "data": self._store.previous_day_log(seq_no, current)}

    def _get_unfilled_count(self, ctx: RequestContext) -> dict[str, Any]:
        d = self._date(ctx, "dateString", "date", default=self._reports.tomorrow())
        return {"success": True, "data": {"date": d.isoformat(), "count": self._reports.unfilled_count(d)}}

    def _get_filled_dates(self, ctx: RequestContext) -> dict[str, Any]:
        return {"success": True, "data": self._reports.filled_dates(ctx.text("projectSeqNo") or None)}

    def _get_daily_log_status(self, ctx: RequestContext) -> dict[str, Any]:
        today = self._store.today()
        first, last = month_bounds(today.year, today.month)
        start = self._date(ctx, "startDate", default=first)
        end = self._date(ctx, "endDate", default=last)
        return {"success": True, "data": self._reports.daily_log_status(start, end)}

    def _get_filler_reminders(self, ctx: RequestContext) -> dict[str, Any]:
        own = (ctx.user or {}).get("managedProjects", [])
        requested = ctx.get("managedProjectsStr", "managedProjects")
        if requested is None:
            managed = own
        else:
            managed = [str(x) for x in _as_list(requested)]
            if not ctx.is_admin:
                managed = [s for s in managed if s in own]
        return {"success": True, "data": self._reports.filler_reminders(managed)}

    # ---------- Inspectors ----------

    def _get_all_inspectors(self, ctx: RequestContext) -> dict[str, Any]:
        return {"success": True, "data": self._store.list_inspectors(active_only=_truthy(ctx.get("activeOnly")))}

    def _add_inspector(self, ctx: RequestContext) -> dict[str, Any]:
        data = ctx.mapping("postData") or dict(ctx.params)
        inspector = self._store.create_inspector(
            name=str(data.get("name") or ""),
            title=str(data.get("title") or ""),
            dept=str(data.get("dept") or ""),
            phone=str(data.get("phone") or ""),
        )
        return {"success": True, "message": "檢查員已新增", "data": inspector}

    def _update_inspector(self, ctx: RequestContext) -> dict[str, Any]:
        data = ctx.mapping("postData") or dict(ctx.params)
        inspector_id = ctx.text("inspectorId", "id") or str(data.get("inspectorId") or data.get("id") or "")
        if not inspector_id:
            raise ValueError("missing_param")
        inspector = self._store.update_inspector(inspector_id=inspector_id, changes=data)
        return {"success": True, "message": "檢查員已更新", "data": inspector}

    # ---------- Calendar ----------

    def _check_holiday_filled_status(self, ctx: RequestContext) -> dict[str, Any]:
        projects = ctx.get("projects", "projectSeqNos")
        rows = self._reports.holiday_filled_status(
            self._date(ctx, "dateString", "date"), None if projects is None else _as_list(projects)
        )
        return {"success": True, "data": rows}

    def _batch_submit_holiday_logs(self, ctx: RequestContext) -> dict[str, Any]:
        result = self._reports.batch_submit_holiday_logs(
            start=self._date(ctx, "startDate"),
            end=self._date(ctx, "endDate"),
            target_days=_as_list(ctx.get("targetDays")),
            project_seq_nos=_as_list(ctx.get("projectSeqNos", "projects")),
            filled_by=ctx.account,
        )
        message = f"已建立 {result['created']} 筆假日不施工日誌，略過 {result['skipped']} 筆已填寫"
        return {"success": True, "message": message, "data": result}

    def _check_holiday(self, ctx: RequestContext) -> dict[str, Any]:
        info = self._calendar.resolve(self._date(ctx, "dateString", "date"), project_seq_no=ctx.text("projectSeqNo"))
        return {"success": True, "data": info}

    def _get_month_holidays(self, ctx: RequestContext) -> dict[str, Any]:
        today = self._store.today()
        try:
            year = int(ctx.get("year", default=today.year))
            month = int(ctx.get("month", default=today.month))
        except (TypeError, ValueError) as exc:
            raise ValueError("invalid_month") from exc
        return {"success": True, "data": self._calendar.month(year, month)}

    def _set_holiday(self, ctx: RequestContext) -> dict[str, Any]:
        entry = self._store.set_holiday(
            day=self._date(ctx, "dateString", "date"),
            is_holiday=_truthy(ctx.get("isHoliday", default=True)),
            remark=ctx.text("remark"),
            project_seq_no=ctx.text("projectSeqNo"),
            updated_by=ctx.account,
        )
        return {"success": True, "message": "行事曆已更新", "data": entry}

    # ---------- Other ----------

    def _get_all_departments(self, ctx: RequestContext) -> dict[str, Any]:
        return {"success": True, "data": self._store.departments()}

    def _get_disaster_types(self, ctx: RequestContext) -> dict[str, Any]:
        return {"success": True, "data": self._store.disaster_types()}

    def _save_custom_disaster_type(self, ctx: RequestContext) -> dict[str, Any]:
        added = self._store.add_custom_disaster_type(ctx.text("customType", "typeLabel", "disasterType"))
        message = "自訂災害類型已新增" if added else "災害類型已存在"
        return {"success": True, "message": message, "data": {"added": added}}

    def _generate_tbmky(self, ctx: RequestContext) -> dict[str, Any]:
        seq_no = ctx.text("projectSeqNo")
        if not seq_no:
            raise ValueError("missing_param")
        result = self._tbm.generate(self._date(ctx, "dateString", "date", "logDate"), seq_no, mode=ctx.text("mode", default="merged"))
        return {"success": True, "message": "TBM-KY 已產生", "data": result}

    def _test_tbmky_permissions(self, ctx: RequestContext) -> dict[str, Any]:
        result = self._tbm.check_permissions()
        return {"success": bool(result["writable"]), "data": result}

    def _log_modification(self, ctx: RequestContext) -> dict[str, Any]:
        entry = self._store.log_modification(
            type_=ctx.text("type"),
            project_seq_no=ctx.text("projectSeqNo"),
            old_data=ctx.get("oldData", default=""),
            new_data=ctx.get("newData", default=""),
            reason=ctx.text("reason"),
            action_type=ctx.text("actionType"),
            modified_by=ctx.account,
        )
        return {"success": True, "data": entry}
