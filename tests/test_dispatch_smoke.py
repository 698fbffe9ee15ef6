from __future__ import annotations

import importlib
import json
import os
from datetime import date, timedelta
from pathlib import Path

from fastapi.testclient import TestClient


def _setup_env(data_dir: Path) -> None:
    os.environ["SITELOG_STORAGE"] = "memory"
    os.environ["SITELOG_DATA_DIR"] = str(data_dir)
    os.environ["SITELOG_ALLOWED_HOSTS"] = "localhost,127.0.0.1,testserver"
    os.environ["SITELOG_BOOTSTRAP_ADMIN_ACCOUNT"] = "admin"
    os.environ["SITELOG_BOOTSTRAP_ADMIN_EMAIL"] = "admin@example.com"
    os.environ["SITELOG_BOOTSTRAP_ADMIN_PASSWORD"] = "ChangeMe123!"
    os.environ["SITELOG_NOTIFIER"] = "stdout"


def _load_app(data_dir: Path):
    _setup_env(data_dir)
    mod = importlib.import_module("sitelog.app")
    mod = importlib.reload(mod)
    return mod.app


def _call(client: TestClient, action: str, token: str = "", **params):
    body = {"action": action, **params}
    if token:
        body["sessionToken"] = token
    res = client.post("/api", content=json.dumps(body), headers={"content-type": "text/plain;charset=utf-8"})
    assert res.status_code == 200
    return res.json()


def _login(client: TestClient, account: str = "admin", password: str = "ChangeMe123!") -> str:
    payload = _call(client, "authenticateUser", account=account, password=password)
    assert payload["success"] is True
    return payload["sessionToken"]


def _add_project(client: TestClient, token: str, seq_no: str = "P001", **extra) -> dict:
    data = {
        "seqNo": seq_no,
        "shortName": f"工程{seq_no}",
        "fullName": f"測試新建工程{seq_no}",
        "contractor": "大同營造",
        "dept": "工務課",
        "respName": "王小明",
        "respPhone": "0912345678",
        **extra,
    }
    payload = _call(client, "addProject", token, projectData=json.dumps(data, ensure_ascii=False))
    assert payload["success"] is True, payload
    return payload["data"]


def test_health_and_get_mode(tmp_path: Path) -> None:
    client = TestClient(_load_app(tmp_path))

    r = client.get("/health")
    assert r.status_code == 200
    assert r.text == "ok"

    notice = client.get("/api", params={"action": "getAllProjects"})
    assert notice.status_code == 200
    assert notice.headers["content-type"].startswith("text/plain")

    api = client.get("/api", params={"action": "getAllProjects", "api": "true"})
    assert api.status_code == 200
    assert api.json()["code"] == "authentication_required"
    assert api.headers["X-Frame-Options"] == "DENY"


def test_unknown_action_envelope(tmp_path: Path) -> None:
    client = TestClient(_load_app(tmp_path))

    for name in ["nope", "deleteEverything", "AUTHENTICATEUSER"]:
        assert _call(client, name) == {"success": False, "message": f"Unknown action: {name}"}

    by_get = client.get("/", params={"action": "nope", "type": "json"})
    assert by_get.json() == {"success": False, "message": "Unknown action: nope"}


def test_authenticate_success_and_failure(tmp_path: Path) -> None:
    client = TestClient(_load_app(tmp_path))

    ok = _call(client, "authenticateUser", account="ADMIN@example.com", password="ChangeMe123!")
    assert ok["success"] is True
    assert ok["user"]["account"] == "admin"
    assert ok["user"]["role"] == "管理員"
    assert "password_hash" not in ok["user"]
    assert ok["sessionToken"]

    bad = _call(client, "authenticateUser", account="admin", password="wrong-password")
    assert bad["success"] is False
    assert "user" not in bad
    assert "sessionToken" not in bad

    unknown = _call(client, "authenticateUser", account="ghost", password="wrong-password")
    assert unknown["message"] == bad["message"]


def test_session_token_lifecycle(tmp_path: Path) -> None:
    client = TestClient(_load_app(tmp_path))
    token = _login(client)

    current = client.post(
        "/api",
        content=json.dumps({"action": "getCurrentSession"}),
        headers={"authorization": f"Bearer {token}"},
    ).json()
    assert current["success"] is True
    assert current["data"]["user"]["account"] == "admin"

    assert _call(client, "logoutUser", token)["success"] is True
    after = _call(client, "getCurrentSession", token)
    assert after["success"] is False
    assert after["code"] == "authentication_required"


def test_role_checks_are_enforced_server_side(tmp_path: Path) -> None:
    client = TestClient(_load_app(tmp_path))
    admin = _login(client)
    _add_project(client, admin, "P001")
    _add_project(client, admin, "P002")

    created = _call(
        client,
        "addUser",
        admin,
        userData=json.dumps(
            {
                "account": "filler1",
                "email": "filler1@example.com",
                "name": "填表人甲",
                "role": "填表人",
                "managedProjects": ["P001"],
                "password": "secret123",
            },
            ensure_ascii=False,
        ),
    )
    assert created["success"] is True

    dup = _call(client, "addUser", admin, userData={"account": "FILLER1", "password": "secret123"})
    assert dup["success"] is False
    assert dup["code"] == "duplicate_account"

    filler = _login(client, "filler1", "secret123")
    for action in ["getAllUsers", "addInspector", "batchSubmitHolidayLogs", "setHoliday", "updateDailySummaryLog"]:
        denied = _call(client, action, filler)
        assert denied["success"] is False
        assert denied["code"] == "forbidden", action

    other = _call(client, "getUserByAccount", filler, account="admin")
    assert other["code"] == "forbidden"
    own = _call(client, "getUserByAccount", filler, account="filler1")
    assert own["success"] is True

    tomorrow = (date.today() + timedelta(days=1)).isoformat()
    not_managed = _call(
        client,
        "submitDailyLog",
        filler,
        postData={"logDate": tomorrow, "projectSeqNo": "P002", "isHolidayNoWork": True},
    )
    assert not_managed["code"] == "forbidden"
    managed = _call(
        client,
        "submitDailyLog",
        filler,
        postData={"logDate": tomorrow, "projectSeqNo": "P001", "isHolidayNoWork": True},
    )
    assert managed["success"] is True


def test_update_project_info_requires_remark_and_logs_once(tmp_path: Path) -> None:
    app = _load_app(tmp_path)
    client = TestClient(app)
    token = _login(client)
    _add_project(client, token, "P001")
    store = app.state.dispatcher.store

    missing = _call(client, "updateProjectInfo", token, seqNo="P001", projectStatus="停工", statusRemark="")
    assert missing["success"] is False
    assert missing["code"] == "remark_required"
    assert store.list_modifications(project_seq_no="P001") == []

    ok = _call(
        client,
        "updateProjectInfo",
        token,
        seqNo="P001",
        projectStatus="停工",
        statusRemark="颱風停工",
        reason="管理員修改",
    )
    assert ok["success"] is True
    assert ok["data"]["projectStatus"] == "停工"
    entries = store.list_modifications(project_seq_no="P001")
    assert len(entries) == 1
    assert entries[0]["reason"] == "管理員修改"
    assert json.loads(entries[0]["old_data"])["projectStatus"] == "施工中"
    assert json.loads(entries[0]["new_data"])["statusRemark"] == "颱風停工"

    stale = _call(client, "updateProjectInfo", token, seqNo="P001", statusRemark="x", version=1)
    assert stale["code"] == "version_conflict"


def test_submit_then_previous_day_log_round_trip(tmp_path: Path) -> None:
    client = TestClient(_load_app(tmp_path))
    token = _login(client)
    _add_project(client, token, "P001")
    inspector = _call(client, "addInspector", token, name="林檢查", title="工程司")["data"]

    items = [
        {
            "workItem": "模板組立",
            "workLocation": "2F 樓板",
            "disasterTypes": ["墜落", "物體飛落"],
            "countermeasures": "設置護欄並佩戴安全帶",
        },
        {
            "workItem": "鋼筋綁紮",
            "workLocation": "1F 柱",
            "disasterTypes": ["被夾"],
            "countermeasures": "戴手套作業",
        },
    ]
    submitted = _call(
        client,
        "submitDailyLog",
        token,
        postData=json.dumps(
            {
                "logDate": "2024-06-11",
                "projectSeqNo": "P001",
                "isHolidayNoWork": False,
                "isHolidayWork": False,
                "inspectorIds": [inspector["id"]],
                "workersCount": 12,
                "workItems": items,
            },
            ensure_ascii=False,
        ),
    )
    assert submitted["success"] is True

    prev = _call(client, "getPreviousDayLog", token, projectSeqNo="P001", currentDate="2024-06-12")
    assert prev["success"] is True
    data = prev["data"]
    assert data["logDate"] == "2024-06-11"
    assert data["workItems"] == items
    assert data["inspectorIds"] == [inspector["id"]]
    assert data["workersCount"] == 12
    assert data["isHolidayNoWork"] is False

    resubmit = _call(
        client,
        "submitDailyLog",
        token,
        postData={"logDate": "2024-06-11", "projectSeqNo": "P001", "workersCount": 3, "workItems": items[:1]},
    )
    assert resubmit["success"] is True
    filled = _call(client, "getFilledDates", token, projectSeqNo="P001")
    assert filled["data"] == {"P001": ["2024-06-11"]}


def test_batch_holiday_logs_via_get_is_idempotent(tmp_path: Path) -> None:
    client = TestClient(_load_app(tmp_path))
    token = _login(client)
    _add_project(client, token, "P001")

    params = {
        "action": "batchSubmitHolidayLogs",
        "api": "true",
        "sessionToken": token,
        "startDate": "2024-06-10",
        "endDate": "2024-06-16",
        "targetDays": "[0,6]",
        "projectSeqNos": '["P001"]',
    }
    first = client.get("/api", params=params).json()
    assert first["success"] is True
    assert first["data"]["created"] == 2
    assert sorted(e["date"] for e in first["data"]["createdEntries"]) == ["2024-06-15", "2024-06-16"]

    second = client.get("/api", params=params).json()
    assert second["success"] is True
    assert second["data"]["created"] == 0
    assert second["data"]["skipped"] == 2

    filled = _call(client, "getFilledDates", token)
    assert filled["data"] == {"P001": ["2024-06-15", "2024-06-16"]}


def test_guest_summary_and_malformed_body(tmp_path: Path) -> None:
    client = TestClient(_load_app(tmp_path))
    token = _login(client)
    _add_project(client, token, "P001")

    guest = _call(client, "getDailySummaryReport", date="2024-06-11", isGuestMode="true")
    assert guest["success"] is True
    row = guest["data"]["rows"][0]
    assert row["projectSeqNo"] == "P001"
    assert row["respPhone"] != "0912345678"
    assert row["respPhone"].endswith("678")

    anonymous = _call(client, "getDailySummaryReport", date="2024-06-11")
    assert anonymous["code"] == "authentication_required"

    bad = client.post("/api", content="{not json", headers={"content-type": "text/plain"})
    assert bad.status_code == 200
    assert bad.json()["success"] is False
    assert bad.json()["code"] == "malformed_body"


def test_lock_timeout_and_internal_errors(tmp_path: Path, monkeypatch) -> None:
    _setup_env(tmp_path)
    from sitelog.app import build_dispatcher
    from sitelog.config import load_settings, with_overrides

    dispatcher = build_dispatcher(with_overrides(load_settings(), lock_timeout_seconds=0.1))
    login = dispatcher.dispatch("authenticateUser", {"account": "admin", "password": "ChangeMe123!"})
    token = login["sessionToken"]

    with dispatcher.lock.acquired():
        busy = dispatcher.dispatch("addInspector", {"name": "林檢查"}, session_token=token)
    assert busy["success"] is False
    assert busy["code"] == "lock_timeout"
    assert busy["retryable"] is True

    # Reads do not wait for the writer lock.
    with dispatcher.lock.acquired():
        assert dispatcher.dispatch("getAllInspectors", {}, session_token=token)["success"] is True

    def _boom() -> list[str]:
        raise RuntimeError("sheet unreachable")

    monkeypatch.setattr(dispatcher.store, "departments", _boom)
    failed = dispatcher.dispatch("getAllDepartments", {}, session_token=token)
    assert failed["success"] is False
    assert failed["message"] == "sheet unreachable"
    assert "RuntimeError" in failed["stack"]


def test_legacy_client_parameter_names(tmp_path: Path) -> None:
    client = TestClient(_load_app(tmp_path))

    signed_in = _call(client, "authenticateUser", identifier="admin", password="ChangeMe123!")
    assert signed_in["success"] is True
    token = signed_in["sessionToken"]
    _add_project(client, token, "P001")

    submitted = _call(
        client,
        "submitDailyLog",
        token,
        postData=json.dumps(
            {
                "logDate": "2024-06-12",
                "projectSeqNo": "P001",
                "workersCount": 5,
                "workItems": [{"workItem": "基礎開挖", "workLocation": "B1", "disasterTypes": ["崩塌"]}],
            },
            ensure_ascii=False,
        ),
    )
    assert submitted["success"] is True, submitted

    summary = _call(client, "getDailySummaryReport", token, dateString="2024-06-12")
    assert summary["success"] is True
    assert summary["data"]["date"] == "2024-06-12"
    assert summary["data"]["summary"]["filled"] == 1

    saturday = _call(client, "checkHoliday", token, dateString="2024-06-15")
    assert saturday["success"] is True
    assert saturday["data"]["date"] == "2024-06-15"
    assert saturday["data"]["isHoliday"] is True

    status = _call(client, "checkHolidayFilledStatus", token, dateString="2024-06-12", projects=json.dumps(["P001"]))
    assert status["success"] is True
    assert status["data"][0]["projectSeqNo"] == "P001"
    assert status["data"][0]["hasFilled"] is True

    reminders = _call(client, "getFillerReminders", token, managedProjectsStr="P001")
    assert reminders["success"] is True
    assert reminders["data"]["total"] >= 1
    assert [p["projectSeqNo"] for p in reminders["data"]["tomorrow"]["projects"]] == ["P001"]

    custom = _call(client, "saveCustomDisasterType", token, customType="高溫作業")
    assert custom["data"]["added"] is True

    created = _call(
        client,
        "addUser",
        token,
        userData=json.dumps(
            {"account": "filler1", "email": "filler1@example.com", "name": "張填表", "role": "填表人", "password": "Passw0rd!"},
            ensure_ascii=False,
        ),
    )
    assert created["success"] is True, created

    temporary = _call(client, "sendTemporaryPassword", input="filler1@example.com")
    assert temporary["success"] is True
    assert _call(client, "authenticateUser", identifier="filler1", password="Passw0rd!")["success"] is False

    deleted = _call(client, "deleteUser", token, rowIndex=created["data"]["rowIndex"])
    assert deleted["success"] is True
    assert deleted["data"]["userId"] == created["data"]["userId"]


def test_bad_version_field_returns_named_code(tmp_path: Path) -> None:
    client = TestClient(_load_app(tmp_path))
    token = _login(client)
    _add_project(client, token, "P001")
    admin_id = _call(client, "getUserByAccount", token, account="admin")["data"]["userId"]

    user = _call(client, "updateUser", token, userData=json.dumps({"userId": admin_id, "name": "管理者", "version": "abc"}))
    assert user["success"] is False
    assert user["code"] == "invalid_version"

    project = _call(client, "updateProjectInfo", token, seqNo="P001", shortName="新名稱", version="v2")
    assert project["success"] is False
    assert project["code"] == "invalid_version"
