from __future__ import annotations

from datetime import date

import pytest

from sitelog.sheets import MemoryTableGateway
from sitelog.store import (
    CUSTOM_DISASTER_CATEGORY,
    ROLE_FILLER,
    STATUS_ACTIVE,
    ConflictError,
    SiteLogStore,
    normalize_work_items,
    parse_date,
)


def _store() -> SiteLogStore:
    return SiteLogStore(
        MemoryTableGateway(),
        bootstrap_admin={"account": "admin", "password": "ChangeMe123!", "email": "admin@example.com"},
    )


def _project(store: SiteLogStore, seq_no: str = "P001", **extra) -> dict:
    return store.create_project({"seqNo": seq_no, "shortName": f"工程{seq_no}", "contractor": "大同營造", **extra})


ITEM = {
    "workItem": "開挖",
    "workLocation": "基地北側",
    "disasterTypes": ["物體倒塌、崩塌"],
    "countermeasures": "設置擋土支撐",
}


def test_bootstrap_admin_and_authenticate() -> None:
    store = _store()
    users = store.list_users()
    assert [u["account"] for u in users] == ["admin"]
    assert users[0]["rowIndex"] == 2
    assert "password_hash" not in users[0]

    assert store.authenticate("admin", "ChangeMe123!") is not None
    assert store.authenticate("Admin@Example.com", "ChangeMe123!") is not None
    assert store.authenticate("admin", "bad") is None
    assert store.authenticate("nobody", "ChangeMe123!") is None
    assert store.get_user_by_account("admin")["lastLoginAt"]


def test_create_user_rejects_duplicates_and_bad_roles() -> None:
    store = _store()
    store.create_user(account="alice", email="alice@example.com", role=ROLE_FILLER, password="secret1")

    with pytest.raises(ValueError, match="duplicate_account"):
        store.create_user(account="ALICE", password="secret1")
    with pytest.raises(ValueError, match="duplicate_email"):
        store.create_user(account="alice2", email="Alice@example.com", password="secret1")
    with pytest.raises(ValueError, match="invalid_role"):
        store.create_user(account="bob", role="superuser", password="secret1")
    with pytest.raises(ValueError, match="password_too_short"):
        store.create_user(account="bob", password="123")


def test_update_user_checks_version() -> None:
    store = _store()
    user = store.create_user(account="alice", password="secret1", managed_projects=["P001"])
    assert user["version"] == 1
    assert user["managedProjects"] == ["P001"]

    updated = store.update_user(user_id=user["userId"], changes={"name": "愛麗絲", "managedProjects": "P001,P002"}, expected_version=1)
    assert updated["name"] == "愛麗絲"
    assert updated["managedProjects"] == ["P001", "P002"]
    assert updated["version"] == 2

    with pytest.raises(ConflictError):
        store.update_user(user_id=user["userId"], changes={"name": "x"}, expected_version=1)


def test_delete_user_rejects_stale_row_index() -> None:
    store = _store()
    alice = store.create_user(account="alice", password="secret1")
    store.create_user(account="bob", password="secret1")
    assert [u["rowIndex"] for u in store.list_users()] == [2, 3, 4]

    store.delete_user(user_id=alice["userId"])
    # Row 3 now holds bob; a caller still holding alice's old index must be refused.
    with pytest.raises(ConflictError, match="stale_row_index"):
        store.delete_user(row_index=3, expected_account="alice")

    deleted = store.delete_user(row_index=3, expected_account="bob")
    assert deleted["account"] == "bob"
    assert [u["account"] for u in store.list_users()] == ["admin"]


def test_change_password_requires_old_password() -> None:
    store = _store()
    with pytest.raises(ValueError, match="invalid_old_password"):
        store.change_password(account="admin", old_password="nope", new_password="newpass1")
    store.change_password(account="admin", old_password="ChangeMe123!", new_password="newpass1")
    assert store.authenticate("admin", "newpass1") is not None


def test_update_project_info_remark_rule_and_single_audit_entry() -> None:
    store = _store()
    _project(store)

    with pytest.raises(ValueError, match="remark_required"):
        store.update_project_info(seq_no="P001", changes={"projectStatus": "完工"}, reason="r", modified_by="admin")
    assert store.list_modifications() == []

    with pytest.raises(ValueError, match="invalid_status"):
        store.update_project_info(seq_no="P001", changes={"projectStatus": "暫停"}, reason="r", modified_by="admin")

    project = store.update_project_info(
        seq_no="P001",
        changes={"status": "完工", "remark": "已驗收"},
        reason="管理員修改",
        modified_by="admin",
    )
    assert project["projectStatus"] == "完工"
    assert project["statusRemark"] == "已驗收"
    entries = store.list_modifications()
    assert len(entries) == 1
    assert entries[0]["modified_by"] == "admin"
    assert entries[0]["project_seq_no"] == "P001"


def test_submit_daily_log_upserts_one_row_per_project_and_date() -> None:
    store = _store()
    _project(store)
    d = date(2024, 6, 11)

    first, created = store.submit_daily_log(log_date=d, project_seq_no="P001", workers_count=5, work_items=[ITEM], filled_by="admin")
    assert created is True
    second, created = store.submit_daily_log(log_date=d, project_seq_no="P001", workers_count=8, work_items=[ITEM], filled_by="admin")
    assert created is False
    assert second["logId"] == first["logId"]
    assert len(store.list_logs(project_seq_no="P001")) == 1
    assert store.get_log("P001", d)["workersCount"] == 8


def test_submit_daily_log_validation() -> None:
    store = _store()
    _project(store)
    d = date(2024, 6, 11)

    with pytest.raises(ValueError, match="conflicting_holiday_flags"):
        store.submit_daily_log(log_date=d, project_seq_no="P001", is_holiday_no_work=True, is_holiday_work=True)
    with pytest.raises(ValueError, match="work_items_required"):
        store.submit_daily_log(log_date=d, project_seq_no="P001", work_items=[])
    with pytest.raises(ValueError, match="invalid_workers_count"):
        store.submit_daily_log(log_date=d, project_seq_no="P001", workers_count=-1, work_items=[ITEM])
    with pytest.raises(ValueError, match="project_not_found"):
        store.submit_daily_log(log_date=d, project_seq_no="P999", work_items=[ITEM])

    entry, _ = store.submit_daily_log(
        log_date=d,
        project_seq_no="P001",
        is_holiday_no_work=True,
        inspector_ids=["INS001"],
        workers_count=4,
        work_items=[ITEM],
    )
    assert entry["workItems"] == []
    assert entry["inspectorIds"] == []
    assert entry["workersCount"] == 0


def test_previous_day_log_skips_holiday_logs() -> None:
    store = _store()
    _project(store)
    store.submit_daily_log(log_date=date(2024, 6, 14), project_seq_no="P001", workers_count=6, work_items=[ITEM])
    store.submit_daily_log(log_date=date(2024, 6, 15), project_seq_no="P001", is_holiday_no_work=True)

    prev = store.previous_day_log("P001", date(2024, 6, 17))
    assert prev is not None
    assert prev["logDate"] == "2024-06-14"
    assert prev["workItems"] == [ITEM]
    assert store.previous_day_log("P001", date(2024, 6, 14)) is None
    assert store.last_log_for_project("P001")["logDate"] == "2024-06-15"


def test_update_log_records_modification() -> None:
    store = _store()
    _project(store)
    d = date(2024, 6, 11)
    store.submit_daily_log(log_date=d, project_seq_no="P001", workers_count=5, work_items=[ITEM], filled_by="filler1")

    after = store.update_log(project_seq_no="P001", log_date=d, changes={"workersCount": 9}, reason="更正人數", modified_by="admin")
    assert after["workersCount"] == 9
    assert after["filledBy"] == "filler1"
    entries = store.list_modifications(project_seq_no="P001")
    assert len(entries) == 1
    assert entries[0]["reason"] == "更正人數"


def test_disaster_types_and_departments() -> None:
    store = _store()
    groups = store.disaster_types()
    assert groups
    assert all(g["types"] for g in groups)

    assert store.add_custom_disaster_type("局限空間缺氧") is True
    assert store.add_custom_disaster_type("局限空間缺氧") is False
    custom = [g for g in store.disaster_types() if g["category"] == CUSTOM_DISASTER_CATEGORY]
    assert custom == [{"category": CUSTOM_DISASTER_CATEGORY, "types": ["局限空間缺氧"]}]

    _project(store, "P001", dept="工務課")
    _project(store, "P002", dept="養護課")
    assert store.departments() == ["工務課", "養護課"]


def test_inspectors_and_holiday_overrides() -> None:
    store = _store()
    a = store.create_inspector(name="林檢查", title="工程司")
    b = store.create_inspector(name="陳檢查")
    assert (a["id"], b["id"]) == ("INS001", "INS002")

    store.update_inspector(inspector_id="INS002", changes={"isActive": False})
    assert [i["id"] for i in store.list_inspectors(active_only=True)] == ["INS001"]

    _project(store)
    store.set_holiday(day=date(2024, 6, 15), is_holiday=True, remark="週末", project_seq_no="P001")
    store.set_holiday(day=date(2024, 6, 15), is_holiday=False, remark="補班", project_seq_no="P001")
    overrides = store.holiday_overrides()
    assert overrides == {("2024-06-15", "P001"): {"is_holiday": False, "remark": "補班"}}


def test_parse_helpers() -> None:
    assert parse_date("2024/06/15") == date(2024, 6, 15)
    assert parse_date("2024-06-14T16:30:00.000Z") == date(2024, 6, 14)
    with pytest.raises(ValueError, match="invalid_date"):
        parse_date("15 June")
    with pytest.raises(ValueError, match="date_required"):
        parse_date("")

    items = normalize_work_items('[{"workItem": "搬運", "disasterTypes": "墜落,被撞"}, {}]')
    assert items == [{"workItem": "搬運", "workLocation": "", "disasterTypes": ["墜落", "被撞"], "countermeasures": ""}]
    assert STATUS_ACTIVE == "施工中"
