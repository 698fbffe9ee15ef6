from __future__ import annotations

import argparse
import getpass
import logging
import os
from pathlib import Path

from dotenv import load_dotenv


log = logging.getLogger("sitelog")


def _read_new_password() -> str | None:
    first = getpass.getpass("New password: ")
    second = getpass.getpass("Confirm password: ")
    if first != second:
        print("兩次輸入的密碼不一致。")
        return None
    return first


def _set_password(account: str) -> int:
    from sitelog.auth import MIN_PASSWORD_LENGTH
    from sitelog.config import load_settings
    from sitelog.store import SiteLogStore

    password = _read_new_password()
    if password is None:
        return 1
    if len(password) < MIN_PASSWORD_LENGTH:
        print(f"密碼長度至少需 {MIN_PASSWORD_LENGTH} 個字元。")
        return 1

    store = SiteLogStore.from_settings(load_settings())
    user = store.get_user_by_account(account)
    if user is None:
        print(f"找不到使用者：{account}")
        return 1
    store.set_password(user_id=user["userId"], new_password=password)
    print(f"已更新使用者「{account}」的密碼。")
    return 0


def _hash_password() -> int:
    from sitelog.auth import hash_password

    password = _read_new_password()
    if password is None:
        return 1
    print(hash_password(password))
    return 0


def _remind(dry_run: bool) -> int:
    from sitelog.config import load_settings
    from sitelog.notifiers import build_notifier
    from sitelog.reports import ReportAggregator
    from sitelog.store import SiteLogStore
    from sitelog.workdays import WorkCalendar

    settings = load_settings()
    store = SiteLogStore.from_settings(settings)
    calendar = WorkCalendar(store, country=settings.holiday_country, non_working_weekdays=settings.non_working_weekdays)
    notices = ReportAggregator(store, calendar).reminder_notifications()
    if dry_run:
        for notice in notices:
            print(f"[{notice.title}] to: {', '.join(notice.recipients)}\n{notice.message}\n")
        return 0

    notifier = build_notifier(settings)
    failed = 0
    for notice in notices:
        try:
            notifier.send(notice)
        except Exception:
            failed += 1
            log.exception("Failed to send reminder to %s", ", ".join(notice.recipients))
    log.info("Reminders sent: %s, failed: %s", len(notices) - failed, failed)
    return 1 if failed else 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    parser = argparse.ArgumentParser(prog="sitelog")
    parser.add_argument("--config", type=Path, default=None, help="YAML config file (sets SITELOG_CONFIG)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_serve = sub.add_parser("serve", help="Run the HTTP API")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8010)
    p_serve.add_argument("--reload", action="store_true")

    p_pw = sub.add_parser("set-password", help="Set the password of an existing user")
    p_pw.add_argument("--account", default="admin")

    sub.add_parser("hash-password", help="Print a password hash for manual sheet edits")

    p_remind = sub.add_parser("remind", help="Notify fillers about projects unfilled for tomorrow")
    p_remind.add_argument("--dry-run", action="store_true")

    args = parser.parse_args(argv)
    if args.config is not None:
        os.environ["SITELOG_CONFIG"] = str(args.config.resolve())

    if args.cmd == "set-password":
        return _set_password(str(args.account or "admin").strip() or "admin")
    if args.cmd == "hash-password":
        return _hash_password()
    if args.cmd == "remind":
        return _remind(bool(args.dry_run))

    import uvicorn

    uvicorn.run("sitelog.app:app", host=args.host, port=args.port, reload=bool(args.reload))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
