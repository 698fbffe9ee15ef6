from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage

from sitelog.notifiers.base import Notification, Notifier


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    user: str
    password: str
    sender: str


class SmtpNotifier(Notifier):
    name = "smtp"

    def __init__(self, cfg: SmtpConfig) -> None:
        if not cfg.host or not cfg.user or not cfg.password:
            raise RuntimeError("Missing SMTP settings: smtp_host, smtp_user, smtp_password")
        self._cfg = cfg

    def send(self, notification: Notification) -> None:
        if not notification.recipients:
            raise ValueError("recipient_required")
        msg = EmailMessage()
        msg["Subject"] = notification.title
        msg["From"] = self._cfg.sender or self._cfg.user
        msg["To"] = ", ".join(notification.recipients)
        if notification.cc:
            msg["Cc"] = ", ".join(notification.cc)
        msg.set_content(notification.message)
        ctx = ssl.create_default_context()
        with smtplib.SMTP_SSL(self._cfg.host, self._cfg.port, context=ctx, timeout=20) as s:
            s.login(self._cfg.user, self._cfg.password)
            s.send_message(msg)
