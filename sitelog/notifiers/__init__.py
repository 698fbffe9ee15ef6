from __future__ import annotations

from sitelog.config import Settings
from sitelog.notifiers.base import Notification, Notifier
from sitelog.notifiers.smtp import SmtpConfig, SmtpNotifier
from sitelog.notifiers.stdout import StdoutNotifier
from sitelog.notifiers.webhook import WebhookNotifier


def build_notifier(settings: Settings) -> Notifier:
    if settings.notifier == "webhook":
        return WebhookNotifier(settings.webhook_url)
    if settings.notifier == "smtp":
        return SmtpNotifier(
            SmtpConfig(
                host=settings.smtp_host,
                port=settings.smtp_port,
                user=settings.smtp_user,
                password=settings.smtp_password,
                sender=settings.mail_from,
            )
        )
    return StdoutNotifier()


__all__ = [
    "Notification",
    "Notifier",
    "SmtpConfig",
    "SmtpNotifier",
    "StdoutNotifier",
    "WebhookNotifier",
    "build_notifier",
]
