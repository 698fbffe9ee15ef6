from __future__ import annotations

from sitelog.notifiers.base import Notification, Notifier


class StdoutNotifier(Notifier):
    name = "stdout"

    def send(self, notification: Notification) -> None:
        to = ", ".join(notification.recipients) or "-"
        print(f"[{notification.title}] to: {to}\n{notification.message}\n")
