from __future__ import annotations

import time

import requests

from sitelog.notifiers.base import Notification, Notifier


class WebhookNotifier(Notifier):
    name = "webhook"

    def __init__(self, url: str, *, timeout: float = 10.0) -> None:
        if not url:
            raise RuntimeError("Missing webhook_url for the webhook notifier")
        self._url = url
        self._timeout = timeout

    def send(self, notification: Notification) -> None:
        resp = requests.post(
            self._url,
            json={
                "event": "notification",
                "timestamp": int(time.time()),
                "title": notification.title,
                "message": notification.message,
                "recipients": list(notification.recipients),
                "cc": list(notification.cc),
            },
            timeout=self._timeout,
        )
        resp.raise_for_status()
