from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Notification:
    title: str
    message: str
    recipients: tuple[str, ...] = field(default_factory=tuple)
    cc: tuple[str, ...] = field(default_factory=tuple)


class Notifier:
    name: str

    def send(self, notification: Notification) -> None:  # pragma: no cover
        raise NotImplementedError
