"""Push notifications for session start / stop."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import requests

from .constants import UPLOAD_TIMEOUT

if TYPE_CHECKING:
    from .scheduler import Scheduler

log = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, title: str, url: str) -> None: ...


class NullNotifier:
    """Used when no push URL is configured."""

    def notify(self, title: str, url: str) -> None:
        log.debug("Notification (not sent): %s", title)


class PushNotifier:
    """POST ``{"title": ..., "data": {"url": ...}}`` to a push endpoint.

    Errors propagate; callers treat them as non-fatal.
    """

    def __init__(self, push_url: str, session: requests.Session | None = None,
                 timeout: float = UPLOAD_TIMEOUT) -> None:
        self.push_url = push_url
        self._session = session or requests.Session()
        self._timeout = timeout

    def notify(self, title: str, url: str) -> None:
        response = self._session.post(
            self.push_url,
            json={"title": title, "data": {"url": url}},
            timeout=self._timeout,
        )
        response.raise_for_status()


def create_notifier(push_url: str) -> Notifier:
    if push_url:
        return PushNotifier(push_url)
    return NullNotifier()


def notify_in_background(scheduler: Scheduler, notifier: Notifier, title: str, url: str) -> None:
    """Send a notification off the event loop; failures are only logged."""

    def done(_result: object, error: BaseException | None) -> None:
        if error is not None:
            log.warning("Notification %r failed: %s", title, error)

    scheduler.run_in_background(lambda: notifier.notify(title, url), done)
