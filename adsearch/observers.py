"""
Side-channel notifications from :py:class:`adsearch.client.DirectoryClient`.

Subclass :py:class:`DirectoryObserver`, override the hooks you care about and
subscribe an instance::

    class Audit(DirectoryObserver):
        def on_user(self, user):
            audit_log.info("looked up %s", user.dn)

    unsubscribe = client.observers.subscribe(Audit())

Notifications never change what an operation returns.
"""

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger("adsearch")

EVENTS = (
    "user",
    "users",
    "group",
    "groups",
    "other",
    "deleted_entry",
    "deleted",
    "done",
    "error",
)


class DirectoryObserver:
    def on_user(self, user: Any) -> None:
        pass

    def on_users(self, users: list[Any]) -> None:
        pass

    def on_group(self, group: Any) -> None:
        pass

    def on_groups(self, groups: list[Any]) -> None:
        pass

    def on_other(self, entry: Any) -> None:
        pass

    def on_deleted_entry(self, entry: dict[str, Any]) -> None:
        pass

    def on_deleted(self, entries: list[dict[str, Any]]) -> None:
        pass

    def on_done(self) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass


class ObserverRegistry:
    def __init__(self) -> None:
        self._observers: list[DirectoryObserver] = []

    def __len__(self) -> int:
        return len(self._observers)

    def subscribe(self, observer: DirectoryObserver) -> Callable[[], None]:
        """
        Start sending notifications to ``observer``.

        Returns:
            A function that unsubscribes ``observer`` again.

        """
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def notify(self, event: str, *args: Any) -> None:
        if event not in EVENTS:
            msg = f"Unknown directory event: {event}"
            raise ValueError(msg)
        for observer in list(self._observers):
            hook = getattr(observer, f"on_{event}", None)
            if hook is None:
                continue
            try:
                hook(*args)
            except Exception:
                logger.exception("observer.failed event=%s observer=%r", event, observer)
