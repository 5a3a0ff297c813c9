"""In-process change notifier keyed by job owner."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from media_tasks.orchestrator.models import JobChange

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[JobChange], None]

_ALL_OWNERS = "*"


@dataclass(slots=True)
class Subscription:
    """Handle returned by ``subscribe``; call ``unsubscribe`` to stop delivery."""

    owner_id: str
    handler: ChangeHandler
    notifier: ChangeNotifier
    active: bool = True
    delivered_versions: dict[str, int] = field(default_factory=dict)
    _delivery_lock: threading.RLock = field(default_factory=threading.RLock)

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.notifier._remove(self)
        self.active = False

    def deliver(self, change: JobChange) -> bool:
        """Call the handler unless a newer change of the same job was already delivered."""

        with self._delivery_lock:
            last = self.delivered_versions.get(change.job_id)
            if last is not None and change.version <= last:
                return False
            self.delivered_versions[change.job_id] = change.version
            self.handler(change)
            return True


class ChangeNotifier:
    """Thread-safe registry of change handlers.

    Publishing is synchronous: handlers run in the publisher's thread. Calls to
    one subscription are serialized, and a change whose job version is not newer
    than the last one it saw is dropped, so per job a subscriber observes commits
    in order even when publishers race. A failing handler is logged and never
    affects other subscribers or the publisher.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[str, list[Subscription]] = {}

    def subscribe(self, owner_id: str, handler: ChangeHandler) -> Subscription:
        subscription = Subscription(owner_id=owner_id, handler=handler, notifier=self)
        with self._lock:
            self._subscriptions.setdefault(owner_id, []).append(subscription)
        return subscription

    def subscribe_all(self, handler: ChangeHandler) -> Subscription:
        """Receive changes for every owner."""

        return self.subscribe(_ALL_OWNERS, handler)

    def subscriber_count(self, owner_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(owner_id, []))

    def publish(self, change: JobChange) -> int:
        """Deliver ``change``; returns how many handlers were called."""

        with self._lock:
            targets = [
                *self._subscriptions.get(change.owner_id, []),
                *self._subscriptions.get(_ALL_OWNERS, []),
            ]
        delivered = 0
        for subscription in targets:
            try:
                called = subscription.deliver(change)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Change handler failed (owner=%s, job_id=%s)",
                    subscription.owner_id,
                    change.job_id,
                )
                continue
            if not called:
                logger.debug(
                    "Dropped stale change for job %s (version %d)",
                    change.job_id,
                    change.version,
                )
                continue
            delivered += 1
        return delivered

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            handlers = self._subscriptions.get(subscription.owner_id)
            if not handlers:
                return
            self._subscriptions[subscription.owner_id] = [
                item for item in handlers if item is not subscription
            ]
            if not self._subscriptions[subscription.owner_id]:
                del self._subscriptions[subscription.owner_id]
