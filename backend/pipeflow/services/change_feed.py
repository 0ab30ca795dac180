# Overview: Publish/subscribe channel for record change notifications.

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from flask import current_app

from ..entities import EntityType
from ..time_utils import utcnow

CREATED = "created"
UPDATED = "updated"
DELETED = "deleted"


@dataclass(frozen=True)
class ChangeEvent:
    action: str
    entity_type: EntityType
    record_id: str
    record: dict[str, Any] | None
    source: str = "local"
    occurred_at: datetime = field(default_factory=utcnow)


class Subscription:
    def __init__(self, feed: "ChangeFeed", callback: Callable[[ChangeEvent], None], entity_types: frozenset | None):
        self._feed = feed
        self.callback = callback
        self.entity_types = entity_types

    def accepts(self, event: ChangeEvent) -> bool:
        return self.entity_types is None or event.entity_type in self.entity_types

    def cancel(self) -> None:
        self._feed.unsubscribe(self)


class ChangeFeed:
    """
    Observer registry for create/update/delete notifications.

    Delivery is at-most-once and synchronous on the publishing thread;
    there is no backlog, so subscribers only see events published after
    they subscribe. A failing subscriber is logged and skipped.
    """

    def __init__(self):
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        callback: Callable[[ChangeEvent], None],
        entity_types: Iterable[EntityType] | None = None,
    ) -> Subscription:
        types = frozenset(entity_types) if entity_types is not None else None
        sub = Subscription(self, callback, types)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, event: ChangeEvent) -> int:
        with self._lock:
            targets = [s for s in self._subscriptions if s.accepts(event)]
        delivered = 0
        for sub in targets:
            try:
                sub.callback(event)
            except Exception:
                current_app.logger.exception(
                    "Change subscriber failed for %s %s/%s", event.action, event.entity_type.value, event.record_id
                )
                continue
            delivered += 1
        return delivered

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)
