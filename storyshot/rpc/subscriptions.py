"""Explicit listener registry for forwarded notifications."""

from __future__ import annotations

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


class Subscription:
    """Handle returned by :meth:`SubscriptionRegistry.subscribe`."""

    def __init__(self, registry: "SubscriptionRegistry", event: str, listener: Listener):
        self._registry = registry
        self.event = event
        self.listener = listener
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._registry._remove(self)


class SubscriptionRegistry:
    """Per-event listener lists with deterministic ordering and removal."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[Subscription]] = {}

    def subscribe(self, event: str, listener: Listener) -> Subscription:
        sub = Subscription(self, event, listener)
        self._subscriptions.setdefault(event, []).append(sub)
        return sub

    def once(self, event: str, listener: Listener) -> Subscription:
        """Subscribe for a single delivery."""
        sub: Subscription | None = None

        def _wrapper(params: Any) -> None:
            if sub is not None:
                sub.unsubscribe()
            listener(params)

        sub = self.subscribe(event, _wrapper)
        return sub

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscriptions.get(sub.event)
        if not subs:
            return
        if sub in subs:
            subs.remove(sub)
        if not subs:
            del self._subscriptions[sub.event]

    def listener_count(self, event: str) -> int:
        return len(self._subscriptions.get(event, []))

    def emit(self, event: str, params: Any = None) -> int:
        """Deliver ``params`` to every listener of ``event``.

        Returns the number of listeners called. A listener that raises is
        logged and does not stop delivery to the others.
        """
        delivered = 0
        for sub in list(self._subscriptions.get(event, [])):
            if not sub.active:
                continue
            try:
                sub.listener(params)
            except Exception:
                logger.exception("Listener for '%s' raised", event)
            delivered += 1
        return delivered

    def clear(self) -> None:
        for subs in self._subscriptions.values():
            for sub in subs:
                sub.active = False
        self._subscriptions.clear()
