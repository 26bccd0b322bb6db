from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional


Callback = Callable[[Any], None]
ErrorCallback = Callable[[Exception], None]


@dataclass(eq=False)
class Subscription:
    channel: str
    callback: Callback
    render: Callable[[], Any]
    on_error: Optional[ErrorCallback] = None

    def deliver(self, snapshot: Any) -> None:
        self.callback(snapshot)

    def fail(self, exc: Exception) -> None:
        if self.on_error is not None:
            self.on_error(exc)


class SubscriptionHub:
    """Registers live subscriptions per channel and schedules snapshot delivery.

    Snapshots are rendered at notification time and handed to the event loop,
    so a snapshot already scheduled when its subscription is released is still
    delivered. Consumers must tolerate late deliveries.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(
        self,
        channel: str,
        callback: Callback,
        render: Callable[[], Any],
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        subscription = Subscription(channel=channel, callback=callback, render=render, on_error=on_error)
        self._subscriptions.setdefault(channel, []).append(subscription)
        self._schedule(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.channel)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.channel, None)

    def broadcast(self, channel: str) -> None:
        for subscription in list(self._subscriptions.get(channel, [])):
            self._schedule(subscription)

    def fail(self, channel: str, exc: Exception) -> None:
        loop = asyncio.get_running_loop()
        for subscription in list(self._subscriptions.get(channel, [])):
            loop.call_soon(subscription.fail, exc)

    def count(self, channel: str) -> int:
        return len(self._subscriptions.get(channel, []))

    def _schedule(self, subscription: Subscription) -> None:
        snapshot = subscription.render()
        asyncio.get_running_loop().call_soon(subscription.deliver, snapshot)
