"""
In-process publish/subscribe for engine events.

publish() calls every subscriber of the event kind synchronously, in the order
they subscribed, on the publishing thread. There is no retry and no
persistence. A subscriber that raises is logged and skipped.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List

from gps_client import PositionFix
from registry import Device

logger = logging.getLogger("bluek9.events")


class EventKind(str, Enum):
    DEVICE_UPDATED = "device_updated"
    TARGET_ALERT = "target_alert"


@dataclass(frozen=True)
class DeviceUpdated:
    device: Device

    def to_dict(self) -> dict:
        return {"type": EventKind.DEVICE_UPDATED.value, "device": self.device.to_dict()}


@dataclass(frozen=True)
class TargetAlert:
    device: Device
    fix: PositionFix

    def to_dict(self) -> dict:
        return {
            "type": EventKind.TARGET_ALERT.value,
            "device": self.device.to_dict(),
            "fix": self.fix.to_dict(),
        }


Subscriber = Callable[[Any], None]


class EventBus:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[EventKind, List[Subscriber]] = {kind: [] for kind in EventKind}

    def subscribe(self, kind: EventKind, callback: Subscriber) -> Callable[[], None]:
        """Register `callback` for `kind`; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers[kind] = self._subscribers[kind] + [callback]

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers[kind] = [cb for cb in self._subscribers[kind] if cb is not callback]

        return unsubscribe

    def publish(self, kind: EventKind, payload: Any) -> int:
        """Deliver to current subscribers; returns how many accepted the event."""
        with self._lock:
            subscribers = self._subscribers[kind]
        delivered = 0
        for callback in subscribers:
            try:
                callback(payload)
                delivered += 1
            except Exception:
                logger.exception("Subscriber %r failed on %s", callback, kind.value)
        return delivered
