"""
Target watchlist and alert throttling.

A detection is target-relevant when its normalized address equals a target's
normalized address (exact match, no prefixes or wildcards). The throttle lets
at most one alert per target through per wall-clock minute bucket.
"""
from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from mac_utils import normalize_mac

BUCKET_MS = 60_000
RETENTION_MS = 5 * 60_000


@dataclass(frozen=True)
class Target:
    address: str
    name: Optional[str] = None
    description: Optional[str] = None
    added_at_ms: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _key(address: str) -> str:
    try:
        return normalize_mac(address)
    except ValueError:
        return address.strip().upper()


class TargetWatchlist:
    """Operator-curated set of addresses of interest."""

    def __init__(self, targets: Iterable[Target] = ()):
        self._lock = threading.Lock()
        self._targets: Dict[str, Target] = {}
        self.replace_all(targets)

    def replace_all(self, targets: Iterable[Target]) -> None:
        with self._lock:
            self._targets = {_key(t.address): t for t in targets}

    def add(self, target: Target) -> Target:
        with self._lock:
            self._targets[_key(target.address)] = target
        return target

    def remove(self, address: str) -> bool:
        with self._lock:
            return self._targets.pop(_key(address), None) is not None

    def get(self, address: str) -> Optional[Target]:
        with self._lock:
            return self._targets.get(_key(address))

    def match(self, address: str) -> Optional[Target]:
        """The target this address belongs to, or None."""
        return self.get(address)

    def all(self) -> List[Target]:
        with self._lock:
            return list(self._targets.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._targets)


class AlertThrottle:
    """Tracks which (target, minute bucket) pairs already produced an alert.

    Entries live in memory only and are swept on every evaluation once they
    are older than five minutes, so no timer thread is needed.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, int], int] = {}

    @staticmethod
    def bucket(now_ms: int) -> int:
        return now_ms // BUCKET_MS

    def _prune(self, now_ms: int) -> None:
        cutoff = now_ms - RETENTION_MS
        for key in [k for k, recorded in self._entries.items() if recorded < cutoff]:
            del self._entries[key]

    def should_alert(self, target_address: str, now_ms: int) -> bool:
        with self._lock:
            self._prune(now_ms)
            return (_key(target_address), self.bucket(now_ms)) not in self._entries

    def record_alert(self, target_address: str, now_ms: int) -> None:
        with self._lock:
            self._entries[(_key(target_address), self.bucket(now_ms))] = now_ms

    def try_acquire(self, target_address: str, now_ms: int) -> bool:
        """should_alert() and record_alert() as one atomic step."""
        with self._lock:
            self._prune(now_ms)
            key = (_key(target_address), self.bucket(now_ms))
            if key in self._entries:
                return False
            self._entries[key] = now_ms
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
