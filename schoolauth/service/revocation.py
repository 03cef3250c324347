from __future__ import annotations

import hashlib
import threading
from typing import Dict

from schoolauth.logging import get_logger

logger = get_logger(__name__)


class RevocationCache:
    """Bounded, insertion-ordered set of revoked token fingerprints.

    Once an insert pushes the size past ``high_water`` the set is cut down
    to the ``low_water`` most recent entries. Evicted tokens verify again
    until their own expiry; memory stays bounded in exchange. The set is
    per process, so a horizontally scaled deployment needs a shared store.
    """

    def __init__(self, high_water: int = 10_000, low_water: int = 5_000, *, name: str = "revocation") -> None:
        if low_water <= 0 or low_water >= high_water:
            raise ValueError("low_water must be positive and below high_water")
        self.high_water = high_water
        self.low_water = low_water
        self.name = name
        self._entries: Dict[str, None] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings, *, name: str = "revocation") -> "RevocationCache":
        return cls(
            high_water=settings.revocation_high_water,
            low_water=settings.revocation_low_water,
            name=name,
        )

    @staticmethod
    def _fingerprint(value: str) -> str:
        return hashlib.sha256(value.encode()).hexdigest()

    def add(self, value: str) -> bool:
        """Insert ``value``; False when it was already present."""
        key = self._fingerprint(value)
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = None
            if len(self._entries) > self.high_water:
                dropped = len(self._entries) - self.low_water
                survivors = list(self._entries)[dropped:]
                self._entries = dict.fromkeys(survivors)
                logger.info(
                    "revocation_cache_evicted",
                    cache=self.name,
                    dropped=dropped,
                    size=len(self._entries),
                )
            return True

    def contains(self, value: str) -> bool:
        key = self._fingerprint(value)
        with self._lock:
            return key in self._entries

    def __contains__(self, value: object) -> bool:
        return isinstance(value, str) and self.contains(value)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
