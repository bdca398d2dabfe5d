"""
Fund Network SDK - Maintenance gate

Issue, watch, mint and bind refuse to run while the gate is closed.

StaticGate   - FUND_PAUSED switch
FlagsGate    - remote flags endpoint, {"flags": {"pause_all": bool, "pause_reserve": bool}}
               cached for 60s; unreachable or malformed -> paused (fail closed)
"""

import logging
import threading
import time
from typing import Callable, Optional

import requests

from .errors import MaintenanceActive

log = logging.getLogger(__name__)

FLAGS_TTL_S = 60
FLAGS_TIMEOUT_S = 5


class StaticGate:
    def __init__(self, paused: bool = False):
        self.paused = paused

    def is_paused(self) -> bool:
        return self.paused

    def check(self):
        if self.is_paused():
            raise MaintenanceActive("Maintenance active")


class FlagsGate(StaticGate):
    """Remote maintenance flags with a short cache. Any failure reads as paused."""

    def __init__(self, url: str, ttl: int = FLAGS_TTL_S,
                 session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.monotonic):
        super().__init__(paused=True)
        self.url = url
        self.ttl = ttl
        self.session = session or requests.Session()
        self.clock = clock
        self._fetched_at: Optional[float] = None
        self._lock = threading.Lock()

    def _fetch(self) -> bool:
        try:
            resp = self.session.get(self.url, timeout=FLAGS_TIMEOUT_S)
            resp.raise_for_status()
            flags = resp.json().get("flags")
            if not isinstance(flags, dict):
                log.warning(f"Maintenance flags malformed at {self.url}, failing closed")
                return True
            return bool(flags.get("pause_all")) or bool(flags.get("pause_reserve"))
        except (requests.RequestException, ValueError, AttributeError) as e:
            log.warning(f"Maintenance flags unavailable ({e}), failing closed")
            return True

    def is_paused(self) -> bool:
        with self._lock:
            now = self.clock()
            if self._fetched_at is None or now - self._fetched_at >= self.ttl:
                self.paused = self._fetch()
                self._fetched_at = now
            return self.paused


def build_gate(config):
    if config.flags_url:
        return FlagsGate(config.flags_url)
    return StaticGate(config.paused)
