#!/usr/bin/env python3
# CUI // SP-CTI
"""Refinery — Per-target serialization.

A registry of one lock per target server. The triage pass holds the lock for
its target across "read active ADRs -> decide -> write proposal/audit", so
two concurrent passes against the same target cannot both act on the same
ADR snapshot.

Usage:
    from refinery.resilience.locks import TargetLockRegistry

    locks = TargetLockRegistry()
    with locks.hold("server-1"):
        ...
"""

import contextlib
import logging
import threading
from typing import Dict, Iterator

logger = logging.getLogger("refinery.resilience.locks")


class TargetLockRegistry:
    """Keyed lock registry; one re-entrant lock per target id."""

    def __init__(self):
        self._registry: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def get_lock(self, target_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._registry.get(target_id)
            if lock is None:
                lock = threading.RLock()
                self._registry[target_id] = lock
            return lock

    @contextlib.contextmanager
    def hold(self, target_id: str) -> Iterator[None]:
        lock = self.get_lock(target_id)
        if not lock.acquire(blocking=False):
            logger.debug("Waiting for lock on target %s", target_id)
            lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def known_targets(self) -> list:
        with self._registry_lock:
            return sorted(self._registry)
