"""Per-identity serialization of order changes for single-process deployments.

The ordering core performs read-then-write without any compare-and-swap, so
two overlapping changes for the same member may both append a row. The party
issuing changes must wait for one change to finish before sending the next.
:class:`IdentitySerializer` enforces that inside one process; it is applied at
the HTTP edge and is not used by the core itself.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, TypeVar

from . import log


T = TypeVar("T")


class IdentitySerializer:
    """Mutual exclusion keyed by member identity.

    Locks are created on first use and dropped once no caller holds or waits
    for them, so the table does not grow with the number of members seen.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @contextmanager
    def hold(self, identity: str) -> Iterator[None]:
        """Block until no other caller holds ``identity``, then hold it."""

        with self._lock:
            lock = self._locks.setdefault(identity, threading.Lock())
            self._waiters[identity] = self._waiters.get(identity, 0) + 1

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._lock:
                self._waiters[identity] -= 1
                if not self._waiters[identity]:
                    del self._waiters[identity]
                    del self._locks[identity]

    def run(self, identity: str, func: Callable[[], T]) -> T:
        """Call ``func`` while holding ``identity``."""

        with self.hold(identity):
            log.debug("Serialized order change for '%s'", identity)
            return func()
