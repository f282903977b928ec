"""
CORE App - Single outstanding request per entity

Each mutating action holds its entity key (``delivery:<id>``, ``booking:<account>``,
``wallet:<account>``) until the backend answered, success or failure.
A second action on the same key is refused instead of queued.
"""

import logging
import threading
from contextlib import contextmanager

from core.exceptions import ActionInProgress

logger = logging.getLogger(__name__)


def delivery_key(delivery_id: str) -> str:
    return f"delivery:{delivery_id}"


def booking_key(account_ref: str) -> str:
    return f"booking:{account_ref}"


def wallet_key(account_ref: str) -> str:
    return f"wallet:{account_ref}"


class InFlightGuard:

    def __init__(self):
        self._keys = set()
        self._lock = threading.Lock()

    def is_busy(self, key: str) -> bool:
        with self._lock:
            return key in self._keys

    @contextmanager
    def hold(self, *keys: str):
        """
        Hold one or more entity keys for the duration of a request.

        Raises:
            ActionInProgress: one of the keys is already held
        """
        with self._lock:
            busy = [key for key in keys if key in self._keys]
            if busy:
                logger.info(f"[INFLIGHT] Refusing action, still waiting on {busy}")
                raise ActionInProgress(
                    f"An action on {', '.join(busy)} is still in progress",
                    keys=busy,
                )
            self._keys.update(keys)
        try:
            yield
        finally:
            with self._lock:
                self._keys.difference_update(keys)
