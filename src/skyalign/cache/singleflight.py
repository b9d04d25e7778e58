# src/skyalign/cache/singleflight.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar

from skyalign.core.errors import SearchCancelled
from skyalign.core.search import CancelToken

log = logging.getLogger(__name__)

T = TypeVar("T")

# how often a waiting caller re-checks its own cancel token
WAIT_POLL_SECONDS = 0.05


@dataclass
class _Call(Generic[T]):
    done: threading.Event = field(default_factory=threading.Event)
    result: Optional[T] = None
    error: Optional[BaseException] = None
    waiters: int = 0


class SingleFlight(Generic[T]):
    """
    At most one computation per key at a time. Concurrent callers for the same
    key block until the leader finishes and receive its result, or its error.
    The registry entry is removed when the leader finishes, so a later call
    computes again.

    Cancellation belongs to each caller: a waiter stops waiting when its own
    token fires, and when the leader is cancelled the waiters start over
    (one of them becomes the new leader) instead of inheriting that error.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: Dict[str, _Call[T]] = {}

    def do(self, key: str, fn: Callable[[], T], *, cancel: Optional[CancelToken] = None) -> Tuple[T, bool]:
        """Returns (result, shared). shared=True when another caller computed it."""
        while True:
            with self._lock:
                call = self._calls.get(key)
                if call is not None:
                    call.waiters += 1
                    leader = False
                else:
                    call = _Call()
                    self._calls[key] = call
                    leader = True

            if leader:
                return self._lead(key, call, fn), False

            log.debug("single-flight wait: key=%s", key)
            self._wait(call, cancel)
            if isinstance(call.error, SearchCancelled):
                log.debug("single-flight leader cancelled, retrying: key=%s", key)
                continue
            if call.error is not None:
                raise call.error
            return call.result, True  # type: ignore[return-value]

    def _lead(self, key: str, call: _Call[T], fn: Callable[[], T]) -> T:
        try:
            call.result = fn()
        except BaseException as e:
            call.error = e
            raise
        finally:
            with self._lock:
                del self._calls[key]
            call.done.set()
            if call.waiters:
                log.debug("single-flight shared: key=%s waiters=%d", key, call.waiters)
        return call.result

    @staticmethod
    def _wait(call: _Call[T], cancel: Optional[CancelToken]) -> None:
        if cancel is None:
            call.done.wait()
            return
        while not call.done.wait(WAIT_POLL_SECONDS):
            cancel.raise_if_cancelled()

    def in_flight(self) -> int:
        with self._lock:
            return len(self._calls)
