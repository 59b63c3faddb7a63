"""
Round-robin pool of worker handles.

The pool is only touched from the orchestrator's event loop thread, so it carries no
locking. Handles are anything exposing ``pid``, ``handle_id`` and ``send_signal``.
"""

from __future__ import annotations

import signal
from collections import deque
from typing import Callable, Deque, Generic, Iterator, List, Optional, Protocol, TypeVar

from dbagent.utils.logging import get_logger

log = get_logger(__name__)


class SignalTarget(Protocol):
    pid: int
    handle_id: int

    def send_signal(self, sig: int) -> bool:
        ...


H = TypeVar("H", bound=SignalTarget)


class PoolEmptyError(LookupError):
    """Raised when a worker is requested from a pool that has none."""


class WorkerPool(Generic[H]):
    """
    Ordered collection of handles with strict FIFO rotation.

    ``next()`` always returns the handle least recently returned: with N handles,
    N calls visit each once in insertion order and call N+1 starts over.
    """

    def __init__(self) -> None:
        self._queue: Deque[H] = deque()

    def __len__(self) -> int:
        return len(self._queue)

    def __iter__(self) -> Iterator[H]:
        return iter(list(self._queue))

    def __contains__(self, handle: object) -> bool:
        return any(h is handle for h in self._queue)

    def add(self, handle: H) -> None:
        """Append a handle to the tail."""
        self._queue.append(handle)

    def next(self) -> H:
        """Move the head handle to the tail and return it."""
        if not self._queue:
            raise PoolEmptyError("No workers available in the pool")
        self._queue.rotate(-1)
        return self._queue[-1]

    def snapshot(self) -> List[H]:
        """Current handles in rotation order, detached from the pool."""
        return list(self._queue)

    def clear(self) -> None:
        self._queue.clear()

    def _find_by(self, predicate: Callable[[H], bool]) -> Optional[H]:
        for handle in self._queue:
            if predicate(handle):
                return handle
        return None

    def _remove_by(self, predicate: Callable[[H], bool]) -> Optional[H]:
        handle = self._find_by(predicate)
        if handle is not None:
            self._queue.remove(handle)
        return handle

    def find_by_pid(self, pid: int) -> Optional[H]:
        return self._find_by(lambda h: h.pid == pid)

    def find_by_handle_id(self, handle_id: int) -> Optional[H]:
        return self._find_by(lambda h: h.handle_id == handle_id)

    def remove_by_pid(self, pid: int) -> Optional[H]:
        return self._remove_by(lambda h: h.pid == pid)

    def remove_by_handle_id(self, handle_id: int) -> Optional[H]:
        return self._remove_by(lambda h: h.handle_id == handle_id)

    def kill_all(self, sig: int = signal.SIGTERM) -> None:
        """
        Send ``sig`` to every handle, then empty the pool.

        The pool is cleared whether or not the signal ended the processes, so a second
        call finds nothing to signal. Escalating callers must take a ``snapshot()``
        first and signal survivors from it.
        """
        for handle in self._queue:
            delivered = handle.send_signal(sig)
            log.debug(
                f"[SIGNAL] {signal.Signals(sig).name} -> pid {handle.pid}",
                extra={"pid": handle.pid, "delivered": delivered},
            )
        self._queue.clear()


__all__ = ["PoolEmptyError", "SignalTarget", "WorkerPool"]
