# sqlalchemy_temporal/writer.py
# Copyright (C) 2026 the sqlalchemy-temporal authors and contributors
# <see AUTHORS file>
#
# This module is part of sqlalchemy-temporal and is released under
# the MIT License: https://www.opensource.org/licenses/mit-license.php

"""Background execution of non-blocking history writes.

When a tracked class is registered with ``blocking=False``, the snapshot
of a row is still taken inside the flush, but the INSERT into the history
table is handed to a :class:`.HistoryWriter`, which runs it on a thread
pool using a connection and transaction of its own.   The flush that
produced the snapshot does not wait for it.

Such a write is not part of the caller's transaction: it is not rolled
back if the caller's transaction is, and its failure can't fail the
caller.  Failures are logged at ERROR level on the
``sqlalchemy_temporal.writer.HistoryWriter`` logger, and remain available
on the :class:`concurrent.futures.Future` returned by
:meth:`.HistoryWriter.submit`.

"""
from __future__ import annotations

from concurrent import futures
import threading
from typing import Any
from typing import Callable
from typing import Optional
from typing import Set
from typing import TYPE_CHECKING

from sqlalchemy import log

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection
    from sqlalchemy.engine import Engine


__all__ = ["HistoryWriter", "default_writer"]


@log.class_logger
class HistoryWriter:
    """Run history INSERTs on a thread pool.

    :param max_workers: passed to
      :class:`concurrent.futures.ThreadPoolExecutor`.

    """

    def __init__(self, max_workers: Optional[int] = None):
        self._executor = futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="sqlalchemy_temporal",
        )
        self._pending: Set[futures.Future[Any]] = set()
        self._mutex = threading.Lock()

    def submit(
        self,
        engine: Engine,
        fn: Callable[[Any, Connection], Any],
        payload: Any,
    ) -> futures.Future[Any]:
        """Schedule ``fn(payload, connection)`` inside ``engine.begin()``.

        Returns the :class:`concurrent.futures.Future` of the call; the
        caller is not expected to wait on it.

        """

        future = self._executor.submit(self._run, engine, fn, payload)
        with self._mutex:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def _run(
        self,
        engine: Engine,
        fn: Callable[[Any, Connection], Any],
        payload: Any,
    ) -> Any:
        try:
            with engine.begin() as connection:
                return fn(payload, connection)
        except Exception as err:
            self.logger.error(
                "Non-blocking history write failed: %s", err, exc_info=True
            )
            raise

    def _discard(self, future: futures.Future[Any]) -> None:
        with self._mutex:
            self._pending.discard(future)

    @property
    def pending(self) -> int:
        """Number of writes not yet finished."""

        with self._mutex:
            return len(self._pending)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every write submitted so far has finished.

        Returns False if ``timeout`` expired first.

        """

        with self._mutex:
            pending = list(self._pending)
        done, not_done = futures.wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


_default_writer: Optional[HistoryWriter] = None
_default_writer_mutex = threading.Lock()


def default_writer() -> HistoryWriter:
    """Return the process-wide :class:`.HistoryWriter`, creating it on
    first use."""

    global _default_writer

    with _default_writer_mutex:
        if _default_writer is None:
            _default_writer = HistoryWriter()
        return _default_writer
