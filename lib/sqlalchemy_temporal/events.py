# sqlalchemy_temporal/events.py
# Copyright (C) 2026 the sqlalchemy-temporal authors and contributors
# <see AUTHORS file>
#
# This module is part of sqlalchemy-temporal and is released under
# the MIT License: https://www.opensource.org/licenses/mit-license.php

"""Event listeners copying the rows of a mapped class into its history
table.

Two tracking modes are supported.

"diff" mode (the default) listens to ``before_update`` and
``before_delete``, and records the state of the row as it was before the
UPDATE or DELETE is emitted.  INSERTs are not recorded; the live row
itself is the current version.  As the history row is written before the
live row changes, a failure to write it in blocking mode aborts the
flush.

"full" mode listens to ``after_insert``, ``after_update`` and
``after_delete``, and records the state of the row after every change,
including the one that created it.  For deletes, the state is captured in
``before_delete``, while the row can still be loaded, and written in
``after_delete``.  A failure to write a history row in this mode
propagates from a flush whose statements have already been emitted; the
transaction is rolled back as usual when the exception leaves the
:class:`_orm.Session`.

Both modes additionally intercept ORM-enabled bulk UPDATE and DELETE
statements, e.g. ``session.execute(update(User).where(...))``, through
the :meth:`_orm.SessionEvents.do_orm_execute` hook.  Before the statement
runs, the rows it matches are SELECTed and written to the history table
with a single executemany INSERT.  Passing the execution option
``individual_hooks=True`` to such a statement disables this, for
applications which record those rows some other way.

"""
from __future__ import annotations

from typing import Any
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple
from typing import TYPE_CHECKING

from sqlalchemy import and_
from sqlalchemy import event
from sqlalchemy import exc as sa_exc
from sqlalchemy import log
from sqlalchemy import or_
from sqlalchemy import select
from sqlalchemy.orm import attributes
from sqlalchemy.orm import Session
from sqlalchemy.orm.base import instance_str
from sqlalchemy.orm.exc import UnmappedColumnError

from . import exc
from .sink import HistorySink
from .writer import HistoryWriter

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection
    from sqlalchemy.orm import Mapper
    from sqlalchemy.orm import ORMExecuteState


__all__ = ["TemporalProtocol", "INDIVIDUAL_HOOKS"]

INDIVIDUAL_HOOKS = "individual_hooks"
"""Execution option which turns off recording of a bulk UPDATE / DELETE."""

_DELETED_SNAPSHOT = "_sa_temporal_deleted"


@log.class_logger
class TemporalProtocol:
    """Listeners recording the changes of one mapped class.

    :param mapper: the :class:`_orm.Mapper` of the live class.
    :param sink: the :class:`.HistorySink` rows are written to.
    :param blocking: if True, history rows are INSERTed inline, on the
      connection of the flush or statement that triggered them.  If False,
      they are handed to ``writer``.
    :param full: tracking mode; see the module documentation.
    :param writer: a :class:`.HistoryWriter`; required when ``blocking``
      is False.
    :param session: target of the ``do_orm_execute`` listeners; a
      :class:`_orm.Session` instance, :class:`_orm.sessionmaker`, or the
      :class:`_orm.Session` class itself (the default), which applies to
      all sessions.

    """

    def __init__(
        self,
        mapper: Mapper[Any],
        sink: HistorySink,
        blocking: bool = True,
        full: bool = False,
        writer: Optional[HistoryWriter] = None,
        session: Any = Session,
    ):
        if not blocking and writer is None:
            raise sa_exc.ArgumentError(
                "A HistoryWriter is required when blocking=False"
            )

        self.mapper = mapper
        self.sink = sink
        self.blocking = blocking
        self.full = full
        self.writer = writer
        self.session_target = session
        self._listeners: List[Tuple[Any, str, Callable[..., Any]]] = []

        # (attribute key, history column key) for each mapped column
        self._attrs: List[Tuple[str, str]] = []
        for column in mapper.local_table.c:
            try:
                prop = mapper.get_property_by_column(column)
            except UnmappedColumnError:
                continue
            self._attrs.append((prop.key, column.key))

        self._pk: List[Tuple[str, Any]] = [
            (mapper.get_property_by_column(column).key, column)
            for column in mapper.primary_key
        ]

    def listen(self) -> None:
        """Establish all listeners."""

        if self.full:
            self._listen(self.mapper, "after_insert", self._after_insert)
            self._listen(self.mapper, "after_update", self._on_update)
            self._listen(self.mapper, "before_delete", self._capture_delete)
            self._listen(self.mapper, "after_delete", self._after_delete)
        else:
            self._set_active_history()
            self._listen(self.mapper, "before_update", self._on_update)
            self._listen(self.mapper, "before_delete", self._before_delete)

        self._listen(
            self.session_target, "do_orm_execute", self.on_bulk_mutate
        )
        self._listen(
            self.session_target, "do_orm_execute", self._refuse_history_dml
        )

        if self._should_log_info():
            self.logger.info(
                "Recording %s into %s (full=%s, blocking=%s)",
                self.mapper.class_.__name__,
                self.sink.table.name,
                self.full,
                self.blocking,
            )

    def dispose(self) -> None:
        """Remove all listeners established by :meth:`.listen`."""

        for target, identifier, fn in self._listeners:
            if event.contains(target, identifier, fn):
                event.remove(target, identifier, fn)
        self._listeners[:] = []

    def _listen(
        self, target: Any, identifier: str, fn: Callable[..., Any]
    ) -> None:
        event.listen(target, identifier, fn)
        self._listeners.append((target, identifier, fn))

    def _set_active_history(self) -> None:
        # load the old value of an attribute before it is replaced, so
        # that the "before" state is available even for expired attributes
        manager = self.mapper.class_manager
        for key, _ in self._attrs:
            self.mapper.get_property(key).active_history = True
            if key in manager and manager[key].impl is not None:
                manager[key].impl.active_history = True

    def snapshot(self, target: Any) -> Dict[str, Any]:
        """Return the values of ``target`` to be recorded, keyed on history
        column key.

        In diff mode this is the state before the pending change; in full
        mode the current state.

        """

        if self.full:
            return self._current_values(target)
        else:
            return self._previous_values(target)

    def _previous_values(self, target: Any) -> Dict[str, Any]:
        state = attributes.instance_state(target)
        values = {}

        for key, column_key in self._attrs:
            # expired object attributes and also deferred cols might not
            # be in the dict.  force it to load no matter what by
            # using getattr().
            if key not in state.dict:
                getattr(target, key)

            added, unchanged, deleted = attributes.get_history(target, key)

            if deleted:
                values[column_key] = deleted[0]
            elif unchanged:
                values[column_key] = unchanged[0]
            elif added:
                # the attribute had no value
                values[column_key] = added[0]
            else:
                values[column_key] = None

        return values

    def _current_values(self, target: Any) -> Dict[str, Any]:
        state = attributes.instance_state(target)
        values = {}

        for key, column_key in self._attrs:
            # a pending object can't load anything; server-generated
            # values are only present with eager_defaults
            if key not in state.dict and state.has_identity:
                getattr(target, key)
            values[column_key] = state.dict.get(key)

        return values

    def _has_changes(self, target: Any) -> bool:
        for key, _ in self._attrs:
            if attributes.get_history(
                target, key, passive=attributes.PASSIVE_NO_INITIALIZE
            ).has_changes():
                return True

        # not changed, but we have relationships.  OK
        # check those too
        for prop in self.mapper.relationships:
            if any(
                col.foreign_keys for col in prop.local_columns
            ) and attributes.get_history(
                target, prop.key, passive=attributes.PASSIVE_NO_INITIALIZE
            ).has_changes():
                return True

        return False

    def on_mutate(
        self,
        connection: Connection,
        target: Any,
        values: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Write one history row for ``target``.

        In blocking mode, returns the ``hid`` of the new row.  Otherwise
        returns the :class:`concurrent.futures.Future` of the write.

        """

        if values is None:
            values = self.snapshot(target)

        if self._should_log_debug():
            self.logger.debug(
                "Recording %s into %s (%s mode)",
                instance_str(target),
                self.sink.table.name,
                "full" if self.full else "diff",
            )
        return self._write(connection, self.sink.create, values)

    def on_bulk_mutate(self, orm_execute_state: ORMExecuteState) -> None:
        """``do_orm_execute`` listener recording the rows matched by a bulk
        UPDATE or DELETE of the live class.

        Always returns None; a return value would be taken as the result
        of the statement.

        """

        if not (orm_execute_state.is_update or orm_execute_state.is_delete):
            return None
        if orm_execute_state.bind_mapper is not self.mapper:
            return None
        if orm_execute_state.execution_options.get(INDIVIDUAL_HOOKS, False):
            return None

        rows = self._matching_rows(orm_execute_state)
        if not rows:
            return None

        if self._should_log_debug():
            self.logger.debug(
                "Recording %d rows of %s ahead of bulk %s",
                len(rows),
                self.mapper.class_.__name__,
                "UPDATE" if orm_execute_state.is_update else "DELETE",
            )

        connection = orm_execute_state.session.connection(
            bind_arguments={"mapper": self.mapper}
        )
        self._write(connection, self.sink.bulk_create, rows)
        return None

    def _matching_rows(
        self, orm_execute_state: ORMExecuteState
    ) -> List[Dict[str, Any]]:
        statement = orm_execute_state.statement
        params = orm_execute_state.parameters

        criteria = []
        if statement.whereclause is not None:
            criteria.append(statement.whereclause)

        if isinstance(params, (list, tuple)):
            # ORM bulk UPDATE by primary key
            criteria.append(
                or_(
                    *[
                        and_(*[col == p[key] for key, col in self._pk])
                        for p in params
                    ]
                )
            )
            params = None

        columns = [
            self.mapper.local_table.c[column_key]
            for _, column_key in self._attrs
        ]
        try:
            result = orm_execute_state.session.execute(
                select(*columns).where(*criteria),
                params or None,
                bind_arguments={"mapper": self.mapper},
            )
        except sa_exc.StatementError as err:
            raise exc.HistoryWriteFailure(
                "Could not select rows of %s to record into %s: %s"
                % (self.mapper.local_table.name, self.sink.table.name, err)
            ) from err
        keys = [column_key for _, column_key in self._attrs]
        return [dict(zip(keys, row)) for row in result]

    def _write(
        self,
        connection: Connection,
        fn: Callable[[Any, Connection], Any],
        payload: Any,
    ) -> Any:
        if self.blocking:
            return fn(payload, connection)
        else:
            assert self.writer is not None
            return self.writer.submit(connection.engine, fn, payload)

    def _refuse_history_dml(self, orm_execute_state: ORMExecuteState) -> None:
        if (
            orm_execute_state.is_update or orm_execute_state.is_delete
        ) and orm_execute_state.bind_mapper is self.sink.mapper:
            raise exc.ReadOnlyViolation(
                "%s is a read-only history table; its rows can't be "
                "updated or deleted" % self.sink.table.name
            )
        return None

    def _after_insert(
        self, mapper: Mapper[Any], connection: Connection, target: Any
    ) -> None:
        self.on_mutate(connection, target)

    def _on_update(
        self, mapper: Mapper[Any], connection: Connection, target: Any
    ) -> None:
        # before_update / after_update fire for every dirty object,
        # including those with no net change
        if self._has_changes(target):
            self.on_mutate(connection, target)

    def _before_delete(
        self, mapper: Mapper[Any], connection: Connection, target: Any
    ) -> None:
        self.on_mutate(connection, target)

    def _capture_delete(
        self, mapper: Mapper[Any], connection: Connection, target: Any
    ) -> None:
        state = attributes.instance_state(target)
        state.info[_DELETED_SNAPSHOT] = self._current_values(target)

    def _after_delete(
        self, mapper: Mapper[Any], connection: Connection, target: Any
    ) -> None:
        state = attributes.instance_state(target)
        values = state.info.pop(_DELETED_SNAPSHOT, None)
        if values is None:
            values = {
                column_key: state.dict.get(key)
                for key, column_key in self._attrs
            }
        self.on_mutate(connection, target, values)

    def __repr__(self) -> str:
        return "<%s %s -> %s>" % (
            self.__class__.__name__,
            self.mapper.class_.__name__,
            self.sink.table.name,
        )
