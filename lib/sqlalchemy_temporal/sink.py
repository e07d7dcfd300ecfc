# sqlalchemy_temporal/sink.py
# Copyright (C) 2026 the sqlalchemy-temporal authors and contributors
# <see AUTHORS file>
#
# This module is part of sqlalchemy-temporal and is released under
# the MIT License: https://www.opensource.org/licenses/mit-license.php

"""Register a derived history table and write rows into it.

"""
from __future__ import annotations

from typing import Any
from typing import Dict
from typing import Sequence
from typing import TYPE_CHECKING

from sqlalchemy import event
from sqlalchemy import exc as sa_exc
from sqlalchemy import insert
from sqlalchemy import inspect
from sqlalchemy import log

from . import exc
from .schema import HistoryDefinition
from .schema import is_temporal_column

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection
    from sqlalchemy.orm import Mapper
    from sqlalchemy.orm import registry as _registry


__all__ = ["HistorySink", "register_history"]


def _read_only(mapper: Mapper[Any], connection: Connection, target: Any):
    raise exc.ReadOnlyViolation(
        "%s is a read-only history table; its rows can't be "
        "updated or deleted" % mapper.local_table.name
    )


@log.class_logger
class HistorySink:
    """Write-once access to a registered history table.

    :class:`.HistorySink` objects are produced by
    :func:`.register_history`.  Rows are only ever INSERTed, using the
    :class:`_engine.Connection` passed in, so that they take part in
    whatever transaction that connection is in.

    """

    def __init__(self, definition: HistoryDefinition, history_class: type):
        self.definition = definition
        self.history_class = history_class
        self.mapper = inspect(history_class)
        self.table = self.mapper.local_table
        self.column_keys = [
            col.key for col in self.table.c if not is_temporal_column(col)
        ]

    @property
    def name(self) -> str:
        return self.definition.name

    def create(self, values: Dict[str, Any], connection: Connection) -> Any:
        """INSERT one history row; return its ``hid``."""

        try:
            result = connection.execute(insert(self.table), values)
        except sa_exc.StatementError as err:
            raise exc.HistoryWriteFailure(
                "Could not write history row to %s: %s"
                % (self.table.name, err)
            ) from err

        if self._should_log_debug():
            self.logger.debug("Wrote 1 row to %s", self.table.name)
        return result.inserted_primary_key[0]

    def bulk_create(
        self, rows: Sequence[Dict[str, Any]], connection: Connection
    ) -> int:
        """INSERT many history rows in one executemany; return the number
        of rows written."""

        if not rows:
            return 0

        try:
            connection.execute(insert(self.table), list(rows))
        except sa_exc.StatementError as err:
            raise exc.HistoryWriteFailure(
                "Could not write %d history rows to %s: %s"
                % (len(rows), self.table.name, err)
            ) from err

        if self._should_log_debug():
            self.logger.debug(
                "Wrote %d rows to %s", len(rows), self.table.name
            )
        return len(rows)

    def __repr__(self) -> str:
        return "<%s %s>" % (self.__class__.__name__, self.table.name)


def register_history(
    definition: HistoryDefinition, registry: _registry
) -> HistorySink:
    """Add the table of ``definition`` to the :class:`_schema.MetaData` of
    ``registry``, map a class named after it, and return a
    :class:`.HistorySink` for it.

    The history mapper refuses UPDATE and DELETE of its rows by raising
    :exc:`.ReadOnlyViolation` from its ``before_update`` and
    ``before_delete`` events.

    :raises DuplicateEntityError: a table with the same key already
      exists in the metadata.

    """

    metadata = registry.metadata
    key = definition.table.key

    if key in metadata.tables:
        raise exc.DuplicateEntityError(
            "Table '%s' is already defined for this MetaData instance; "
            "can't register history table %s" % (key, definition.name)
        )

    table = definition.table.to_metadata(metadata)
    table.info.update(definition.table.info)
    for column in definition.table.c:
        table.c[column.key].info.update(column.info)

    namespace: Dict[str, Any] = {
        "__doc__": "History rows of the %r table." % table.name,
    }
    if registry.constructor is not None:
        namespace["__init__"] = registry.constructor
    history_class = type(definition.name, (object,), namespace)

    registry.map_imperatively(history_class, table)

    event.listen(history_class, "before_update", _read_only)
    event.listen(history_class, "before_delete", _read_only)

    sink = HistorySink(definition, history_class)
    if sink._should_log_info():
        sink.logger.info(
            "Registered history table %s (full=%s)", table.name,
            definition.full,
        )
    return sink
