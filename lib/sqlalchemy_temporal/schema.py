# sqlalchemy_temporal/schema.py
# Copyright (C) 2026 the sqlalchemy-temporal authors and contributors
# <see AUTHORS file>
#
# This module is part of sqlalchemy-temporal and is released under
# the MIT License: https://www.opensource.org/licenses/mit-license.php

"""Derive the shape of a history table from a mapped table.

A history table carries every column of the table it records, relaxed so
that any snapshot of a live row can be inserted into it at any time:

* primary key, unique, index, autoincrement and foreign key settings are
  removed, and every column becomes nullable;
* the conventional ``created_at`` / ``updated_at`` timestamp columns lose
  their defaults, since their values are copied from the live row;
* non-unique indexes are carried over, renamed after the history table;
* two columns are added, ``hid``, an autoincrementing integer primary key,
  and ``archivedAt``, the time the history row was written.

:func:`.derive` does not touch the live :class:`_schema.MetaData`; the
resulting :class:`.HistoryDefinition` holds a :class:`_schema.Table` on a
private :class:`_schema.MetaData` which :func:`.register_history` later
copies into place.

"""
from __future__ import annotations

from typing import Any
from typing import Dict
from typing import Iterator
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple
from typing import Union

from sqlalchemy import BigInteger
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import DefaultClause
from sqlalchemy import exc as sa_exc
from sqlalchemy import func
from sqlalchemy import Index
from sqlalchemy import inspect
from sqlalchemy import Integer
from sqlalchemy import MetaData
from sqlalchemy import Table
from sqlalchemy import util
from sqlalchemy.orm import Mapper
from sqlalchemy.sql.base import SchemaEventTarget

__all__ = [
    "HistoryDefinition",
    "derive",
    "HISTORY_SUFFIX",
    "DEFAULT_TIMESTAMP_COLUMNS",
]

HISTORY_SUFFIX = "History"

DEFAULT_TIMESTAMP_COLUMNS: Tuple[str, ...] = ("created_at", "updated_at")
"""Keys of the columns treated as the live table's own audit timestamps."""

_TEMPORAL_INFO = {"temporal": True}


def _temporal_columns() -> List[Column[Any]]:
    return [
        Column(
            "hid",
            BigInteger().with_variant(Integer, "sqlite"),
            primary_key=True,
            autoincrement=True,
            info=dict(_TEMPORAL_INFO),
        ),
        Column(
            "archivedAt",
            DateTime,
            key="archived_at",
            nullable=False,
            default=func.now(),
            info=dict(_TEMPORAL_INFO),
        ),
    ]


_RESERVED_KEYS = frozenset(col.key for col in _temporal_columns())


def is_temporal_column(column: Column[Any]) -> bool:
    """Return True if ``column`` is one of the columns a history table
    adds on its own, as opposed to one copied from the live table."""

    return column.key in _RESERVED_KEYS


class HistoryDefinition:
    """The derived shape of a history table.

    :param name: name of the history entity; used as the class name
      of the mapped history class and in the names of its indexes.
    :param full: whether the table records every change ("full" mode)
      or only the state preceding updates and deletes ("diff" mode).
    :param table: a :class:`_schema.Table` on a private
      :class:`_schema.MetaData`, holding the history columns and indexes.

    """

    __slots__ = ("name", "full", "table")

    def __init__(self, name: str, full: bool, table: Table):
        self.name = name
        self.full = full
        self.table = table

    @property
    def columns(self) -> List[Column[Any]]:
        """The columns copied from the live table, in table order."""

        return [col for col in self.table.c if not is_temporal_column(col)]

    @property
    def indexes(self) -> List[Index]:
        return sorted(self.table.indexes, key=lambda idx: str(idx.name))

    def __repr__(self) -> str:
        return "HistoryDefinition(%r, full=%r, table=%r)" % (
            self.name,
            self.full,
            self.table.name,
        )


def derive(
    entity: Union[type, Mapper[Any], Table],
    full: bool = False,
    name: Optional[str] = None,
    table_name: Optional[str] = None,
    timestamp_columns: Sequence[str] = DEFAULT_TIMESTAMP_COLUMNS,
) -> HistoryDefinition:
    """Derive a :class:`.HistoryDefinition` from a mapped class.

    :param entity: a mapped class, its :class:`_orm.Mapper`, or a plain
      :class:`_schema.Table`.
    :param full: tracking mode recorded on the definition.
    :param name: name of the history entity.  Defaults to the class name
      (or table name, for a plain table) plus ``"History"``.
    :param table_name: name of the history table.  Defaults to ``name``.
    :param timestamp_columns: keys of columns that are the live table's own
      creation / update timestamps; their defaults are dropped.

    The result depends only on the arguments given.

    """

    live_table, base_name = _live_table(entity)

    if name is None:
        name = base_name + HISTORY_SUFFIX

    timestamp_keys = frozenset(timestamp_columns)

    columns = []
    for column in live_table.c:
        if column.key in _RESERVED_KEYS:
            raise sa_exc.ArgumentError(
                "Column %r of table %r conflicts with a column of the "
                "history table; rename it with the Column 'key' argument"
                % (column.key, live_table.name)
            )
        columns.append(
            _history_column(column, column.key in timestamp_keys)
        )

    table = Table(
        table_name or name,
        MetaData(naming_convention=live_table.metadata.naming_convention),
        *columns,
        *_temporal_columns(),
        **_table_options(live_table),
    )

    for index_name, keys, dialect_kw in _history_indexes(live_table, name):
        Index(index_name, *[table.c[key] for key in keys], **dialect_kw)

    return HistoryDefinition(name, full, table)


def _live_table(entity: Any) -> Tuple[Table, str]:
    insp = inspect(entity, raiseerr=False)

    if isinstance(insp, Mapper):
        if insp.inherits is not None:
            raise sa_exc.ArgumentError(
                "Mapper %s inherits from %s; history tables for mapper "
                "inheritance hierarchies are not supported"
                % (insp, insp.inherits)
            )
        if not isinstance(insp.local_table, Table):
            raise sa_exc.ArgumentError(
                "Mapper %s is not mapped to a Table" % insp
            )
        return insp.local_table, insp.class_.__name__
    elif isinstance(insp, Table):
        return insp, insp.name
    else:
        raise sa_exc.ArgumentError(
            "Expected a mapped class, Mapper or Table; got %r" % (entity,)
        )


def _history_column(column: Column[Any], is_timestamp: bool) -> Column[Any]:
    type_ = column.type
    if isinstance(type_, SchemaEventTarget):
        type_ = type_.copy()

    if is_timestamp:
        default = server_default = None
    else:
        default = _carried_default(column)
        server_default = _carried_server_default(column)

    return Column(
        column.name,
        type_,
        key=column.key,
        nullable=True,
        primary_key=False,
        autoincrement=False,
        default=default,
        server_default=server_default,
        comment=column.comment,
        doc=column.doc,
        info=dict(column.info),
        system=column.system,
    )


def _carried_default(column: Column[Any]) -> Any:
    default = column.default
    if default is None or default.is_sequence:
        return None
    return default.arg


def _carried_server_default(column: Column[Any]) -> Any:
    # Identity, Computed and plain FetchedValue are all generated by
    # the database for the live row and have no meaning here
    server_default = column.server_default
    if isinstance(server_default, DefaultClause):
        return server_default.arg
    return None


def _table_options(live_table: Table) -> Dict[str, Any]:
    options: Dict[str, Any] = dict(live_table.dialect_kwargs)
    options.setdefault("sqlite_autoincrement", True)
    options.update(
        schema=live_table.schema,
        comment=live_table.comment,
        info=dict(live_table.info),
    )
    return options


def _is_unique(index: Index) -> bool:
    if index.unique:
        return True
    return any(
        key.endswith("_prefix") and str(value).upper() == "UNIQUE"
        for key, value in index.dialect_kwargs.items()
    )


def _history_indexes(
    live_table: Table, history_name: str
) -> Iterator[Tuple[str, List[str], Dict[str, Any]]]:
    seen = set()

    for index in sorted(live_table.indexes, key=_index_sort_key):
        if _is_unique(index):
            continue

        columns = list(index.expressions)
        if not all(
            isinstance(col, Column) and col.table is live_table
            for col in columns
        ):
            util.warn(
                "Index %r of table %r contains expressions other than "
                "plain columns and is not copied to the history table"
                % (index.name, live_table.name)
            )
            continue

        index_name = "_".join([history_name] + [col.name for col in columns])
        if index_name in seen:
            continue
        seen.add(index_name)

        yield index_name, [col.key for col in columns], dict(
            index.dialect_kwargs
        )


def _index_sort_key(index: Index) -> Tuple[Tuple[str, ...], str]:
    return (
        tuple(str(expr) for expr in index.expressions),
        str(index.name),
    )
