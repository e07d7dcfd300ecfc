# sqlalchemy_temporal/api.py
# Copyright (C) 2026 the sqlalchemy-temporal authors and contributors
# <see AUTHORS file>
#
# This module is part of sqlalchemy-temporal and is released under
# the MIT License: https://www.opensource.org/licenses/mit-license.php

"""Public entry points: :func:`.register` and the :class:`.Temporal`
mixin.

"""
from __future__ import annotations

from typing import Any
from typing import Optional
from typing import Sequence
from typing import TypeVar

from sqlalchemy import event
from sqlalchemy import exc as sa_exc
from sqlalchemy import inspect
from sqlalchemy import util
from sqlalchemy.orm import Session

from .events import TemporalProtocol
from .schema import DEFAULT_TIMESTAMP_COLUMNS
from .schema import derive
from .sink import register_history
from .writer import default_writer
from .writer import HistoryWriter


__all__ = ["register", "Temporal"]

_T = TypeVar("_T", bound=Any)

_TEMPORAL_ARGS = frozenset(
    [
        "registry",
        "blocking",
        "full",
        "name",
        "table_name",
        "timestamp_columns",
        "writer",
        "session",
    ]
)


def register(
    cls: _T,
    registry: Any = None,
    *,
    blocking: bool = True,
    full: bool = False,
    name: Optional[str] = None,
    table_name: Optional[str] = None,
    timestamp_columns: Sequence[str] = DEFAULT_TIMESTAMP_COLUMNS,
    writer: Optional[HistoryWriter] = None,
    session: Any = Session,
) -> _T:
    """Record the changes of a mapped class into a history table.

    E.g.::

        class User(Base):
            __tablename__ = "user_account"

            id = mapped_column(Integer, primary_key=True)
            name = mapped_column(String(50))

        register(User, full=True)

        UserHistory = User.__history_mapper__.class_

    The history table is added to the same :class:`_schema.MetaData` as the
    table of ``cls``, so :meth:`_schema.MetaData.create_all` creates it.

    :param cls: a mapped class.  It is returned as is, so that
      :func:`.register` may be used as a class decorator.
    :param registry: the :class:`_orm.registry` in which to map the history
      class; defaults to the registry of ``cls``.
    :param blocking: if True (the default), history rows are written
      inline, inside the transaction of the operation that produced them,
      and a failure to write them propagates.  If False, they are written
      in the background by ``writer``; see :mod:`.writer`.
    :param full: if True, record the state of the row after every INSERT,
      UPDATE and DELETE.  If False (the default), record the state of the
      row preceding every UPDATE and DELETE.
    :param name: name of the history class; defaults to the class name of
      ``cls`` plus ``"History"``.
    :param table_name: name of the history table; defaults to ``name``.
    :param timestamp_columns: keys of the creation / update timestamp
      columns of ``cls``, copied without their defaults.
    :param writer: :class:`.HistoryWriter` used when ``blocking`` is False;
      defaults to a process-wide writer.
    :param session: target of the listeners intercepting bulk UPDATE and
      DELETE statements; defaults to the :class:`_orm.Session` class.

    :raises DuplicateEntityError: ``cls`` already has a history table.

    """

    mapper = inspect(cls)
    if registry is None:
        registry = mapper.registry

    definition = derive(
        mapper,
        full=full,
        name=name,
        table_name=table_name,
        timestamp_columns=timestamp_columns,
    )
    sink = register_history(definition, registry)

    if not blocking and writer is None:
        writer = default_writer()

    protocol = TemporalProtocol(
        mapper,
        sink,
        blocking=blocking,
        full=full,
        writer=writer,
        session=session,
    )
    protocol.listen()

    mapper.class_.__history_mapper__ = sink.mapper
    mapper.class_.__temporal__ = protocol
    return cls


def _register_from_args(mapper: Any) -> None:
    cls = mapper.class_
    args = dict(cls.__temporal_args__)

    unknown = set(args).difference(_TEMPORAL_ARGS)
    if unknown:
        raise sa_exc.ArgumentError(
            "Unknown __temporal_args__ for %s: %s"
            % (cls.__name__, ", ".join(sorted(unknown)))
        )

    register(cls, **args)


class Temporal:
    """Mixin recording the changes of a declarative class.

    E.g.::

        class User(Temporal, Base):
            __tablename__ = "user_account"
            __temporal_args__ = {"full": True}

            id = mapped_column(Integer, primary_key=True)
            name = mapped_column(String(50))

    ``__temporal_args__`` holds the keyword arguments of :func:`.register`.

    """

    __temporal_args__ = util.immutabledict()

    def __init_subclass__(cls, **kw: Any) -> None:
        insp = inspect(cls, raiseerr=False)

        if insp is not None:
            _register_from_args(insp)
        else:

            @event.listens_for(cls, "after_mapper_constructed")
            def _mapper_constructed(mapper, class_):
                _register_from_args(mapper)

        super().__init_subclass__(**kw)
