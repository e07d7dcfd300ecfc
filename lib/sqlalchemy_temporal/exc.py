# sqlalchemy_temporal/exc.py
# Copyright (C) 2026 the sqlalchemy-temporal authors and contributors
# <see AUTHORS file>
#
# This module is part of sqlalchemy-temporal and is released under
# the MIT License: https://www.opensource.org/licenses/mit-license.php

"""Exceptions used with sqlalchemy-temporal.

All exceptions derive from :exc:`.TemporalError`, which is itself a
:exc:`sqlalchemy.exc.SQLAlchemyError`, so that code already catching
SQLAlchemy's errors continues to see them.

"""
from __future__ import annotations

from sqlalchemy import exc as sa_exc


class TemporalError(sa_exc.SQLAlchemyError):
    """Generic error class."""


class DuplicateEntityError(TemporalError, sa_exc.InvalidRequestError):
    """A history table of the same name is already present in the
    target :class:`_schema.MetaData`.

    This is a subclass of :exc:`sqlalchemy.exc.InvalidRequestError`, the
    error SQLAlchemy itself raises when a :class:`_schema.Table` is
    defined twice.

    """


class ReadOnlyViolation(TemporalError, sa_exc.InvalidRequestError):
    """An UPDATE or DELETE was attempted against a history table."""


class HistoryWriteFailure(TemporalError):
    """The INSERT of one or more history rows failed.

    The originating DBAPI exception is available as ``__cause__``.

    """
