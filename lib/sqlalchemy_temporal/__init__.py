# sqlalchemy_temporal/__init__.py
# Copyright (C) 2026 the sqlalchemy-temporal authors and contributors
# <see AUTHORS file>
#
# This module is part of sqlalchemy-temporal and is released under
# the MIT License: https://www.opensource.org/licenses/mit-license.php

from .api import register
from .api import Temporal
from .events import INDIVIDUAL_HOOKS
from .events import TemporalProtocol
from .exc import DuplicateEntityError
from .exc import HistoryWriteFailure
from .exc import ReadOnlyViolation
from .exc import TemporalError
from .schema import derive
from .schema import HistoryDefinition
from .sink import HistorySink
from .sink import register_history
from .writer import default_writer
from .writer import HistoryWriter


__version__ = "1.0.0"
