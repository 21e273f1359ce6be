"""Incremental crawl-and-persist harvesters for remote feeds."""

from .pagination import CursorPaginator, TerminationPolicy
from .scheduler import SweepScheduler
from .writer import BatchWriter, UpsertTarget

__all__ = ["BatchWriter", "CursorPaginator", "SweepScheduler", "TerminationPolicy", "UpsertTarget"]
