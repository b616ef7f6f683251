"""storage/__init__.py"""
from .database import Database
from .repository import CorrelationRepository
from .sink import FindingsSink, RepositoryFindingsSink

__all__ = ["CorrelationRepository", "Database", "FindingsSink", "RepositoryFindingsSink"]
