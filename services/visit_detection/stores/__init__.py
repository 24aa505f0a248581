"""
Candidate / visit persistence.

Usage:
    from services.visit_detection.stores import InMemoryVisitStorage, PostgresVisitStorage
"""

from __future__ import annotations

from services.visit_detection.stores.base import (
    CandidateRepository,
    UnitOfWork,
    VisitRepository,
    VisitStorage,
)
from services.visit_detection.stores.memory import InMemoryVisitStorage
from services.visit_detection.stores.postgres import PostgresVisitStorage

__all__ = [
    "CandidateRepository",
    "UnitOfWork",
    "VisitRepository",
    "VisitStorage",
    "InMemoryVisitStorage",
    "PostgresVisitStorage",
]
