"""
Database models package - SQLAlchemy ORM models
"""

from .dead_letter import DeadLetterRecord
from .history import StatusHistoryRecord
from .job import JobRecord, TransactionRecord
from .operation import ContinuationRecord, ProviderOperationRecord
from .review import ReviewCaseRecord

__all__ = [
    "ContinuationRecord",
    "DeadLetterRecord",
    "JobRecord",
    "ProviderOperationRecord",
    "ReviewCaseRecord",
    "StatusHistoryRecord",
    "TransactionRecord",
]
