"""
Retry policy and dead-letter quarantine
"""

from .dead_letter import DeadLetterQueue
from .policy import RetryPolicy, classify

__all__ = ["DeadLetterQueue", "RetryPolicy", "classify"]
