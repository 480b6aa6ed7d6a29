"""
Durable workflow state store
"""

from .repository import JobStore

__all__ = ["JobStore"]
