"""
Completion event routing
"""

from .router import CompletionEventRouter

__all__ = ["CompletionEventRouter"]
