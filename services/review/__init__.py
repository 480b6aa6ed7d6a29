"""
Human review gate for low-confidence results
"""

from .gate import HumanReviewGate

__all__ = ["HumanReviewGate"]
