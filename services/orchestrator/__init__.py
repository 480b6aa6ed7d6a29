"""
Workflow orchestrator: job state machine, fan-in, consolidation and post-processing
"""

from .consolidation import consolidate_results
from .engine import WorkflowOrchestrator

__all__ = ["WorkflowOrchestrator", "consolidate_results"]
