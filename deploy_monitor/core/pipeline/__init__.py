"""
Pipeline run tracking.

Runs move running -> completed | failed | timeout; see PipelineOrchestrator.
"""

from .orchestrator import PipelineOrchestrator

__all__ = ["PipelineOrchestrator"]
