"""Pipeline orchestration.

Key Components:
- PipelineOrchestrator: Runs the named steps in order against one warehouse connection
- PipelineResult: Counts, timings, quality report and failed step of a run
"""

from .orchestrator import PipelineOrchestrator, PipelineResult

__all__ = ["PipelineOrchestrator", "PipelineResult"]
