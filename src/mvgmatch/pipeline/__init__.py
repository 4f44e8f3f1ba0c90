"""Pipeline orchestration package for putative matching runs.

Provides the matching context, its builder, and the runner that decides
between reusing a persisted match table and recomputing it.
"""

from .builder import build_matching_context
from .context import MatchingContext
from .runner import MatchingResult, Pipeline, compute_putative_matches, run_pipeline

__all__ = [
    "MatchingContext",
    "MatchingResult",
    "Pipeline",
    "build_matching_context",
    "compute_putative_matches",
    "run_pipeline",
]
