"""Putative feature matching between image pairs for multi-view reconstruction."""

from .config import (
    MatchingConfig,
    MatchingMethod,
    PipelineConfig,
    RegionsConfig,
    RuntimeConfig,
)
from .features import (
    CachedRegionsProvider,
    PairMatcher,
    Regions,
    RegionsProvider,
    RegionsType,
    create_matcher,
    create_regions_provider,
    load_pairs,
    load_regions,
    load_regions_type,
    match_all_pairs,
    save_regions,
    save_regions_type,
)
from .io import load_matches, save_matches
from .pipeline import (
    MatchingContext,
    MatchingResult,
    Pipeline,
    build_matching_context,
    compute_putative_matches,
    run_pipeline,
)
from .scene import SceneCatalog, View, load_scene

__version__ = "0.1.0"

__all__ = [
    "PipelineConfig",
    "MatchingConfig",
    "MatchingMethod",
    "RegionsConfig",
    "RuntimeConfig",
    "SceneCatalog",
    "View",
    "load_scene",
    "Regions",
    "RegionsType",
    "load_regions",
    "load_regions_type",
    "save_regions",
    "save_regions_type",
    "RegionsProvider",
    "CachedRegionsProvider",
    "create_regions_provider",
    "PairMatcher",
    "create_matcher",
    "match_all_pairs",
    "load_pairs",
    "load_matches",
    "save_matches",
    "MatchingContext",
    "MatchingResult",
    "Pipeline",
    "build_matching_context",
    "compute_putative_matches",
    "run_pipeline",
]
