"""Regions, pair lists and putative descriptor matching."""

from .cascade_hashing import CascadeHasher, HashedDescriptors
from .matching import (
    PairMatcher,
    create_matcher,
    match_all_pairs,
    ratio_test,
    resolve_method,
)
from .pairs import (
    canonical_pairs,
    contiguous_pairs,
    exhaustive_pairs,
    load_pairs,
    save_pairs,
)
from .provider import CachedRegionsProvider, RegionsProvider, create_regions_provider
from .regions import (
    Regions,
    RegionsType,
    load_regions,
    load_regions_type,
    make_regions,
    save_regions,
    save_regions_type,
)

__all__ = [
    "CascadeHasher",
    "HashedDescriptors",
    "PairMatcher",
    "create_matcher",
    "match_all_pairs",
    "ratio_test",
    "resolve_method",
    "canonical_pairs",
    "contiguous_pairs",
    "exhaustive_pairs",
    "load_pairs",
    "save_pairs",
    "RegionsProvider",
    "CachedRegionsProvider",
    "create_regions_provider",
    "Regions",
    "RegionsType",
    "load_regions",
    "load_regions_type",
    "make_regions",
    "save_regions",
    "save_regions_type",
]
