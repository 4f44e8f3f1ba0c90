"""Matching context dataclass for data loaded once per run."""

from dataclasses import dataclass

from ..config import PipelineConfig
from ..features.provider import RegionsProvider
from ..features.regions import RegionsType
from ..scene import SceneCatalog


@dataclass
class MatchingContext:
    """Inputs of a putative matching run that stay fixed while pairs are matched.

    Created once by build_matching_context().
    """

    config: PipelineConfig
    scene: SceneCatalog
    regions_type: RegionsType
    provider: RegionsProvider
