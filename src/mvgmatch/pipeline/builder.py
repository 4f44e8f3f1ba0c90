"""Matching context builder for one-time initialization."""

import logging

from ..config import PipelineConfig, dump_config_summary
from ..features.provider import create_regions_provider
from ..features.regions import load_regions_type
from ..scene import load_scene
from .context import MatchingContext

logger = logging.getLogger(__name__)


def build_matching_context(config: PipelineConfig) -> MatchingContext:
    """Perform one-time initialization of a matching run.

    Loads the scene, the descriptor-type declaration and the region
    provider. Every failure here is fatal to the run.

    Args:
        config: Full pipeline configuration.

    Returns:
        MatchingContext with the loaded inputs.

    Raises:
        FileNotFoundError: If the scene, the declaration or a region file is missing.
        ValueError: If one of them is malformed.
    """
    config.validate_paths()
    for key, value in dump_config_summary(config).items():
        logger.info("  %s: %s", key, value)

    # 1. Scene
    logger.info("Loading scene from %s", config.scene_path)
    scene = load_scene(config.scene_path)
    logger.info("Scene has %d views", len(scene))

    # 2. Descriptor-type declaration
    regions_dir = config.resolved_regions_dir
    regions_type = load_regions_type(regions_dir)
    if regions_type.descriptor_length is None:
        logger.info(
            "Regions: %s (%s descriptors)",
            regions_type.describer,
            regions_type.descriptor_kind,
        )
    else:
        logger.info(
            "Regions: %s (%s descriptors of length %d)",
            regions_type.describer,
            regions_type.descriptor_kind,
            regions_type.descriptor_length,
        )

    # 3. Region provider
    provider = create_regions_provider(config.regions.cache_size)
    provider.load(scene, regions_dir, regions_type, quiet=config.runtime.quiet)

    return MatchingContext(
        config=config,
        scene=scene,
        regions_type=regions_type,
        provider=provider,
    )
