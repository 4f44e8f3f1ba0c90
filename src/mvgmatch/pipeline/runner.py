"""Pipeline runner: reuse-or-compute decision, persistence and public API."""

import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path

from tqdm import tqdm

from ..config import PipelineConfig
from ..features.matching import PairwiseMatches, create_matcher, match_all_pairs
from ..features.pairs import load_pairs
from ..io import load_matches, save_matches
from ..visualization.graph import export_diagnostics
from .builder import build_matching_context
from .context import MatchingContext

logger = logging.getLogger(__name__)


@dataclass
class MatchingResult:
    """Outcome of a putative matching run.

    Attributes:
        matches: Dict mapping (i, j) to the (M, 2) match array of that pair.
        reused: True when an existing match file was loaded instead of recomputed.
        elapsed: Wall-clock seconds spent matching (0.0 when reused).
    """

    matches: PairwiseMatches
    reused: bool
    elapsed: float


def compute_putative_matches(ctx: MatchingContext) -> MatchingResult:
    """Load the persisted match table, or compute and persist a new one.

    An existing output file is reused unless ``force`` is set. Otherwise the
    matcher is resolved and the pair list validated before any pair is
    matched; the output file is only replaced once every pair succeeded.

    Args:
        ctx: Matching context from build_matching_context().

    Returns:
        MatchingResult.

    Raises:
        FileNotFoundError: If the pair list is missing.
        ValueError: If the method or the pair list is invalid, or the existing
            match file is corrupt.
        OSError: If the match file cannot be written.
    """
    config = ctx.config
    output_path = Path(config.output_path)

    if not config.force and output_path.exists():
        logger.info("Reusing existing matches from %s", output_path)
        return MatchingResult(
            matches=load_matches(output_path), reused=True, elapsed=0.0
        )

    matcher = create_matcher(
        config.matching.method, ctx.regions_type.descriptor_kind, config.matching
    )
    pairs = load_pairs(config.pair_list_path, len(ctx.scene))

    start = time.perf_counter()
    with tqdm(
        total=len(pairs),
        desc="Matching pairs",
        disable=config.runtime.quiet or not sys.stderr.isatty(),
        unit="pair",
    ) as bar:

        def progress(completed: int, total: int) -> None:
            bar.update(completed - bar.n)

        matches = match_all_pairs(
            ctx.provider,
            pairs,
            matcher,
            progress=progress,
            num_workers=config.runtime.num_workers,
        )
    elapsed = time.perf_counter() - start
    logger.info("Task (Regions Matching) done in %.3f s", elapsed)

    save_matches(matches, output_path)
    return MatchingResult(matches=matches, reused=False, elapsed=elapsed)


def run_pipeline(config: PipelineConfig) -> MatchingResult:
    """Run a putative matching run end to end.

    Builds the context, computes (or reuses) the match table, then writes
    the diagnostic graph files. Diagnostics failures are logged and do not
    fail the run.

    Args:
        config: Full pipeline configuration.

    Returns:
        MatchingResult of the run.
    """
    ctx = build_matching_context(config)
    result = compute_putative_matches(ctx)

    if config.runtime.export_diagnostics:
        try:
            export_diagnostics(ctx.scene.view_ids, result.matches, config.matches_dir)
        except Exception:
            logger.exception("Diagnostics export failed")

    logger.info("Pipeline complete")
    return result


class Pipeline:
    """Putative matching pipeline.

    Primary programmatic entry point for mvgmatch.

    Example:
        pipeline = Pipeline(config)
        result = pipeline.run()
    """

    def __init__(self, config: PipelineConfig):
        """Initialize the pipeline with configuration.

        Args:
            config: Full pipeline configuration.
        """
        self.config = config

    def run(self) -> MatchingResult:
        """Run the pipeline. Equivalent to calling run_pipeline(config)."""
        return run_pipeline(self.config)
