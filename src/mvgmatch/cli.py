"""Command-line interface for the mvgmatch pipeline."""

import argparse
import logging
import sys
from pathlib import Path

from mvgmatch.config import MatchingMethod, PipelineConfig
from mvgmatch.features.pairs import contiguous_pairs, exhaustive_pairs, save_pairs
from mvgmatch.scene import load_scene


def _configure_logging(verbose: bool) -> None:
    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    # Silence noisy third-party loggers
    for name in ("matplotlib", "PIL"):
        logging.getLogger(name).setLevel(logging.WARNING)


def init_config(
    scene_path: Path,
    pair_list_path: Path,
    output_path: Path,
    regions_dir: Path | None,
    config_path: Path,
) -> PipelineConfig:
    """Generate a PipelineConfig for a scene and save it as YAML.

    Args:
        scene_path: Path to the scene JSON file.
        pair_list_path: Path to the pair list file.
        output_path: Path of the match file to produce.
        regions_dir: Directory of the region files (None = output directory).
        config_path: Path where the generated config YAML will be saved.

    Returns:
        The generated PipelineConfig.

    Raises:
        SystemExit: If the scene cannot be loaded.
    """
    try:
        scene = load_scene(scene_path)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: Failed to load scene: {e}", file=sys.stderr)
        sys.exit(1)

    if not pair_list_path.exists():
        print(f"[WARN] Pair list does not exist yet: {pair_list_path}")

    config = PipelineConfig(
        scene_path=str(scene_path),
        output_path=str(output_path),
        pair_list_path=str(pair_list_path),
        regions_dir=str(regions_dir) if regions_dir is not None else None,
    )
    config.to_yaml(config_path)

    print(f"[OK] Scene with {len(scene)} view(s): {scene_path}")
    print(f"[OK] Configuration saved to: {config_path}")
    return config


def run_command(
    config_path: Path,
    verbose: bool = False,
    force: bool = False,
    ratio: float | None = None,
    method: str | None = None,
    cache_size: int | None = None,
) -> None:
    """Execute the matching pipeline from a config file.

    Args:
        config_path: Path to the pipeline config YAML file.
        verbose: If True, set logging to DEBUG level.
        force: Recompute matches even if the output file exists.
        ratio: Optional ratio threshold override.
        method: Optional matching method override.
        cache_size: Optional region cache size override.
    """
    # 1. Configure logging
    _configure_logging(verbose)

    # 2. Load config
    if not config_path.exists():
        print(f"Error: Config file not found: {config_path}", file=sys.stderr)
        sys.exit(1)

    try:
        config = PipelineConfig.from_yaml(config_path)
    except Exception as e:
        print(f"Error: Failed to load config: {e}", file=sys.stderr)
        sys.exit(1)

    # 3. Apply CLI overrides (re-validated as a whole)
    overrides: dict = {}
    if force:
        overrides["force"] = True
    if ratio is not None:
        overrides.setdefault("matching", {})["ratio"] = ratio
    if method is not None:
        overrides.setdefault("matching", {})["method"] = method
    if cache_size is not None:
        overrides.setdefault("regions", {})["cache_size"] = cache_size

    try:
        if overrides:
            data = config.model_dump(mode="json")
            for key, value in overrides.items():
                if isinstance(value, dict):
                    data[key].update(value)
                else:
                    data[key] = value
            config = PipelineConfig.model_validate(data)
        config.validate_paths()
    except ValueError as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    # 4. Run pipeline
    from mvgmatch.pipeline import run_pipeline

    try:
        result = run_pipeline(config)
    except (FileNotFoundError, ValueError, RuntimeError, OSError) as e:
        logging.getLogger(__name__).debug("Run failed", exc_info=True)
        print(f"Error: Matching failed: {e}", file=sys.stderr)
        sys.exit(1)

    n_matches = sum(len(m) for m in result.matches.values())
    status = "reused" if result.reused else f"computed in {result.elapsed:.1f} s"
    print(f"\n{len(result.matches)} pair(s), {n_matches} putative match(es) ({status})")
    print(f"  {config.output_path}\n")


def pairs_command(
    scene_path: Path, output_path: Path, mode: str = "exhaustive", overlap: int = 1
) -> None:
    """Write a pair list for a scene.

    Args:
        scene_path: Path to the scene JSON file.
        output_path: Path of the pair list to write.
        mode: "exhaustive" (every pair) or "contiguous" (sequence neighbors).
        overlap: Number of following views paired with each view in contiguous mode.
    """
    try:
        scene = load_scene(scene_path)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: Failed to load scene: {e}", file=sys.stderr)
        sys.exit(1)

    if mode == "contiguous":
        if overlap < 1:
            print(f"Error: --overlap must be >= 1, got {overlap}", file=sys.stderr)
            sys.exit(1)
        pairs = contiguous_pairs(len(scene), overlap)
    else:
        pairs = exhaustive_pairs(len(scene))

    save_pairs(pairs, output_path)
    print(f"[OK] {len(pairs)} pair(s) saved to: {output_path}")


def main() -> None:
    """Main entry point for the mvgmatch CLI."""
    parser = argparse.ArgumentParser(
        prog="mvgmatch",
        description="Putative feature matching between image pairs for multi-view reconstruction.",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init subcommand
    init_parser = subparsers.add_parser(
        "init",
        help="Generate config for a scene",
    )
    init_parser.add_argument(
        "--scene",
        type=Path,
        required=True,
        help="Path to scene JSON file",
    )
    init_parser.add_argument(
        "--pairs",
        type=Path,
        required=True,
        help="Path to pair list file",
    )
    init_parser.add_argument(
        "--output",
        type=Path,
        required=True,
        help="Path of the match file to produce (.txt or .pt)",
    )
    init_parser.add_argument(
        "--regions-dir",
        type=Path,
        default=None,
        help="Directory of region files (default: directory of --output)",
    )
    init_parser.add_argument(
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to output config YAML file (default: config.yaml)",
    )

    # run subcommand
    run_parser = subparsers.add_parser(
        "run",
        help="Compute putative matches",
    )
    run_parser.add_argument(
        "config",
        type=Path,
        help="Path to pipeline config YAML file",
    )
    run_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    run_parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Recompute matches even if the match file exists",
    )
    run_parser.add_argument(
        "-r",
        "--ratio",
        type=float,
        default=None,
        help="Override distance ratio threshold (e.g., 0.8)",
    )
    run_parser.add_argument(
        "-n",
        "--method",
        type=str.upper,
        default=None,
        choices=[m.value for m in MatchingMethod],
        help="Override nearest neighbor method",
    )
    run_parser.add_argument(
        "--cache-size",
        type=int,
        default=None,
        help="Override region cache size (0 = keep every view in memory)",
    )

    # pairs subcommand
    pairs_parser = subparsers.add_parser(
        "pairs",
        help="Generate a pair list for a scene",
    )
    pairs_parser.add_argument(
        "scene",
        type=Path,
        help="Path to scene JSON file",
    )
    pairs_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        required=True,
        help="Path of the pair list to write",
    )
    pairs_parser.add_argument(
        "--mode",
        type=str,
        choices=["exhaustive", "contiguous"],
        default="exhaustive",
        help="Pair generation mode (default: exhaustive)",
    )
    pairs_parser.add_argument(
        "--overlap",
        type=int,
        default=1,
        help="Views paired with each view in contiguous mode (default: 1)",
    )

    args = parser.parse_args()

    # Dispatch
    if args.command == "init":
        init_config(
            scene_path=args.scene,
            pair_list_path=args.pairs,
            output_path=args.output,
            regions_dir=args.regions_dir,
            config_path=args.config,
        )
    elif args.command == "run":
        run_command(
            config_path=args.config,
            verbose=args.verbose,
            force=args.force,
            ratio=args.ratio,
            method=args.method,
            cache_size=args.cache_size,
        )
    elif args.command == "pairs":
        pairs_command(
            scene_path=args.scene,
            output_path=args.output,
            mode=args.mode,
            overlap=args.overlap,
        )
    else:
        parser.print_help()
        sys.exit(1)
