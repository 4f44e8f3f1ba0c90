"""Configuration management for mvgmatch putative matching runs."""

import logging
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)

# Name of the descriptor-type declaration stored next to the region files.
IMAGE_DESCRIBER_FILENAME = "image_describer.json"

# Diagnostic artifacts, written next to the match file.
ADJACENCY_MATRIX_FILENAME = "PutativeAdjacencyMatrix.svg"
VIEW_GRAPH_FILENAME = "putative_matches.dot"


class MatchingMethod(str, Enum):
    """Nearest-neighbor search back ends.

    - AUTO: Pick from the descriptor kind (FASTCASCADEHASHINGL2 for numeric
      descriptors, BRUTEFORCEHAMMING for binary descriptors)
    - BRUTEFORCEL2: Exhaustive L2 search
    - BRUTEFORCEHAMMING: Exhaustive Hamming search
    - ANNL2: Approximate L2 search with a kd-tree per target view
    - HNSWL2: Approximate L2 search with a navigable small-world graph per target view
    - CASCADEHASHINGL2: Cascade hashing, hashed per pair
    - FASTCASCADEHASHINGL2: Cascade hashing with every view hashed once up front
    """

    AUTO = "AUTO"
    BRUTE_FORCE_L2 = "BRUTEFORCEL2"
    BRUTE_FORCE_HAMMING = "BRUTEFORCEHAMMING"
    ANN_L2 = "ANNL2"
    HNSW_L2 = "HNSWL2"
    CASCADE_HASHING_L2 = "CASCADEHASHINGL2"
    FAST_CASCADE_HASHING_L2 = "FASTCASCADEHASHINGL2"


class MatchingConfig(BaseModel):
    """Configuration for descriptor matching.

    Attributes:
        ratio: Nearest / second-nearest distance ratio threshold. A correspondence
            is kept only when the ratio is strictly below this value.
        method: Nearest-neighbor back end.
        query_chunk_size: Number of query descriptors per distance block (brute force L2).
        tree_eps: Approximation factor of the kd-tree search (ANNL2). Returned
            neighbors are within (1 + tree_eps) of the true distance.
        hnsw_m: Graph degree of the HNSW index (HNSWL2).
        hnsw_ef_construction: Candidate list size while building the HNSW index.
        hnsw_ef_search: Candidate list size while querying the HNSW index.
        cascade_hash_bits: Length of the primary hash code (multiple of 8).
        cascade_bucket_groups: Number of independent bucket groups.
        cascade_bits_per_bucket: Bits of the secondary hash that address a bucket.
        cascade_top_candidates: Candidates kept (by hash distance) for exact L2 ranking.
        cascade_seed: Seed of the random hash projections.
    """

    model_config = ConfigDict(extra="allow")

    ratio: float = 0.8
    method: MatchingMethod = MatchingMethod.AUTO

    # Brute force
    query_chunk_size: int = Field(default=2048, gt=0)

    # Approximate indexes
    tree_eps: float = Field(default=0.2, ge=0.0)
    hnsw_m: int = Field(default=16, gt=0)
    hnsw_ef_construction: int = Field(default=200, gt=0)
    hnsw_ef_search: int = Field(default=64, gt=0)

    # Cascade hashing
    cascade_hash_bits: int = 128
    cascade_bucket_groups: int = Field(default=6, gt=0)
    cascade_bits_per_bucket: int = Field(default=10, gt=0, le=24)
    cascade_top_candidates: int = Field(default=10, ge=2)
    cascade_seed: int = 0

    @field_validator("ratio")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        """Validate that the ratio threshold is in (0, 1]."""
        if not 0.0 < v <= 1.0:
            raise ValueError(f"ratio must be in (0, 1], got {v}")
        return v

    @field_validator("cascade_hash_bits")
    @classmethod
    def validate_hash_bits(cls, v: int) -> int:
        """Validate that the hash code length is a positive multiple of 8."""
        if v <= 0 or v % 8 != 0:
            raise ValueError(f"cascade_hash_bits must be a positive multiple of 8, got {v}")
        return v

    @model_validator(mode="after")
    def warn_extra_fields(self) -> "MatchingConfig":
        """Warn about unknown configuration keys."""
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in MatchingConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self


class RegionsConfig(BaseModel):
    """Configuration for region provisioning.

    Attributes:
        cache_size: Maximum number of views whose regions stay in memory.
            0 loads every view up front.
    """

    model_config = ConfigDict(extra="allow")

    cache_size: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def warn_extra_fields(self) -> "RegionsConfig":
        """Warn about unknown configuration keys."""
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in RegionsConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self


class RuntimeConfig(BaseModel):
    """Configuration for runtime settings.

    Attributes:
        num_workers: Number of matching threads (0 = one per CPU).
        export_diagnostics: Write the adjacency matrix and view graph after matching.
        quiet: Suppress progress output.
    """

    model_config = ConfigDict(extra="allow")

    num_workers: int = Field(default=0, ge=0)
    export_diagnostics: bool = True
    quiet: bool = False

    @model_validator(mode="after")
    def warn_extra_fields(self) -> "RuntimeConfig":
        """Warn about unknown configuration keys."""
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in RuntimeConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self


class PipelineConfig(BaseModel):
    """Top-level configuration for a putative matching run.

    Attributes:
        scene_path: Path to the scene JSON file (view catalog).
        output_path: Path of the putative match file (.txt or .pt).
        pair_list_path: Path to the pair list file.
        regions_dir: Directory holding the region files and the descriptor-type
            declaration. Defaults to the directory of output_path.
        force: Recompute matches even if output_path already exists.
        matching: Matching configuration.
        regions: Region provisioning configuration.
        runtime: Runtime configuration.
    """

    model_config = ConfigDict(extra="allow")

    # Required fields (no sensible defaults)
    scene_path: str = ""
    output_path: str = ""
    pair_list_path: str = ""

    # Optional with defaults
    regions_dir: str | None = None
    force: bool = False

    # Sub-configs
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    regions: RegionsConfig = Field(default_factory=RegionsConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)

    @property
    def matches_dir(self) -> Path:
        """Directory of the match file (diagnostics are written here)."""
        return Path(self.output_path).parent

    @property
    def resolved_regions_dir(self) -> Path:
        """Directory holding the region files."""
        if self.regions_dir is not None:
            return Path(self.regions_dir)
        return self.matches_dir

    @model_validator(mode="after")
    def warn_extra_fields(self) -> "PipelineConfig":
        """Warn about unknown top-level keys."""
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in PipelineConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self

    @classmethod
    def from_yaml(cls, path: str | Path) -> "PipelineConfig":
        """Load configuration from a YAML file.

        Missing fields use their default values.

        Args:
            path: Path to YAML configuration file.

        Returns:
            Loaded configuration with defaults filled in.

        Raises:
            FileNotFoundError: If the file does not exist.
            yaml.YAMLError: If the file is not valid YAML.
            ValueError: If validation fails (with all errors collected).
        """
        path = Path(path)
        with open(path) as f:
            data = yaml.safe_load(f)

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(
                f"Configuration file {path} must contain a mapping, "
                f"got {type(data).__name__}"
            )

        for section in ("matching", "regions", "runtime"):
            if section not in data:
                logger.info("Using default: %s (all defaults)", section)

        try:
            config = cls.model_validate(data)
        except ValidationError as e:
            formatted_errors = format_validation_errors(e)
            raise ValueError(
                f"Configuration validation failed:\n{formatted_errors}"
            ) from None

        return config

    def to_yaml(self, path: str | Path) -> None:
        """Save configuration to a YAML file.

        All fields including defaults are written for explicitness.

        Args:
            path: Path to output YAML file.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json")

        with open(path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    def validate_paths(self) -> None:
        """Check that the paths a run needs are set.

        Raises:
            ValueError: If scene_path, output_path or pair_list_path is empty.
        """
        missing = [
            name
            for name in ("scene_path", "output_path", "pair_list_path")
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(f"Missing required configuration values: {missing}")


def format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors with YAML-style paths.

    Args:
        error: Pydantic ValidationError.

    Returns:
        Formatted error string with YAML paths and messages.
    """
    lines = []
    for err in error.errors():
        loc = err["loc"]
        path_parts: list[str] = []
        for part in loc:
            if isinstance(part, int) and path_parts:
                path_parts[-1] = f"{path_parts[-1]}[{part}]"
            else:
                path_parts.append(str(part))

        path = ".".join(path_parts)
        msg = err["msg"]
        lines.append(f"  {path}: {msg}")

    return "\n".join(lines)


def dump_config_summary(config: PipelineConfig) -> dict[str, Any]:
    """Return the options of a run in a flat, loggable form.

    Args:
        config: Pipeline configuration.

    Returns:
        Mapping of option name to value.
    """
    return {
        "scene_path": config.scene_path,
        "output_path": config.output_path,
        "pair_list_path": config.pair_list_path,
        "force": config.force,
        "ratio": config.matching.ratio,
        "method": config.matching.method.value,
        "cache_size": config.regions.cache_size or "unlimited",
    }
