"""Shared pytest fixtures for mvgmatch tests."""

import json
import logging
from pathlib import Path

import numpy as np
import pytest

from mvgmatch.config import PipelineConfig
from mvgmatch.features.regions import (
    RegionsType,
    regions_path,
    save_regions,
    save_regions_type,
)


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """Restore root logger handlers and level so basicConfig calls don't leak between tests."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def write_dataset(
    root: Path,
    descriptors: dict[int, np.ndarray],
    kind: str = "numeric",
    pairs: list[tuple[int, int]] | None = None,
) -> dict[str, Path]:
    """Write a scene, a descriptor-type declaration, region files and a pair list.

    Args:
        root: Directory to write into.
        descriptors: Descriptor array of every view, keyed by view id.
        kind: "numeric" or "binary".
        pairs: Pairs written to the pair list (default: every pair).

    Returns:
        Dict with "scene", "regions_dir", "pairs" and "output" paths.
    """
    root.mkdir(parents=True, exist_ok=True)
    regions_dir = root / "regions"

    views = []
    for view_id in sorted(descriptors):
        views.append(
            {"id": view_id, "path": f"img_{view_id:03d}.jpg", "width": 640, "height": 480}
        )
        desc = descriptors[view_id]
        keypoints = np.arange(2 * len(desc), dtype=np.float32).reshape(-1, 2)
        save_regions(keypoints, desc, regions_path(regions_dir, f"img_{view_id:03d}"))

    scene_path = root / "scene.json"
    with open(scene_path, "w") as f:
        json.dump({"root_path": "images", "views": views}, f)

    length = next((d.shape[1] for d in descriptors.values() if d.ndim == 2), None)
    save_regions_type(
        RegionsType(
            describer="SIFT" if kind == "numeric" else "AKAZE_MLDB",
            descriptor_kind=kind,
            descriptor_length=length,
        ),
        regions_dir / "image_describer.json",
    )

    if pairs is None:
        ids = sorted(descriptors)
        pairs = [(a, b) for k, a in enumerate(ids) for b in ids[k + 1 :]]
    pair_list_path = root / "pairs.txt"
    with open(pair_list_path, "w") as f:
        for i, j in pairs:
            f.write(f"{i} {j}\n")

    return {
        "scene": scene_path,
        "regions_dir": regions_dir,
        "pairs": pair_list_path,
        "output": root / "matches" / "matches.putative.txt",
    }


def clustered_descriptors(
    n_views: int = 4, n_points: int = 40, dim: int = 32, noise: float = 0.01, seed: int = 0
) -> dict[int, np.ndarray]:
    """Noisy copies of one set of well separated points, shuffled per view.

    Every view sees the same underlying points, so the nearest neighbor of a
    descriptor is unambiguous and every back end should find it.
    """
    rng = np.random.default_rng(seed)
    points = rng.standard_normal((n_points, dim)) * 10.0
    descriptors = {}
    for view_id in range(n_views):
        order = rng.permutation(n_points)
        noisy = points[order] + rng.standard_normal((n_points, dim)) * noise
        descriptors[view_id] = noisy.astype(np.float32)
    return descriptors


@pytest.fixture
def small_descriptors() -> dict[int, np.ndarray]:
    """Three views with 2, 3 and 2 four-dimensional descriptors."""
    return {
        0: np.array([[0, 0, 0, 0], [10, 0, 0, 0]], dtype=np.float32),
        1: np.array([[0.1, 0, 0, 0], [10, 0.2, 0, 0], [5, 5, 5, 5]], dtype=np.float32),
        2: np.array([[0, 0.1, 0, 0], [9.9, 0, 0, 0]], dtype=np.float32),
    }


@pytest.fixture
def dataset(tmp_path: Path, small_descriptors) -> dict[str, Path]:
    """Small numeric dataset with pairs (0, 1) and (1, 2)."""
    return write_dataset(tmp_path / "data", small_descriptors, pairs=[(0, 1), (1, 2)])


@pytest.fixture
def pipeline_config(dataset) -> PipelineConfig:
    """Config for the small dataset with exhaustive L2 matching and no diagnostics."""
    return PipelineConfig.model_validate(
        {
            "scene_path": str(dataset["scene"]),
            "output_path": str(dataset["output"]),
            "pair_list_path": str(dataset["pairs"]),
            "regions_dir": str(dataset["regions_dir"]),
            "matching": {"method": "BRUTEFORCEL2", "ratio": 0.8},
            "runtime": {"num_workers": 1, "export_diagnostics": False, "quiet": True},
        }
    )
