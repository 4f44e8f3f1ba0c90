"""View pair lists: loading, validation and generation."""

import logging
from collections import defaultdict
from collections.abc import Iterable
from pathlib import Path

logger = logging.getLogger(__name__)

Pair = tuple[int, int]


def canonical_pairs(pairs: Iterable[Pair]) -> list[Pair]:
    """Order each pair as (min, max), drop duplicates and sort.

    Args:
        pairs: View id pairs in any order.

    Returns:
        Sorted list of unique (i, j) pairs with i < j.

    Raises:
        ValueError: If a pair joins a view with itself.
    """
    unique = set()
    for i, j in pairs:
        if i == j:
            raise ValueError(f"Invalid pair ({i}, {j}): a view cannot be paired with itself")
        unique.add((min(i, j), max(i, j)))
    return sorted(unique)


def load_pairs(path: str | Path, n_views: int) -> list[Pair]:
    """Load and validate a pair list file.

    Each non-blank line lists an anchor view followed by the views it is paired
    with: ``I J K`` declares the pairs (I, J) and (I, K). Pairs are unordered;
    (J, I) and (I, J) are the same pair.

    Args:
        path: Path to the pair list file.
        n_views: Number of views of the scene; valid ids are 0 .. n_views - 1.

    Returns:
        Sorted list of unique (i, j) pairs with i < j.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If a line has fewer than two ids or a non-integer token, or if
            an id is out of range, or a view is paired with itself.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Pair list file does not exist: {path}")

    pairs: set[Pair] = set()
    with open(path) as f:
        for line_number, line in enumerate(f, start=1):
            tokens = line.split()
            if not tokens:
                continue
            if len(tokens) < 2:
                raise ValueError(
                    f"{path}:{line_number}: expected at least two view ids, got {line.strip()!r}"
                )
            try:
                ids = [int(token) for token in tokens]
            except ValueError:
                raise ValueError(
                    f"{path}:{line_number}: view ids must be integers, got {line.strip()!r}"
                ) from None

            anchor = ids[0]
            for view_id in ids:
                if not 0 <= view_id < n_views:
                    raise ValueError(
                        f"{path}:{line_number}: view id {view_id} out of range [0, {n_views})"
                    )
            for other in ids[1:]:
                if other == anchor:
                    raise ValueError(
                        f"{path}:{line_number}: view {anchor} cannot be paired with itself"
                    )
                pairs.add((min(anchor, other), max(anchor, other)))

    logger.info("Loaded %d pairs from %s", len(pairs), path)
    return sorted(pairs)


def save_pairs(pairs: Iterable[Pair], path: str | Path) -> None:
    """Write a pair list file, one line per anchor view.

    Args:
        pairs: View id pairs.
        path: Output file path.
    """
    adjacency: dict[int, list[int]] = defaultdict(list)
    for i, j in canonical_pairs(pairs):
        adjacency[i].append(j)

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        for anchor in sorted(adjacency):
            f.write(" ".join(str(v) for v in [anchor, *adjacency[anchor]]) + "\n")


def exhaustive_pairs(n_views: int) -> list[Pair]:
    """Every pair of views."""
    return [(i, j) for i in range(n_views) for j in range(i + 1, n_views)]


def contiguous_pairs(n_views: int, overlap: int) -> list[Pair]:
    """Pair each view with the ``overlap`` views that follow it (video sequences).

    Args:
        n_views: Number of views.
        overlap: Number of following views paired with each view (>= 1).

    Returns:
        Sorted list of (i, j) pairs with i < j <= i + overlap.
    """
    if overlap < 1:
        raise ValueError(f"overlap must be >= 1, got {overlap}")
    return [
        (i, j)
        for i in range(n_views)
        for j in range(i + 1, min(i + overlap + 1, n_views))
    ]
