"""Persistence of putative match tables.

Two formats are supported, picked from the file suffix:

- ``.pt``: a torch archive holding the pair keys, per-pair counts and the
  concatenated match arrays.
- anything else: plain text, one block per pair::

      I J
      M
      a_0 b_0
      ...
      a_{M-1} b_{M-1}

Pairs are written in sorted order, so identical tables produce identical files.
"""

import logging
import os
import pickle
import tempfile
from collections.abc import Iterator
from pathlib import Path

import numpy as np
import torch

logger = logging.getLogger(__name__)

Pair = tuple[int, int]

_PT_FORMAT = "putative_matches"
_PT_VERSION = 1


def _as_match_array(pair: Pair, matches: np.ndarray) -> np.ndarray:
    array = np.asarray(matches, dtype=np.int64)
    if array.size == 0:
        return np.zeros((0, 2), dtype=np.int64)
    if array.ndim != 2 or array.shape[1] != 2:
        raise ValueError(f"Matches of pair {pair} must have shape (M, 2), got {array.shape}")
    return array


def _atomic_write(path: Path, write) -> None:
    """Write through a temporary sibling file, then rename over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    os.close(fd)
    try:
        write(Path(tmp_name))
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _write_text(matches: dict[Pair, np.ndarray], path: Path) -> None:
    with open(path, "w") as f:
        for pair in sorted(matches):
            array = _as_match_array(pair, matches[pair])
            f.write(f"{pair[0]} {pair[1]}\n{len(array)}\n")
            for a, b in array.tolist():
                f.write(f"{a} {b}\n")


def _write_torch(matches: dict[Pair, np.ndarray], path: Path) -> None:
    keys = sorted(matches)
    arrays = [_as_match_array(pair, matches[pair]) for pair in keys]
    torch.save(
        {
            "format": _PT_FORMAT,
            "version": _PT_VERSION,
            "pairs": torch.tensor(keys, dtype=torch.int64).reshape(-1, 2),
            "counts": torch.tensor([len(a) for a in arrays], dtype=torch.int64),
            "matches": torch.from_numpy(
                np.concatenate(arrays, axis=0) if arrays else np.zeros((0, 2), dtype=np.int64)
            ),
        },
        path,
    )


def save_matches(matches: dict[Pair, np.ndarray], path: str | Path) -> None:
    """Save a putative match table.

    The table is written to a temporary file next to ``path`` and renamed into
    place, so an existing file is only replaced by a complete one.

    Args:
        matches: Dict mapping (i, j) to an (M, 2) array of feature index pairs.
        path: Output path. ``.pt`` selects the torch format, anything else text.

    Raises:
        OSError: If the destination cannot be written.
        ValueError: If a match array does not have shape (M, 2).
    """
    path = Path(path)
    writer = _write_torch if path.suffix == ".pt" else _write_text
    _atomic_write(path, lambda tmp: writer(matches, tmp))
    logger.info("Saved matches of %d pairs to %s", len(matches), path)


def _int_tokens(path: Path) -> Iterator[int]:
    with open(path) as f:
        for line_number, line in enumerate(f, start=1):
            for token in line.split():
                try:
                    yield int(token)
                except ValueError:
                    raise ValueError(
                        f"{path}:{line_number}: expected an integer, got {token!r}"
                    ) from None


def _read_text(path: Path) -> dict[Pair, np.ndarray]:
    tokens = _int_tokens(path)
    matches: dict[Pair, np.ndarray] = {}

    def take(what: str) -> int:
        try:
            value = next(tokens)
        except StopIteration:
            raise ValueError(f"Truncated match file {path}: missing {what}") from None
        if value < 0:
            raise ValueError(f"Invalid match file {path}: negative {what} {value}")
        return value

    for i in tokens:
        if i < 0:
            raise ValueError(f"Invalid match file {path}: negative view id {i}")
        j = take("view id")
        pair = (i, j)
        count = take(f"match count of pair {pair}")
        values = [take(f"feature index of pair {pair}") for _ in range(2 * count)]
        _store(matches, pair, np.array(values, dtype=np.int64).reshape(count, 2), path)

    return matches


def _read_torch(path: Path) -> dict[Pair, np.ndarray]:
    try:
        data = torch.load(path, weights_only=True)
    except (RuntimeError, EOFError, ValueError, pickle.UnpicklingError) as e:
        raise ValueError(f"Corrupt match file {path}: {e}") from e

    if not isinstance(data, dict) or data.get("format") != _PT_FORMAT:
        raise ValueError(f"{path} is not a putative match file")
    try:
        pairs = data["pairs"].numpy()
        counts = data["counts"].numpy()
        flat = data["matches"].numpy()
    except (KeyError, AttributeError) as e:
        raise ValueError(f"Corrupt match file {path}: {e}") from e

    if (
        pairs.ndim != 2
        or pairs.shape[1] != 2
        or counts.shape != (pairs.shape[0],)
        or flat.ndim != 2
        or flat.shape[1] != 2
        or int(counts.sum()) != flat.shape[0]
    ):
        raise ValueError(f"Corrupt match file {path}: inconsistent array shapes")
    if (pairs < 0).any() or (counts < 0).any() or (flat < 0).any():
        raise ValueError(f"Invalid match file {path}: negative values")

    matches: dict[Pair, np.ndarray] = {}
    offsets = np.concatenate([[0], np.cumsum(counts)])
    for k, (i, j) in enumerate(pairs.tolist()):
        block = flat[offsets[k] : offsets[k + 1]].astype(np.int64)
        _store(matches, (i, j), block, path)
    return matches


def _store(
    matches: dict[Pair, np.ndarray], pair: Pair, block: np.ndarray, path: Path
) -> None:
    if pair[0] == pair[1]:
        raise ValueError(f"Invalid match file {path}: view {pair[0]} paired with itself")
    if pair in matches:
        raise ValueError(f"Invalid match file {path}: duplicate pair {pair}")
    matches[pair] = block


def load_matches(path: str | Path) -> dict[Pair, np.ndarray]:
    """Load a putative match table.

    Args:
        path: Path written by save_matches().

    Returns:
        Dict mapping (i, j) to an (M, 2) int64 array, in file order.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is truncated or corrupt, or holds a pair twice.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Match file does not exist: {path}")

    matches = _read_torch(path) if path.suffix == ".pt" else _read_text(path)
    logger.info("Loaded matches of %d pairs from %s", len(matches), path)
    return matches
