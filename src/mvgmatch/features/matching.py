"""Putative descriptor matching with interchangeable nearest-neighbor back ends.

Every back end answers the same question: for each descriptor of view i,
which descriptor of view j is nearest, and how far are the nearest and the
second-nearest? The ratio test on top of that is shared, so back ends only
differ in speed and exactness.
"""

import logging
import os
import threading
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable

import cv2
import faiss
import numpy as np
import torch
from scipy.spatial import cKDTree

from ..config import MatchingConfig, MatchingMethod
from .cascade_hashing import CascadeHasher, HashedDescriptors, descriptor_mean
from .pairs import Pair, canonical_pairs
from .provider import RegionsProvider
from .regions import DescriptorKind, Regions

logger = logging.getLogger(__name__)

PairwiseMatches = dict[Pair, np.ndarray]
ProgressCallback = Callable[[int, int], None]

# (query_id, query, target_id, target) -> (nearest_index, d1, d2)
NearestTwo = Callable[[int, Regions, int, Regions], tuple[np.ndarray, np.ndarray, np.ndarray]]
Prepare = Callable[[RegionsProvider, list[Pair]], None]

L2_METHODS = {
    MatchingMethod.BRUTE_FORCE_L2,
    MatchingMethod.ANN_L2,
    MatchingMethod.HNSW_L2,
    MatchingMethod.CASCADE_HASHING_L2,
    MatchingMethod.FAST_CASCADE_HASHING_L2,
}
HAMMING_METHODS = {MatchingMethod.BRUTE_FORCE_HAMMING}


@dataclass
class PairMatcher:
    """A nearest-neighbor back end bound to its parameters.

    Attributes:
        method: Back end tag.
        ratio: Distance ratio threshold.
        match_pair: Function (provider, i, j) -> (M, 2) int64 matches.
        prepare: Optional hook run once over the whole pair list before
            matching (precomputation shared across pairs).
    """

    method: MatchingMethod
    ratio: float
    match_pair: Callable[[RegionsProvider, int, int], np.ndarray]
    prepare: Prepare | None = None


def resolve_method(
    method: MatchingMethod | str, descriptor_kind: DescriptorKind
) -> MatchingMethod:
    """Resolve AUTO and check that a method suits the descriptor kind.

    Args:
        method: Requested method (enum member or its name).
        descriptor_kind: Descriptor kind of the run.

    Returns:
        Concrete matching method.

    Raises:
        ValueError: If the method name is not recognized, or its metric does not
            apply to the descriptor kind.
    """
    try:
        method = MatchingMethod(method)
    except ValueError:
        valid = [m.value for m in MatchingMethod]
        raise ValueError(
            f"Invalid nearest neighbor method: {method!r}. Valid methods: {valid}"
        ) from None

    if method == MatchingMethod.AUTO:
        if descriptor_kind == "numeric":
            return MatchingMethod.FAST_CASCADE_HASHING_L2
        return MatchingMethod.BRUTE_FORCE_HAMMING

    if descriptor_kind == "binary" and method in L2_METHODS:
        raise ValueError(f"{method.value} needs numeric descriptors, regions are binary")
    if descriptor_kind == "numeric" and method in HAMMING_METHODS:
        raise ValueError(f"{method.value} needs binary descriptors, regions are numeric")
    return method


def empty_matches() -> np.ndarray:
    """Match array with no correspondences, shape (0, 2)."""
    return np.zeros((0, 2), dtype=np.int64)


def ratio_test(
    nearest: np.ndarray, d1: np.ndarray, d2: np.ndarray, ratio: float
) -> np.ndarray:
    """Keep the correspondences whose nearest / second-nearest ratio is below ``ratio``.

    The comparison is strict: a ratio exactly equal to the threshold is rejected,
    and so is a query whose two nearest neighbors are equally far.

    Args:
        nearest: Index of the nearest target descriptor per query, shape (N,).
            -1 for queries without neighbors.
        d1: Nearest distance per query, shape (N,).
        d2: Second-nearest distance per query, shape (N,).
        ratio: Distance ratio threshold.

    Returns:
        Matches (query_index, target_index), shape (M, 2), int64, in ascending
        query order.
    """
    keep = (nearest >= 0) & np.isfinite(d2) & (d1 < ratio * d2)
    query = np.flatnonzero(keep)
    return np.stack([query, nearest[keep]], axis=1).astype(np.int64)


def _no_neighbors(n: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    return (
        np.full(n, -1, dtype=np.int64),
        np.full(n, np.inf, dtype=np.float64),
        np.full(n, np.inf, dtype=np.float64),
    )


def nearest_two_l2(
    query: np.ndarray, target: np.ndarray, chunk_size: int = 2048
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Exhaustive L2 search of the two nearest target descriptors.

    Args:
        query: Query descriptors, shape (N, D).
        target: Target descriptors, shape (M, D), M >= 2.
        chunk_size: Number of query rows per distance block.

    Returns:
        Tuple (nearest_index, d1, d2), each of shape (N,).
    """
    n = query.shape[0]
    nearest, d1, d2 = _no_neighbors(n)
    target_t = torch.from_numpy(np.array(target, dtype=np.float32)).unsqueeze(0)

    for start in range(0, n, chunk_size):
        stop = min(start + chunk_size, n)
        query_t = torch.from_numpy(np.array(query[start:stop], dtype=np.float32))
        # Direct differences, not the matrix-product expansion, so distances are exact
        dist = torch.cdist(
            query_t.unsqueeze(0),
            target_t,
            compute_mode="donot_use_mm_for_euclid_dist",
        ).squeeze(0)
        values, indices = torch.topk(dist, k=2, dim=1, largest=False, sorted=True)
        nearest[start:stop] = indices[:, 0].numpy()
        d1[start:stop] = values[:, 0].double().numpy()
        d2[start:stop] = values[:, 1].double().numpy()

    return nearest, d1, d2


def nearest_two_hamming(
    query: np.ndarray, target: np.ndarray
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Exhaustive Hamming search of the two nearest packed binary descriptors.

    Args:
        query: Query descriptors, shape (N, B), uint8.
        target: Target descriptors, shape (M, B), uint8, M >= 2.

    Returns:
        Tuple (nearest_index, d1, d2), each of shape (N,).
    """
    n = query.shape[0]
    nearest, d1, d2 = _no_neighbors(n)

    bf = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
    knn = bf.knnMatch(np.array(query, dtype=np.uint8), np.array(target, dtype=np.uint8), k=2)
    for candidates in knn:
        if len(candidates) < 2:
            continue
        best, second = candidates[0], candidates[1]
        nearest[best.queryIdx] = best.trainIdx
        d1[best.queryIdx] = best.distance
        d2[best.queryIdx] = second.distance

    return nearest, d1, d2


class _TargetIndexCache:
    """Search indexes keyed by target view id, built once and shared across pairs."""

    def __init__(self, build: Callable[[Regions], object]):
        self._build = build
        self._indexes: dict[int, object] = {}
        self._lock = threading.Lock()

    def get(self, view_id: int, regions: Regions) -> object:
        with self._lock:
            index = self._indexes.get(view_id)
            if index is None:
                index = self._build(regions)
                self._indexes[view_id] = index
            return index

    def __len__(self) -> int:
        with self._lock:
            return len(self._indexes)


def _brute_force_l2(config: MatchingConfig) -> tuple[NearestTwo, Prepare | None]:
    def nearest_two(query_id, query, target_id, target):
        return nearest_two_l2(query.descriptors, target.descriptors, config.query_chunk_size)

    return nearest_two, None


def _brute_force_hamming(config: MatchingConfig) -> tuple[NearestTwo, Prepare | None]:
    def nearest_two(query_id, query, target_id, target):
        return nearest_two_hamming(query.descriptors, target.descriptors)

    return nearest_two, None


def _ann_l2(config: MatchingConfig) -> tuple[NearestTwo, Prepare | None]:
    trees = _TargetIndexCache(lambda regions: cKDTree(regions.descriptors))

    def nearest_two(query_id, query, target_id, target):
        tree = trees.get(target_id, target)
        distances, indices = tree.query(query.descriptors, k=2, eps=config.tree_eps)
        nearest = np.where(np.isfinite(distances[:, 0]), indices[:, 0], -1)
        return nearest.astype(np.int64), distances[:, 0], distances[:, 1]

    return nearest_two, None


def _build_hnsw_index(regions: Regions, config: MatchingConfig) -> faiss.Index:
    index = faiss.IndexHNSWFlat(regions.descriptor_length, config.hnsw_m)
    index.hnsw.efConstruction = config.hnsw_ef_construction
    index.hnsw.efSearch = config.hnsw_ef_search
    index.add(np.array(regions.descriptors, dtype=np.float32))
    return index


def _hnsw_l2(config: MatchingConfig) -> tuple[NearestTwo, Prepare | None]:
    graphs = _TargetIndexCache(lambda regions: _build_hnsw_index(regions, config))

    def nearest_two(query_id, query, target_id, target):
        index = graphs.get(target_id, target)
        squared, indices = index.search(np.array(query.descriptors, dtype=np.float32), 2)
        # faiss reports squared L2 distances and -1 for missing neighbors
        distances = np.sqrt(np.maximum(squared.astype(np.float64), 0.0))
        distances[indices < 0] = np.inf
        return indices[:, 0].astype(np.int64), distances[:, 0], distances[:, 1]

    return nearest_two, None


def _create_hasher(descriptor_length: int, config: MatchingConfig) -> CascadeHasher:
    return CascadeHasher(
        descriptor_length,
        hash_bits=config.cascade_hash_bits,
        bucket_groups=config.cascade_bucket_groups,
        bits_per_bucket=config.cascade_bits_per_bucket,
        seed=config.cascade_seed,
    )


def _cascade_hashing_l2(config: MatchingConfig) -> tuple[NearestTwo, Prepare | None]:
    hashers: dict[int, CascadeHasher] = {}
    lock = threading.Lock()

    def nearest_two(query_id, query, target_id, target):
        length = query.descriptor_length
        with lock:
            hasher = hashers.get(length)
            if hasher is None:
                hasher = hashers[length] = _create_hasher(length, config)
        mean = descriptor_mean([query.descriptors, target.descriptors], length)
        return hasher.nearest_two(
            hasher.hash(query.descriptors, mean),
            query.descriptors,
            hasher.hash(target.descriptors, mean),
            target.descriptors,
            top_candidates=config.cascade_top_candidates,
        )

    return nearest_two, None


def _fast_cascade_hashing_l2(config: MatchingConfig) -> tuple[NearestTwo, Prepare | None]:
    state: dict[str, object] = {}
    hashed: dict[int, HashedDescriptors] = {}

    def prepare(provider: RegionsProvider, pairs: list[Pair]) -> None:
        view_ids = sorted({view_id for pair in pairs for view_id in pair})
        hashed.clear()
        if not view_ids:
            return

        # One read per view: project raw descriptors while summing them
        hasher: CascadeHasher | None = None
        projections = {}
        total = None
        count = 0
        for view_id in view_ids:
            regions = provider.get(view_id)
            descriptors = regions.descriptors
            if hasher is None:
                hasher = _create_hasher(regions.descriptor_length, config)
                total = np.zeros(hasher.descriptor_length, dtype=np.float64)
            projections[view_id] = hasher.project(descriptors)
            total += descriptors.sum(axis=0, dtype=np.float64)
            count += len(descriptors)

        mean = total / count if count else total
        for view_id in view_ids:
            hashed[view_id] = hasher.hash_projected(projections.pop(view_id), mean)
        state["hasher"] = hasher
        logger.info("Hashed descriptors of %d views", len(view_ids))

    def nearest_two(query_id, query, target_id, target):
        hasher = state.get("hasher")
        if hasher is None or query_id not in hashed or target_id not in hashed:
            raise RuntimeError(
                f"Views {query_id} and {target_id} were not hashed before matching"
            )
        return hasher.nearest_two(
            hashed[query_id],
            query.descriptors,
            hashed[target_id],
            target.descriptors,
            top_candidates=config.cascade_top_candidates,
        )

    return nearest_two, prepare


_BACKENDS: dict[MatchingMethod, Callable[[MatchingConfig], tuple[NearestTwo, Prepare | None]]] = {
    MatchingMethod.BRUTE_FORCE_L2: _brute_force_l2,
    MatchingMethod.BRUTE_FORCE_HAMMING: _brute_force_hamming,
    MatchingMethod.ANN_L2: _ann_l2,
    MatchingMethod.HNSW_L2: _hnsw_l2,
    MatchingMethod.CASCADE_HASHING_L2: _cascade_hashing_l2,
    MatchingMethod.FAST_CASCADE_HASHING_L2: _fast_cascade_hashing_l2,
}


def create_matcher(
    method: MatchingMethod | str,
    descriptor_kind: DescriptorKind,
    config: MatchingConfig | None = None,
) -> PairMatcher:
    """Create the pair matcher of a back end.

    Args:
        method: Matching method; AUTO picks from the descriptor kind.
        descriptor_kind: Descriptor kind of the run.
        config: Matching parameters (ratio and back-end settings).

    Returns:
        PairMatcher for the resolved method.

    Raises:
        ValueError: If the method is unknown or does not suit the descriptor kind.
    """
    if config is None:
        config = MatchingConfig()
    method = resolve_method(method, descriptor_kind)
    nearest_two, prepare = _BACKENDS[method](config)
    ratio = config.ratio

    def match_pair(provider: RegionsProvider, i: int, j: int) -> np.ndarray:
        query = provider.get(i)
        target = provider.get(j)
        if len(query) == 0 or len(target) < 2:
            return empty_matches()
        nearest, d1, d2 = nearest_two(i, query, j, target)
        return ratio_test(nearest, d1, d2, ratio)

    logger.info("Using %s matcher (ratio %.3f)", method.value, ratio)
    return PairMatcher(method=method, ratio=ratio, match_pair=match_pair, prepare=prepare)


def match_all_pairs(
    provider: RegionsProvider,
    pairs: Iterable[Pair],
    matcher: PairMatcher,
    progress: ProgressCallback | None = None,
    num_workers: int = 1,
) -> PairwiseMatches:
    """Match every pair of views.

    Matching runs from the smaller view id to the larger one. Pairs are
    independent once regions are available and are dispatched over a thread
    pool. Any failing pair aborts the whole run.

    Args:
        provider: Loaded region provider.
        pairs: View pairs; order inside a pair and duplicates are ignored.
        matcher: Pair matcher from create_matcher().
        progress: Called as progress(completed, total) once per finished pair.
        num_workers: Number of threads (0 = one per CPU).

    Returns:
        Dict mapping (i, j), i < j, to the (M, 2) match array of that pair.
        Pairs without surviving matches map to an empty (0, 2) array.

    Raises:
        ValueError: If a pair joins a view with itself.
    """
    pair_list = canonical_pairs(pairs)
    total = len(pair_list)

    if matcher.prepare is not None:
        matcher.prepare(provider, pair_list)

    if num_workers <= 0:
        num_workers = os.cpu_count() or 1
    num_workers = min(num_workers, max(total, 1))

    results: PairwiseMatches = {}
    completed = 0

    if num_workers == 1:
        for i, j in pair_list:
            results[(i, j)] = matcher.match_pair(provider, i, j)
            completed += 1
            if progress is not None:
                progress(completed, total)
    else:
        with ThreadPoolExecutor(max_workers=num_workers) as pool:
            futures = {
                pool.submit(matcher.match_pair, provider, i, j): (i, j)
                for i, j in pair_list
            }
            try:
                # Completion is handled on this thread only, so the count is monotonic
                for future in as_completed(futures):
                    results[futures[future]] = future.result()
                    completed += 1
                    if progress is not None:
                        progress(completed, total)
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

    n_matches = sum(len(m) for m in results.values())
    logger.info("Matched %d pairs: %d putative matches", total, n_matches)
    return results
