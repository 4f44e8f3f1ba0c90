"""Cascade hashing for approximate L2 nearest-neighbor search.

Descriptors are zero-centered and projected on random hyperplanes. The
signs of a first set of projections form a long binary hash code; the signs
of several short projection groups address hash buckets. A query is only
compared with the target descriptors that share a bucket with it in at least
one group. Those candidates are ranked by hash-code Hamming distance, and the
best few are ranked again by exact L2 distance.
"""

import logging
from dataclasses import dataclass
from typing import Iterable

import numpy as np

logger = logging.getLogger(__name__)

# Number of set bits of every byte value
_POPCOUNT = np.array([bin(i).count("1") for i in range(256)], dtype=np.uint8)


@dataclass(frozen=True)
class HashedDescriptors:
    """Hash codes and bucket index of one descriptor set.

    Attributes:
        hash_codes: Packed primary hash codes, shape (N, hash_bits // 8), uint8.
        bucket_ids: Bucket id of each descriptor in each group, shape (N, G), int64.
        buckets: Per group, mapping from bucket id to the (ascending) indices
            of the descriptors in that bucket.
    """

    hash_codes: np.ndarray
    bucket_ids: np.ndarray
    buckets: tuple[dict[int, np.ndarray], ...]

    def __len__(self) -> int:
        return self.hash_codes.shape[0]


@dataclass(frozen=True)
class Projections:
    """Raw (uncentered) hyperplane projections of one descriptor set.

    Attributes:
        primary: Projections on the hash-code hyperplanes, shape (N, hash_bits).
        secondary: Projections on the bucket hyperplanes, shape (N, G, bits_per_bucket).
    """

    primary: np.ndarray
    secondary: np.ndarray

    def __len__(self) -> int:
        return self.primary.shape[0]


def descriptor_mean(descriptor_sets: Iterable[np.ndarray], descriptor_length: int) -> np.ndarray:
    """Mean descriptor over several descriptor sets.

    Args:
        descriptor_sets: Descriptor arrays, each of shape (N_k, D).
        descriptor_length: D, used when every set is empty.

    Returns:
        Mean descriptor, shape (D,), float64 (zeros if there are no descriptors).
    """
    total = np.zeros(descriptor_length, dtype=np.float64)
    count = 0
    for descriptors in descriptor_sets:
        if len(descriptors) == 0:
            continue
        total += descriptors.sum(axis=0, dtype=np.float64)
        count += len(descriptors)
    if count == 0:
        return total
    return total / count


class CascadeHasher:
    """Random-projection hasher shared by every view of a run.

    Args:
        descriptor_length: Descriptor width D.
        hash_bits: Length of the primary hash code (multiple of 8).
        bucket_groups: Number of bucket groups.
        bits_per_bucket: Bits per bucket id (2**bits_per_bucket buckets per group).
        seed: Seed of the projection matrices.
    """

    def __init__(
        self,
        descriptor_length: int,
        hash_bits: int = 128,
        bucket_groups: int = 6,
        bits_per_bucket: int = 10,
        seed: int = 0,
    ):
        if hash_bits <= 0 or hash_bits % 8 != 0:
            raise ValueError(f"hash_bits must be a positive multiple of 8, got {hash_bits}")
        self.descriptor_length = descriptor_length
        self.hash_bits = hash_bits
        self.bucket_groups = bucket_groups
        self.bits_per_bucket = bits_per_bucket

        rng = np.random.default_rng(seed)
        self.primary_projection = rng.standard_normal((hash_bits, descriptor_length))
        self.secondary_projection = rng.standard_normal(
            (bucket_groups, bits_per_bucket, descriptor_length)
        )
        self._bucket_weights = np.left_shift(1, np.arange(bits_per_bucket, dtype=np.int64))

    def project(self, descriptors: np.ndarray) -> Projections:
        """Project raw descriptors on the hash and bucket hyperplanes.

        Centering is linear, so a set can be projected before the mean
        descriptor of the run is known; hash_projected() applies the mean.

        Args:
            descriptors: Descriptors, shape (N, D).

        Returns:
            Projections of the set, stored as float32.
        """
        descriptors = np.asarray(descriptors, dtype=np.float64).reshape(-1, self.descriptor_length)
        primary = descriptors @ self.primary_projection.T
        secondary = np.einsum("nd,gbd->ngb", descriptors, self.secondary_projection)
        return Projections(
            primary=primary.astype(np.float32),
            secondary=secondary.astype(np.float32),
        )

    def hash_projected(self, projections: Projections, mean: np.ndarray) -> HashedDescriptors:
        """Hash a projected descriptor set around a mean descriptor.

        Args:
            projections: Output of project() for the set.
            mean: Mean descriptor subtracted before projection, shape (D,).

        Returns:
            HashedDescriptors of the set.
        """
        n = len(projections)
        if n == 0:
            empty_buckets = tuple({} for _ in range(self.bucket_groups))
            return HashedDescriptors(
                hash_codes=np.zeros((0, self.hash_bits // 8), dtype=np.uint8),
                bucket_ids=np.zeros((0, self.bucket_groups), dtype=np.int64),
                buckets=empty_buckets,
            )

        # sign((x - m) . p) == sign(x . p - m . p)
        offset = self.project(mean)
        hash_codes = np.packbits(projections.primary > offset.primary, axis=1)

        bits = projections.secondary > offset.secondary
        bucket_ids = (bits.astype(np.int64) * self._bucket_weights).sum(axis=2)

        buckets = []
        for group in range(self.bucket_groups):
            ids = bucket_ids[:, group]
            order = np.argsort(ids, kind="stable")
            unique_ids, starts = np.unique(ids[order], return_index=True)
            members = np.split(order, starts[1:])
            buckets.append(dict(zip(unique_ids.tolist(), members)))

        return HashedDescriptors(
            hash_codes=hash_codes,
            bucket_ids=bucket_ids,
            buckets=tuple(buckets),
        )

    def hash(self, descriptors: np.ndarray, mean: np.ndarray) -> HashedDescriptors:
        """Hash a descriptor set.

        Args:
            descriptors: Descriptors, shape (N, D).
            mean: Mean descriptor subtracted before projection, shape (D,).

        Returns:
            HashedDescriptors of the set.
        """
        return self.hash_projected(self.project(descriptors), mean)

    def nearest_two(
        self,
        query: HashedDescriptors,
        query_descriptors: np.ndarray,
        target: HashedDescriptors,
        target_descriptors: np.ndarray,
        top_candidates: int = 10,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Find the two nearest target descriptors of every query descriptor.

        Queries with fewer than two bucket-colliding candidates get no neighbor.

        Args:
            query: Hashed query set.
            query_descriptors: Query descriptors, shape (N, D).
            target: Hashed target set.
            target_descriptors: Target descriptors, shape (M, D).
            top_candidates: Candidates kept after hash-distance ranking.

        Returns:
            Tuple (nearest_index, nearest_distance, second_distance), each of
            shape (N,). Queries without neighbors have index -1 and infinite
            distances.
        """
        n = len(query)
        nearest = np.full(n, -1, dtype=np.int64)
        d1 = np.full(n, np.inf, dtype=np.float64)
        d2 = np.full(n, np.inf, dtype=np.float64)
        if n == 0 or len(target) < 2:
            return nearest, d1, d2

        for i in range(n):
            collisions = [
                target.buckets[group].get(int(query.bucket_ids[i, group]))
                for group in range(self.bucket_groups)
            ]
            collisions = [c for c in collisions if c is not None]
            if not collisions:
                continue
            candidates = np.unique(np.concatenate(collisions))
            if candidates.size < 2:
                continue

            hamming = _POPCOUNT[
                np.bitwise_xor(target.hash_codes[candidates], query.hash_codes[i])
            ].sum(axis=1, dtype=np.int64)
            best = candidates[np.argsort(hamming, kind="stable")[:top_candidates]]

            distances = np.linalg.norm(
                target_descriptors[best].astype(np.float64)
                - query_descriptors[i].astype(np.float64),
                axis=1,
            )
            order = np.argsort(distances, kind="stable")[:2]
            nearest[i] = best[order[0]]
            d1[i] = distances[order[0]]
            d2[i] = distances[order[1]]

        return nearest, d1, d2
