"""Region providers: every view resident, or a bounded LRU cache."""

import logging
import sys
import threading
from collections import OrderedDict
from pathlib import Path

from tqdm import tqdm

from ..scene import SceneCatalog
from .regions import DescriptorKind, Regions, RegionsType, load_regions, regions_path

logger = logging.getLogger(__name__)


class RegionsProvider:
    """Provide the regions of every view of a scene, all kept in memory.

    Call load() once before get(). get() is safe to call from several
    matching threads; the returned Regions are read-only and shared.
    """

    def __init__(self) -> None:
        self._regions: dict[int, Regions] = {}
        self._paths: dict[int, Path] = {}
        self._regions_type: RegionsType | None = None

    @staticmethod
    def from_regions(
        regions: dict[int, Regions], regions_type: RegionsType
    ) -> "RegionsProvider":
        """Build a fully loaded provider from regions already in memory.

        Args:
            regions: Regions keyed by view id.
            regions_type: Descriptor-type declaration the regions follow.

        Raises:
            ValueError: If a Regions kind differs from the declaration.
        """
        for view_id, view_regions in regions.items():
            if view_regions.kind != regions_type.descriptor_kind:
                raise ValueError(
                    f"View {view_id} holds {view_regions.kind} descriptors, "
                    f"expected {regions_type.descriptor_kind}"
                )
        provider = RegionsProvider()
        provider._regions = dict(regions)
        provider._paths = {view_id: Path() for view_id in regions}
        provider._regions_type = regions_type
        return provider

    @property
    def regions_type(self) -> RegionsType:
        if self._regions_type is None:
            raise RuntimeError("Regions provider has not been loaded")
        return self._regions_type

    @property
    def descriptor_kind(self) -> DescriptorKind:
        return self.regions_type.descriptor_kind

    @property
    def view_ids(self) -> list[int]:
        """Ids of every view known to the provider, ascending."""
        return sorted(self._paths)

    def __contains__(self, view_id: object) -> bool:
        return view_id in self._paths

    def _index_files(
        self, scene: SceneCatalog, regions_dir: str | Path, regions_type: RegionsType
    ) -> None:
        paths = {}
        for view_id in scene.view_ids:
            path = regions_path(regions_dir, scene.views[view_id].stem)
            if not path.is_file():
                raise FileNotFoundError(
                    f"Region file of view {view_id} not found: {path}"
                )
            paths[view_id] = path
        self._paths = paths
        self._regions_type = regions_type

    def load(
        self,
        scene: SceneCatalog,
        regions_dir: str | Path,
        regions_type: RegionsType,
        quiet: bool = False,
    ) -> None:
        """Read the region file of every view of the scene.

        Args:
            scene: View catalog.
            regions_dir: Directory holding one ``<image stem>.pt`` file per view.
            regions_type: Descriptor-type declaration of the run.
            quiet: Suppress the progress bar.

        Raises:
            FileNotFoundError: If a region file is missing.
            ValueError: If a region file is corrupt or does not match the declaration.
        """
        self._index_files(scene, regions_dir, regions_type)

        regions = {}
        for view_id, path in tqdm(
            sorted(self._paths.items()),
            desc="Loading regions",
            disable=quiet or not sys.stderr.isatty(),
            unit="view",
        ):
            regions[view_id] = load_regions(path, regions_type)
        self._regions = regions

        logger.info("Loaded regions of %d views", len(regions))

    def _unknown_view(self, view_id: int) -> RuntimeError:
        return RuntimeError(
            f"Regions requested for view {view_id}, which is not part of the scene"
        )

    def get(self, view_id: int) -> Regions:
        """Return the regions of a view.

        Raises:
            RuntimeError: If the view is not part of the loaded scene.
        """
        try:
            return self._regions[view_id]
        except KeyError:
            raise self._unknown_view(view_id) from None


class CachedRegionsProvider(RegionsProvider):
    """Provide regions on demand, keeping at most ``max_cache_size`` views in memory.

    A cache miss loads the region file synchronously and evicts the least
    recently used view while the cache is over capacity. The cache index is
    guarded by a lock; evicted Regions stay valid for callers that still hold
    them.

    Args:
        max_cache_size: Maximum number of resident views (>= 1).
    """

    def __init__(self, max_cache_size: int) -> None:
        super().__init__()
        if max_cache_size < 1:
            raise ValueError(f"max_cache_size must be >= 1, got {max_cache_size}")
        self.max_cache_size = max_cache_size
        self._cache: OrderedDict[int, Regions] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def cache_size(self) -> int:
        """Number of views currently resident."""
        with self._lock:
            return len(self._cache)

    @property
    def resident_view_ids(self) -> list[int]:
        """Resident views, least recently used first."""
        with self._lock:
            return list(self._cache)

    def load(
        self,
        scene: SceneCatalog,
        regions_dir: str | Path,
        regions_type: RegionsType,
        quiet: bool = False,
    ) -> None:
        """Check that every region file exists; files are read lazily by get().

        Raises:
            FileNotFoundError: If a region file is missing.
        """
        self._index_files(scene, regions_dir, regions_type)
        with self._lock:
            self._cache.clear()
        logger.info(
            "Indexed regions of %d views (cache size %d)",
            len(self._paths),
            self.max_cache_size,
        )

    def get(self, view_id: int) -> Regions:
        """Return the regions of a view, loading them on a cache miss.

        Raises:
            RuntimeError: If the view is not part of the loaded scene.
            ValueError: If the region file turns out to be corrupt.
        """
        path = self._paths.get(view_id)
        if path is None:
            raise self._unknown_view(view_id)

        with self._lock:
            regions = self._cache.get(view_id)
            if regions is not None:
                self._cache.move_to_end(view_id)
                return regions

        # Read outside the lock so other threads keep hitting the cache
        loaded = load_regions(path, self.regions_type)

        with self._lock:
            regions = self._cache.get(view_id)
            if regions is not None:
                # Another thread loaded it first
                self._cache.move_to_end(view_id)
                return regions
            self._cache[view_id] = loaded
            while len(self._cache) > self.max_cache_size:
                evicted, _ = self._cache.popitem(last=False)
                logger.debug("Evicted regions of view %d", evicted)
        return loaded


def create_regions_provider(cache_size: int = 0) -> RegionsProvider:
    """Create a region provider.

    Args:
        cache_size: 0 keeps every view in memory; N > 0 keeps at most N views.

    Returns:
        RegionsProvider or CachedRegionsProvider.
    """
    if cache_size < 0:
        raise ValueError(f"cache_size must be >= 0, got {cache_size}")
    if cache_size == 0:
        return RegionsProvider()
    return CachedRegionsProvider(cache_size)
