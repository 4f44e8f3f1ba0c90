"""Tests for the region providers."""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import numpy as np
import pytest
from conftest import clustered_descriptors, write_dataset

from mvgmatch.features import provider as provider_module
from mvgmatch.features.provider import (
    CachedRegionsProvider,
    RegionsProvider,
    create_regions_provider,
)
from mvgmatch.features.regions import RegionsType, load_regions_type, make_regions
from mvgmatch.scene import load_scene


@pytest.fixture
def loaded_inputs(tmp_path):
    """Scene, regions directory and declaration of a six-view dataset."""
    paths = write_dataset(tmp_path, clustered_descriptors(n_views=6, n_points=5, dim=8))
    scene = load_scene(paths["scene"])
    regions_type = load_regions_type(paths["regions_dir"])
    return scene, paths["regions_dir"], regions_type


class TestCreateRegionsProvider:
    """Tests for create_regions_provider()."""

    def test_unbounded(self):
        """Test that cache size 0 keeps every view."""
        provider = create_regions_provider(0)
        assert type(provider) is RegionsProvider

    def test_bounded(self):
        """Test that a positive cache size gives a cached provider."""
        provider = create_regions_provider(3)
        assert isinstance(provider, CachedRegionsProvider)
        assert provider.max_cache_size == 3

    def test_negative(self):
        """Test that a negative cache size is rejected."""
        with pytest.raises(ValueError):
            create_regions_provider(-1)

    def test_cached_requires_capacity(self):
        """Test that the cached provider needs room for one view."""
        with pytest.raises(ValueError):
            CachedRegionsProvider(0)


class TestRegionsProvider:
    """Tests for the fully loaded provider."""

    def test_load_all(self, loaded_inputs):
        """Test that every view is loaded."""
        scene, regions_dir, regions_type = loaded_inputs
        provider = RegionsProvider()
        provider.load(scene, regions_dir, regions_type, quiet=True)

        assert provider.view_ids == list(range(6))
        assert 5 in provider
        assert provider.descriptor_kind == "numeric"
        assert len(provider.get(2)) == 5

    def test_unknown_view(self, loaded_inputs):
        """Test that requesting a view outside the scene is an error."""
        scene, regions_dir, regions_type = loaded_inputs
        provider = RegionsProvider()
        provider.load(scene, regions_dir, regions_type, quiet=True)
        with pytest.raises(RuntimeError, match="not part of the scene"):
            provider.get(42)

    def test_missing_region_file(self, loaded_inputs):
        """Test that a missing region file fails the load."""
        scene, regions_dir, regions_type = loaded_inputs
        (regions_dir / "img_003.pt").unlink()
        with pytest.raises(FileNotFoundError, match="view 3"):
            RegionsProvider().load(scene, regions_dir, regions_type, quiet=True)

    def test_corrupt_region_file(self, loaded_inputs):
        """Test that a corrupt region file fails the load."""
        scene, regions_dir, regions_type = loaded_inputs
        (regions_dir / "img_001.pt").write_bytes(b"garbage")
        with pytest.raises(ValueError):
            RegionsProvider().load(scene, regions_dir, regions_type, quiet=True)

    def test_not_loaded(self):
        """Test that the descriptor kind is unknown before load()."""
        with pytest.raises(RuntimeError, match="not been loaded"):
            RegionsProvider().descriptor_kind

    def test_from_regions(self):
        """Test building a provider from in-memory regions."""
        regions_type = RegionsType(describer="SIFT", descriptor_kind="numeric")
        regions = make_regions(np.zeros((1, 2)), np.ones((1, 3)), regions_type)
        provider = RegionsProvider.from_regions({7: regions}, regions_type)
        assert provider.view_ids == [7]
        assert provider.get(7) is regions

    def test_from_regions_kind_mismatch(self):
        """Test that mixing descriptor kinds is rejected."""
        numeric = RegionsType(describer="SIFT", descriptor_kind="numeric")
        binary = RegionsType(describer="ORB", descriptor_kind="binary")
        regions = make_regions(np.zeros((1, 2)), np.ones((1, 3)), numeric)
        with pytest.raises(ValueError, match="binary"):
            RegionsProvider.from_regions({0: regions}, binary)


class TestCachedRegionsProvider:
    """Tests for the bounded LRU provider."""

    def test_load_is_lazy(self, loaded_inputs):
        """Test that load() only indexes files."""
        scene, regions_dir, regions_type = loaded_inputs
        provider = CachedRegionsProvider(2)
        with patch.object(provider_module, "load_regions") as mock_load:
            provider.load(scene, regions_dir, regions_type, quiet=True)
        mock_load.assert_not_called()
        assert provider.cache_size == 0
        assert provider.view_ids == list(range(6))

    def test_missing_file_detected_at_load(self, loaded_inputs):
        """Test that load() still checks that every region file exists."""
        scene, regions_dir, regions_type = loaded_inputs
        (regions_dir / "img_000.pt").unlink()
        with pytest.raises(FileNotFoundError):
            CachedRegionsProvider(2).load(scene, regions_dir, regions_type, quiet=True)

    def test_capacity_never_exceeded(self, loaded_inputs):
        """Test that the resident set stays within capacity."""
        scene, regions_dir, regions_type = loaded_inputs
        provider = CachedRegionsProvider(2)
        provider.load(scene, regions_dir, regions_type, quiet=True)

        for view_id in [0, 1, 2, 3, 0, 4, 5, 1, 2]:
            provider.get(view_id)
            assert provider.cache_size <= 2

    def test_lru_eviction_order(self, loaded_inputs):
        """Test that the least recently used view is evicted first."""
        scene, regions_dir, regions_type = loaded_inputs
        provider = CachedRegionsProvider(2)
        provider.load(scene, regions_dir, regions_type, quiet=True)

        provider.get(0)
        provider.get(1)
        provider.get(0)  # 1 is now least recently used
        provider.get(2)
        assert provider.resident_view_ids == [0, 2]

    def test_hit_does_not_reload(self, loaded_inputs):
        """Test that a resident view is served from memory."""
        scene, regions_dir, regions_type = loaded_inputs
        provider = CachedRegionsProvider(3)
        provider.load(scene, regions_dir, regions_type, quiet=True)

        first = provider.get(4)
        with patch.object(provider_module, "load_regions") as mock_load:
            assert provider.get(4) is first
        mock_load.assert_not_called()

    def test_content_equals_full_provider(self, loaded_inputs):
        """Test that the cache serves exactly what the full provider holds."""
        scene, regions_dir, regions_type = loaded_inputs
        full = RegionsProvider()
        full.load(scene, regions_dir, regions_type, quiet=True)
        cached = CachedRegionsProvider(1)
        cached.load(scene, regions_dir, regions_type, quiet=True)

        for view_id in [5, 0, 3, 3, 1, 5]:
            np.testing.assert_array_equal(
                cached.get(view_id).descriptors, full.get(view_id).descriptors
            )
            np.testing.assert_array_equal(
                cached.get(view_id).keypoints, full.get(view_id).keypoints
            )

    def test_unknown_view(self, loaded_inputs):
        """Test that requesting a view outside the scene is an error."""
        scene, regions_dir, regions_type = loaded_inputs
        provider = CachedRegionsProvider(2)
        provider.load(scene, regions_dir, regions_type, quiet=True)
        with pytest.raises(RuntimeError):
            provider.get(-1)

    def test_corrupt_file_fails_on_get(self, loaded_inputs):
        """Test that a corrupt file surfaces when it is first read."""
        scene, regions_dir, regions_type = loaded_inputs
        (regions_dir / "img_002.pt").write_bytes(b"garbage")
        provider = CachedRegionsProvider(2)
        provider.load(scene, regions_dir, regions_type, quiet=True)

        provider.get(1)
        with pytest.raises(ValueError):
            provider.get(2)

    def test_concurrent_access(self, loaded_inputs):
        """Test that concurrent readers see correct data within capacity."""
        scene, regions_dir, regions_type = loaded_inputs
        full = RegionsProvider()
        full.load(scene, regions_dir, regions_type, quiet=True)
        cached = CachedRegionsProvider(3)
        cached.load(scene, regions_dir, regions_type, quiet=True)

        requests = [view_id % 6 for view_id in range(120)]

        def fetch(view_id):
            regions = cached.get(view_id)
            assert cached.cache_size <= 3
            return view_id, regions

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(fetch, requests))

        for view_id, regions in results:
            np.testing.assert_array_equal(
                regions.descriptors, full.get(view_id).descriptors
            )
        assert cached.cache_size <= 3
