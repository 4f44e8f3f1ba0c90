"""Tests for the matching pipeline orchestration."""

import logging
from pathlib import Path
from unittest.mock import patch

import numpy as np
import pytest
from conftest import clustered_descriptors, write_dataset

from mvgmatch.config import PipelineConfig
from mvgmatch.features.provider import CachedRegionsProvider
from mvgmatch.features.regions import RegionsType, save_regions_type
from mvgmatch.io import load_matches, save_matches
from mvgmatch.pipeline import (
    MatchingContext,
    Pipeline,
    build_matching_context,
    compute_putative_matches,
    run_pipeline,
)


def _with(config: PipelineConfig, **updates) -> PipelineConfig:
    data = config.model_dump(mode="json")
    for key, value in updates.items():
        if isinstance(value, dict):
            data[key].update(value)
        else:
            data[key] = value
    return PipelineConfig.model_validate(data)


class TestBuildMatchingContext:
    """Tests for build_matching_context()."""

    def test_context_fields(self, pipeline_config):
        """Test that the scene, declaration and provider are loaded."""
        ctx = build_matching_context(pipeline_config)

        assert isinstance(ctx, MatchingContext)
        assert ctx.config is pipeline_config
        assert len(ctx.scene) == 3
        assert ctx.regions_type.descriptor_kind == "numeric"
        assert ctx.provider.view_ids == [0, 1, 2]

    def test_declaration_without_length(self, pipeline_config, dataset, caplog, capsys):
        """Test that a declaration without a descriptor length is logged cleanly."""
        save_regions_type(
            RegionsType(describer="SIFT", descriptor_kind="numeric"),
            dataset["regions_dir"] / "image_describer.json",
        )
        with caplog.at_level(logging.INFO, logger="mvgmatch.pipeline.builder"):
            ctx = build_matching_context(pipeline_config)

        assert ctx.regions_type.descriptor_length is None
        assert "Regions: SIFT (numeric descriptors)" in caplog.text
        assert "Logging error" not in capsys.readouterr().err

    def test_cached_provider(self, pipeline_config):
        """Test that a cache size selects the bounded provider."""
        ctx = build_matching_context(_with(pipeline_config, regions={"cache_size": 1}))
        assert isinstance(ctx.provider, CachedRegionsProvider)

    def test_regions_dir_defaults_to_output_dir(self, tmp_path, small_descriptors):
        """Test that region files are found next to the match file by default."""
        paths = write_dataset(tmp_path, small_descriptors)
        config = PipelineConfig(
            scene_path=str(paths["scene"]),
            output_path=str(paths["regions_dir"] / "matches.putative.txt"),
            pair_list_path=str(paths["pairs"]),
        )
        assert build_matching_context(config).provider.view_ids == [0, 1, 2]

    def test_missing_scene(self, pipeline_config, tmp_path):
        """Test that a missing scene is fatal."""
        config = _with(pipeline_config, scene_path=str(tmp_path / "missing.json"))
        with pytest.raises(FileNotFoundError):
            build_matching_context(config)

    def test_missing_declaration(self, pipeline_config, dataset):
        """Test that a missing descriptor-type declaration is fatal."""
        (dataset["regions_dir"] / "image_describer.json").unlink()
        with pytest.raises(FileNotFoundError):
            build_matching_context(pipeline_config)

    def test_missing_region_file(self, pipeline_config, dataset):
        """Test that a missing region file is fatal."""
        (dataset["regions_dir"] / "img_002.pt").unlink()
        with pytest.raises(FileNotFoundError):
            build_matching_context(pipeline_config)

    def test_non_contiguous_view_ids(self, tmp_path):
        """Test that a scene whose ids are not 0 .. n - 1 is rejected before matching."""
        rng = np.random.default_rng(0)
        descriptors = {i: rng.random((4, 8), dtype=np.float32) for i in (0, 5, 7)}
        paths = write_dataset(tmp_path, descriptors, pairs=[(0, 5)])
        config = PipelineConfig(
            scene_path=str(paths["scene"]),
            output_path=str(paths["output"]),
            pair_list_path=str(paths["pairs"]),
            regions_dir=str(paths["regions_dir"]),
        )
        with patch("mvgmatch.pipeline.runner.match_all_pairs") as mock_match:
            with pytest.raises(ValueError, match="missing ids"):
                run_pipeline(config)
        mock_match.assert_not_called()
        assert not paths["output"].exists()

    def test_missing_paths(self):
        """Test that required paths must be configured."""
        with pytest.raises(ValueError, match="scene_path"):
            build_matching_context(PipelineConfig())


class TestComputePutativeMatches:
    """Tests for compute_putative_matches()."""

    def test_compute_and_persist(self, pipeline_config):
        """Test the three-view example end to end."""
        ctx = build_matching_context(pipeline_config)
        result = compute_putative_matches(ctx)

        assert result.reused is False
        assert result.elapsed >= 0.0
        assert set(result.matches) == {(0, 1), (1, 2)}
        for (i, j), matches in result.matches.items():
            assert len(matches) <= min(len(ctx.provider.get(i)), len(ctx.provider.get(j)))

        persisted = load_matches(pipeline_config.output_path)
        assert set(persisted) == set(result.matches)

    def test_existing_output_is_reused(self, pipeline_config):
        """Test that an existing file is returned unchanged without matching."""
        stored = {(0, 2): np.array([[1, 1]], dtype=np.int64)}
        save_matches(stored, pipeline_config.output_path)
        before = Path(pipeline_config.output_path).read_bytes()

        ctx = build_matching_context(pipeline_config)
        with patch(
            "mvgmatch.pipeline.runner.match_all_pairs",
            side_effect=RuntimeError("matching must not run"),
        ), patch(
            "mvgmatch.pipeline.runner.create_matcher",
            side_effect=RuntimeError("matcher must not be resolved"),
        ):
            result = compute_putative_matches(ctx)

        assert result.reused is True
        assert list(result.matches) == [(0, 2)]
        np.testing.assert_array_equal(result.matches[(0, 2)], [[1, 1]])
        assert Path(pipeline_config.output_path).read_bytes() == before

    def test_force_recomputes(self, pipeline_config):
        """Test that force replaces an existing file."""
        save_matches({(0, 2): np.array([[1, 1]])}, pipeline_config.output_path)

        ctx = build_matching_context(_with(pipeline_config, force=True))
        result = compute_putative_matches(ctx)

        assert result.reused is False
        assert set(load_matches(pipeline_config.output_path)) == {(0, 1), (1, 2)}

    def test_forced_runs_are_byte_identical(self, tmp_path):
        """Test that two forced exact runs write identical files."""
        paths = write_dataset(tmp_path, clustered_descriptors(n_views=5, n_points=30, dim=8))
        config = PipelineConfig.model_validate(
            {
                "scene_path": str(paths["scene"]),
                "output_path": str(paths["output"]),
                "pair_list_path": str(paths["pairs"]),
                "regions_dir": str(paths["regions_dir"]),
                "force": True,
                "matching": {"method": "BRUTEFORCEL2"},
                "runtime": {"num_workers": 4, "export_diagnostics": False, "quiet": True},
            }
        )

        compute_putative_matches(build_matching_context(config))
        first = paths["output"].read_bytes()
        compute_putative_matches(build_matching_context(config))
        assert paths["output"].read_bytes() == first

    def test_invalid_pair_list_fails_before_matching(self, pipeline_config, dataset):
        """Test that an out-of-range pair list aborts before any pair is matched."""
        dataset["pairs"].write_text("0 1\n1 3\n")
        ctx = build_matching_context(pipeline_config)

        with patch("mvgmatch.pipeline.runner.match_all_pairs") as mock_match:
            with pytest.raises(ValueError, match="out of range"):
                compute_putative_matches(ctx)
        mock_match.assert_not_called()
        assert not Path(pipeline_config.output_path).exists()

    def test_missing_pair_list(self, pipeline_config, dataset):
        """Test that a missing pair list is fatal."""
        dataset["pairs"].unlink()
        with pytest.raises(FileNotFoundError):
            compute_putative_matches(build_matching_context(pipeline_config))

    def test_method_kind_mismatch(self, pipeline_config):
        """Test that a Hamming method on numeric regions is rejected."""
        config = _with(pipeline_config, matching={"method": "BRUTEFORCEHAMMING"})
        with pytest.raises(ValueError, match="binary"):
            compute_putative_matches(build_matching_context(config))

    def test_failed_matching_keeps_previous_file(self, pipeline_config):
        """Test that a failing run leaves the persisted table untouched."""
        save_matches({(0, 2): np.array([[1, 1]])}, pipeline_config.output_path)
        before = Path(pipeline_config.output_path).read_bytes()

        ctx = build_matching_context(_with(pipeline_config, force=True))
        with patch(
            "mvgmatch.pipeline.runner.match_all_pairs", side_effect=RuntimeError("boom")
        ):
            with pytest.raises(RuntimeError):
                compute_putative_matches(ctx)
        assert Path(pipeline_config.output_path).read_bytes() == before


class TestRunPipeline:
    """Tests for run_pipeline() and Pipeline."""

    def test_writes_diagnostics(self, pipeline_config):
        """Test that diagnostics are written next to the match file."""
        config = _with(pipeline_config, runtime={"export_diagnostics": True})
        result = run_pipeline(config)

        assert result.reused is False
        assert (config.matches_dir / "PutativeAdjacencyMatrix.svg").exists()
        assert (config.matches_dir / "putative_matches.dot").exists()

    def test_diagnostics_failure_is_not_fatal(self, pipeline_config, caplog):
        """Test that a failing diagnostics export is logged and ignored."""
        config = _with(pipeline_config, runtime={"export_diagnostics": True})
        with patch(
            "mvgmatch.pipeline.runner.export_diagnostics",
            side_effect=OSError("disk full"),
        ):
            with caplog.at_level(logging.ERROR):
                result = run_pipeline(config)

        assert set(result.matches) == {(0, 1), (1, 2)}
        assert Path(config.output_path).exists()
        assert "Diagnostics export failed" in caplog.text

    def test_diagnostics_disabled(self, pipeline_config):
        """Test that diagnostics can be switched off."""
        with patch("mvgmatch.pipeline.runner.export_diagnostics") as mock_export:
            run_pipeline(pipeline_config)
        mock_export.assert_not_called()

    def test_pipeline_class(self, pipeline_config):
        """Test that Pipeline.run() delegates to run_pipeline()."""
        first = Pipeline(pipeline_config).run()
        second = Pipeline(pipeline_config).run()

        assert first.reused is False
        assert second.reused is True
        assert set(second.matches) == set(first.matches)
