"""Unit tests for the command-line interface."""

import pytest
import pandas as pd
from click.testing import CliRunner

from heterocell import __version__
from heterocell.cli import cli
from heterocell.core import ResultRegistry
from heterocell.io import save_checkpoint


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def input_files(tmp_path, counts, annotations):
    counts_path = tmp_path / "counts.csv"
    counts.to_csv(counts_path)
    annotations_path = tmp_path / "cells.csv"
    annotations.to_csv(annotations_path, index=False)
    return counts_path, annotations_path


@pytest.fixture
def run_dir(runner, input_files, config_file, tmp_path):
    """Output directory of a successful ``run``."""
    counts_path, annotations_path = input_files
    out_dir = tmp_path / "out"
    result = runner.invoke(
        cli,
        [
            "run",
            "--counts", str(counts_path),
            "--annotations", str(annotations_path),
            "--config", str(config_file),
            "--out", str(out_dir),
        ],
        obj={},
    )
    assert result.exit_code == 0, result.output
    return out_dir


class TestCli:
    """Tests for the heterocell command group."""

    def test_help(self, runner):
        """Test the group help lists every command."""
        result = runner.invoke(cli, ["--help"], obj={})
        assert result.exit_code == 0
        for command in ("run", "centiles", "recluster", "inspect"):
            assert command in result.output

    def test_version(self, runner):
        """Test the version option."""
        result = runner.invoke(cli, ["--version"], obj={})
        assert result.exit_code == 0
        assert __version__ in result.output


class TestRunCommand:
    """Tests for ``heterocell run``."""

    def test_outputs_written(self, run_dir):
        """Test tables, centiles, logs and checkpoint are written."""
        for name in (
            "clusters.csv",
            "checkpoint.h5ad",
            "config_used.yaml",
            "features.csv",
            "pca_variance.csv",
            "integration_pairs.csv",
            "composition.csv",
            "run_summary.jsonl",
            "qc/removed_cells.csv",
            "qc/by_batch.csv",
            "centiles/centiles.csv",
            "centiles/listings.csv",
            "centiles/group_counts.csv",
            "centiles/excluded_genes.csv",
        ):
            assert (run_dir / name).exists(), name
        assert list((run_dir / "logs").glob("analysis_*.log"))

    def test_cluster_table(self, run_dir):
        """Test one cluster row per retained cell with batch metadata."""
        clusters = pd.read_csv(run_dir / "clusters.csv")
        assert len(clusters) == 180
        assert {"cluster", "donor", "integrated"} <= set(clusters.columns)

    def test_excluded_centile_gene(self, run_dir):
        """Test the configured gene missing from the matrix is reported."""
        excluded = pd.read_csv(run_dir / "centiles" / "excluded_genes.csv")
        assert excluded["name"].tolist() == ["NOT_A_GENE"]
        centiles = pd.read_csv(run_dir / "centiles" / "centiles.csv")
        assert set(centiles["gene"]) == {"GENE0000", "GENE0020"}

    def test_projection_written(self, runner, input_files, config_file, tmp_path):
        """Test ``--project`` writes 2D coordinates for every cell."""
        counts_path, _ = input_files
        out_dir = tmp_path / "projected"
        result = runner.invoke(
            cli,
            [
                "run",
                "--counts", str(counts_path),
                "--config", str(config_file),
                "--out", str(out_dir),
                "--project",
            ],
            obj={},
        )
        assert result.exit_code == 0, result.output
        projection = pd.read_csv(out_dir / "projection.csv", index_col=0)
        assert projection.shape == (180, 2)
        assert list(projection.columns) == ["UMAP1", "UMAP2"]

    def test_malformed_identifiers(self, runner, tmp_path, tiny_counts):
        """Test a malformed cell identifier exits with an error."""
        table = tiny_counts.copy()
        table.columns = ["D1.AAAA.1", "not-an-id", "D2.CCCC.1", "D2.GGGG.1"]
        path = tmp_path / "bad.csv"
        table.to_csv(path)
        result = runner.invoke(
            cli, ["run", "--counts", str(path), "--out", str(tmp_path / "out")], obj={}
        )
        assert result.exit_code == 1
        assert "Malformed cell identifier" in result.output


class TestCheckpointCommands:
    """Tests for commands reading a checkpoint."""

    def test_inspect(self, runner, run_dir):
        """Test the registry listing."""
        result = runner.invoke(cli, ["inspect", "--checkpoint", str(run_dir / "checkpoint.h5ad")], obj={})
        assert result.exit_code == 0, result.output
        assert "Cells: 180" in result.output
        assert "cca_integrated" in result.output
        assert "leiden(" in result.output

    def test_centiles(self, runner, run_dir, tmp_path):
        """Test centiles grouped by donor from a checkpoint."""
        out_dir = tmp_path / "centiles"
        result = runner.invoke(
            cli,
            [
                "centiles",
                "--checkpoint", str(run_dir / "checkpoint.h5ad"),
                "--gene", "GENE0000",
                "--gene", "MISSING",
                "--group-col", "donor",
                "--out", str(out_dir),
            ],
            obj={},
        )
        assert result.exit_code == 0, result.output
        assert "Centiles computed for 1 genes over 180 cells" in result.output
        assert "MISSING" in result.output
        counts = pd.read_csv(out_dir / "group_counts.csv", index_col=0)
        assert sorted(counts.index) == ["D1", "D2", "D3"]
        assert counts["GENE0000"].sum() == 9

    def test_centiles_requires_genes(self, runner, run_dir, tmp_path):
        """Test centiles without any gene is a usage error."""
        result = runner.invoke(
            cli,
            ["centiles", "--checkpoint", str(run_dir / "checkpoint.h5ad"), "--out", str(tmp_path / "c")],
            obj={},
        )
        assert result.exit_code == 2

    def test_recluster(self, runner, run_dir, tmp_path):
        """Test reclustering keeps the first clustering in the new checkpoint."""
        out_dir = tmp_path / "res"
        result = runner.invoke(
            cli,
            [
                "recluster",
                "--checkpoint", str(run_dir / "checkpoint.h5ad"),
                "--resolution", "1.5",
                "--out", str(out_dir),
            ],
            obj={},
        )
        assert result.exit_code == 0, result.output
        assert "Clustering complete" in result.output
        assert (out_dir / "clusters.csv").exists()

        listing = runner.invoke(cli, ["inspect", "--checkpoint", str(out_dir / "checkpoint.h5ad")], obj={})
        assert listing.output.count("leiden(") == 2

    def test_centiles_without_clustering(self, runner, pipeline_state, tmp_path):
        """Test cluster grouping on a checkpoint without clusterings is a usage error."""
        registry = ResultRegistry()
        for embedding in pipeline_state.registry.embeddings.values():
            registry = registry.with_embedding(embedding)
        path = save_checkpoint(pipeline_state.evolve(registry=registry), tmp_path / "bare.h5ad")
        result = runner.invoke(
            cli,
            ["centiles", "--checkpoint", str(path), "--gene", "GENE0000", "--out", str(tmp_path / "c")],
            obj={},
        )
        assert result.exit_code == 2
        assert "no clustering" in result.output
        assert not isinstance(result.exception, KeyError)
