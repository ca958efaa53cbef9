"""Unit tests for table I/O, run logging and checkpoints."""

import json
import logging

import pytest
import numpy as np
import pandas as pd
import yaml

from heterocell.io import (
    load_annotation_table,
    load_checkpoint,
    load_count_table,
    log_json,
    log_yaml,
    save_checkpoint,
    state_to_anndata,
    to_serializable,
    write_dataframe,
)


class TestCountTable:
    """Tests for count table loading."""

    def test_load_csv(self, tmp_path, tiny_counts):
        """Test a CSV table loads with genes as index."""
        path = tmp_path / "counts.csv"
        tiny_counts.to_csv(path)
        table = load_count_table(path)
        assert table.index.name == "gene"
        assert list(table.columns) == list(tiny_counts.columns)
        assert table.loc["MT-CO1"].tolist() == [10, 0, 3, 1]

    def test_load_gzipped_tsv(self, tmp_path, tiny_counts):
        """Test a gzipped TSV is read with a tab delimiter."""
        path = tmp_path / "counts.tsv.gz"
        tiny_counts.to_csv(path, sep="\t")
        table = load_count_table(path)
        assert table.shape == (4, 4)

    def test_missing_file(self, tmp_path):
        """Test a missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_count_table(tmp_path / "nope.csv")

    def test_duplicate_genes(self, tmp_path):
        """Test duplicate gene symbols are rejected."""
        path = tmp_path / "dup.csv"
        path.write_text("gene,D1.AC.1\nACTB,1\nACTB,2\n")
        with pytest.raises(ValueError, match="Duplicate gene"):
            load_count_table(path)

    def test_non_numeric(self, tmp_path):
        """Test non-numeric counts are rejected."""
        path = tmp_path / "bad.csv"
        path.write_text("gene,D1.AC.1\nACTB,x\n")
        with pytest.raises(ValueError, match="non-numeric"):
            load_count_table(path)

    def test_missing_value(self, tmp_path):
        """Test an empty count entry is rejected."""
        path = tmp_path / "gap.csv"
        path.write_text("gene,D1.AC.1,D1.GT.1\nACTB,1,\n")
        with pytest.raises(ValueError, match="missing"):
            load_count_table(path)


class TestAnnotationTable:
    """Tests for annotation table loading."""

    def test_first_column_renamed_to_key(self, tmp_path):
        """Test the first column becomes the key column when absent."""
        path = tmp_path / "ann.csv"
        path.write_text("barcode_id,cell_type\nD1_AC_1,T\n")
        table = load_annotation_table(path, key_column="cell_id")
        assert list(table.columns) == ["cell_id", "cell_type"]
        assert table["cell_id"].tolist() == ["D1_AC_1"]

    def test_key_column_kept(self, tmp_path):
        """Test an existing key column is used as-is."""
        path = tmp_path / "ann.tsv"
        path.write_text("cell_type\tcell_id\nT\t1\n")
        table = load_annotation_table(path, key_column="cell_id")
        assert table["cell_id"].tolist() == ["1"]

    def test_write_dataframe(self, tmp_path):
        """Test the parent directory is created."""
        path = write_dataframe(pd.DataFrame({"a": [1]}), tmp_path / "x" / "y.csv")
        assert path.exists()


class TestRunLogging:
    """Tests for run logging helpers."""

    def test_to_serializable(self):
        """Test numpy values are converted to plain Python."""
        value = to_serializable({"a": np.int64(3), "b": np.array([1.5]), 4: (np.float32(2),)})
        assert value == {"a": 3, "b": [1.5], "4": [2.0]}
        assert isinstance(value["a"], int)

    def test_log_json_appends(self, tmp_path):
        """Test each record is one JSON line."""
        path = tmp_path / "log.jsonl"
        log_json(path, {"stage": "qc", "n": np.int64(1)})
        log_json(path, {"stage": "pca"})
        lines = path.read_text().splitlines()
        assert [json.loads(line)["stage"] for line in lines] == ["qc", "pca"]

    def test_log_yaml_file(self, tmp_path):
        """Test records are appended as YAML documents."""
        path = tmp_path / "log.yaml"
        log_yaml(path, {"stage": "qc"})
        log_yaml(path, {"stage": "pca"})
        docs = [d for d in yaml.safe_load_all(path.read_text()) if d]
        assert docs == [{"stage": "qc"}, {"stage": "pca"}]

    def test_log_yaml_to_logger(self, tmp_path, caplog):
        """Test a record is logged instead of written when a logger is given."""
        logger = logging.getLogger("heterocell.test.yaml")
        with caplog.at_level(logging.INFO, logger="heterocell.test.yaml"):
            log_yaml(tmp_path / "unused.yaml", {"stage": "qc"}, logger=logger)
        assert "stage: qc" in caplog.text
        assert not (tmp_path / "unused.yaml").exists()


class TestCheckpoint:
    """Tests for checkpoint save and load."""

    def test_roundtrip(self, pipeline_state, tmp_output_dir):
        """Test a reloaded state has the same content."""
        state = pipeline_state
        path = save_checkpoint(state, tmp_output_dir / "state.h5ad")
        loaded = load_checkpoint(path)

        assert loaded.batch_col == state.batch_col
        assert list(loaded.matrix.cell_ids) == list(state.matrix.cell_ids)
        assert list(loaded.matrix.gene_symbols) == list(state.matrix.gene_symbols)
        np.testing.assert_array_equal(
            loaded.matrix.counts.toarray(), state.matrix.counts.toarray()
        )
        pd.testing.assert_frame_equal(loaded.matrix.obs, state.matrix.obs, check_dtype=False)
        np.testing.assert_allclose(
            loaded.normalized.values.toarray(), state.normalized.values.toarray()
        )
        assert set(loaded.normalized.per_batch) == set(state.normalized.per_batch)

        assert list(loaded.registry.embeddings) == list(state.registry.embeddings)
        for key, embedding in state.registry.embeddings.items():
            np.testing.assert_allclose(loaded.registry.embedding(key).values, embedding.values)
        assert list(loaded.registry.clusterings) == list(state.registry.clusterings)
        for key, assignment in state.registry.clusterings.items():
            pd.testing.assert_series_equal(
                loaded.registry.clustering(key).labels, assignment.labels
            )

        assert loaded.features.selected == state.features.selected
        assert loaded.partition.sizes() == state.partition.sizes()
        assert loaded.config == state.config
        assert set(loaded.summaries) == set(state.summaries)

    def test_resave_is_stable(self, pipeline_state, tmp_output_dir):
        """Test saving a reloaded state reproduces the same content."""
        first = load_checkpoint(save_checkpoint(pipeline_state, tmp_output_dir / "a.h5ad"))
        second = load_checkpoint(save_checkpoint(first, tmp_output_dir / "b.h5ad"))
        pd.testing.assert_frame_equal(first.matrix.obs, second.matrix.obs)
        pd.testing.assert_frame_equal(first.features.table, second.features.table)
        assert list(first.registry.embeddings) == list(second.registry.embeddings)
        assert first.summaries == second.summaries

    def test_anndata_layout(self, pipeline_state):
        """Test the AnnData carries counts, normalized layer and registry entries."""
        adata = state_to_anndata(pipeline_state)
        assert adata.n_obs == pipeline_state.n_cells
        assert "normalized" in adata.layers
        assert "selected" in adata.var.columns
        assert len(adata.uns["embeddings"]) == len(pipeline_state.registry.embeddings)
        assert len(adata.uns["clusterings"]) == 1

    def test_missing_checkpoint(self, tmp_path):
        """Test loading a missing file raises."""
        with pytest.raises(FileNotFoundError):
            load_checkpoint(tmp_path / "missing.h5ad")
